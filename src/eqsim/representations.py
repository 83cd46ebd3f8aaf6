"""Numeric representations the derivative evaluator can run over.

An evaluation plan is compiled once per representation. The
representation decides the storage dtype of the flat vectors, which
implementation backs each math function used in the equations, whether
values carry pint units, and how linear subsystems are solved.

Representations
---------------
FloatRepresentation : float64 values, numpy math
UnitRepresentation : float64 storage, pint quantities inside equations
UncertainRepresentation : ``uncertainties`` ufloats, ``umath`` math
DualRepresentation : ufloats seeded per state, used for exact Jacobians
"""

from typing import Any, Callable, Dict, Optional, Sequence

import numpy as np
import pint
from uncertainties import UFloat, nominal_value, std_dev, ufloat, umath

from eqsim.errors import ConfigurationError


def get_registry() -> pint.UnitRegistry:
    """Return the pint registry shared by models and parameters."""
    return pint.get_application_registry()


def _sign(value):
    return float(np.sign(nominal_value(value)))


NUMPY_FUNCTIONS: Dict[str, Callable] = {
    "sin": np.sin,
    "cos": np.cos,
    "tan": np.tan,
    "asin": np.arcsin,
    "acos": np.arccos,
    "atan": np.arctan,
    "atan2": np.arctan2,
    "sinh": np.sinh,
    "cosh": np.cosh,
    "tanh": np.tanh,
    "exp": np.exp,
    "log": np.log,
    "log10": np.log10,
    "sqrt": np.sqrt,
    "abs": np.abs,
    "sign": np.sign,
    "floor": np.floor,
    "ceil": np.ceil,
    "min": min,
    "max": max,
}

UMATH_FUNCTIONS: Dict[str, Callable] = {
    "sin": umath.sin,
    "cos": umath.cos,
    "tan": umath.tan,
    "asin": umath.asin,
    "acos": umath.acos,
    "atan": umath.atan,
    "atan2": umath.atan2,
    "sinh": umath.sinh,
    "cosh": umath.cosh,
    "tanh": umath.tanh,
    "exp": umath.exp,
    "log": umath.log,
    "log10": umath.log10,
    "sqrt": umath.sqrt,
    "abs": abs,
    "sign": _sign,
    "floor": umath.floor,
    "ceil": umath.ceil,
    "min": min,
    "max": max,
}


class FloatRepresentation:
    """Plain float64 representation.

    Parameters
    ----------
    registry : pint.UnitRegistry, optional
        If given, states and time are tagged with units inside the
        equations (see :class:`UnitRepresentation`).
    """

    name = "float64"
    dtype: Any = np.float64
    base_type: Any = np.float64
    functions = NUMPY_FUNCTIONS

    def __init__(self, registry: Optional[pint.UnitRegistry] = None):
        self.registry = registry
        self._units: Dict[str, Any] = {}

    @property
    def has_units(self) -> bool:
        return self.registry is not None

    @property
    def is_float(self) -> bool:
        """True if linear algebra can run on LAPACK."""
        return self.dtype is np.float64

    def function(self, name: str) -> Callable:
        try:
            return self.functions[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown function {name!r} for representation {self.name}"
            ) from None

    def zeros(self, n: int) -> np.ndarray:
        return np.zeros(n, dtype=self.dtype)

    def unit(self, unit: str):
        """Return the pint unit for a unit string (cached)."""
        if unit not in self._units:
            self._units[unit] = self.registry.Unit(unit)
        return self._units[unit]

    def tag_time(self, t):
        if self.registry is None:
            return t
        return self.registry.Quantity(t, self.unit("s"))

    def tag_state(self, value, unit: str):
        if self.registry is None or not unit:
            return value
        return self.registry.Quantity(value, self.unit(unit))

    def strip_derivative(self, value, unit: str):
        """Return the magnitude of a state derivative in ``unit/s``."""
        if self.registry is None or not isinstance(value, self.registry.Quantity):
            return value
        target = f"({unit}) / s" if unit else "1 / s"
        return value.m_as(self.unit(target))

    def magnitude(self, value):
        """Unit-free magnitude of a residual (in base units)."""
        if self.registry is not None and isinstance(value, self.registry.Quantity):
            return value.to_base_units().magnitude
        return value

    def vector(self, values: Sequence):
        if self.registry is not None and any(
            isinstance(v, self.registry.Quantity) for v in values
        ):
            return self.registry.Quantity.from_list(list(values))
        return np.array(values, dtype=self.dtype)

    def nominal(self, value) -> float:
        """Float used for decisions such as pivoting."""
        return to_float(value)

    def condense(self, x: np.ndarray) -> np.ndarray:
        """Prepare a state accepted by a fixed-step integrator for the next step."""
        return x

    def __repr__(self):
        units = ", units" if self.has_units else ""
        return f"{type(self).__name__}({self.name}{units})"


class UnitRepresentation(FloatRepresentation):
    """float64 storage with pint quantities inside the equations.

    States are tagged with their declared unit and time with seconds
    before the equations run. Derivatives are written back to the flat
    vector as magnitudes in ``unit/s``.
    """

    def __init__(self, registry: Optional[pint.UnitRegistry] = None):
        super().__init__(registry or get_registry())


class UncertainRepresentation(FloatRepresentation):
    """Values with linear uncertainty propagation (``uncertainties``).

    Flat vectors hold ufloats (object dtype). Comparisons in equations
    use nominal values.
    """

    name = "ufloat"
    dtype = object
    functions = UMATH_FUNCTIONS

    def zeros(self, n: int) -> np.ndarray:
        out = np.empty(n, dtype=object)
        out[:] = 0.0
        return out

    def vector(self, values: Sequence):
        if self.registry is not None and any(
            isinstance(v, self.registry.Quantity) for v in values
        ):
            return self.registry.Quantity.from_list(list(values))
        out = np.empty(len(values), dtype=object)
        out[:] = list(values)
        return out

    def condense(self, x: np.ndarray) -> np.ndarray:
        """Expand the derivatives of each entry of ``x`` in place.

        ``uncertainties`` keeps the result of an operation as an
        unexpanded linear combination of its operands. Every fixed step
        nests these combinations once more, and expanding them only at
        the end takes time exponential in the number of steps. Expanded
        entries become flat sums over the independent variables.
        """
        for value in x:
            if isinstance(value, UFloat):
                value.derivatives
        return x


class DualRepresentation(UncertainRepresentation):
    """First-order forward-mode derivatives carried by ufloats.

    Each state entry is seeded as an independent variable with unit
    standard deviation; the partial derivative of any computed value
    with respect to that entry is then read from its ``derivatives``.
    """

    name = "dual"

    def seed(self, x: np.ndarray, names: Sequence[str]) -> np.ndarray:
        seeds = np.empty(len(x), dtype=object)
        for i, (xi, name) in enumerate(zip(x, names)):
            seeds[i] = ufloat(float(nominal_value(xi)), 1.0, tag=name)
        return seeds

    @staticmethod
    def derivative(value, variable) -> float:
        if isinstance(value, UFloat):
            return value.derivatives.get(variable, 0.0)
        return 0.0


def to_float(value) -> float:
    """Nominal float of a plain, unit-carrying or uncertain value."""
    return float(nominal_value(getattr(value, "magnitude", value)))


def measurement_to_string(value) -> str:
    """Format a ufloat (or a sequence of them) with all significant digits.

    Examples
    --------
    >>> measurement_to_string(ufloat(1.5, 0.25))
    '1.5 ± 0.25'
    >>> measurement_to_string([ufloat(1.0, 0.1), ufloat(2.0, 0.2)])
    '[1.0 ± 0.1, 2.0 ± 0.2]'
    """
    if isinstance(value, UFloat):
        return f"{nominal_value(value)!r} ± {std_dev(value)!r}"
    return "[" + ", ".join(measurement_to_string(v) for v in value) + "]"
