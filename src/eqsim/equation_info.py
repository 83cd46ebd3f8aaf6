"""Equation info: the state layout of a sorted and reduced equation set.

The equation-sorting step (outside this package) decides which variables
are differential states, which variables were eliminated as aliases or
structural zeros, and which blocks of equations form linear subsystems.
This module holds that information and derives the flat state layout
from it.

Examples
--------
>>> info = EquationInfo(
...     states=[StateInfo("phi2", "der_phi2", unit="rad"),
...             StateInfo("w2", "der_w2", unit="rad/s")]
... )
>>> info.assign_start_indices()
2
>>> [s.start_index for s in info.states]
[0, 1]
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from eqsim.errors import ConfigurationError


@dataclass
class StateInfo:
    """Descriptor of one (scalar or vector) differential state.

    Parameters
    ----------
    name : str
        Name of the state variable. An empty name on the only descriptor
        marks a purely algebraic model.
    der_name : str
        Name of the local variable holding the state derivative.
    unit : str, optional
        Physical unit of the state (pint syntax), '' if none.
    length : int, optional
        Number of scalar entries. Length 1 is a scalar state.
    start_index : int
        0-based offset into the flat state vector. Assigned by
        :meth:`EquationInfo.assign_start_indices`.
    """

    name: str
    der_name: str
    unit: str = ""
    length: int = 1
    start_index: int = -1

    @property
    def is_scalar(self) -> bool:
        return self.length == 1

    @property
    def index_range(self) -> slice:
        return slice(self.start_index, self.start_index + self.length)


class AliasKind(Enum):
    """How an eliminated variable relates to the remaining variables."""

    ZERO = "zero"
    ALIAS = "alias"
    NEGATED_ALIAS = "negated_alias"


@dataclass
class EliminatedVariable:
    """A variable removed by alias elimination.

    ``ZERO`` variables are structurally zero. ``ALIAS`` and
    ``NEGATED_ALIAS`` variables equal ``target`` or ``-target``.
    """

    name: str
    kind: AliasKind
    target: Optional[str] = None


@dataclass
class LinearSubsystemInfo:
    """Structure of one block of simultaneous linear equations.

    Parameters
    ----------
    unknowns : list of str
        Names of the unknowns (iteration variables) of the block.
    steps : list of ast.stmt
        Assignments computing intermediate variables from the unknowns.
    residuals : list of ast.expr
        Residual expressions, affine in the unknowns. Their total length
        must equal the total length of the unknowns.
    lengths : list of int, optional
        Length of each unknown, all 1 by default.
    units : list of str, optional
        Unit of each unknown, used when equations carry units.
    constant_matrix : bool, optional
        True if the coefficient matrix does not depend on time, states or
        parameters that change. The matrix is then factorised once at
        initialisation and reused.
    """

    unknowns: List[str]
    steps: list
    residuals: list
    lengths: Optional[List[int]] = None
    units: Optional[List[str]] = None
    constant_matrix: bool = False

    def __post_init__(self):
        if self.lengths is None:
            self.lengths = [1] * len(self.unknowns)
        if self.units is None:
            self.units = [""] * len(self.unknowns)
        if not (len(self.lengths) == len(self.units) == len(self.unknowns)):
            raise ConfigurationError(
                "unknowns, lengths and units of a linear subsystem must "
                "have the same number of entries"
            )

    @property
    def n(self) -> int:
        """Total number of scalar unknowns."""
        return sum(self.lengths)


@dataclass
class EquationInfo:
    """State layout, eliminated variables and linear subsystems."""

    states: List[StateInfo]
    eliminated: List[EliminatedVariable] = field(default_factory=list)
    linear_subsystems: List[LinearSubsystemInfo] = field(default_factory=list)
    nx: int = 0

    @property
    def is_algebraic(self) -> bool:
        """True if the model has no true differential state."""
        return (
            len(self.states) == 1
            and self.states[0].name == ""
            and self.states[0].der_name == ""
        )

    def assign_start_indices(self) -> int:
        """Assign dense start indices in declaration order.

        Returns
        -------
        nx : int
            Total length of the state vector.
        """
        start_index = 0
        for state in self.states:
            if state.length < 1:
                raise ConfigurationError(
                    f"State {state.name!r} has invalid length {state.length}"
                )
            state.start_index = start_index
            start_index += state.length
        self.nx = start_index
        return self.nx

    def state_names(self) -> List[str]:
        """Names of the scalar entries of the state vector."""
        names = []
        for state in self.states:
            if state.is_scalar:
                names.append(state.name)
            else:
                names.extend(f"{state.name}[{i}]" for i in range(state.length))
        return names

    def derivative_names(self) -> Dict[str, str]:
        """Map from state name to the name of its derivative."""
        return {s.name: s.der_name for s in self.states if s.name}


def initial_state_vector(
    equation_info: EquationInfo,
    start_values: Mapping[str, Any],
    dtype: Any = np.float64,
) -> np.ndarray:
    """Build the initial state vector from named start values.

    Every state must have exactly one start value and no start value may
    refer to a variable that is not a state (for example a variable that
    became algebraic during index reduction).

    Parameters
    ----------
    equation_info : EquationInfo
        State layout. Start indices are assigned if necessary.
    start_values : mapping of str to value
        Initial values keyed by variable name. Vector states take
        sequences of the declared length.
    dtype : numpy dtype, optional
        dtype of the returned vector (object for uncertain values).

    Returns
    -------
    x_start : ndarray

    Raises
    ------
    ConfigurationError
        If initial values are given for non-states (too many) or
        missing for states (too few).
    """
    nx = equation_info.assign_start_indices()
    if equation_info.is_algebraic:
        if start_values:
            raise ConfigurationError(
                "Model has no differential states but initial values "
                f"were given for: {', '.join(start_values)}"
            )
        return np.zeros(nx, dtype=dtype)

    state_names = {s.name for s in equation_info.states}
    too_many = [name for name in start_values if name not in state_names]
    too_few = [s.name for s in equation_info.states if s.name not in start_values]
    if too_many or too_few:
        lines = []
        if too_many:
            lines.append(
                "Initial values given for variables that are not states "
                f"(too many initial conditions): {', '.join(too_many)}"
            )
        if too_few:
            lines.append(
                "No initial value for states (too few initial "
                f"conditions): {', '.join(too_few)}"
            )
        raise ConfigurationError("\n".join(lines))

    x_start = np.zeros(nx, dtype=dtype)
    for state in equation_info.states:
        value = start_values[state.name]
        if state.is_scalar:
            x_start[state.start_index] = value
            continue
        values = list(value)
        if len(values) != state.length:
            raise ConfigurationError(
                f"Initial value of {state.name!r} has length {len(values)}, "
                f"expected {state.length}"
            )
        x_start[state.index_range] = values
    return x_start


def resolve_aliases(
    variable_names: Sequence[str],
    eliminated: Sequence[EliminatedVariable] = (),
) -> Tuple[Dict[str, int], Dict[str, float]]:
    """Build the name -> result column table.

    Result columns are 1-based (column 1 is time) so that a negative
    value can denote a negated alias.

    Parameters
    ----------
    variable_names : sequence of str
        Names of the recorded variables, time first.
    eliminated : sequence of EliminatedVariable
        Eliminated variables, in elimination order. A target must be a
        recorded variable or an eliminated variable listed earlier.

    Returns
    -------
    variables : dict
        Name -> signed 1-based result column.
    constants : dict
        Name -> value for structurally zero variables.

    Examples
    --------
    >>> variables, _ = resolve_aliases(
    ...     ["time", "a"],
    ...     [EliminatedVariable("b", AliasKind.NEGATED_ALIAS, "a"),
    ...      EliminatedVariable("c", AliasKind.NEGATED_ALIAS, "b")],
    ... )
    >>> variables["b"], variables["c"]
    (-2, 2)
    """
    variables = {str(name): i for i, name in enumerate(variable_names, start=1)}
    constants: Dict[str, float] = {}

    for v in eliminated:
        if v.kind is AliasKind.ZERO:
            constants[v.name] = 0.0
            continue
        if v.target in constants:
            constants[v.name] = constants[v.target]
            continue
        if v.target not in variables:
            raise ConfigurationError(
                f"Alias {v.name!r} refers to unknown variable {v.target!r}"
            )
        if v.kind is AliasKind.ALIAS:
            variables[v.name] = variables[v.target]
        else:
            variables[v.name] = -variables[v.target]
    return variables, constants
