"""The simulation model: mutable runtime state of one instantiated model.

A :class:`SimulationModel` owns the flat state and derivative vectors,
the parameter vector, the name -> result column table, the linear
subsystems, the zero-crossing state and the recorded results of one
simulation run. The integrator only ever sees the model through the
derivative evaluator and :meth:`SimulationModel.record_step`.

Lifecycle
---------
1. Construction (once per instantiation): assigns the state layout and
   resolves names.
2. :meth:`SimulationModel.init`: clears the results and evaluates the
   model once in ``INITIAL`` mode.
3. One evaluator call per integrator stage, and one ``STORE`` call per
   accepted communication point.
"""

import ast
import copy
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from eqsim.codegen import DerivativeEvaluator, generate_get_derivatives
from eqsim.core import EvaluationMode
from eqsim.equation_info import (
    EliminatedVariable,
    EquationInfo,
    initial_state_vector,
    resolve_aliases,
)
from eqsim.errors import ConfigurationError, EvaluationError
from eqsim.events import EventHandler

logger = logging.getLogger(__name__)


class SimulationModel:
    """Runtime state of an instantiated model.

    Parameters
    ----------
    name : str
        Model name.
    evaluator : DerivativeEvaluator
        Derivative evaluator generated from the reduced equations.
    equation_info : EquationInfo
        State layout. Start indices are assigned here; the model owns the
        object afterwards.
    x_start : array-like
        Initial state vector, of length ``equation_info.nx``.
    parameters : mapping of str to value
        Parameter values. Must contain every parameter of the evaluator.
    variable_names : sequence of str
        Recorded variable names, time first.
    eliminated : sequence of EliminatedVariable, optional
        Aliases, negated aliases and zero variables. Defaults to
        ``equation_info.eliminated``.
    algorithm : str, optional
        Name of the integration algorithm (for reports).
    crossing_eps : float, optional
        Hysteresis of zero-crossing residuals.

    Raises
    ------
    ConfigurationError
        If the length of ``x_start`` does not match the state layout or
        a parameter is missing.
    """

    def __init__(
        self,
        name: str,
        evaluator: DerivativeEvaluator,
        equation_info: EquationInfo,
        x_start: Any,
        parameters: Mapping[str, Any],
        variable_names: Sequence[str],
        eliminated: Optional[Sequence[EliminatedVariable]] = None,
        algorithm: str = "",
        crossing_eps: float = 1e-10,
    ):
        self.name = name
        self.evaluator = evaluator
        self.equation_info = equation_info
        self.algorithm = algorithm

        nx = equation_info.assign_start_indices()
        if nx != len(x_start):
            raise ConfigurationError(
                f"Model {name}: the states have total length {nx} but "
                f"{len(x_start)} initial values were given"
            )

        if eliminated is None:
            eliminated = equation_info.eliminated
        self.variables, constants = resolve_aliases(variable_names, eliminated)
        self.parameters_and_constants: Dict[str, Any] = {
            str(key): value for key, value in parameters.items()
        }
        self.parameters_and_constants.update(constants)

        missing = [p for p in evaluator.parameter_names if p not in parameters]
        if missing:
            raise ConfigurationError(
                f"Model {name}: no value for parameters {', '.join(missing)}"
            )
        self.p: List[Any] = [parameters[p] for p in evaluator.parameter_names]

        representation = evaluator.representation
        self.x_start = np.array(copy.deepcopy(list(x_start)), dtype=representation.dtype)
        self.x = self.x_start.copy()
        self.der_x = representation.zeros(nx)
        self.linear_subsystems = evaluator.create_linear_subsystems()
        self.crossings = EventHandler(crossing_eps)
        self.result: List[Tuple] = []
        self.event_log: List[Tuple[float, List[str]]] = []
        self.n_get_derivatives = 0
        self.start_time: Optional[float] = None
        self._mode: Optional[EvaluationMode] = None
        self._z_cache: Optional[Tuple[float, bytes, np.ndarray]] = None

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    @property
    def float_type(self) -> str:
        """Name of the numeric representation in use."""
        return self.evaluator.representation.name

    @property
    def base_type(self):
        """Underlying floating point type (float64 for ufloats too)."""
        return self.evaluator.representation.base_type

    @property
    def state_names(self) -> List[str]:
        return self.equation_info.state_names()

    @property
    def evaluation_mode(self) -> Optional[EvaluationMode]:
        """Mode of the evaluator call in flight, None between calls."""
        return self._mode

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    @contextmanager
    def evaluation(self, mode: EvaluationMode):
        """Guard one evaluator call.

        Counts the call and rejects a second call while one is in flight.
        """
        if self._mode is not None:
            raise EvaluationError(
                f"Model {self.name}: evaluator called while a "
                f"{self._mode.value} evaluation is in flight"
            )
        self.n_get_derivatives += 1
        self._mode = mode
        try:
            yield
        finally:
            self._mode = None

    def init(self, start_time: float) -> None:
        """Initialise the model at ``start_time``.

        Empties the results, resets the evaluation counter and the
        zero-crossing state, and evaluates the model once in ``INITIAL``
        mode to compute all variables and prime the linear subsystems.
        """
        self.result.clear()
        self.event_log.clear()
        self.n_get_derivatives = 0
        self.crossings.reset()
        self._z_cache = None
        self.start_time = start_time
        self.x = self.x_start.copy()
        self.evaluator(self.der_x, self.x, self, start_time, EvaluationMode.INITIAL)

    def get_derivatives(self, t: float, x: np.ndarray) -> np.ndarray:
        """Right-hand side ``f(t, x)`` as a new array."""
        self.evaluator(self.der_x, x, self, t)
        return self.der_x.copy()

    def record_step(self, x: np.ndarray, t: float) -> None:
        """Record the accepted communication point ``(t, x)``."""
        self.evaluator(self.der_x, x, self, t, EvaluationMode.STORE)

    def append_result(self, *values) -> None:
        """Append one result tuple (time first).

        Only called by the evaluator during a ``STORE`` evaluation.
        """
        if self._mode is None or not self._mode.stores_result:
            raise EvaluationError(
                f"Model {self.name}: results can only be appended while "
                "storing a communication point"
            )
        self.result.append(values)

    def zero_crossings(self, x: np.ndarray, t: float) -> np.ndarray:
        """Crossing residuals at ``(t, x)``; the booleans stay frozen."""
        # solve_ivp calls each event function separately at the same (t, x)
        cacheable = np.asarray(x).dtype == np.float64
        if cacheable:
            key = (t, np.asarray(x).tobytes())
            if self._z_cache is not None and self._z_cache[:2] == key:
                return self._z_cache[2]
        der_x = self.evaluator.representation.zeros(len(self.der_x))
        self.evaluator(der_x, x, self, t, EvaluationMode.ZERO_CROSSINGS)
        z = self.crossings.z
        if cacheable:
            self._z_cache = (*key, z)
        return z

    def process_event(self, x: np.ndarray, t: float, fired: Iterable[int]) -> None:
        """Update the crossing booleans after a located event.

        Parameters
        ----------
        x, t : state and time of the event
        fired : positions of the crossing signals that triggered
        """
        fired = list(fired)
        self.crossings.mark_fired(fired)
        try:
            self.evaluator(self.der_x, x, self, t, EvaluationMode.EVENT)
        finally:
            self.crossings.finish_event()
        self._z_cache = None
        labels = [self.crossings.labels[i] for i in fired]
        self.event_log.append((float(t), labels))
        logger.info("Event at time=%.10g in %s: %s", t, self.name, ", ".join(labels))

    def breakpoints(self) -> List[float]:
        """Times of known discontinuities of callable parameters (inputs)."""
        times = set()
        for value in self.p:
            if callable(getattr(value, "breakpoints", None)):
                times.update(float(t) for t in value.breakpoints())
        return sorted(times)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def resolve(self, name: str) -> Tuple[int, float]:
        """Resolve a variable name to ``(column, sign)`` of the results.

        ``column`` is 0-based into a result tuple; ``sign`` is -1 for a
        negated alias.
        """
        try:
            index = self.variables[name]
        except KeyError:
            raise KeyError(f"Model {self.name} has no variable {name!r}") from None
        return abs(index) - 1, (1.0 if index > 0 else -1.0)

    def state_from_result(self, i: int) -> Optional[np.ndarray]:
        """Reconstruct the state vector from result tuple ``i``.

        Returns None if not every state is a recorded variable.
        """
        x = self.evaluator.representation.zeros(len(self.x_start))
        record = self.result[i]
        for state in self.equation_info.states:
            if state.name not in self.variables:
                return None
            column, sign = self.resolve(state.name)
            value = record[column]
            value = getattr(value, "magnitude", value)
            if state.is_scalar:
                x[state.start_index] = sign * value
            else:
                x[state.index_range] = sign * np.asarray(value)
        return x

    def __repr__(self):
        return (
            f"SimulationModel(name={self.name!r}, nx={len(self.x_start)}, "
            f"float_type={self.float_type}, "
            f"n_get_derivatives={self.n_get_derivatives})"
        )


def instantiate_model(
    name: str,
    equations: Union[ast.Module, Iterable[ast.stmt]],
    equation_info: EquationInfo,
    parameters: Mapping[str, Any],
    variable_names: Sequence[str],
    start_values: Mapping[str, Any],
    has_units: bool = False,
    representation=None,
    log_code: bool = False,
    **kwargs,
) -> SimulationModel:
    """Generate the evaluator and build a model from named start values.

    Parameters
    ----------
    name : str
        Model name.
    equations : ast.Module or iterable of ast.stmt
        Reduced equations in evaluation order.
    equation_info : EquationInfo
        State layout, eliminated variables and linear subsystems.
    parameters : mapping of str to value
        Parameter values (callables such as input signals allowed).
    variable_names : sequence of str
        Recorded variable names, time first.
    start_values : mapping of str to value
        Initial values of exactly the states.
    has_units : bool, optional
        True if states carry their declared units.
    representation : optional
        Numeric representation (see :mod:`eqsim.representations`).
    log_code : bool, optional
        Log the evaluation plan.
    **kwargs
        Passed on to :class:`SimulationModel`.

    Raises
    ------
    ConfigurationError
        If start values are given for non-states or missing for states.
    """
    evaluator = generate_get_derivatives(
        equations,
        equation_info,
        list(parameters),
        variable_names,
        name=f"getDerivatives_{name}",
        has_units=has_units,
        representation=representation,
        log_code=log_code,
    )
    x_start = initial_state_vector(
        equation_info, start_values, dtype=evaluator.representation.dtype
    )
    return SimulationModel(
        name, evaluator, equation_info, x_start, parameters, variable_names, **kwargs
    )
