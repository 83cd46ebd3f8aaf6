"""Core simulation engine, configuration and protocols.

The engine drives a :class:`~eqsim.model.SimulationModel` through one
simulation run: it initialises the model, records the start point, hands
the model to an integrator that calls the derivative evaluator and
records accepted communication points, and collects the results.
"""

import logging
import time as timer
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol, Sequence

import numpy as np

logger = logging.getLogger(__name__)


class EvaluationMode(Enum):
    """Why the derivative evaluator is being called.

    Passed explicitly into every evaluator call instead of toggling flags
    on the model.
    """

    INITIAL = "initial"
    DERIVATIVES = "derivatives"
    STORE = "store"
    EVENT = "event"
    ZERO_CROSSINGS = "zero_crossings"

    @property
    def is_initial(self) -> bool:
        return self is EvaluationMode.INITIAL

    @property
    def stores_result(self) -> bool:
        return self is EvaluationMode.STORE

    @property
    def updates_crossings(self) -> bool:
        """True if crossing booleans may change during this call."""
        return self in (EvaluationMode.INITIAL, EvaluationMode.EVENT)


class Integrator(Protocol):
    """Protocol for integrators.

    The integrator advances the model's state over a grid of
    communication points. It calls ``model.get_derivatives`` (or the
    evaluator directly) for every stage it needs, and
    ``model.record_step(x, t)`` once per accepted communication point.
    """

    def run(
        self,
        model: Any,
        t_grid: np.ndarray,
        x0: np.ndarray,
        breakpoints: Sequence[float] = (),
    ) -> np.ndarray:
        """Integrate from ``t_grid[0]`` to ``t_grid[-1]``.

        Parameters
        ----------
        model : SimulationModel
            Initialised model.
        t_grid : ndarray
            Communication points, starting at the start time.
        x0 : ndarray
            State at ``t_grid[0]``.
        breakpoints : sequence of float
            Times of known discontinuities in inputs.

        Returns
        -------
        x_final : ndarray
            State at ``t_grid[-1]``.
        """
        ...


@dataclass
class SimulationConfig:
    """Configuration for a simulation run.

    Parameters
    ----------
    stop_time : float
        Final time.
    start_time : float, default=0.0
        Start time.
    interval : float, optional
        Spacing of communication points. Defaults to
        ``(stop_time - start_time) / 500``.
    time_points : array-like, optional
        Explicit communication points (instead of ``interval``).
    log : bool, default=False
        Log run statistics when the run is finished.
    log_parameters : bool, default=False
        Log the parameters and constants before the run.
    log_states : bool, default=False
        Log the states and their start values before the run.

    Examples
    --------
    >>> config = SimulationConfig(stop_time=4.0, interval=0.01, log=True)
    >>> config.t_grid()[:3]
    array([0.  , 0.01, 0.02])
    """

    stop_time: float
    start_time: float = 0.0
    interval: Optional[float] = None
    time_points: Optional[np.ndarray] = None
    log: bool = False
    log_parameters: bool = False
    log_states: bool = False

    def __post_init__(self):
        """Validate configuration."""
        if self.interval is not None and self.time_points is not None:
            raise ValueError("Cannot provide both interval and time_points")
        if self.time_points is not None:
            points = np.asarray(self.time_points, dtype=float)
            if points.ndim != 1 or len(points) < 1 or np.any(np.diff(points) <= 0):
                raise ValueError("time_points must be strictly increasing")
            self.start_time = float(points[0])
            self.stop_time = float(points[-1])
        if self.stop_time < self.start_time:
            raise ValueError(
                f"stop_time {self.stop_time} < start_time {self.start_time}"
            )
        if self.interval is not None and self.interval <= 0:
            raise ValueError("interval must be positive")

    def t_grid(self) -> np.ndarray:
        """Communication points of the run."""
        if self.time_points is not None:
            return np.asarray(self.time_points, dtype=float)
        t0, tf = self.start_time, self.stop_time
        if tf == t0:
            return np.array([t0])
        dt = self.interval or (tf - t0) / 500
        n = max(int(np.ceil((tf - t0) / dt - 1e-9)), 1)
        grid = t0 + dt * np.arange(n + 1)
        grid[-1] = tf
        return grid


class SimulationEngine:
    """Simulation driver for instantiated models.

    The engine handles:
    - Initialisation of the model at the start time
    - Recording of the start point
    - Handing the model to the integrator
    - Logging and conversion of the recorded results

    Parameters
    ----------
    integrator : Integrator, optional
        Integrator advancing the state. Defaults to
        ``SciPyIntegrator()`` (``solve_ivp`` with RK45 and event location).

    Examples
    --------
    >>> engine = SimulationEngine(SciPyIntegrator(method="RK45", rtol=1e-8))
    >>> result = engine.simulate(model, SimulationConfig(stop_time=4.0))
    >>> result.get("phi2")[-1]
    """

    def __init__(self, integrator: Optional[Integrator] = None):
        if integrator is None:
            from eqsim.integrators import SciPyIntegrator

            integrator = SciPyIntegrator()
        self.integrator = integrator

    def simulate(self, model, config: SimulationConfig) -> "SimulationResult":
        """Run a simulation from ``config.start_time`` to ``config.stop_time``.

        Parameters
        ----------
        model : SimulationModel
            Model to simulate. Any results from previous runs are
            discarded by the initialisation.
        config : SimulationConfig
            Time span, communication points and logging options.

        Returns
        -------
        result : SimulationResult

        Notes
        -----
        The simulation run:
        1. Initialises the model at the start time
        2. Records the start point
        3. Lets the integrator advance the state and record every
           accepted communication point
        4. Converts the recorded tuples into a SimulationResult
        """
        from eqsim.results import SimulationResult

        t_grid = config.t_grid()
        model.algorithm = repr(self.integrator)

        if config.log_parameters:
            _log_parameters(model)
        if config.log_states:
            _log_states(model)

        cpu_start = timer.perf_counter()
        model.init(t_grid[0])
        model.record_step(model.x, t_grid[0])
        if len(t_grid) > 1:
            model.x = self.integrator.run(
                model, t_grid, model.x.copy(), model.breakpoints()
            )
        cpu_time = timer.perf_counter() - cpu_start

        if config.log:
            logger.info(
                "Simulation of %s finished: start_time=%g, stop_time=%g, "
                "algorithm=%s, float_type=%s, cpu_time=%.3g s, "
                "nGetDerivatives=%d, nResults=%d, nEvents=%d",
                model.name,
                t_grid[0],
                t_grid[-1],
                model.algorithm,
                model.float_type,
                cpu_time,
                model.n_get_derivatives,
                len(model.result),
                model.crossings.n_events,
            )
        return SimulationResult.from_model(model)


def _log_parameters(model):
    lines = [f"Parameters and constants of {model.name}:"]
    for name, value in model.parameters_and_constants.items():
        lines.append(f"    {name} = {value}")
    logger.info("\n".join(lines))


def _log_states(model):
    lines = [f"States of {model.name}:"]
    for state in model.equation_info.states:
        start = model.x_start[state.index_range]
        value = start[0] if state.is_scalar else list(start)
        unit = f" [{state.unit}]" if state.unit else ""
        lines.append(
            f"    {state.start_index:3d}: {state.name or '(dummy)'} = "
            f"{value}{unit}"
        )
    logger.info("\n".join(lines))
