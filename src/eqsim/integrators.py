"""Integrator implementations.

Integrators advance the state of an initialised
:class:`~eqsim.model.SimulationModel` over a grid of communication
points. They obtain the right-hand side from ``model.get_derivatives``,
record every accepted communication point with ``model.record_step`` and
hand located zero crossings to ``model.process_event``.

The fixed-step integrators work on any numeric representation
(including ufloat object arrays) and detect zero crossings at step ends.
:class:`SciPyIntegrator` uses ``scipy.integrate.solve_ivp`` with event
location and restarts the integration after each event and at each
breakpoint of the inputs.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence

import numpy as np

from eqsim.errors import ConfigurationError, IntegrationError
from eqsim.events import CrossingDirection

logger = logging.getLogger(__name__)


def _fired_signals(model, z_old: np.ndarray, z_new: np.ndarray) -> List[int]:
    """Positions of crossing signals whose residual changed sign."""
    fired = []
    directions = [s.direction for s in model.crossings.signals.values()]
    for i, direction in enumerate(directions):
        rising = z_old[i] < 0.0 <= z_new[i]
        falling = z_old[i] > 0.0 >= z_new[i]
        if (
            (rising and direction is not CrossingDirection.FALLING)
            or (falling and direction is not CrossingDirection.RISING)
        ):
            fired.append(i)
    return fired


# ============================================================================
# Simple fixed-step integrators
# ============================================================================


class FixedStepIntegrator(ABC):
    """Base class of the fixed-step integrators.

    Steps from one communication point (or breakpoint) to the next,
    optionally subdivided so that no step is longer than ``max_step``.
    Zero crossings are detected by a sign change of the crossing
    residuals between the ends of a step; the event is processed at the
    end of that step.

    Parameters
    ----------
    max_step : float, optional
        Upper bound of the step size. By default one step is taken per
        communication interval.
    """

    def __init__(self, max_step: Optional[float] = None):
        if max_step is not None and max_step <= 0:
            raise ConfigurationError("max_step must be positive")
        self.max_step = max_step

    @abstractmethod
    def __call__(self, model, t: float, x: Any, dt: float) -> Any:
        """Advance ``x`` from ``t`` to ``t + dt``."""

    def run(
        self,
        model,
        t_grid: np.ndarray,
        x0: np.ndarray,
        breakpoints: Sequence[float] = (),
    ) -> np.ndarray:
        """Integrate over ``t_grid`` and record each grid point."""
        t0, tf = t_grid[0], t_grid[-1]
        grid = set(float(t) for t in t_grid[1:])
        stops = sorted(grid | {float(b) for b in breakpoints if t0 < b < tf})

        condense = model.evaluator.representation.condense
        x = x0
        t = float(t0)
        z = model.zero_crossings(x, t) if model.crossings.n else None
        for stop in stops:
            n_steps = 1
            if self.max_step is not None:
                n_steps = max(int(np.ceil((stop - t) / self.max_step - 1e-9)), 1)
            dt = (stop - t) / n_steps
            for k in range(n_steps):
                t_next = stop if k == n_steps - 1 else t + dt
                x = condense(self(model, t, x, t_next - t))
                t = t_next
                if z is not None:
                    z_new = model.zero_crossings(x, t)
                    fired = _fired_signals(model, z, z_new)
                    if fired:
                        model.process_event(x, t, fired)
                        z_new = model.zero_crossings(x, t)
                    z = z_new
            if stop in grid:
                model.record_step(x, t)
        return x


class ForwardEuler(FixedStepIntegrator):
    """Simple forward Euler integrator.

    Best for prototyping and testing. Not recommended for production use.

    Examples
    --------
    >>> integrator = ForwardEuler(max_step=1e-3)
    >>> x_next = integrator(model, t=0.0, x=model.x, dt=0.1)
    """

    def __call__(self, model, t: float, x: Any, dt: float) -> Any:
        """Integrate from t to t+dt using forward Euler."""
        dx = model.get_derivatives(t, x)
        return x + dt * dx

    def __repr__(self):
        return "ForwardEuler()"


class RungeKutta4(FixedStepIntegrator):
    """Classic 4th-order Runge-Kutta integrator.

    Good for prototyping with moderate accuracy, and the integrator of
    choice for uncertain (ufloat) models.

    Examples
    --------
    >>> integrator = RungeKutta4(max_step=0.01)
    >>> x_next = integrator(model, t=0.0, x=model.x, dt=0.01)
    """

    def __call__(self, model, t: float, x: Any, dt: float) -> Any:
        """Integrate from t to t+dt using RK4."""
        f = model.get_derivatives
        k1 = f(t, x)
        k2 = f(t + dt / 2, x + dt / 2 * k1)
        k3 = f(t + dt / 2, x + dt / 2 * k2)
        k4 = f(t + dt, x + dt * k3)
        return x + dt / 6 * (k1 + 2 * k2 + 2 * k3 + k4)

    def __repr__(self):
        return "RungeKutta4()"


# ============================================================================
# SciPy Integrators (for float64 models)
# ============================================================================


class SciPyIntegrator:
    """Wrapper for scipy.integrate.solve_ivp solvers.

    Uses SciPy's adaptive step-size solvers for accurate integration.
    The integration is split at the breakpoints of the inputs and
    restarted after every located zero crossing.

    Parameters
    ----------
    method : str, optional
        scipy solve_ivp method: 'RK45', 'RK23', 'DOP853', 'Radau', 'BDF',
        'LSODA'. Default is 'RK45'.
    **solve_ivp_kwargs
        Additional keyword arguments passed to solve_ivp (rtol, atol,
        max_step, ...)

    Attributes
    ----------
    max_events_at_same_time : int
        Number of consecutive events at one time instant after which the
        run is aborted.

    Examples
    --------
    >>> integrator = SciPyIntegrator(method='RK45', rtol=1e-8, atol=1e-10)
    >>> engine = SimulationEngine(integrator)
    """

    max_events_at_same_time = 100

    def __init__(self, method: str = "RK45", **solve_ivp_kwargs):
        for key in ("t_eval", "events", "dense_output", "args"):
            if key in solve_ivp_kwargs:
                raise ConfigurationError(
                    f"SciPyIntegrator sets {key!r} itself; it cannot be passed"
                )
        self.method = method
        self.kwargs = solve_ivp_kwargs

    def run(
        self,
        model,
        t_grid: np.ndarray,
        x0: np.ndarray,
        breakpoints: Sequence[float] = (),
    ) -> np.ndarray:
        """Integrate over ``t_grid`` and record each grid point and event."""
        from scipy.integrate import solve_ivp

        if np.asarray(x0).dtype != np.float64:
            raise ConfigurationError(
                f"SciPyIntegrator needs float64 states, the model uses "
                f"{model.float_type}; use RungeKutta4 or ForwardEuler"
            )

        t0, tf = float(t_grid[0]), float(t_grid[-1])
        stops = sorted({float(b) for b in breakpoints if t0 < b < tf}) + [tf]
        grid = np.asarray(t_grid, dtype=float)

        x = np.asarray(x0, dtype=float)
        t = t0
        last_recorded = t0
        last_event, n_same = None, 0
        for stop in stops:
            while t < stop:
                points = grid[(grid > t) & (grid <= stop)]
                t_eval = points
                if not len(points) or points[-1] != stop:
                    t_eval = np.append(points, stop)
                events = model.crossings.event_functions(model) or None

                sol = solve_ivp(
                    model.get_derivatives,
                    (t, stop),
                    x,
                    method=self.method,
                    t_eval=t_eval,
                    events=events,
                    **self.kwargs,
                )
                if sol.status == -1:
                    raise IntegrationError(
                        f"Integration of {model.name} failed after "
                        f"time={t:.10g}: {sol.message}"
                    )

                # Empty when the segment ended at an event before its first point
                y = np.asarray(sol.y, dtype=float).reshape(len(x), -1)
                for tk, xk in zip(sol.t, y.T):
                    if tk in points and tk > last_recorded:
                        model.record_step(xk, tk)
                        last_recorded = tk

                if sol.status == 1:
                    fired = [i for i, te in enumerate(sol.t_events) if len(te)]
                    first = min(fired, key=lambda i: sol.t_events[i][0])
                    t = float(sol.t_events[first][0])
                    x = np.array(sol.y_events[first][0], dtype=float)
                    fired = [i for i in fired if sol.t_events[i][0] == t]
                    n_same = n_same + 1 if t == last_event else 0
                    if n_same >= self.max_events_at_same_time:
                        raise IntegrationError(
                            f"{model.name}: more than {n_same} events at "
                            f"time={t:.10g} (chattering)"
                        )
                    last_event = t
                    model.process_event(x, t, fired)
                    if t > last_recorded:
                        model.record_step(x, t)
                        last_recorded = t
                else:
                    t = stop
                    x = sol.y[:, -1].copy()
            if stop != tf:
                logger.debug("Restarting %s at breakpoint time=%g", model.name, stop)
        return x

    def __repr__(self):
        return f"SciPyIntegrator(method='{self.method}')"
