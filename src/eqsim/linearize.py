"""Linearization of a simulation model around a point in time.

Computes the Jacobian ``A = ∂f/∂x`` of the right-hand side at the state
the model reaches at a given time. The state is taken from the recorded
results when that instant was stored, otherwise the model is simulated
from its start time up to the requested time.

Two methods are available:

- analytic: the evaluation plan is re-instantiated over dual numbers
  (:class:`~eqsim.representations.DualRepresentation`) and the exact
  Jacobian is read from one evaluator call;
- numeric: central (``2n+1`` evaluator calls) or forward (``n+1``)
  finite differences with a relative step.

In both cases the zero-crossing booleans are recomputed at the
linearization point and restored afterwards. The model's start values,
derivative vector, state and recorded results are left as they were.
"""

import copy
import logging
from typing import List, Optional, Tuple

import numpy as np

from eqsim.core import EvaluationMode, SimulationConfig, SimulationEngine
from eqsim.errors import LinearizationError, SimulationError
from eqsim.representations import DualRepresentation, get_registry, to_float

logger = logging.getLogger(__name__)

# Default relative steps of the finite differences
CENTRAL_STEP = np.finfo(float).eps ** (1 / 3)
FORWARD_STEP = np.sqrt(np.finfo(float).eps)


def get_x_names(model) -> List[str]:
    """Names of the entries of the state vector, in order."""
    return model.equation_info.state_names()


def linearize(
    model,
    at_time: float,
    analytic: bool = True,
    method: str = "central",
    rel_step: Optional[float] = None,
    config: Optional[SimulationConfig] = None,
    engine: Optional[SimulationEngine] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Linearize ``model`` at time ``at_time``.

    Parameters
    ----------
    model : SimulationModel
        Model to linearize. Need not have been simulated.
    at_time : float
        Time of the linearization point.
    analytic : bool, optional
        Use dual numbers (exact) instead of finite differences.
    method : {'central', 'forward'}, optional
        Finite difference scheme when ``analytic`` is False.
    rel_step : float, optional
        Relative finite difference step. Defaults to ``eps**(1/3)``
        (central) or ``sqrt(eps)`` (forward).
    config : SimulationConfig, optional
        Used for ``start_time`` and ``interval`` when the model has to be
        simulated up to ``at_time``.
    engine : SimulationEngine, optional
        Engine used for that simulation. Defaults to
        ``SimulationEngine()``.

    Returns
    -------
    A : ndarray, shape (nx, nx)
        Jacobian of the state derivatives.
    x : ndarray, shape (nx,)
        State at ``at_time``.

    Raises
    ------
    LinearizationError
        If ``at_time`` lies before the start time, or if the simulation
        up to ``at_time`` or one of the probing evaluations fails.
    """
    if method not in ("central", "forward"):
        raise ValueError(f"method must be 'central' or 'forward', got {method!r}")

    if model.start_time is not None:
        start_time = model.start_time
    elif config is not None:
        start_time = config.start_time
    else:
        start_time = 0.0
    if at_time < start_time:
        raise LinearizationError(
            f"Cannot linearize {model.name} at time={at_time:g} before the "
            f"start time {start_time:g}"
        )

    saved = (
        list(model.result),
        list(model.event_log),
        model.x.copy(),
        model.der_x.copy(),
        copy.deepcopy(model.crossings),
        model.start_time,
    )
    try:
        x = _state_at(model, at_time, start_time, config, engine)
        if analytic:
            A = _analytic_jacobian(model, x, at_time)
        else:
            A = _numeric_jacobian(model, x, at_time, method, rel_step)
    except LinearizationError:
        raise
    except SimulationError as exc:
        raise LinearizationError(
            f"Linearization of {model.name} at time={at_time:g} failed: {exc}"
        ) from exc
    finally:
        result, event_log, model.x, model.der_x, model.crossings, model.start_time = (
            saved
        )
        model.result[:] = result
        model.event_log[:] = event_log

    logger.debug(
        "Linearized %s at time=%g (%s):\n%s",
        model.name,
        at_time,
        "analytic" if analytic else method,
        A,
    )
    return A, np.array([to_float(v) for v in x])


def _state_at(model, at_time, start_time, config, engine) -> np.ndarray:
    """State at ``at_time`` from a recorded instant or a new simulation."""
    tol = 1e-12 * max(1.0, abs(at_time))
    for i in range(len(model.result) - 1, -1, -1):
        t = to_float(model.result[i][0])
        if abs(t - at_time) <= tol:
            x = model.state_from_result(i)
            if x is not None:
                logger.debug("Using the recorded state of %s at time=%g", model.name, t)
                return x
            break

    if at_time == start_time:
        return model.x_start.copy()

    logger.info("Simulating %s up to time=%g for linearization", model.name, at_time)
    interval = None
    if config is not None and config.interval is not None:
        interval = min(config.interval, at_time - start_time)
    engine = engine or SimulationEngine()
    engine.simulate(
        model,
        SimulationConfig(stop_time=at_time, start_time=start_time, interval=interval),
    )
    return model.x.copy()


def _prime(model, x, t):
    """Evaluate once in INITIAL mode to set the crossing booleans at (t, x).

    Returns the derivatives and the scratch linear subsystems.
    """
    model.crossings.reset()
    subsystems = model.evaluator.create_linear_subsystems()
    der_x = model.evaluator.representation.zeros(len(x))
    model.evaluator(der_x, x, model, t, EvaluationMode.INITIAL, subsystems)
    return der_x, subsystems


def _analytic_jacobian(model, x, t) -> np.ndarray:
    _prime(model, x, t)

    has_units = model.evaluator.plan.has_units
    dual = DualRepresentation(get_registry() if has_units else None)
    evaluator = model.evaluator.with_representation(dual)
    seeds = dual.seed(x, get_x_names(model))
    der_x = dual.zeros(len(x))
    evaluator(
        der_x,
        seeds,
        model,
        t,
        EvaluationMode.DERIVATIVES,
        evaluator.create_linear_subsystems(),
    )

    n = len(x)
    A = np.zeros((n, n))
    for i in range(n):
        for j in range(n):
            A[i, j] = dual.derivative(der_x[i], seeds[j])
    return A


def _numeric_jacobian(model, x, t, method, rel_step) -> np.ndarray:
    f0, subsystems = _prime(model, x, t)
    x = np.array([to_float(v) for v in x])
    n = len(x)
    representation = model.evaluator.representation

    def f(x_probe):
        der_x = representation.zeros(n)
        model.evaluator(
            der_x, x_probe.astype(representation.dtype), model, t,
            EvaluationMode.DERIVATIVES, subsystems,
        )
        return np.array([to_float(v) for v in der_x])

    if rel_step is None:
        rel_step = CENTRAL_STEP if method == "central" else FORWARD_STEP
    f0 = np.array([to_float(v) for v in f0])

    A = np.zeros((n, n))
    for j in range(n):
        h = rel_step * max(abs(x[j]), 1.0)
        e_j = np.zeros(n)
        e_j[j] = h
        if method == "central":
            A[:, j] = (f(x + e_j) - f(x - e_j)) / (2 * h)
        else:
            A[:, j] = (f(x + e_j) - f0) / h
    return A
