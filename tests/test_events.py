"""Tests for eqsim.events (zero crossings)."""

import numpy as np
import pytest

from conftest import make_contact_model, parse
from eqsim import (
    CrossingDirection,
    EquationInfo,
    EvaluationError,
    EvaluationMode,
    EventHandler,
    RungeKutta4,
    SciPyIntegrator,
    SimulationConfig,
    SimulationEngine,
    StateInfo,
    instantiate_model,
)

INITIAL = EvaluationMode.INITIAL
EVENT = EvaluationMode.EVENT
DERIVATIVES = EvaluationMode.DERIVATIVES


def test_boolean_frozen_between_events():
    handler = EventHandler(eps=1e-10)
    assert handler.update(1, 0.5, "s", CrossingDirection.BOTH, INITIAL) is True

    # The signal changes sign but no event was processed yet
    assert handler.update(1, -0.5, "s", CrossingDirection.BOTH, DERIVATIVES) is True
    assert handler.z[0] == pytest.approx(-0.5 + 1e-10)


def test_hysteresis():
    """Right after an event at value 0 the residual is away from zero."""
    handler = EventHandler(eps=1e-10)
    handler.update(1, 1.0, "s", CrossingDirection.BOTH, INITIAL)

    handler.mark_fired([0])
    assert handler.update(1, 0.0, "s", CrossingDirection.BOTH, EVENT) is False
    handler.finish_event()

    assert handler.z[0] == pytest.approx(-1e-10)
    assert handler.n_events == 1


def test_one_sided_signal():
    """A RISING signal is only switched on by events."""
    handler = EventHandler()
    handler.update("c", -1.0, "c", CrossingDirection.RISING, INITIAL)

    handler.mark_fired([0])
    assert handler.update("c", 0.0, "c", CrossingDirection.RISING, EVENT) is True
    handler.finish_event()

    # The falling transition is latched until the next event
    assert handler.update("c", -1.0, "c", CrossingDirection.RISING, DERIVATIVES) is True
    handler.mark_fired([])
    assert handler.update("c", -1.0, "c", CrossingDirection.RISING, EVENT) is False


def test_signal_must_be_registered_at_initialisation():
    handler = EventHandler()
    with pytest.raises(EvaluationError, match="not registered"):
        handler.update(7, 1.0, "late", CrossingDirection.BOTH, DERIVATIVES)


def test_event_functions(contact_model):
    contact_model.init(0.0)
    functions = contact_model.crossings.event_functions(contact_model)

    assert len(functions) == 1
    assert functions[0].terminal
    assert functions[0].direction == 0
    assert functions[0](0.0, np.array([2.0, 0.0])) == pytest.approx(2.0 + 1e-10)
    assert contact_model.crossings.labels == ["s"]


def check_contact_result(model, result):
    s = result.get("s")
    s_pos = result.get("sPos")
    time = result.get("time")

    # The frozen boolean agrees with the sign of s away from the crossings
    away = np.abs(s) > 1e-6
    np.testing.assert_array_equal(s_pos[away] > 0.5, s[away] > 0.0)

    # Events happen where s changes sign, once per crossing
    event_times = [t for t, labels in model.event_log]
    assert len(event_times) >= 3
    assert all(labels == ["s"] for _, labels in model.event_log)
    assert np.all(np.diff(event_times) > 0.2)
    n_sign_changes = np.count_nonzero(np.diff(np.sign(s[away])))
    assert len(event_times) == n_sign_changes

    assert np.all(np.diff(time) > 0)
    assert result.n_events == len(event_times)


def test_contact_model_scipy(contact_model):
    """Crossings are located by solve_ivp and recorded as extra points."""
    engine = SimulationEngine(SciPyIntegrator(rtol=1e-8, atol=1e-10))
    result = engine.simulate(contact_model, SimulationConfig(stop_time=20.0, interval=0.1))

    check_contact_result(contact_model, result)

    # Each located event is stored, with s at zero
    time = result.get("time")
    s = result.get("s")
    for t_event, _ in contact_model.event_log:
        i = int(np.argmin(np.abs(time - t_event)))
        assert time[i] == t_event
        assert abs(s[i]) < 1e-8

    # Free oscillation: the first contact happens near t = pi/2 (lightly damped)
    assert contact_model.event_log[0][0] == pytest.approx(np.pi / 2, abs=0.1)


def test_contact_model_fixed_step(contact_model):
    """Fixed-step integration detects the crossings at step ends."""
    engine = SimulationEngine(RungeKutta4(max_step=0.01))
    result = engine.simulate(contact_model, SimulationConfig(stop_time=20.0, interval=0.1))

    check_contact_result(contact_model, result)


def test_latched_one_sided_residual_stays_away_from_zero():
    """A FALLING signal that is already false cannot stop the integrator."""
    handler = EventHandler(eps=1e-10)
    handler.update("c", -1.0, "c", CrossingDirection.FALLING, INITIAL)

    # The ignored rising transition and its reversal keep z below zero
    for value in (-0.5, 0.0, 0.5, 1.0, 0.0, -0.5):
        assert handler.update("c", value, "c", CrossingDirection.FALLING, DERIVATIVES) is False
        assert handler.z[0] <= -1e-10

    # Firing towards the boolean it already holds is not an event
    handler.mark_fired([0])
    assert handler.update("c", -0.5, "c", CrossingDirection.FALLING, EVENT) is False
    handler.finish_event()
    assert handler.n_events == 0


@pytest.fixture
def phase_model():
    """Two one-sided signals on a phase that grows with unit rate."""
    return instantiate_model(
        "phase",
        parse(
            """
            up = positive(1, -cos(phase), "up", RISING)
            down = positive(2, sin(phase), "down", FALLING)
            der_phase = one
            """
        ),
        EquationInfo(states=[StateInfo("phase", "der_phase")]),
        parameters={"one": 1.0},
        variable_names=["time", "phase", "up", "down", "der_phase"],
        start_values={"phase": 0.25},
    )


@pytest.mark.parametrize(
    "integrator, tol",
    [
        (SciPyIntegrator(rtol=1e-8, atol=1e-10, max_step=0.1), 1e-6),
        (RungeKutta4(max_step=0.01), 0.011),
    ],
)
def test_one_sided_signals(phase_model, integrator, tol):
    """Each signal switches once; later sign changes of its value are ignored."""
    engine = SimulationEngine(integrator)
    result = engine.simulate(phase_model, SimulationConfig(stop_time=10.0, interval=0.05))

    assert [labels for _, labels in phase_model.event_log] == [["up"], ["down"]]
    t_up, t_down = (t for t, _ in phase_model.event_log)
    assert t_up == pytest.approx(np.pi / 2 - 0.25, abs=tol)
    assert t_down == pytest.approx(np.pi - 0.25, abs=tol)
    assert result.n_events == 2

    time = result.get("time")
    up = result.get("up") > 0.5
    down = result.get("down") > 0.5
    np.testing.assert_array_equal(up, time >= t_up)
    np.testing.assert_array_equal(down, time < t_down)

    # The values turned back (cos > 0 again, sin < 0 again) without events
    phase = result.get("phase")
    assert np.any(np.cos(phase[up]) > 0.5)
    assert np.any(np.sin(phase[~down]) > 0.5)


def test_events_before_first_communication_point(contact_model):
    """Several events inside one coarse interval are located and stored."""
    engine = SimulationEngine(SciPyIntegrator(rtol=1e-8, atol=1e-10))
    result = engine.simulate(contact_model, SimulationConfig(stop_time=10.0, interval=5.0))

    event_times = [t for t, _ in contact_model.event_log]
    assert event_times[0] < 5.0
    assert sum(t < 5.0 for t in event_times) >= 2
    np.testing.assert_array_equal(
        result.get("time"), np.sort(np.concatenate([[0.0, 5.0, 10.0], event_times]))
    )

    reference = make_contact_model()
    engine.simulate(reference, SimulationConfig(stop_time=10.0, interval=0.1))
    np.testing.assert_allclose(
        event_times, [t for t, _ in reference.event_log], atol=1e-6
    )


def test_events_before_first_communication_point_fixed_step(contact_model):
    engine = SimulationEngine(RungeKutta4(max_step=0.01))
    result = engine.simulate(contact_model, SimulationConfig(stop_time=10.0, interval=5.0))

    np.testing.assert_array_equal(result.get("time"), [0.0, 5.0, 10.0])
    assert len(contact_model.event_log) >= 3
    assert result.n_events == len(contact_model.event_log)
