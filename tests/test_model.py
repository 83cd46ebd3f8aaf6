"""Tests for eqsim.model (model lifecycle)."""

import numpy as np
import pytest

from conftest import GEAR_VARIABLES, gear_equation_info, parse
from eqsim import (
    ConfigurationError,
    EquationInfo,
    EvaluationError,
    SimulationConfig,
    SimulationEngine,
    SimulationModel,
    StateInfo,
    generate_get_derivatives,
    instantiate_model,
)


def test_init_twice_does_not_accumulate(gear_model):
    """Results only hold records of the most recent initialisation."""
    gear_model.init(0.0)
    gear_model.record_step(gear_model.x, 0.0)
    gear_model.init(0.0)
    gear_model.init(0.0)
    gear_model.record_step(gear_model.x, 0.0)

    assert len(gear_model.result) == 1
    assert gear_model.n_get_derivatives == 2


def test_simulate_twice_gives_same_results(gear_model):
    engine = SimulationEngine()
    config = SimulationConfig(stop_time=1.0, interval=0.1)
    first = engine.simulate(gear_model, config)
    second = engine.simulate(gear_model, config)

    assert first.n_steps == second.n_steps == 11
    np.testing.assert_allclose(first.get("w2"), second.get("w2"))


def test_init_restores_start_values(gear_model):
    gear_model.init(0.0)
    gear_model.x[:] = [3.0, 4.0]
    gear_model.init(0.0)

    np.testing.assert_array_equal(gear_model.x, [0.5, 0.0])
    np.testing.assert_array_equal(gear_model.x_start, [0.5, 0.0])


def test_start_vector_length_mismatch():
    info = gear_equation_info()
    evaluator = generate_get_derivatives(
        parse("tau = torque(time)\nphi1 = r*phi2\nw1 = r*w2\nder_phi2 = w2\n"
              "solve_linear_subsystem(0)"),
        info,
        ["J1", "J2", "r", "torque"],
        GEAR_VARIABLES,
    )
    with pytest.raises(ConfigurationError, match="total length 2"):
        SimulationModel(
            "gear",
            evaluator,
            info,
            np.array([0.5, 0.0, 1.0]),
            {"J1": 1.0, "J2": 1.0, "r": 1.0, "torque": abs},
            GEAR_VARIABLES,
        )


def test_missing_parameter():
    with pytest.raises(ConfigurationError, match="no value for parameters a"):
        evaluator = generate_get_derivatives(
            parse("der_x = -a*x"),
            EquationInfo(states=[StateInfo("x", "der_x")]),
            ["a"],
            ["time", "x"],
        )
        SimulationModel(
            "decay",
            evaluator,
            evaluator.equation_info,
            [1.0],
            {},
            ["time", "x"],
        )


def test_aliases_and_constants(gear_model):
    assert gear_model.variables["gear_phi2"] == gear_model.variables["phi2"]
    assert gear_model.variables["support_tau"] == -gear_model.variables["tau"]
    assert gear_model.parameters_and_constants["phi_ground"] == 0.0
    assert gear_model.parameters_and_constants["r"] == 105.0

    assert gear_model.resolve("time") == (0, 1.0)
    assert gear_model.resolve("support_tau") == (7, -1.0)
    with pytest.raises(KeyError):
        gear_model.resolve("nope")


def test_reentrant_evaluation_is_rejected():
    """A parameter function calling back into the model fails cleanly."""
    holder = {}

    def feedback(t):
        model = holder["model"]
        return model.get_derivatives(t, model.x)[0]

    model = instantiate_model(
        "reentrant",
        parse("u = feedback(time)\nder_x = u - x"),
        EquationInfo(states=[StateInfo("x", "der_x")]),
        parameters={"feedback": feedback},
        variable_names=["time", "x", "u"],
        start_values={"x": 1.0},
    )
    holder["model"] = model

    with pytest.raises(EvaluationError, match="in flight"):
        model.init(0.0)
    assert model.evaluation_mode is None


def test_append_result_outside_store(gear_model):
    with pytest.raises(EvaluationError, match="storing"):
        gear_model.append_result(0.0, 1.0)


def test_breakpoints_from_inputs(gear_model):
    assert gear_model.breakpoints() == [1.0, 2.0, 3.0]


def test_state_from_result(gear_model):
    gear_model.init(0.0)
    gear_model.record_step(np.array([1.5, -0.25]), 0.5)

    np.testing.assert_array_equal(gear_model.state_from_result(0), [1.5, -0.25])


def test_model_diagnostics(gear_model):
    assert gear_model.float_type == "float64"
    assert gear_model.base_type is np.float64
    assert gear_model.state_names == ["phi2", "w2"]
    assert "gear" in repr(gear_model)
