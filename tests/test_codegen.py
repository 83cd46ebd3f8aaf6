"""Tests for eqsim.codegen (derivative evaluator generation)."""

import numpy as np
import pytest
from uncertainties import ufloat

from conftest import make_pendulum_model, parse
from eqsim import (
    ConfigurationError,
    EquationInfo,
    EvaluationError,
    EvaluationMode,
    StateInfo,
    UncertainRepresentation,
    UnitRepresentation,
    generate_get_derivatives,
    instantiate_model,
    measurement_to_string,
)
from eqsim.representations import get_registry, to_float

GEAR_DER_W2 = 1.0 / (0.0025 * 105.0 + 170.0 / 105.0)


def decay_model(equations="der_x = -a*x", **kwargs):
    return instantiate_model(
        "decay",
        parse(equations),
        EquationInfo(states=[StateInfo("x", "der_x")]),
        parameters={"a": 0.5},
        variable_names=["time", "x", "der_x"],
        start_values={"x": 1.0},
        **kwargs,
    )


def test_scalar_derivatives():
    model = decay_model()
    der_x = model.get_derivatives(0.0, np.array([2.0]))

    np.testing.assert_allclose(der_x, [-1.0])
    assert model.n_get_derivatives == 1


def test_missing_derivative_is_rejected():
    with pytest.raises(ConfigurationError, match="never computed: der_x"):
        decay_model("y = x")


def test_vector_state_derivatives():
    model = instantiate_model(
        "vector",
        parse("der_p = 1.0\nder_q = -k*q\nq_sum = q[0] + q[1]"),
        EquationInfo(
            states=[StateInfo("p", "der_p"), StateInfo("q", "der_q", length=2)]
        ),
        parameters={"k": 2.0},
        variable_names=["time", "q_sum"],
        start_values={"p": 0.0, "q": [1.0, 2.0]},
    )
    x = np.array([0.0, 1.0, 2.0])
    der_x = model.get_derivatives(0.0, x)

    np.testing.assert_allclose(der_x, [1.0, -2.0, -4.0])
    # The state vector itself is not modified
    np.testing.assert_array_equal(x, [0.0, 1.0, 2.0])

    model.init(0.0)
    model.record_step(x, 0.0)
    assert model.result == [(0.0, 3.0)]


def test_algebraic_model_dummy_equation():
    """Without states the evaluator integrates der_x[0] = -x[0]."""
    model = instantiate_model(
        "algebraic",
        parse("y = 2*time"),
        EquationInfo(states=[StateInfo("", "")]),
        parameters={},
        variable_names=["time", "y"],
        start_values={},
    )
    np.testing.assert_allclose(model.get_derivatives(1.0, np.array([3.0])), [-3.0])

    model.init(0.0)
    model.record_step(model.x, 1.5)
    assert model.result == [(1.5, 3.0)]


def test_store_mode_forwards_all_variables(gear_model):
    gear_model.init(0.0)
    assert gear_model.result == []

    gear_model.record_step(gear_model.x, 0.0)
    assert len(gear_model.result) == 1
    record = dict(zip(gear_model.evaluator.variable_names, gear_model.result[0]))

    assert record["time"] == 0.0
    assert record["phi2"] == 0.5
    assert record["phi1"] == pytest.approx(52.5)
    assert record["tau"] == 1.0
    assert record["der_w2"] == pytest.approx(GEAR_DER_W2)
    assert record["der_w1"] == pytest.approx(105.0 * GEAR_DER_W2)
    assert record["tau1"] == pytest.approx(170.0 * GEAR_DER_W2 / 105.0)


def test_derivative_calls_do_not_store(gear_model):
    gear_model.init(0.0)
    for t in (0.1, 0.2, 0.3):
        gear_model.get_derivatives(t, gear_model.x)

    assert gear_model.result == []
    assert gear_model.n_get_derivatives == 4


def test_linear_subsystem_in_evaluator(gear_model):
    gear_model.init(0.0)
    der_x = gear_model.get_derivatives(2.5, np.array([0.5, 0.1]))

    np.testing.assert_allclose(der_x, [0.1, -GEAR_DER_W2])
    assert gear_model.linear_subsystems[0].n_solves == 2


def test_unit_model():
    """States are tagged with units, derivatives stored in unit/s."""
    ureg = get_registry()
    model = instantiate_model(
        "spring",
        parse("der_x = v\nder_v = -k/m*x"),
        EquationInfo(
            states=[StateInfo("x", "der_x", unit="m"), StateInfo("v", "der_v", unit="m/s")]
        ),
        parameters={"k": ureg.Quantity(4.0, "N/m"), "m": ureg.Quantity(1.0, "kg")},
        variable_names=["time", "x", "v"],
        start_values={"x": 1.0, "v": 0.0},
        has_units=True,
    )
    assert isinstance(model.evaluator.representation, UnitRepresentation)

    der_x = model.get_derivatives(0.0, np.array([1.0, 0.5]))
    np.testing.assert_allclose(der_x, [0.5, -4.0])

    model.init(0.0)
    model.record_step(np.array([1.0, 0.5]), 0.0)
    time, x, v = model.result[0]
    assert time.m_as("s") == 0.0
    assert x == ureg.Quantity(1.0, "m")
    assert v.units == ureg.Unit("m/s")


def test_unit_mismatch_is_an_evaluation_error():
    ureg = get_registry()
    model = instantiate_model(
        "wrong",
        parse("der_x = x"),
        EquationInfo(states=[StateInfo("x", "der_x", unit="m")]),
        parameters={"k": ureg.Quantity(1.0, "1/s")},
        variable_names=["time", "x"],
        start_values={"x": 1.0},
        has_units=True,
    )
    with pytest.raises(EvaluationError):
        model.get_derivatives(0.0, np.array([1.0]))


def test_uncertain_model():
    """Uncertainty of a parameter propagates into the derivatives."""
    model = make_pendulum_model(representation=UncertainRepresentation())
    model.p[model.evaluator.parameter_names.index("L")] = ufloat(1.0, 0.01)

    der_x = model.get_derivatives(0.0, model.x_start)

    assert model.float_type == "ufloat"
    assert der_x.dtype == object
    assert der_x[1].nominal_value == pytest.approx(-9.81 * np.sin(0.7) - 0.2 * 0.3)
    assert der_x[1].std_dev > 0.0
    assert "±" in measurement_to_string(der_x[1])


def test_same_plan_other_representation(pendulum_model):
    """Recompiling the plan over ufloats reproduces the float results."""
    evaluator = pendulum_model.evaluator.with_representation(UncertainRepresentation())
    assert evaluator.plan is pendulum_model.evaluator.plan

    x = np.array([0.7, 0.3])
    expected = pendulum_model.get_derivatives(0.0, x)
    der_x = evaluator.representation.zeros(2)
    evaluator(der_x, x.astype(object), pendulum_model, 0.0)

    np.testing.assert_allclose([to_float(v) for v in der_x], expected)


def test_domain_error_names_the_step():
    model = decay_model("der_x = sqrt(x)")
    with pytest.raises(EvaluationError, match=r"der_x = sqrt\(x\)"):
        model.get_derivatives(0.0, np.array([-1.0]))


def test_unknown_variable():
    with pytest.raises(ConfigurationError, match="Unknown variable 'b'"):
        decay_model("der_x = -b*x")


def test_unknown_function():
    with pytest.raises(ConfigurationError, match="Unknown function 'foo'"):
        decay_model("der_x = foo(x)")


def test_unsupported_statement():
    with pytest.raises(ConfigurationError, match="assignments"):
        decay_model("der_x = -a*x\nif x > 0: y = 1")


def test_expressions():
    """Conditionals, comparisons, der() and constants compile."""
    model = decay_model(
        "der_x = -a*x if 0 < x <= 10 else 0.0\n"
        "y = max(der(x), -pi) + abs(-2)\n"
        "flag = (x > 1) or not (x > 0)"
    )
    model.init(0.0)
    np.testing.assert_allclose(model.get_derivatives(0.0, np.array([2.0])), [-1.0])
    np.testing.assert_allclose(model.get_derivatives(0.0, np.array([20.0])), [0.0])


def test_plan_description(gear_model):
    text = gear_model.evaluator.plan.describe()

    assert "phi2 = x[0]" in text
    assert "tau = torque(time)" in text
    assert "solve linear subsystem 0 for der_w2:" in text
    assert "0 = J1 * der_w1 - (tau - tau1)" in text
    assert "der_x[1] = der_w2" in text


def test_generate_get_derivatives_log_code(caplog):
    import logging

    with caplog.at_level(logging.INFO, logger="eqsim.codegen"):
        generate_get_derivatives(
            parse("der_x = -a*x"),
            EquationInfo(states=[StateInfo("x", "der_x")]),
            ["a"],
            ["time", "x"],
            name="decay",
            log_code=True,
        )
    assert "Evaluation plan of decay" in caplog.text
    assert "der_x = -a * x" in caplog.text


def test_explicit_mode(gear_model):
    gear_model.init(0.0)
    der_x = np.zeros(2)
    gear_model.evaluator(der_x, gear_model.x, gear_model, 0.0, EvaluationMode.STORE)
    assert len(gear_model.result) == 1
