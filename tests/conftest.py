"""Shared models for the eqsim tests.

The reduced equations are written as Python source and parsed with
``ast``, the form in which an equation sorter hands them over.
"""

import ast
import textwrap

import pytest

from eqsim import (
    AliasKind,
    EliminatedVariable,
    EquationInfo,
    LinearSubsystemInfo,
    StateInfo,
    StepInput,
    instantiate_model,
)


def parse(source):
    """Parse statements."""
    return ast.parse(textwrap.dedent(source)).body


def parse_expr(source):
    return ast.parse(source, mode="eval").body


# Two inertias coupled by an ideal gear, driven by a torque on the first
GEAR_EQUATIONS = """
tau = torque(time)
phi1 = r*phi2
w1 = r*w2
der_phi2 = w2
solve_linear_subsystem(0)
"""

GEAR_VARIABLES = [
    "time",
    "phi2",
    "w2",
    "der_phi2",
    "der_w2",
    "phi1",
    "w1",
    "tau",
    "tau1",
    "tau2",
    "der_w1",
]

GEAR_PARAMETERS = {
    "J1": 0.0025,
    "J2": 170.0,
    "r": 105.0,
    "torque": StepInput([1.0, 2.0, 3.0], [1.0, 0.0, -1.0, 0.0]),
}

# phi2(4) = 0.5 + 2 / (J1*r + J2/r)
GEAR_PHI2_FINAL = 0.5 + 2.0 / (0.0025 * 105.0 + 170.0 / 105.0)


def gear_equation_info(constant_matrix=False):
    return EquationInfo(
        states=[StateInfo("phi2", "der_phi2"), StateInfo("w2", "der_w2")],
        eliminated=[
            EliminatedVariable("support_tau", AliasKind.NEGATED_ALIAS, "tau"),
            EliminatedVariable("gear_phi2", AliasKind.ALIAS, "phi2"),
            EliminatedVariable("phi_ground", AliasKind.ZERO),
        ],
        linear_subsystems=[
            LinearSubsystemInfo(
                unknowns=["der_w2"],
                steps=parse(
                    """
                    der_w1 = r*der_w2
                    tau2 = J2*der_w2
                    tau1 = tau2/r
                    """
                ),
                residuals=[parse_expr("J1*der_w1 - (tau - tau1)")],
                constant_matrix=constant_matrix,
            )
        ],
    )


def make_gear_model(**kwargs):
    return instantiate_model(
        "gear",
        parse(GEAR_EQUATIONS),
        gear_equation_info(kwargs.pop("constant_matrix", False)),
        parameters=dict(GEAR_PARAMETERS),
        variable_names=GEAR_VARIABLES,
        start_values={"phi2": 0.5, "w2": 0.0},
        **kwargs,
    )


@pytest.fixture
def gear_model():
    return make_gear_model()


# Mass on a spring with a one-sided contact force below s = 0
CONTACT_EQUATIONS = """
sPos = positive(1, s, "s")
f = 0.0 if sPos else fmax
der_s = v
der_v = (f - d*v - k*s)/m
"""


def make_contact_model():
    return instantiate_model(
        "contact",
        parse(CONTACT_EQUATIONS),
        EquationInfo(states=[StateInfo("s", "der_s"), StateInfo("v", "der_v")]),
        parameters={"fmax": 1.5, "m": 1.0, "k": 1.0, "d": 0.1},
        variable_names=["time", "s", "v", "sPos", "f", "der_s", "der_v"],
        start_values={"s": 2.0, "v": 0.0},
    )


@pytest.fixture
def contact_model():
    return make_contact_model()


PENDULUM_EQUATIONS = """
der_phi = w
der_w = -g/L*sin(phi) - d*w
"""


def make_pendulum_model(representation=None, phi0=0.7, w0=0.3):
    return instantiate_model(
        "pendulum",
        parse(PENDULUM_EQUATIONS),
        EquationInfo(states=[StateInfo("phi", "der_phi"), StateInfo("w", "der_w")]),
        parameters={"g": 9.81, "L": 1.0, "d": 0.2},
        variable_names=["time", "phi", "w", "der_phi", "der_w"],
        start_values={"phi": phi0, "w": w0},
        representation=representation,
    )


@pytest.fixture
def pendulum_model():
    return make_pendulum_model()
