"""Runtime for equation-based simulation models.

This package turns the reduced equations of a model (an ordered list of
Python ``ast`` statements produced by an equation sorter) into a
derivative evaluator, simulates it with numpy/scipy integrators, and
linearizes it around any time point.

The same evaluation plan runs over plain floats, pint quantities,
uncertain values (``uncertainties``) and dual numbers for exact
Jacobians.

Main Components
---------------
EquationInfo, StateInfo : State layout of a reduced model
generate_get_derivatives : Builds the derivative evaluator
SimulationModel : Runtime state of one model instance
SimulationEngine : Core simulation orchestrator
SimulationConfig : Configuration dataclass
SimulationResult : Results container with alias resolution
linearize : Analytic or finite-difference Jacobian

Input Signals
-------------
InputSignal : Base class (time conversion, breakpoints)
ConstantInput : Constant value
StepInput : Piecewise constant steps
RampInput : Linear ramp
InterpolatedInput : Interpolated from data points
SinusoidalInput : Sine wave
FunctionInput : Custom function

Integrators
-----------
ForwardEuler, RungeKutta4 : Fixed-step, any numeric representation
SciPyIntegrator : scipy.integrate.solve_ivp wrapper with event location

Examples
--------
>>> import ast
>>> from eqsim import (
...     EquationInfo, StateInfo, SimulationConfig, SimulationEngine,
...     instantiate_model,
... )
>>> info = EquationInfo(states=[StateInfo("x", "der_x")])
>>> model = instantiate_model(
...     "decay",
...     ast.parse("der_x = -a*x").body,
...     info,
...     parameters={"a": 0.5},
...     variable_names=["time", "x", "der_x"],
...     start_values={"x": 1.0},
... )
>>> result = SimulationEngine().simulate(model, SimulationConfig(stop_time=2.0))
>>> result.get("x")[-1]
"""

# Core simulation components
from eqsim.core import (
    EvaluationMode,
    Integrator,
    SimulationConfig,
    SimulationEngine,
)

# Model description and evaluator generation
from eqsim.equation_info import (
    AliasKind,
    EliminatedVariable,
    EquationInfo,
    LinearSubsystemInfo,
    StateInfo,
    initial_state_vector,
    resolve_aliases,
)
from eqsim.codegen import (
    DerivativeEvaluator,
    EvaluationPlan,
    compile_plan,
    generate_get_derivatives,
)
from eqsim.linear import LinearSubsystem
from eqsim.model import SimulationModel, instantiate_model
from eqsim.events import CrossingDirection, EventHandler, negative, positive
from eqsim.representations import (
    DualRepresentation,
    FloatRepresentation,
    UncertainRepresentation,
    UnitRepresentation,
    measurement_to_string,
)

# Results and linearization
from eqsim.results import SimulationResult
from eqsim.linearize import get_x_names, linearize

# Input signals
from eqsim.inputs import (
    InputSignal,
    ConstantInput,
    StepInput,
    RampInput,
    InterpolatedInput,
    SinusoidalInput,
    FunctionInput,
)

# Integrators
from eqsim.integrators import ForwardEuler, RungeKutta4, SciPyIntegrator

# Configuration setup utilities
from eqsim.setup import (
    read_param_values,
    read_param_values_pint,
    split_model_values,
    to_parameter_map,
)

from eqsim.errors import (
    ConfigurationError,
    EvaluationError,
    IntegrationError,
    LinearizationError,
    SimulationError,
    SingularSystemError,
)

__all__ = [
    # Core
    "EvaluationMode",
    "Integrator",
    "SimulationConfig",
    "SimulationEngine",
    "SimulationResult",
    # Model description
    "AliasKind",
    "EliminatedVariable",
    "EquationInfo",
    "LinearSubsystemInfo",
    "StateInfo",
    "initial_state_vector",
    "resolve_aliases",
    # Evaluator
    "DerivativeEvaluator",
    "EvaluationPlan",
    "compile_plan",
    "generate_get_derivatives",
    "LinearSubsystem",
    "SimulationModel",
    "instantiate_model",
    # Events
    "CrossingDirection",
    "EventHandler",
    "positive",
    "negative",
    # Representations
    "FloatRepresentation",
    "UnitRepresentation",
    "UncertainRepresentation",
    "DualRepresentation",
    "measurement_to_string",
    # Linearization
    "linearize",
    "get_x_names",
    # Inputs
    "InputSignal",
    "ConstantInput",
    "StepInput",
    "RampInput",
    "InterpolatedInput",
    "SinusoidalInput",
    "FunctionInput",
    # Integrators
    "ForwardEuler",
    "RungeKutta4",
    "SciPyIntegrator",
    # Setup utilities
    "read_param_values",
    "read_param_values_pint",
    "to_parameter_map",
    "split_model_values",
    # Errors
    "SimulationError",
    "ConfigurationError",
    "SingularSystemError",
    "EvaluationError",
    "LinearizationError",
    "IntegrationError",
]
