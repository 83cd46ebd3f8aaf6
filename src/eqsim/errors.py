"""Exceptions raised by the simulation runtime.

All errors are fatal to the evaluator call (or configuration step) that
raised them. Nothing in this package retries an evaluation; step-size
reduction after a failure is left to the integrator.
"""


class SimulationError(Exception):
    """Base class of all errors raised by eqsim."""


class ConfigurationError(SimulationError):
    """The model was set up inconsistently.

    Raised for state/initial-value length mismatches, wrong numbers of
    initial conditions, unknown names in equations and invalid options.
    """


class SingularSystemError(SimulationError):
    """A linear subsystem has no unique solution at the current state."""


class EvaluationError(SimulationError):
    """An equation step failed (e.g. a domain error in a function call)."""


class LinearizationError(SimulationError):
    """Probing the model failed or the requested time is unreachable."""


class IntegrationError(SimulationError):
    """The integrator reported a failure."""
