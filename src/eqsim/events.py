"""Zero-crossing (state event) support.

Equations use :func:`positive` / :func:`negative` in place of relational
operators on state-dependent quantities. Between events the returned
boolean is frozen, so the right-hand side the integrator sees stays
continuous. Each signal also exposes a residual ``z`` whose sign change
the integrator's root finder localises; after the event the model is
re-evaluated in event mode and the boolean is updated.

The residual is offset by ``±eps`` towards the current side
(hysteresis), so that a signal sitting exactly at zero right after an
event does not trigger again. A one-sided signal that holds the boolean
its direction switches to gets a residual that cannot cross zero, so
the ignored transition and its reversal never stop the integrator.
"""

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Iterable, List

import numpy as np

from eqsim.errors import EvaluationError
from eqsim.representations import to_float

logger = logging.getLogger(__name__)


class CrossingDirection(IntEnum):
    """Which sign changes of a crossing signal are events.

    ``RISING`` signals only stop the integrator when they become true,
    ``FALLING`` signals only when they become false. The ignored
    transition is applied at the next event of any signal (the boolean
    latches until then). Values match the ``direction`` attribute of
    ``scipy.integrate.solve_ivp`` event functions.
    """

    FALLING = -1
    BOTH = 0
    RISING = 1


@dataclass
class CrossingSignal:
    signal_id: int
    label: str
    direction: CrossingDirection
    positive: bool = False
    z: float = 0.0
    n_events: int = 0


class EventHandler:
    """Per-model state of all zero-crossing signals.

    Parameters
    ----------
    eps : float, optional
        Hysteresis added to the residual, by default 1e-10.
    """

    def __init__(self, eps: float = 1e-10):
        self.eps = eps
        self.signals: Dict[int, CrossingSignal] = {}
        self._fired: set = set()

    def reset(self):
        self.signals.clear()
        self._fired.clear()

    @property
    def n(self) -> int:
        return len(self.signals)

    @property
    def z(self) -> np.ndarray:
        return np.array([s.z for s in self.signals.values()])

    @property
    def labels(self) -> List[str]:
        return [s.label for s in self.signals.values()]

    @property
    def n_events(self) -> int:
        return sum(s.n_events for s in self.signals.values())

    def mark_fired(self, positions: Iterable[int]):
        """Mark signals (by position) whose crossing was located."""
        ids = list(self.signals)
        self._fired = {ids[i] for i in positions}

    def update(self, signal_id, value: float, label: str, direction, mode) -> bool:
        signal = self.signals.get(signal_id)
        if signal is None:
            if not mode.updates_crossings:
                raise EvaluationError(
                    f"Crossing signal {label!r} ({signal_id}) was not "
                    "registered during initialisation"
                )
            signal = CrossingSignal(signal_id, label, CrossingDirection(direction))
            self.signals[signal_id] = signal

        if mode.updates_crossings:
            if signal_id in self._fired:
                if signal.direction is CrossingDirection.BOTH:
                    positive = not signal.positive
                else:
                    positive = signal.direction is CrossingDirection.RISING
                if positive != signal.positive:
                    signal.n_events += 1
                    logger.debug(
                        "Crossing %r became %s at value %g", label, positive, value
                    )
            else:
                positive = value > 0.0
            signal.positive = positive
        signal.z = self._residual(signal, value)
        return signal.positive

    def _residual(self, signal: CrossingSignal, value: float) -> float:
        """Residual whose sign change is the next event of ``signal``.

        A one-sided signal that already holds the boolean its direction
        switches to has no event left until the latch is released, so its
        residual stays away from zero on the current side.
        """
        if signal.direction is not CrossingDirection.BOTH and signal.positive == (
            signal.direction is CrossingDirection.RISING
        ):
            if signal.positive:
                return abs(value) + self.eps
            return -abs(value) - self.eps
        return value + self.eps if signal.positive else value - self.eps

    def finish_event(self):
        self._fired.clear()

    def event_functions(self, model) -> list:
        """Event functions for ``scipy.integrate.solve_ivp``.

        Each function evaluates the model's crossing residuals and is
        terminal, so the integration stops at the first located event.
        """
        functions = []
        for i, signal in enumerate(self.signals.values()):

            def event(t, x, i=i):
                return model.zero_crossings(x, t)[i]

            event.terminal = True
            event.direction = int(signal.direction)
            functions.append(event)
        return functions

    def __repr__(self):
        return f"EventHandler(n={self.n}, n_events={self.n_events})"


def crossing(model, signal_id, value, label: str = "", mode=CrossingDirection.BOTH):
    """Return ``value > 0``, frozen between events.

    Parameters
    ----------
    model : SimulationModel
        Model with an evaluation in flight.
    signal_id : hashable
        Identifier of the crossing signal, unique within the model.
    value : float, pint.Quantity or ufloat
        Continuous signal whose sign is tested.
    label : str
        Text of the signal, used in logs and error messages.
    mode : CrossingDirection
        Which transitions are events.
    """
    return model.crossings.update(
        signal_id, to_float(value), label, mode, model.evaluation_mode
    )


def positive(model, signal_id, value, label: str = "", mode=CrossingDirection.BOTH):
    """Zero-crossing version of ``value > 0``."""
    return crossing(model, signal_id, value, label, mode)


def negative(model, signal_id, value, label: str = "", mode=CrossingDirection.BOTH):
    """Zero-crossing version of ``value < 0``."""
    return crossing(model, signal_id, -value, label, mode)
