"""Time-varying inputs for models.

An input is passed to a model as an ordinary parameter and called from
the equations with the current time, e.g. ``tau = torque(time)``. The
integrators call the evaluator at every stage, so an input is sampled
inside steps as a true function of time.

Inputs with jumps report the jump times through ``breakpoints()``;
:meth:`SimulationModel.breakpoints` collects them and the integrators
end a step exactly there and restart on the other side.

Models with units pass time as a pint Quantity; :class:`InputSignal`
converts it to seconds before the signal is evaluated.
"""

from typing import Any, Callable, List, Sequence, Union

import numpy as np

ArrayLike = Union[Sequence[float], np.ndarray]


class InputSignal:
    """Base class of the input signals.

    Subclasses implement :meth:`value` for a time in seconds and, if the
    signal is discontinuous, :meth:`breakpoints`.
    """

    def __call__(self, t) -> Any:
        if hasattr(t, "m_as"):
            t = t.m_as("s")
        return self.value(t)

    def value(self, t: float) -> Any:
        raise NotImplementedError

    def breakpoints(self) -> List[float]:
        """Times of discontinuities, in seconds."""
        return []


class ConstantInput(InputSignal):
    """Input that never changes.

    Parameters
    ----------
    level : scalar, array-like or pint.Quantity

    Examples
    --------
    >>> load = ConstantInput(2.5)
    >>> load(0.0), load(100.0)
    (2.5, 2.5)
    """

    def __init__(self, level: Any):
        self.level = level

    def value(self, t: float) -> Any:
        return self.level

    def __repr__(self):
        return f"ConstantInput({self.level!r})"


class StepInput(InputSignal):
    """Piecewise constant input.

    Parameters
    ----------
    times : array-like
        Strictly increasing switching times.
    values : array-like or pint.Quantity
        With ``len(times) + 1`` entries, ``values[0]`` holds before
        ``times[0]`` and ``values[k + 1]`` from ``times[k]`` on. With
        ``len(times)`` entries, ``values[k]`` holds from ``times[k]`` on
        and ``values[0]`` also before the first time.

    Notes
    -----
    The signal is right-continuous: at a switching time it already has
    the new value.

    Examples
    --------
    Torque pulse that accelerates and then brakes a drive:

    >>> torque = StepInput([1.0, 2.0, 3.0], [1.0, 0.0, -1.0, 0.0])
    >>> [torque(t) for t in (0.5, 1.0, 2.5, 3.5)]
    [1.0, 0.0, -1.0, 0.0]
    >>> torque.breakpoints()
    [1.0, 2.0, 3.0]
    """

    def __init__(self, times: ArrayLike, values: ArrayLike):
        self.times = np.asarray(times, dtype=float)
        self.values = values if hasattr(values, "units") else np.asarray(values)

        n = len(self.times)
        if len(self.values) not in (n, n + 1):
            raise ValueError(
                f"StepInput needs {n} or {n + 1} values for {n} switching "
                f"times, got {len(self.values)}"
            )
        if np.any(np.diff(self.times) <= 0):
            raise ValueError("StepInput switching times must be strictly increasing")
        self._shift = 1 if len(self.values) == n else 0

    def value(self, t: float) -> Any:
        k = int(np.searchsorted(self.times, t, side="right")) - self._shift
        return self.values[min(max(k, 0), len(self.values) - 1)]

    def breakpoints(self) -> List[float]:
        return self.times.tolist()

    def __repr__(self):
        values = np.asarray(getattr(self.values, "magnitude", self.values))
        return f"StepInput(times={self.times.tolist()}, values={values.tolist()})"


class RampInput(InputSignal):
    """Input rising (or falling) linearly with time: ``offset + rate * t``.

    Examples
    --------
    >>> speed_ref = RampInput(rate=2.0, offset=1.0)
    >>> speed_ref(2.0)
    5.0
    """

    def __init__(self, rate: float, offset: float = 0.0):
        self.rate = rate
        self.offset = offset

    def value(self, t: float) -> float:
        return self.offset + self.rate * t

    def __repr__(self):
        return f"RampInput(rate={self.rate}, offset={self.offset})"


class InterpolatedInput(InputSignal):
    """Input interpolated from measured samples.

    Parameters
    ----------
    times, values : array-like
        Sample times and values.
    kind : str, optional
        Any ``scipy.interpolate.interp1d`` kind, 'linear' by default.
    fill_value : str or float, optional
        Outside the samples: 'extrapolate' (default) or a constant.

    Examples
    --------
    >>> load = InterpolatedInput([0.0, 1.0, 2.0], [0.0, 1.0, 0.5])
    >>> load(1.5)
    0.75
    """

    def __init__(
        self,
        times: ArrayLike,
        values: ArrayLike,
        kind: str = "linear",
        fill_value: Union[str, float] = "extrapolate",
    ):
        from scipy.interpolate import interp1d

        self.times = np.asarray(times, dtype=float)
        self.kind = kind
        self._interpolate = interp1d(
            self.times, np.asarray(values), kind=kind, fill_value=fill_value
        )

    def value(self, t: float) -> float:
        return float(self._interpolate(t))

    def __repr__(self):
        return f"InterpolatedInput(kind={self.kind!r}, n_samples={len(self.times)})"


class SinusoidalInput(InputSignal):
    """Harmonic excitation ``amplitude * sin(2*pi*frequency*t + phase) + offset``.

    Parameters
    ----------
    amplitude : float
    frequency : float
        In Hz.
    phase : float, optional
        In radians.
    offset : float, optional

    Examples
    --------
    >>> shaker = SinusoidalInput(amplitude=2.0, frequency=0.5, offset=1.0)
    >>> round(shaker(0.5), 12)
    3.0
    """

    def __init__(
        self,
        amplitude: float,
        frequency: float,
        phase: float = 0.0,
        offset: float = 0.0,
    ):
        self.amplitude = amplitude
        self.frequency = frequency
        self.phase = phase
        self.offset = offset

    def value(self, t: float) -> float:
        angle = 2 * np.pi * self.frequency * t + self.phase
        return self.amplitude * np.sin(angle) + self.offset

    def __repr__(self):
        return (
            f"SinusoidalInput(amplitude={self.amplitude}, frequency={self.frequency}, "
            f"phase={self.phase}, offset={self.offset})"
        )


class FunctionInput(InputSignal):
    """Input given by an arbitrary function of time in seconds.

    Parameters
    ----------
    func : callable
        ``func(t) -> value``.
    breakpoints : sequence of float, optional
        Times at which ``func`` jumps.

    Examples
    --------
    >>> decay = FunctionInput(lambda t: np.exp(-t))
    >>> decay(0.0)
    1.0
    """

    def __init__(self, func: Callable[[float], Any], breakpoints: ArrayLike = ()):
        self.func = func
        self._breakpoints = sorted(float(t) for t in breakpoints)

    def value(self, t: float) -> Any:
        return self.func(t)

    def breakpoints(self) -> List[float]:
        return list(self._breakpoints)

    def __repr__(self):
        return f"FunctionInput({getattr(self.func, '__name__', repr(self.func))})"
