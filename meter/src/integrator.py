"""
Power integrator and display smoothing filter.

Pure in-memory numeric engine: no I/O, no clock.  The caller supplies the
current time in epoch milliseconds so jittered, delayed or missed ticks are
integrated over the real elapsed wall-clock time.

- coerce_reading(value): fail-open conversion of a raw reading to float.
- PowerIntegrator.integrate(sample, now_ms): watt-second accumulation.
- EmaFilter.smooth(watts): exponential moving average for display only.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from meter.src.models import SensorSample

WATT_SECONDS_PER_KWH: float = 3_600_000.0
"""Conversion factor between the integral and the kWh registers."""


def coerce_reading(value: object) -> float:
    """Return *value* as a float, or 0.0 when missing or not numeric.

    Booleans, ``None``, NaN, infinities and non-numeric strings all become
    0.0 so a flaky sensor never stalls the integrator.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, (str, bytes)):
        try:
            result = float(value)
        except ValueError:
            return 0.0
    else:
        return 0.0
    if not math.isfinite(result):
        return 0.0
    return result


def make_sample(current: object, voltage: object) -> SensorSample:
    """Build a SensorSample from two raw readings with the fallback rule."""
    return SensorSample(current=coerce_reading(current), voltage=coerce_reading(voltage))


@dataclass(slots=True)
class AccumulatorState:
    """Process-lifetime accumulator state.

    Attributes:
        last_tick_ms: Epoch millis of the previous integration step.
        energy_ws: Watt-seconds integrated since the last daily reset.
        smoothed_w: EMA state of the displayed power.
    """

    last_tick_ms: int
    energy_ws: float = 0.0
    smoothed_w: float = 0.0

    @property
    def energy_kwh(self) -> float:
        return self.energy_ws / WATT_SECONDS_PER_KWH


class PowerIntegrator:
    """Integrates instantaneous power into an energy total.

    Args:
        state: The shared accumulator state this integrator mutates.
    """

    def __init__(self, state: AccumulatorState) -> None:
        self.state = state

    def integrate(self, sample: SensorSample, now_ms: int) -> float:
        """Add one tick worth of energy and return the tick's watts.

        ``last_tick_ms`` advances on every call, including negative-power
        ticks, so the next delta never spans skipped intervals.  Negative
        power (reverse flow) is not consumption and is not accumulated.

        Args:
            sample: Coerced current/voltage reading.
            now_ms: Current wall-clock time in epoch milliseconds.

        Returns:
            The instantaneous power in watts (possibly negative).
        """
        watts = sample.watts
        delta_s = (now_ms - self.state.last_tick_ms) / 1000.0
        self.state.last_tick_ms = now_ms

        # A backwards clock step must not subtract energy.
        if watts >= 0 and delta_s > 0:
            self.state.energy_ws += watts * delta_s
        return watts

    def reset(self) -> None:
        self.state.energy_ws = 0.0


class EmaFilter:
    """Exponential moving average used only for the live watt display.

    The filter reads and writes ``state.smoothed_w`` and never touches the
    energy integral.

    Args:
        state: The shared accumulator state.
        alpha: Weight of the newest sample, in (0, 1).
    """

    def __init__(self, state: AccumulatorState, alpha: float = 0.3) -> None:
        if not 0.0 < alpha < 1.0:
            raise ValueError(f"alpha must be in (0, 1), got {alpha}")
        self.state = state
        self.alpha = alpha

    def smooth(self, watts: float) -> float:
        """Fold *watts* into the average and return the new smoothed value."""
        self.state.smoothed_w = (
            self.alpha * watts + (1.0 - self.alpha) * self.state.smoothed_w
        )
        return self.state.smoothed_w

    @property
    def display_watts(self) -> int:
        """Smoothed value rounded to the nearest whole watt."""
        return round(self.state.smoothed_w)
