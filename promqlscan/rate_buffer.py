"""A streaming buffer that computes rate, increase and delta step by step."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from .options import QueryOptions, query_steps
from .rates import extrapolated_rate
from .samples import Annotations, Sample, Value

_MIN_INT64 = -(2**63)
_MAX_INT64 = 2**63 - 1


@dataclass
class _StepRange:
    mint: int
    maxt: int
    num_samples: int = 0
    sample_count: int = 0


def _weight(value: Value) -> int:
    if value.h is None:
        return 1
    count = getattr(value.h, "sample_count", None)
    if callable(count):
        count = count()
    return 1 if count is None else int(count)


def _owned(value: Value) -> Value:
    return Value(value.f, value.h.copy() if value.h is not None else None)


def _trunc_div(a: int, b: int) -> int:
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


class RateBuffer:
    """Keeps only what rate needs: first sample per step, resets and the last sample.

    Every pushed sample is accounted to each upcoming evaluation step whose
    window contains it, so each step's result is available without holding
    the whole window.
    """

    def __init__(
        self,
        options: QueryOptions,
        is_counter: bool,
        is_rate: bool,
        select_range: int,
        offset: int,
        annotations: Optional[Annotations] = None,
    ) -> None:
        self.is_counter = is_counter
        self.is_rate = is_rate
        self.select_range = select_range
        self.offset = offset
        self.annotations = annotations if annotations is not None else Annotations()
        self.step = max(1, options.step)
        num_steps = min(
            _trunc_div(select_range - 1, self.step) + 1, query_steps(options)
        )
        self._step_ranges: List[_StepRange] = []
        self._first_samples: List[Sample] = []
        current = options.start
        for _ in range(num_steps):
            maxt = current - offset
            self._step_ranges.append(_StepRange(mint=maxt - select_range, maxt=maxt))
            self._first_samples.append(Sample(_MAX_INT64))
            current += self.step
        self._resets: List[Sample] = []
        self._last = Sample(_MIN_INT64)
        self._current_mint = _MAX_INT64
        self._eval_ts = 0

    def __len__(self) -> int:
        return self._step_ranges[0].num_samples

    def sample_count(self) -> int:
        """Weighted number of samples in the current step's window."""
        return self._step_ranges[0].sample_count

    def max_t(self) -> int:
        """Timestamp of the newest pushed sample."""
        return self._last.t

    def replace_last(self, t: int, value: Value) -> None:
        """Not used by rate functions; does nothing."""

    def push(self, t: int, value: Value) -> None:
        """Account a new sample to every step window that contains it."""
        last = self._last
        in_window = last.t > self._current_mint
        if in_window and value.h is not None and last.v.h is not None:
            if value.h.detect_reset(last.v.h):
                self._resets.append(Sample(last.t, Value(h=last.v.h.copy())))
                self._resets.append(Sample(t, Value(h=value.h.copy())))
        elif in_window and last.v.f > value.f:
            self._resets.append(Sample(last.t, Value(last.v.f)))
            self._resets.append(Sample(t, Value(value.f)))

        self._last = Sample(t, _owned(value))

        for i, step_range in enumerate(self._step_ranges):
            if not step_range.mint < t <= step_range.maxt:
                break
            step_range.num_samples += 1
            step_range.sample_count += _weight(value)
            if t < self._first_samples[i].t:
                self._first_samples[i] = Sample(t, _owned(value))

    def reset(self, mint: int, evalt: int) -> None:
        """Advance to the step evaluated at ``evalt`` whose window starts after ``mint``."""
        self._current_mint, self._eval_ts = mint, evalt
        if self._step_ranges[0].mint == mint:
            return
        self._resets = [s for s in self._resets if s.t > mint]

        tail = self._step_ranges[-1]
        self._step_ranges.pop(0)
        self._step_ranges.append(
            _StepRange(mint=tail.mint + self.step, maxt=tail.maxt + self.step)
        )
        self._first_samples.pop(0)
        self._first_samples.append(Sample(_MAX_INT64))

    def eval(
        self,
        scalar_arg: float = 0.0,
        scalar_arg2: float = 0.0,
        metric_appeared_ts: Optional[int] = None,
    ) -> Tuple[float, Any, bool]:
        """Rate, increase or delta for the current step."""
        first = self._first_samples[0]
        if first.t == _MAX_INT64 or first.t == self._last.t:
            return 0.0, None, False

        points: List[Sample] = []
        for s in [first, *self._resets, self._last]:
            if points and points[-1].t == s.t:
                continue
            points.append(s)
        return extrapolated_rate(
            points,
            self._step_ranges[0].num_samples,
            self.is_counter,
            self.is_rate,
            self._eval_ts,
            self.select_range,
            self.offset,
            self.annotations,
        )