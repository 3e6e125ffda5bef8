"""Samples, annotations and the sliding window buffer that range functions read from."""

from __future__ import annotations

import enum
import math
import struct
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, List, Optional, Tuple

_MIN_INT64 = -(2**63)
_STALE_NAN_BITS = 0x7FF0000000000002


class CounterResetHint(enum.Enum):
    """How a native histogram relates to the previous one of its series."""

    UNKNOWN = 0
    COUNTER_RESET = 1
    NOT_COUNTER_RESET = 2
    GAUGE = 3


class HistogramError(Exception):
    """Raised by histogram arithmetic on incompatible operands."""


class IncompatibleSchemaError(HistogramError):
    """Histograms mix exponential and custom bucket schemas."""


class IncompatibleBoundsError(HistogramError):
    """Histograms with custom buckets have different bucket bounds."""


class AnnotationKind(enum.Enum):
    """Warnings and infos that evaluation may attach to a query result."""

    MIXED_FLOATS_HISTOGRAMS = "encountered a mix of histograms and floats"
    NATIVE_HISTOGRAM_NOT_COUNTER = "this native histogram metric is not a counter"
    NATIVE_HISTOGRAM_NOT_GAUGE = "this native histogram metric is not a gauge"
    MIXED_EXPONENTIAL_CUSTOM_HISTOGRAMS = (
        "vector contains a mix of histograms with exponential and custom buckets schemas"
    )
    INCOMPATIBLE_CUSTOM_BUCKETS_HISTOGRAMS = (
        "vector contains histograms with incompatible custom buckets"
    )
    HISTOGRAM_IGNORED_IN_MIXED_RANGE = (
        "ignored histograms in a range containing both floats and histograms"
    )
    POSSIBLE_NON_COUNTER = (
        "metric might not be a counter, name does not end in _total/_sum/_count/_bucket"
    )
    INVALID_QUANTILE = "quantile value should be between 0 and 1"


class Annotations:
    """An ordered, de-duplicated collection of (kind, detail) annotations."""

    def __init__(self) -> None:
        self._items: dict[Tuple[AnnotationKind, str], None] = {}

    def add(self, kind: AnnotationKind, detail: str = "") -> None:
        """Record an annotation; repeating an identical one has no effect."""
        self._items.setdefault((kind, detail), None)

    def __iter__(self) -> Iterator[Tuple[AnnotationKind, str]]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, kind: object) -> bool:
        return any(k is kind for k, _ in self._items)


@dataclass(frozen=True)
class Value:
    """A float value or, when ``h`` is set, a native histogram."""

    f: float = 0.0
    h: Any = None

    @property
    def is_histogram(self) -> bool:
        return self.h is not None


@dataclass(frozen=True)
class Sample:
    """A value at a timestamp in milliseconds."""

    t: int
    v: Value = field(default_factory=Value)


@dataclass
class FunctionArgs:
    """Everything a range function needs to evaluate one step."""

    samples: List[Sample]
    step_time: int = 0
    select_range: int = 0
    offset: int = 0
    metric_appeared_ts: Optional[int] = None
    scalar_point: float = 0.0
    scalar_point2: float = 0.0
    annotations: Annotations = field(default_factory=Annotations)


FunctionCall = Callable[[FunctionArgs], Tuple[float, Any, bool]]


def is_stale_nan(value: float) -> bool:
    """Return True if ``value`` is the NaN that marks a series as stale."""
    if not math.isnan(value):
        return False
    return struct.unpack(">Q", struct.pack(">d", value))[0] == _STALE_NAN_BITS


def _histogram_sample_count(h: Any) -> int:
    count = getattr(h, "sample_count", None)
    if callable(count):
        count = count()
    return 1 if count is None else int(count)


def _stored_value(value: Value, subquery: bool) -> Value:
    if value.h is None:
        return Value(value.f)
    h = value.h.copy()
    if subquery and h.counter_reset_hint in (
        CounterResetHint.NOT_COUNTER_RESET,
        CounterResetHint.COUNTER_RESET,
    ):
        # Subqueries may skip or repeat underlying samples, so explicit
        # reset hints cannot be trusted.
        h.counter_reset_hint = CounterResetHint.UNKNOWN
    return Value(value.f, h)


class RingBuffer:
    """Holds the samples of one series inside the current range window."""

    def __init__(
        self,
        select_range: int,
        offset: int,
        call: FunctionCall,
        subquery: bool = False,
        ext_lookback: int = 0,
        annotations: Optional[Annotations] = None,
    ) -> None:
        self.select_range = select_range
        self.offset = offset
        self.call = call
        self.subquery = subquery
        self.ext_lookback = ext_lookback
        self.annotations = annotations if annotations is not None else Annotations()
        self.current_step = 0
        self._items: List[Sample] = []

    def __len__(self) -> int:
        return len(self._items)

    def sample_count(self) -> int:
        """Number of samples held, counting histograms by their weight."""
        return sum(
            _histogram_sample_count(s.v.h) if s.v.h is not None else 1
            for s in self._items
        )

    def max_t(self) -> int:
        """Timestamp of the newest sample, or the smallest int64 when empty."""
        return self._items[-1].t if self._items else _MIN_INT64

    def replace_last(self, t: int, value: Value) -> None:
        """Overwrite the newest sample."""
        if not self._items:
            raise IndexError("replace_last on an empty buffer")
        self._items[-1] = Sample(t, _stored_value(value, self.subquery))

    def push(self, t: int, value: Value) -> None:
        """Append a sample, storing a private copy of any histogram."""
        self._items.append(Sample(t, _stored_value(value, self.subquery)))

    def reset(self, mint: int, evalt: int) -> None:
        """Move the window so it starts after ``mint`` and evaluates at ``evalt``."""
        self.current_step = evalt
        if self.ext_lookback == 0 and (not self._items or self._items[-1].t < mint):
            self._items.clear()
            return
        drop = 0
        for sample in self._items:
            if sample.t > mint:
                break
            drop += 1
        if (
            self.ext_lookback > 0
            and drop > 0
            and self._items[drop - 1].t >= mint - self.ext_lookback
        ):
            drop -= 1
        del self._items[:drop]

    def eval(
        self,
        scalar_arg: float = 0.0,
        scalar_arg2: float = 0.0,
        metric_appeared_ts: Optional[int] = None,
    ) -> Tuple[float, Any, bool]:
        """Apply the range function to the samples in the window."""
        return self.call(
            FunctionArgs(
                samples=list(self._items),
                step_time=self.current_step,
                select_range=self.select_range,
                offset=self.offset,
                metric_appeared_ts=metric_appeared_ts,
                scalar_point=scalar_arg,
                scalar_point2=scalar_arg2,
                annotations=self.annotations,
            )
        )