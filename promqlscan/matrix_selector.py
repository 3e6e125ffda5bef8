"""Range vector selection: a range function applied to each series at each step."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Union

from .functions import is_ext_function, new_range_vector_func
from .rate_buffer import RateBuffer
from .samples import AnnotationKind, Annotations, RingBuffer, Sample, Value, is_stale_nan
from .vector_selector import StepVector

_MIN_INT64 = -(2**63)
_METRIC_NAME = "__name__"
_COUNTER_SUFFIXES = ("_total", "_sum", "_count", "_bucket")


class NativeHistogramsNotSupportedError(ValueError):
    """Raised when an extended range function meets a native histogram."""

    def __init__(self) -> None:
        super().__init__("native histograms are not supported in extended range functions")


def _format_duration(ms: int) -> str:
    if ms == 0:
        return "0s"
    sign = "-" if ms < 0 else ""
    ms = abs(ms)
    if ms < 1000:
        return f"{sign}{ms}ms"
    hours, rest = divmod(ms, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    whole, frac = divmod(rest, 1000)
    seconds = str(whole) if frac == 0 else f"{whole}.{frac:03d}".rstrip("0")
    if hours:
        return f"{sign}{hours}h{minutes}m{seconds}s"
    if minutes:
        return f"{sign}{minutes}m{seconds}s"
    return f"{sign}{seconds}s"


def _owned(sample: Sample) -> Sample:
    h = sample.v.h
    return Sample(sample.t, Value(sample.v.f, h.copy() if h is not None else None))


@dataclass
class _Scanner:
    labels: Dict[str, str]
    signature: int
    buffer: Union[RingBuffer, RateBuffer]
    iterator: Iterator[Sample]
    last_sample: Sample = field(default_factory=lambda: Sample(_MIN_INT64))
    metric_appeared_ts: Optional[int] = None

    def select_points(self, mint: int, maxt: int, evalt: int, is_ext: bool) -> None:
        """Slide the buffer to ``(mint, maxt]`` and fill it from the iterator."""
        self.buffer.reset(mint, evalt)
        if self.last_sample.t > maxt:
            return

        mint = max(mint, self.buffer.max_t() + 1)
        if self.last_sample.t > mint:
            self.buffer.push(self.last_sample.t, self.last_sample.v)
            self.last_sample = Sample(_MIN_INT64)
            mint = max(mint, self.buffer.max_t() + 1)

        appended_before_mint = len(self.buffer) > 0
        for sample in self.iterator:
            t = sample.t
            if sample.v.h is not None:
                if is_ext:
                    raise NativeHistogramsNotSupportedError()
                if is_stale_nan(getattr(sample.v.h, "sum", 0.0)) or t < mint:
                    continue
                if t > maxt:
                    self.last_sample = _owned(sample)
                    return
                if t > mint:
                    self.buffer.push(t, Value(h=sample.v.h))
                continue

            value = sample.v.f
            if is_stale_nan(value):
                continue
            if self.metric_appeared_ts is None:
                self.metric_appeared_ts = t
            if t > maxt:
                self.last_sample = Sample(t, Value(value))
                return
            if is_ext:
                if t > mint or not appended_before_mint:
                    self.buffer.push(t, Value(value))
                    appended_before_mint = True
                else:
                    self.buffer.replace_last(t, Value(value))
            elif t > mint:
                self.buffer.push(t, Value(value))


class MatrixSelector:
    """Evaluates a range function over the series of a selector, a batch at a time.

    The selector is anything with ``matchers`` and ``get_series(shard, num_shards)``.
    Times and durations are in milliseconds.
    """

    def __init__(
        self,
        selector: Any,
        function_name: str,
        options: Any,
        select_range: int,
        offset: int = 0,
        arg: float = 0.0,
        arg2: float = 0.0,
        batch_size: int = 0,
        shard: int = 0,
        num_shards: int = 1,
        annotations: Optional[Annotations] = None,
    ) -> None:
        self.call = new_range_vector_func(function_name)
        self.selector = selector
        self.function_name = function_name
        self.options = options
        self.select_range = select_range
        self.offset = offset
        self.arg = arg
        self.arg2 = arg2
        self.shard = shard
        self.num_shards = num_shards
        self.annotations = annotations if annotations is not None else Annotations()
        self.is_ext_function = is_ext_function(function_name)
        self.ext_lookback_delta = getattr(options, "ext_lookback_delta", 0)
        self.samples_processed = 0

        self._maxt = options.end
        # An instant query still needs a positive step to terminate.
        self._step = options.step or 1
        self._num_steps = options.num_steps()
        self._series_batch_size = batch_size
        self._current_step = options.start
        self._current_series = 0
        self._scanners: Optional[List[_Scanner]] = None
        self._series: List[Dict[str, str]] = []
        self._non_counter_metric = ""
        self._has_floats = False

    def _new_buffer(self) -> Union[RingBuffer, RateBuffer]:
        rate_kinds = {
            "rate": (True, True),
            "increase": (True, False),
            "delta": (False, False),
        }
        if self.function_name in rate_kinds:
            is_counter, is_rate = rate_kinds[self.function_name]
            return RateBuffer(
                self.options,
                is_counter,
                is_rate,
                self.select_range,
                self.offset,
                self.annotations,
            )
        ext_lookback = self.ext_lookback_delta - 1 if self.is_ext_function else 0
        return RingBuffer(
            self.select_range,
            self.offset,
            self.call,
            subquery=False,
            ext_lookback=ext_lookback,
            annotations=self.annotations,
        )

    def _load_series(self) -> List[_Scanner]:
        if self._scanners is not None:
            return self._scanners
        loaded = self.selector.get_series(self.shard, self.num_shards)
        scanners: List[_Scanner] = []
        series: List[Dict[str, str]] = []
        for s in loaded:
            lbls = dict(s.labels)
            if self.function_name != "last_over_time":
                lbls.pop(_METRIC_NAME, None)
            scanners.append(
                _Scanner(
                    labels=lbls,
                    signature=s.signature,
                    buffer=self._new_buffer(),
                    iterator=iter(s.iterator()),
                )
            )
            series.append(lbls)
        if self._series_batch_size == 0 or len(series) < self._series_batch_size:
            self._series_batch_size = len(series)

        if self.function_name in ("rate", "increase") and loaded:
            name = dict(loaded[0].labels).get(_METRIC_NAME, "")
            if name and not name.endswith(_COUNTER_SUFFIXES):
                self._non_counter_metric = name

        self._scanners = scanners
        self._series = series
        return scanners

    def series(self) -> List[Dict[str, str]]:
        """Label sets of the output series, indexed by signature."""
        self._load_series()
        return [dict(lbls) for lbls in self._series]

    def next_batch(self) -> Optional[List[StepVector]]:
        """The next batch of step vectors, or None when the query is done."""
        if self._current_step > self._maxt:
            if self._non_counter_metric and self._has_floats:
                self.annotations.add(
                    AnnotationKind.POSSIBLE_NON_COUNTER, self._non_counter_metric
                )
            return None
        scanners = self._load_series()

        timestamps = []
        ts = self._current_step
        while len(timestamps) < self._num_steps and ts <= self._maxt:
            timestamps.append(ts)
            ts += self._step
        vectors = [StepVector(t) for t in timestamps]

        end = min(self._current_series + self._series_batch_size, len(scanners))
        for scanner in scanners[self._current_series:end]:
            for vector in vectors:
                maxt = vector.t - self.offset
                mint = maxt - self.select_range
                scanner.select_points(mint, maxt, vector.t, self.is_ext_function)
                f, h, ok = scanner.buffer.eval(
                    self.arg, self.arg2, scanner.metric_appeared_ts
                )
                if ok:
                    if h is not None:
                        vector.append_histogram(scanner.signature, h)
                    else:
                        vector.append_sample(scanner.signature, f)
                        self._has_floats = True
                self.samples_processed += scanner.buffer.sample_count()
        self._current_series = end

        if self._current_series == len(scanners):
            self._current_step += self._step * self._num_steps
            self._current_series = 0
        return vectors

    def __iter__(self) -> Iterator[List[StepVector]]:
        while True:
            batch = self.next_batch()
            if batch is None:
                return
            yield batch

    def __str__(self) -> str:
        matchers = " ".join(str(m) for m in self.selector.matchers)
        duration = _format_duration(self.select_range)
        return (
            f"[matrixSelector] {self.function_name}({{[{matchers}]}}[{duration}] "
            f"{self.shard} mod {self.num_shards})"
        )