"""Instant vector selection: the latest sample of each series at each step."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .options import QueryOptions
from .samples import Sample, is_stale_nan

_MIN_INT64 = -(2**63)


@dataclass
class StepVector:
    """Values of several series at one evaluation timestamp."""

    t: int
    sample_ids: List[int] = field(default_factory=list)
    samples: List[float] = field(default_factory=list)
    histogram_ids: List[int] = field(default_factory=list)
    histograms: List[Any] = field(default_factory=list)

    def append_sample(self, series_id: int, value: float) -> None:
        self.sample_ids.append(series_id)
        self.samples.append(value)

    def append_histogram(self, series_id: int, histogram: Any) -> None:
        self.histogram_ids.append(series_id)
        self.histograms.append(histogram)


class MemoizedIterator:
    """A forward-only sample cursor that remembers the sample before it."""

    def __init__(self, samples: Iterable[Sample], lookback_delta: int) -> None:
        self._it = iter(samples)
        self._current: Optional[Sample] = next(self._it, None)
        self._delta = lookback_delta
        self._last_time = _MIN_INT64
        self._prev: Optional[Sample] = None

    def _next(self) -> None:
        if self._current is None:
            return
        self._prev = self._current
        self._current = next(self._it, None)
        if self._current is not None:
            self._last_time = self._current.t

    def seek(self, t: int) -> bool:
        """Advance to the first sample at or after ``t``; False when exhausted."""
        t0 = t - self._delta
        if self._current is not None and t0 > self._last_time:
            # Skipped further than the lookback window: the previous sample is stale.
            self._prev = None
            while self._current is not None and self._current.t < t0:
                self._current = next(self._it, None)
            if self._current is None:
                return False
            self._last_time = self._current.t
        if self._last_time >= t:
            return self._current is not None
        while self._current is not None:
            self._next()
            if self._last_time >= t:
                break
        return self._current is not None

    def at(self) -> Sample:
        """The sample the cursor is on."""
        if self._current is None:
            raise IndexError("iterator is exhausted")
        return self._current

    def peek_prev(self) -> Optional[Sample]:
        """The sample before the current one, if remembered."""
        return self._prev


def _is_stale(sample: Sample) -> bool:
    if is_stale_nan(sample.v.f):
        return True
    h = sample.v.h
    return h is not None and is_stale_nan(getattr(h, "sum", 0.0))


def select_point(
    iterator: MemoizedIterator, ts: int, lookback_delta: int, offset: int
) -> Optional[Sample]:
    """The newest sample at or before ``ts - offset`` within the lookback window."""
    ref_time = ts - offset
    sample = iterator.at() if iterator.seek(ref_time) else None
    if sample is None or sample.t > ref_time:
        sample = iterator.peek_prev()
        if sample is None or sample.t <= ref_time - lookback_delta:
            return None
    if _is_stale(sample):
        return None
    return sample


@dataclass
class _Scanner:
    labels: Dict[str, str]
    signature: int
    samples: MemoizedIterator


class VectorSelector:
    """Produces step vectors for the series of a selector, a batch at a time.

    The selector is anything with ``matchers`` and ``get_series(shard, num_shards)``.
    """

    def __init__(
        self,
        selector: Any,
        options: QueryOptions,
        offset: int = 0,
        batch_size: int = 0,
        select_timestamp: bool = False,
        shard: int = 0,
        num_shards: int = 1,
    ) -> None:
        self.selector = selector
        self.options = options
        self.offset = offset
        self.select_timestamp = select_timestamp
        self.shard = shard
        self.num_shards = num_shards
        self._maxt = options.end
        # An instant query still needs a positive step to terminate.
        self._step = options.step or 1
        self._lookback_delta = options.lookback_delta
        self._num_steps = options.num_steps()
        self._series_batch_size = batch_size
        self._current_step = options.start
        self._current_series = 0
        self._scanners: Optional[List[_Scanner]] = None
        self._series: List[Dict[str, str]] = []

    def _load_series(self) -> List[_Scanner]:
        if self._scanners is not None:
            return self._scanners
        loaded = self.selector.get_series(self.shard, self.num_shards)
        scanners = []
        series = []
        for s in loaded:
            scanners.append(
                _Scanner(
                    dict(s.labels),
                    s.signature,
                    MemoizedIterator(s.iterator(), self._lookback_delta),
                )
            )
            lbls = dict(s.labels)
            # A pushed-down timestamp() drops the metric name.
            if self.select_timestamp:
                lbls.pop("__name__", None)
            series.append(lbls)
        if self._series_batch_size == 0 or len(series) < self._series_batch_size:
            self._series_batch_size = len(series)
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
                sample = select_point(
                    scanner.samples, vector.t, self._lookback_delta, self.offset
                )
                if sample is None:
                    continue
                if self.select_timestamp:
                    vector.append_sample(scanner.signature, sample.t / 1000)
                elif sample.v.h is not None:
                    vector.append_histogram(scanner.signature, sample.v.h)
                else:
                    vector.append_sample(scanner.signature, sample.v.f)
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
        return f"[vectorSelector] {{[{matchers}]}} {self.shard} mod {self.num_shards}"