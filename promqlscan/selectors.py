"""Series selection from a querier, with sharding, filtering and pooling."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from .filter import Filter, Matcher, MatchType, NopFilter, new_filter
from .samples import Sample

_SEP = b"\xff"
_MATCH_TYPE_CODES = {match_type: code for code, match_type in enumerate(MatchType)}


@dataclass(frozen=True)
class SelectHints:
    """Hints passed to the querier about how selected series will be used."""

    start: int = 0
    end: int = 0
    step: int = 0
    func: str = ""
    grouping: Tuple[str, ...] = ()
    by: bool = False


@dataclass(frozen=True)
class MemorySeries:
    """A series held in memory: a label set and time-ordered samples."""

    labels: Dict[str, str]
    samples: Tuple[Sample, ...] = field(default_factory=tuple)

    def iterator(self) -> Iterator[Sample]:
        """Iterate over the samples in time order."""
        return iter(self.samples)


@dataclass(frozen=True)
class SignedSeries:
    """A series with a signature that identifies it within its shard."""

    series: Any
    signature: int

    @property
    def labels(self) -> Dict[str, str]:
        return self.series.labels

    def iterator(self) -> Iterator[Sample]:
        return self.series.iterator()


def series_shard(
    series: Sequence[SignedSeries], index: int, num_shards: int
) -> List[SignedSeries]:
    """The ``index``-th of ``num_shards`` contiguous slices, renumbered from zero."""
    if num_shards < 1:
        raise ValueError(f"num_shards must be positive, got {num_shards}")
    if not 0 <= index < num_shards:
        raise ValueError(f"shard index {index} out of range for {num_shards} shards")
    start = index * len(series) // num_shards
    end = min((index + 1) * len(series) // num_shards, len(series))
    return [
        SignedSeries(s.series, signature)
        for signature, s in enumerate(series[start:end])
    ]


class SeriesSelector:
    """Selects series matching ``matchers`` from a querier, once.

    The querier must have a ``select(hints, matchers)`` method returning an
    iterable of series; if that iterable has a ``warnings`` attribute, its
    items are collected in :attr:`warnings`.
    """

    def __init__(
        self,
        querier: Any,
        matchers: Sequence[Matcher],
        hints: Optional[SelectHints] = None,
    ) -> None:
        self.querier = querier
        self.matchers: Tuple[Matcher, ...] = tuple(matchers)
        self.hints = hints if hints is not None else SelectHints()
        self.warnings: List[Any] = []
        self._series: Optional[List[SignedSeries]] = None

    def get_series(self, shard: int = 0, num_shards: int = 1) -> List[SignedSeries]:
        """The selected series of one shard."""
        if self._series is None:
            self._series = self._load()
        return series_shard(self._series, shard, num_shards)

    def _load(self) -> List[SignedSeries]:
        result = self.querier.select(self.hints, self.matchers)
        loaded = [SignedSeries(s, i) for i, s in enumerate(result)]
        self.warnings.extend(getattr(result, "warnings", ()))
        return loaded


class FilteredSelector:
    """Narrows the series of another selector down with a filter."""

    def __init__(self, selector: SeriesSelector, series_filter: Union[Filter, NopFilter]) -> None:
        self.selector = selector
        self.filter = series_filter
        self._series: Optional[List[SignedSeries]] = None

    @property
    def matchers(self) -> Tuple[Matcher, ...]:
        return tuple(self.selector.matchers) + tuple(self.filter.matchers)

    def get_series(self, shard: int = 0, num_shards: int = 1) -> List[SignedSeries]:
        """The filtered series of one shard."""
        if self._series is None:
            kept = (s for s in self.selector.get_series(0, 1) if self.filter.matches(s))
            self._series = [SignedSeries(s.series, i) for i, s in enumerate(kept)]
        return series_shard(self._series, shard, num_shards)


class SelectorPool:
    """Shares one selector between identical selections against a querier."""

    def __init__(self, querier: Any) -> None:
        self.querier = querier
        self._selectors: Dict[int, SeriesSelector] = {}

    def get_selector(
        self,
        mint: int,
        maxt: int,
        step: int,
        matchers: Sequence[Matcher],
        hints: SelectHints,
    ) -> SeriesSelector:
        """The pooled selector for these matchers, time range and hints."""
        key = hash_matchers(matchers, mint, maxt, hints)
        selector = self._selectors.get(key)
        if selector is None:
            selector = SeriesSelector(self.querier, matchers, hints)
            self._selectors[key] = selector
        return selector

    def get_filtered_selector(
        self,
        mint: int,
        maxt: int,
        step: int,
        matchers: Sequence[Matcher],
        filters: Sequence[Matcher],
        hints: SelectHints,
    ) -> FilteredSelector:
        """A filter over the pooled selector for these matchers."""
        base = self.get_selector(mint, maxt, step, matchers, hints)
        return FilteredSelector(base, new_filter(filters))


def hash_matchers(
    matchers: Sequence[Matcher], mint: int, maxt: int, hints: SelectHints
) -> int:
    """A 64-bit key identifying a selection."""
    digest = hashlib.blake2b(digest_size=8)

    def write(text: str) -> None:
        digest.update(text.encode("utf-8"))
        digest.update(_SEP)

    for m in matchers:
        write(m.name)
        write(str(_MATCH_TYPE_CODES[m.type]))
        write(m.value)
    write(str(mint))
    write(str(maxt))
    write(str(hints.step))
    write(hints.func)
    write(";".join(hints.grouping))
    write("true" if hints.by else "false")
    return int.from_bytes(digest.digest(), "big")