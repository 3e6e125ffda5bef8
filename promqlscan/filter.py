"""Label matchers and series filters built from them."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Sequence, Tuple, Union


class MatchType(enum.Enum):
    """Kind of comparison a matcher performs."""

    EQUAL = "="
    NOT_EQUAL = "!="
    REGEX = "=~"
    NOT_REGEX = "!~"


@dataclass(frozen=True)
class Matcher:
    """Compares the value of one label; regexes must match the whole value."""

    type: MatchType
    name: str
    value: str
    _pattern: Any = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        pattern = None
        if self.type in (MatchType.REGEX, MatchType.NOT_REGEX):
            try:
                pattern = re.compile(self.value, re.DOTALL)
            except re.error as exc:
                raise ValueError(f"invalid regular expression {self.value!r}: {exc}") from exc
        object.__setattr__(self, "_pattern", pattern)

    def matches(self, value: str) -> bool:
        """Return True if a label value satisfies this matcher."""
        if self.type is MatchType.EQUAL:
            return value == self.value
        if self.type is MatchType.NOT_EQUAL:
            return value != self.value
        found = self._pattern.fullmatch(value) is not None
        return found if self.type is MatchType.REGEX else not found


    def __str__(self) -> str:
        return f'{self.name}{self.type.value}"{self.value}"'


class NopFilter:
    """A filter with no matchers, so every series passes it."""

    matchers: Tuple[Matcher, ...] = ()

    def matches(self, series: Any) -> bool:
        """Return True unless one of the (absent) matchers rejects the series."""
        return all(
            m.matches(series.labels.get(m.name, "")) for m in self.matchers
        )


class Filter:
    """Keeps series whose labels satisfy every matcher.

    A series is any object with a ``labels`` mapping; a missing label
    reads as the empty string.
    """

    def __init__(self, matchers: Iterable[Matcher]) -> None:
        self.matchers: Tuple[Matcher, ...] = tuple(matchers)
        self._by_name: Dict[str, List[Matcher]] = {}
        for m in self.matchers:
            self._by_name.setdefault(m.name, []).append(m)

    def matches(self, series: Any) -> bool:
        labels = series.labels
        return all(
            m.matches(labels.get(name, ""))
            for name, group in self._by_name.items()
            for m in group
        )


def new_filter(matchers: Sequence[Matcher]) -> Union[Filter, NopFilter]:
    """Build a filter, or a pass-through one when there are no matchers."""
    if not matchers:
        return NopFilter()
    return Filter(matchers)