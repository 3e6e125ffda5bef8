"""Query time range and stepping options."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class QueryOptions:
    """Evaluation range of a query; all times are in milliseconds.

    A step of zero denotes an instant query evaluated once at ``start``.
    ``steps_batch`` bounds how many steps an operator produces per batch.
    """

    start: int
    end: int
    step: int = 0
    lookback_delta: int = 5 * 60 * 1000
    ext_lookback_delta: int = 0
    steps_batch: int = 10

    def __post_init__(self) -> None:
        if self.step < 0:
            raise ValueError(f"step must not be negative, got {self.step}")
        if self.end < self.start:
            raise ValueError(f"end {self.end} is before start {self.start}")
        if self.steps_batch < 1:
            raise ValueError(f"steps_batch must be positive, got {self.steps_batch}")
        if self.lookback_delta < 0 or self.ext_lookback_delta < 0:
            raise ValueError("lookback deltas must not be negative")

    def num_steps(self) -> int:
        """Number of steps evaluated together in one batch."""
        return min(query_steps(self), self.steps_batch)


def query_steps(options: QueryOptions) -> int:
    """Total number of evaluation steps of the query."""
    # An instant query is a range query with exactly one step.
    if options.step == 0:
        return 1
    return (options.end - options.start) // options.step + 1