# promqlscan

`promqlscan` evaluates PromQL-style range-vector functions over time series and provides
the operators that scan those series step by step. Every timestamp and duration is an
integer number of milliseconds. You supply labelled series of `Sample`s. The operators
return batches of per-step vectors.

## Modules

- `promqlscan.samples`
  - `Value` holds a float `f` or a histogram `h`. `Sample` is a value at a timestamp `t`.
  - `Annotations` is an ordered, de-duplicated collection of `(AnnotationKind, detail)`
    pairs that evaluation adds warnings and infos to.
  - `RingBuffer` holds one series' samples inside the current window. Its `eval()`
    applies a range function to them.
  - `is_stale_nan(value)` recognises the staleness marker.
  - Histogram arithmetic raises `IncompatibleSchemaError` or `IncompatibleBoundsError`,
    both of which are subclasses of `HistogramError`.
- `promqlscan.options`
  - `QueryOptions(start, end, step=0, lookback_delta=300000, ext_lookback_delta=0,
    steps_batch=10)` describes the evaluation range. A step of 0 means an instant query.
  - `query_steps(options)` gives the total number of steps. `options.num_steps()` gives
    the number of steps per batch.
- `promqlscan.overtime` provides the `*_over_time` aggregations. These are `avg`, `sum`,
  `min`, `max`, `count`, `stddev`, `stdvar` and `mad`. The module also provides
  `changes`, `resets`, `deriv`, `predict_linear`, `linear_regression` and
  `double_exponential_smoothing`. It also has the helpers `kahan_sum_inc` and
  `quantile`.
- `promqlscan.rates` provides the following:
  - `instant_value` for irate and idelta.
  - `extrapolated_rate` for rate, increase and delta.
  - `extended_rate` for xrate, xincrease and xdelta.
  - `histogram_rate`.
- `promqlscan.functions`
  - `new_range_vector_func(name)` returns the function for a name. It raises
    `UnknownFunctionError` for an unknown name.
  - `function_names()` lists the supported names.
  - `is_ext_function(name)` is true for `xrate`, `xincrease` and `xdelta`.
- `promqlscan.rate_buffer.RateBuffer` computes `rate`, `increase` and `delta`
  incrementally across steps. It keeps only the first sample of each step, the counter
  resets and the last sample.
- `promqlscan.filter` provides the following:
  - `Matcher(MatchType, name, value)`, with the match types `=`, `!=`, `=~` and `!~`.
    Regexes must match the whole value.
  - `Filter` and `NopFilter`, with `new_filter(matchers)` to build one. A missing label
    reads as the empty string.
- `promqlscan.selectors` provides the following:
  - `SeriesSelector` selects series from a querier.
  - `FilteredSelector` narrows those series with a filter.
  - `SelectorPool` shares one selector between identical selections. Its key is
    `hash_matchers`.
  - `series_shard` splits series into contiguous, renumbered shards.
  - `MemorySeries` is an in-memory series. `SignedSeries` is a series with its
    signature.
- `promqlscan.vector_selector`
  - `VectorSelector` yields instant vectors. It uses the latest sample within the
    lookback window.
  - `select_point` and `MemoizedIterator` are the underlying lookup.
  - `StepVector` holds the values at one timestamp. Float values are in
    `sample_ids`/`samples` and histograms are in `histogram_ids`/`histograms`.
- `promqlscan.matrix_selector.MatrixSelector` applies a named range function to each
  series at every step.
  - Extended functions raise `NativeHistogramsNotSupportedError` when they meet a
    histogram.
  - `samples_processed` counts the samples that were evaluated.

## Example

A querier is any object with a `select(hints, matchers)` method that returns the matching
series:

```python
from promqlscan.filter import Matcher, MatchType
from promqlscan.matrix_selector import MatrixSelector
from promqlscan.options import QueryOptions
from promqlscan.samples import Annotations, Sample, Value
from promqlscan.selectors import MemorySeries, SelectHints, SelectorPool


class MemoryQuerier:
    def __init__(self, series):
        self.series = series

    def select(self, hints, matchers):
        return [
            s for s in self.series
            if all(m.matches(s.labels.get(m.name, "")) for m in matchers)
        ]


requests = MemorySeries(
    {"__name__": "http_requests_total", "job": "api"},
    tuple(Sample(i * 15_000, Value(float(i * 10))) for i in range(40)),
)

options = QueryOptions(start=300_000, end=600_000, step=60_000)
pool = SelectorPool(MemoryQuerier([requests]))
selector = pool.get_selector(
    0, 600_000, 60_000, [Matcher(MatchType.EQUAL, "job", "api")], SelectHints()
)

annotations = Annotations()
operator = MatrixSelector(
    selector, "rate", options, select_range=300_000, annotations=annotations
)
print(operator.series())          # [{'job': 'api'}]; the metric name is dropped
for batch in operator:
    for vector in batch:
        print(vector.t, vector.sample_ids, vector.samples)
for kind, detail in annotations:
    print(kind.value, detail)
```

Warnings are collected in the `Annotations` object and are never printed. Examples are a
range that mixes floats and histograms, or `rate` applied to a metric whose name does not
end in `_total`, `_sum`, `_count` or `_bucket`.

## Histograms

No histogram type is provided. A histogram value is any object with the following
attributes and methods:

- The attributes `schema` and `counter_reset_hint` (a `CounterResetHint`).
- The methods `copy()`, `copy_to_schema(schema)`, `uses_custom_buckets()`,
  `detect_reset(previous)` and `compact(max_empty_buckets)`.
- The in-place methods `add`, `sub`, `mul` and `div`.

`add` and `sub` raise `IncompatibleSchemaError` or `IncompatibleBoundsError` when the
bucket layouts cannot be combined. An optional `sum` attribute is checked for the stale
marker. An optional `sample_count` attribute weights the sample counts.

## What it does not do

- It has no PromQL parser or query planner. You pick the function name, the matchers and
  the ranges yourself.
- It has no storage engine or querier implementation. It has no command-line tool.
- It does not run selectors concurrently or merge their shards. Each operator handles the
  one shard it is given.

## Installation

```
pip install promqlscan
```

There are no runtime dependencies. To run the tests:

```
pip install "promqlscan[test]"
pytest
```