import dataclasses
from dataclasses import dataclass
from typing import Optional

import pytest

from promqlscan.rates import (
    extended_rate,
    extrapolated_rate,
    histogram_rate,
    instant_value,
)
from promqlscan.samples import (
    AnnotationKind,
    Annotations,
    CounterResetHint,
    IncompatibleBoundsError,
    IncompatibleSchemaError,
    Sample,
    Value,
)

CUSTOM_SCHEMA = -53


@dataclass
class FakeHistogram:
    count: float = 0.0
    sum: float = 0.0
    schema: int = 0
    custom_values: Optional[tuple] = None
    counter_reset_hint: CounterResetHint = CounterResetHint.UNKNOWN

    def uses_custom_buckets(self):
        return self.schema == CUSTOM_SCHEMA

    def copy(self):
        return dataclasses.replace(self)

    def copy_to_schema(self, schema):
        return dataclasses.replace(self, schema=schema)

    def detect_reset(self, previous):
        return self.count < previous.count

    def _check(self, other):
        if self.uses_custom_buckets() != other.uses_custom_buckets():
            raise IncompatibleSchemaError()
        if self.uses_custom_buckets() and self.custom_values != other.custom_values:
            raise IncompatibleBoundsError()

    def sub(self, other):
        self._check(other)
        self.count -= other.count
        self.sum -= other.sum
        return self

    def add(self, other):
        self._check(other)
        self.count += other.count
        self.sum += other.sum
        return self

    def mul(self, factor):
        self.count *= factor
        self.sum *= factor
        return self

    def div(self, factor):
        self.count /= factor
        self.sum /= factor
        return self

    def compact(self, max_empty):
        return self


def fs(t, f):
    return Sample(t, Value(f))


def hs(t, count, **kwargs):
    return Sample(t, Value(h=FakeHistogram(count=count, sum=count, **kwargs)))


# instant_value


def test_instant_value_needs_two_samples():
    assert instant_value([fs(0, 1.0)], True) == (0.0, None, False)


def test_idelta_is_difference_of_last_two_floats():
    samples = [fs(0, 3.0), fs(1000, 7.0), fs(2000, 4.0)]
    f, h, ok = instant_value(samples, False)
    assert ok and h is None
    assert f == samples[-1].v.f - samples[-2].v.f


def test_irate_equals_idelta_over_one_second_without_reset():
    samples = [fs(0, 3.0), fs(1000, 7.0)]
    rate, _, _ = instant_value(samples, True)
    delta, _, _ = instant_value(samples, False)
    assert rate == delta


def test_irate_on_counter_reset_uses_newest_value():
    samples = [fs(0, 10.0), fs(2000, 4.0)]
    f, _, ok = instant_value(samples, True)
    assert ok
    assert f == pytest.approx(samples[-1].v.f / 2)


def test_instant_value_equal_timestamps_not_ok():
    assert instant_value([fs(1000, 1.0), fs(1000, 2.0)], False)[2] is False


def test_instant_value_mixed_float_histogram():
    ann = Annotations()
    result = instant_value([fs(0, 1.0), hs(1000, 5.0)], False, ann)
    assert result == (0.0, None, False)
    assert AnnotationKind.MIXED_FLOATS_HISTOGRAMS in ann


def test_idelta_histograms_warns_not_gauge():
    ann = Annotations()
    samples = [hs(0, 4.0), hs(1000, 9.0)]
    f, h, ok = instant_value(samples, False, ann)
    assert ok
    assert h.count == samples[1].v.h.count - samples[0].v.h.count
    assert h.counter_reset_hint is CounterResetHint.GAUGE
    assert AnnotationKind.NATIVE_HISTOGRAM_NOT_GAUGE in ann
    # the inputs are left untouched
    assert samples[1].v.h.count == 9.0


def test_irate_gauge_histogram_warns_not_counter():
    ann = Annotations()
    gauge = CounterResetHint.GAUGE
    samples = [
        hs(0, 4.0, counter_reset_hint=gauge),
        hs(1000, 9.0, counter_reset_hint=gauge),
    ]
    _, h, ok = instant_value(samples, True, ann)
    assert ok and h is not None
    assert AnnotationKind.NATIVE_HISTOGRAM_NOT_COUNTER in ann


def test_idelta_incompatible_schema():
    ann = Annotations()
    samples = [hs(0, 4.0, schema=CUSTOM_SCHEMA), hs(1000, 9.0)]
    assert instant_value(samples, False, ann) == (0.0, None, False)
    assert AnnotationKind.MIXED_EXPONENTIAL_CUSTOM_HISTOGRAMS in ann


# extrapolated_rate


def _counter_samples(values):
    return [fs(i * 15000, v) for i, v in enumerate(values)]


def test_delta_covering_whole_range_is_raw_difference():
    samples = _counter_samples([0.0, 1.0, 2.0, 3.0, 4.0])
    f, h, ok = extrapolated_rate(samples, len(samples), False, False, 60000, 60000, 0)
    assert ok and h is None
    assert f == pytest.approx(samples[-1].v.f - samples[0].v.f)


def test_rate_is_increase_per_second():
    samples = _counter_samples([10.0, 20.0, 30.0, 40.0, 50.0])
    rate, _, _ = extrapolated_rate(samples, len(samples), True, True, 60000, 60000, 0)
    inc, _, _ = extrapolated_rate(samples, len(samples), True, False, 60000, 60000, 0)
    assert rate == pytest.approx(inc / 60)


def test_increase_compensates_counter_reset():
    with_reset = _counter_samples([5.0, 10.0, 2.0, 7.0])
    without_reset = _counter_samples([5.0, 10.0, 12.0, 17.0])
    a, _, _ = extrapolated_rate(with_reset, 4, True, False, 45000, 60000, 0)
    b, _, _ = extrapolated_rate(without_reset, 4, True, False, 45000, 60000, 0)
    assert a == pytest.approx(b)


def test_delta_extrapolates_beyond_samples():
    samples = [fs(10000, 1.0), fs(20000, 2.0), fs(30000, 3.0)]
    f, _, ok = extrapolated_rate(samples, 3, False, False, 60000, 60000, 0)
    assert ok
    assert f > samples[-1].v.f - samples[0].v.f


def test_extrapolated_rate_mixed():
    ann = Annotations()
    result = extrapolated_rate([fs(0, 1.0), hs(1000, 2.0)], 2, True, True, 1000, 1000, 0, ann)
    assert result == (0.0, None, False)
    assert AnnotationKind.MIXED_FLOATS_HISTOGRAMS in ann


def test_extrapolated_rate_histograms():
    samples = [hs(0, 10.0), hs(60000, 30.0)]
    f, h, ok = extrapolated_rate(samples, 2, True, False, 60000, 60000, 0)
    assert ok
    assert h.count == pytest.approx(samples[1].v.h.count - samples[0].v.h.count)
    assert h.counter_reset_hint is CounterResetHint.GAUGE


def test_extrapolated_rate_histogram_failure_not_ok():
    samples = [hs(0, 10.0, schema=CUSTOM_SCHEMA), hs(60000, 30.0)]
    assert extrapolated_rate(samples, 2, True, False, 60000, 60000, 0) == (0.0, None, False)


# extended_rate


def test_xincrease_single_value_after_appearance():
    samples = [fs(5000, 7.0)]
    f, h = extended_rate(samples, True, False, 10000, 60000, 0, 5000)
    assert f == samples[0].v.f and h is None


def test_xrate_is_xincrease_per_second():
    samples = _counter_samples([0.0, 15.0, 30.0, 45.0, 60.0])
    rate, _ = extended_rate(samples, True, True, 60000, 60000, 0, 0)
    inc, _ = extended_rate(samples, True, False, 60000, 60000, 0, 0)
    assert rate == pytest.approx(inc / 60)


def test_xdelta_drops_far_point_before_range():
    samples = [fs(-100000, 0.0), fs(10000, 5.0), fs(20000, 6.0)]
    f, h = extended_rate(samples, False, False, 60000, 60000, 0, -100000)
    assert h is None
    assert f == samples[2].v.f - samples[1].v.f


def test_extended_rate_histograms_return_histogram():
    samples = [hs(0, 3.0), hs(30000, 8.0)]
    f, h = extended_rate(samples, True, False, 60000, 60000, 0, 0)
    assert f == 0.0
    assert h.count == samples[1].v.h.count - samples[0].v.h.count


# histogram_rate


def test_histogram_rate_single_point():
    assert histogram_rate([hs(0, 1.0)], True) is None


def test_histogram_rate_last_float_is_mixed():
    ann = Annotations()
    assert histogram_rate([hs(0, 1.0), fs(1000, 2.0)], True, ann) is None
    assert AnnotationKind.MIXED_FLOATS_HISTOGRAMS in ann


def test_histogram_rate_middle_float_is_mixed():
    ann = Annotations()
    assert histogram_rate([hs(0, 1.0), fs(1000, 2.0), hs(2000, 3.0)], False, ann) is None
    assert AnnotationKind.MIXED_FLOATS_HISTOGRAMS in ann


def test_histogram_rate_compensates_reset():
    with_reset = [hs(0, 10.0), hs(1000, 20.0), hs(2000, 5.0), hs(3000, 15.0)]
    without = [hs(0, 10.0), hs(1000, 20.0), hs(2000, 25.0), hs(3000, 35.0)]
    assert histogram_rate(with_reset, True).count == histogram_rate(without, True).count


def test_histogram_rate_reset_after_first_ignores_first():
    samples = [hs(0, 100.0), hs(1000, 5.0), hs(2000, 8.0)]
    h = histogram_rate(samples, True)
    assert h.count == samples[-1].v.h.count


def test_histogram_rate_uses_min_schema():
    samples = [hs(0, 1.0, schema=3), hs(1000, 2.0, schema=1), hs(2000, 3.0, schema=2)]
    assert histogram_rate(samples, True).schema == 1


def test_histogram_rate_mixed_custom_buckets():
    ann = Annotations()
    samples = [hs(0, 1.0), hs(1000, 2.0, schema=CUSTOM_SCHEMA)]
    assert histogram_rate(samples, True, ann) is None
    assert AnnotationKind.MIXED_EXPONENTIAL_CUSTOM_HISTOGRAMS in ann


def test_histogram_rate_incompatible_bounds():
    ann = Annotations()
    samples = [
        hs(0, 1.0, schema=CUSTOM_SCHEMA, custom_values=(1.0,)),
        hs(1000, 2.0, schema=CUSTOM_SCHEMA, custom_values=(2.0,)),
    ]
    assert histogram_rate(samples, True, ann) is None
    assert AnnotationKind.INCOMPATIBLE_CUSTOM_BUCKETS_HISTOGRAMS in ann


def test_histogram_delta_warns_not_gauge():
    ann = Annotations()
    h = histogram_rate([hs(0, 1.0), hs(1000, 4.0)], False, ann)
    assert h.counter_reset_hint is CounterResetHint.GAUGE
    assert AnnotationKind.NATIVE_HISTOGRAM_NOT_GAUGE in ann