"""Rate, increase and delta calculations over the samples of a range window.

Histogram values are duck-typed native histograms.

Attributes:
  * ``schema``
  * ``counter_reset_hint`` (a :class:`CounterResetHint`)

Methods:
  * ``copy()``
  * ``copy_to_schema(schema)``
  * ``uses_custom_buckets()``
  * ``detect_reset(previous)``
  * ``compact(max_empty_buckets)``

The arithmetic methods ``add``, ``sub``, ``mul`` and ``div`` change the histogram
in place. ``add`` and ``sub`` raise :class:`IncompatibleSchemaError` or
:class:`IncompatibleBoundsError` when the bucket layouts cannot be combined.
"""

from __future__ import annotations

import math
from typing import Any, Optional, Sequence, Tuple

from .samples import (
    AnnotationKind,
    Annotations,
    CounterResetHint,
    IncompatibleBoundsError,
    IncompatibleSchemaError,
    Sample,
)

_GAUGE = CounterResetHint.GAUGE


def _annotations(annotations: Optional[Annotations]) -> Annotations:
    return annotations if annotations is not None else Annotations()


def _div(a: float, b: float) -> float:
    """Floating point division with IEEE results for a zero divisor."""
    try:
        return a / b
    except ZeroDivisionError:
        if a == 0 or math.isnan(a):
            return math.nan
        return math.copysign(math.inf, a) * math.copysign(1.0, b)


def _trunc_div(a: int, b: int) -> int:
    """Integer division truncating toward zero."""
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


def _note_histogram_error(exc: Exception, ann: Annotations) -> None:
    if isinstance(exc, IncompatibleSchemaError):
        ann.add(AnnotationKind.MIXED_EXPONENTIAL_CUSTOM_HISTOGRAMS)
    else:
        ann.add(AnnotationKind.INCOMPATIBLE_CUSTOM_BUCKETS_HISTOGRAMS)


def _has_mixed_types(samples: Sequence[Sample]) -> bool:
    has_float = any(s.v.h is None for s in samples)
    has_hist = any(s.v.h is not None for s in samples)
    return has_float and has_hist


def _last_two(samples: Sequence[Sample]) -> list:
    """The two samples irate/idelta compare, oldest first."""
    pair: list = []
    for s in samples:
        if s.v.h is not None:
            continue
        pair = [pair[1], s] if len(pair) == 2 else pair + [s]

    seen = 0
    for s in reversed(samples):
        if seen >= 2:
            break
        if s.v.h is None:
            continue
        if not pair:
            pair = [s]
        elif len(pair) == 1:
            pair = [s, pair[0]] if s.t < pair[0].t else [pair[0], s]
        elif s.t < pair[0].t:
            pass  # older than both, discard
        elif s.t > pair[1].t:
            pair = [pair[1], s]
        else:
            # Also keeps a correct order for equal timestamps.
            pair = [s, pair[1]]
        seen += 1
    return pair


def instant_value(
    samples: Sequence[Sample],
    is_rate: bool,
    annotations: Optional[Annotations] = None,
) -> Tuple[float, Any, bool]:
    """irate (``is_rate``) or idelta from the last two samples of the window."""
    ann = _annotations(annotations)
    if len(samples) < 2:
        return 0.0, None, False

    first, second = _last_two(samples)
    sampled_interval = second.t - first.t
    if sampled_interval == 0:
        return 0.0, None, False

    result_f = second.v.f
    result_h = None
    if first.v.h is None and second.v.h is None:
        if not is_rate or not second.v.f < first.v.f:
            # Gauge, counter without reset, or counter with a NaN value.
            result_f = second.v.f - first.v.f
        # On a counter reset the result stays at the newest value.
    elif first.v.h is not None and second.v.h is not None:
        result_h = second.v.h.copy()
        hints = (second.v.h.counter_reset_hint, first.v.h.counter_reset_hint)
        if is_rate and _GAUGE in hints:
            ann.add(AnnotationKind.NATIVE_HISTOGRAM_NOT_COUNTER)
        if not is_rate and any(hint is not _GAUGE for hint in hints):
            ann.add(AnnotationKind.NATIVE_HISTOGRAM_NOT_GAUGE)
        if not is_rate or not second.v.h.detect_reset(first.v.h):
            try:
                result_h.sub(first.v.h)
            except (IncompatibleSchemaError, IncompatibleBoundsError) as exc:
                _note_histogram_error(exc, ann)
                return 0.0, None, False
        result_h.counter_reset_hint = _GAUGE
        result_h.compact(0)
    else:
        ann.add(AnnotationKind.MIXED_FLOATS_HISTOGRAMS)
        return 0.0, None, False

    if is_rate:
        seconds = sampled_interval / 1000
        if result_h is None:
            result_f /= seconds
        else:
            result_h.div(seconds)
    return result_f, result_h, True


def extrapolated_rate(
    samples: Sequence[Sample],
    num_samples: int,
    is_counter: bool,
    is_rate: bool,
    step_time: int,
    select_range: int,
    offset: int,
    annotations: Optional[Annotations] = None,
) -> Tuple[float, Any, bool]:
    """rate, increase or delta, extrapolated toward the window boundaries.

    Counter resets are compensated when ``is_counter`` is set; the result is
    per second when ``is_rate`` is set.
    """
    ann = _annotations(annotations)
    range_start = step_time - (select_range + offset)
    range_end = step_time - offset
    result_value = 0.0
    result_histogram = None

    if _has_mixed_types(samples):
        ann.add(AnnotationKind.MIXED_FLOATS_HISTOGRAMS)
        return 0.0, None, False

    first, last = samples[0], samples[-1]
    if first.v.h is not None:
        result_histogram = histogram_rate(samples, is_counter, ann)
    else:
        result_value = last.v.f - first.v.f
        if is_counter:
            last_value = 0.0
            for s in samples:
                if s.v.f < last_value:
                    result_value += last_value
                last_value = s.v.f

    duration_to_start = (first.t - range_start) / 1000
    duration_to_end = (range_end - last.t) / 1000
    sampled_interval = (last.t - first.t) / 1000
    average_between = _div(sampled_interval, float(num_samples - 1))

    # Samples within 110% of the average spacing from a boundary are
    # extrapolated all the way to it; otherwise the series is assumed to
    # start or end inside the range, half an average spacing away.
    threshold = average_between * 1.1
    extrapolate_to = sampled_interval

    if duration_to_start >= threshold:
        duration_to_start = average_between / 2
    if is_counter and result_value > 0 and first.v.f >= 0:
        # A counter cannot go below zero, so do not extrapolate past the
        # point where it would have been zero.
        duration_to_zero = sampled_interval * _div(first.v.f, result_value)
        if duration_to_zero < duration_to_start:
            duration_to_start = duration_to_zero
    extrapolate_to += duration_to_start

    if duration_to_end >= threshold:
        duration_to_end = average_between / 2
    extrapolate_to += duration_to_end

    factor = _div(extrapolate_to, sampled_interval)
    if is_rate:
        factor = _div(factor, select_range / 1000)
    if result_histogram is None:
        result_value *= factor
    else:
        result_histogram.mul(factor)

    if first.v.h is not None and result_histogram is None:
        return 0.0, None, False
    return result_value, result_histogram, True


def extended_rate(
    samples: Sequence[Sample],
    is_counter: bool,
    is_rate: bool,
    step_time: int,
    select_range: int,
    offset: int,
    metric_appeared_ts: int,
    annotations: Optional[Annotations] = None,
) -> Tuple[float, Any]:
    """xrate, xincrease or xdelta, using the last sample before the range start."""
    ann = _annotations(annotations)
    range_start = step_time - (select_range + offset)
    range_end = step_time - offset
    is_xincrease = is_counter and not is_rate

    if samples[0].v.h is not None:
        return 0.0, histogram_rate(samples, is_counter, ann)

    same_values = all(a.v.f == b.v.f for a, b in zip(samples, samples[1:]))

    # Treat a single flat value as growth from zero for xincrease, but only
    # while the metric has just appeared.
    until = select_range + metric_appeared_ts
    if is_xincrease and same_values and step_time - offset <= until:
        return samples[0].v.f, None

    last = samples[-1]
    sampled_interval = float(last.t - samples[0].t)
    average_between = _div(sampled_interval, float(len(samples) - 1))

    first_point = 0
    if not is_xincrease and float(range_start - samples[0].t) > average_between:
        # The point before the range is too far away from its start.
        if len(samples) < 3:
            return 0.0, None
        first_point = 1
        sampled_interval = float(last.t - samples[1].t)
        average_between = _div(sampled_interval, float(len(samples) - 2))

    counter_correction = 0.0
    if is_counter:
        last_value = 0.0
        for s in samples[first_point:]:
            if s.v.f < last_value:
                counter_correction += last_value
            last_value = s.v.f
    result_value = last.v.f - samples[first_point].v.f + counter_correction

    duration_to_end = float(range_end - last.t)
    if not is_xincrease:
        # Points covering the whole range are scaled to the requested range.
        if samples[first_point].t <= range_start and duration_to_end < average_between:
            adjust_to_range = float(_trunc_div(select_range, 1000))
            result_value *= _div(adjust_to_range, sampled_interval / 1000)

    if is_rate:
        result_value = _div(result_value, float(_trunc_div(select_range, 1000)))
    return result_value, None


def histogram_rate(
    samples: Sequence[Sample],
    is_counter: bool,
    annotations: Optional[Annotations] = None,
) -> Any:
    """Histogram increase across the window, or None when it is undefined.

    The first sample must hold a histogram.
    """
    ann = _annotations(annotations)
    if len(samples) < 2:
        return None

    prev = samples[0].v.h
    using_custom = prev.uses_custom_buckets()
    last = samples[-1].v.h
    if last is None:
        ann.add(AnnotationKind.MIXED_FLOATS_HISTOGRAMS)
        return None

    if is_counter and _GAUGE in (prev.counter_reset_hint, last.counter_reset_hint):
        ann.add(AnnotationKind.NATIVE_HISTOGRAM_NOT_COUNTER)

    # After a reset between the first and second sample the first one is
    # irrelevant, so its bucket layout must not cause incompatibilities.
    if is_counter:
        second = samples[1].v.h
        if second is not None and second.detect_reset(prev):
            prev = second.copy()
            prev.mul(0.0)
            using_custom = second.uses_custom_buckets()

    if last.uses_custom_buckets() != using_custom:
        ann.add(AnnotationKind.MIXED_EXPONENTIAL_CUSTOM_HISTOGRAMS)
        return None

    min_schema = min(last.schema, prev.schema)
    for sample in samples[1:-1]:
        curr = sample.v.h
        if curr is None:
            ann.add(AnnotationKind.MIXED_FLOATS_HISTOGRAMS)
            return None
        if not is_counter:
            continue
        if curr.counter_reset_hint is _GAUGE:
            ann.add(AnnotationKind.NATIVE_HISTOGRAM_NOT_COUNTER)
        min_schema = min(min_schema, curr.schema)
        if curr.uses_custom_buckets() != using_custom:
            ann.add(AnnotationKind.MIXED_EXPONENTIAL_CUSTOM_HISTOGRAMS)
            return None

    h = last.copy_to_schema(min_schema)
    try:
        h.sub(prev)
        if is_counter:
            for sample in samples[1:]:
                curr = sample.v.h
                if curr.detect_reset(prev):
                    h.add(prev)
                prev = curr
    except (IncompatibleSchemaError, IncompatibleBoundsError) as exc:
        _note_histogram_error(exc, ann)
        return None

    if not is_counter and (
        samples[0].v.h.counter_reset_hint is not _GAUGE
        or samples[-1].v.h.counter_reset_hint is not _GAUGE
    ):
        ann.add(AnnotationKind.NATIVE_HISTOGRAM_NOT_GAUGE)

    h.counter_reset_hint = _GAUGE
    h.compact(0)
    return h