"""Aggregations over the samples of a range window (the *_over_time family)."""

from __future__ import annotations

import heapq
import math
from typing import List, Optional, Sequence, Tuple

from .samples import AnnotationKind, Annotations, Sample


def _annotations(annotations: Optional[Annotations]) -> Annotations:
    return annotations if annotations is not None else Annotations()


def _nan_first(x: float) -> Tuple[bool, float]:
    return (not math.isnan(x), x)


def _sorted_floats(values: Sequence[float]) -> List[float]:
    return sorted(values, key=_nan_first)


def kahan_sum_inc(inc: float, total: float, c: float) -> Tuple[float, float]:
    """Add ``inc`` to a compensated sum; returns the new sum and compensation."""
    t = total + inc
    if math.isinf(t):
        c = 0.0
    elif abs(total) >= abs(inc):
        c += (total - t) + inc
    else:
        c += (inc - t) + total
    return t, c


def quantile(q: float, values: Sequence[float]) -> float:
    """The ``q``-quantile of ``values`` with linear interpolation between ranks."""
    if not values or math.isnan(q):
        return math.nan
    if q < 0:
        return -math.inf
    if q > 1:
        return math.inf
    points = _sorted_floats(values)
    n = float(len(points))
    rank = q * (n - 1)
    lower = max(0.0, math.floor(rank))
    upper = min(n - 1, lower + 1)
    weight = rank - math.floor(rank)
    return points[int(lower)] * (1 - weight) + points[int(upper)] * weight


def _lin_interp(p: float, ordered: Sequence[float]) -> float:
    # Linearly interpolated quantile of sorted, unweighted data.
    target = p * len(ordered)
    for i, x in enumerate(ordered, start=1):
        if i >= target:
            if i == 1:
                return ordered[0]
            t = i - target
            return t * ordered[i - 2] + (1 - t) * x
    raise ValueError("quantile of empty data")


def _is_float(sample: Sample) -> bool:
    return sample.v.h is None


def mad_over_time(
    samples: Sequence[Sample], annotations: Optional[Annotations] = None
) -> Tuple[float, bool]:
    """Median absolute deviation of the float samples."""
    ann = _annotations(annotations)
    values: List[float] = []
    for s in samples:
        if s.v.h is not None:
            if values:
                ann.add(AnnotationKind.HISTOGRAM_IGNORED_IN_MIXED_RANGE)
            continue
        values.append(s.v.f)
    if not values:
        return 0.0, False
    values = _sorted_floats(values)
    median = _lin_interp(0.5, values)
    deviations = _sorted_floats([abs(v - median) for v in values])
    return _lin_interp(0.5, deviations), True


def _extreme_over_time(
    samples: Sequence[Sample],
    annotations: Optional[Annotations],
    better,
) -> Tuple[float, int, bool]:
    if not samples:
        raise ValueError("no samples in range")
    ann = _annotations(annotations)
    resv, rest = samples[0].v.f, samples[0].t
    found_float = False
    for s in samples:
        if s.v.h is not None:
            if found_float:
                ann.add(AnnotationKind.HISTOGRAM_IGNORED_IN_MIXED_RANGE)
        else:
            found_float = True
        if better(s.v.f, resv) or math.isnan(resv):
            resv, rest = s.v.f, s.t
    if not found_float:
        return 0.0, 0, False
    return resv, rest, True


def max_over_time(
    samples: Sequence[Sample], annotations: Optional[Annotations] = None
) -> Tuple[float, int, bool]:
    """Largest float value and its timestamp; the latest wins on ties."""
    return _extreme_over_time(samples, annotations, lambda a, b: a >= b)


def min_over_time(
    samples: Sequence[Sample], annotations: Optional[Annotations] = None
) -> Tuple[float, int, bool]:
    """Smallest float value and its timestamp; the latest wins on ties."""
    return _extreme_over_time(samples, annotations, lambda a, b: a <= b)


def count_over_time(samples: Sequence[Sample]) -> float:
    """Number of samples in the window."""
    return float(len(samples))


def avg_over_time(samples: Sequence[Sample]) -> float:
    """Mean of the float values, switching to an incremental mean on overflow."""
    if not samples:
        raise ValueError("no samples in range")
    total, count = samples[0].v.f, 1.0
    mean = c = 0.0
    incremental = False
    for count_int, s in enumerate(samples[1:], start=2):
        count = float(count_int)
        if not incremental:
            new_sum, new_c = kahan_sum_inc(s.v.f, total, c)
            if not math.isinf(new_sum):
                total, c = new_sum, new_c
                continue
            incremental = True
            mean = total / (count - 1)
            c /= count - 1
        q = (count - 1) / count
        mean, c = kahan_sum_inc(s.v.f / count, q * mean, q * c)
    if incremental:
        return mean + c
    return total / count + c / count


def sum_over_time(
    samples: Sequence[Sample], annotations: Optional[Annotations] = None
) -> float:
    """Compensated sum of the float values."""
    ann = _annotations(annotations)
    total = c = 0.0
    for s in samples:
        if s.v.h is not None:
            ann.add(AnnotationKind.HISTOGRAM_IGNORED_IN_MIXED_RANGE)
        total, c = kahan_sum_inc(s.v.f, total, c)
    if math.isinf(total):
        return total
    return total + c


def _variance(
    samples: Sequence[Sample], annotations: Optional[Annotations]
) -> Tuple[float, bool]:
    ann = _annotations(annotations)
    count = mean = c_mean = aux = c_aux = 0.0
    found_float = False
    for s in samples:
        if s.v.h is None:
            found_float = True
        elif found_float:
            ann.add(AnnotationKind.HISTOGRAM_IGNORED_IN_MIXED_RANGE)
            continue
        count += 1
        delta = s.v.f - (mean + c_mean)
        mean, c_mean = kahan_sum_inc(delta / count, mean, c_mean)
        aux, c_aux = kahan_sum_inc(delta * (s.v.f - (mean + c_mean)), aux, c_aux)
    if not found_float:
        return 0.0, False
    return (aux + c_aux) / count, True


def stddev_over_time(
    samples: Sequence[Sample], annotations: Optional[Annotations] = None
) -> Tuple[float, bool]:
    """Population standard deviation of the float values."""
    variance, ok = _variance(samples, annotations)
    return (math.sqrt(variance), True) if ok else (0.0, False)


def stdvar_over_time(
    samples: Sequence[Sample], annotations: Optional[Annotations] = None
) -> Tuple[float, bool]:
    """Population variance of the float values."""
    return _variance(samples, annotations)


def changes(samples: Sequence[Sample]) -> float:
    """Number of times the value changed between consecutive samples."""
    if not samples:
        raise ValueError("no samples in range")
    count = 0
    prev = samples[0]
    for cur in samples[1:]:
        if prev.v.h is None and cur.v.h is None:
            if cur.v.f != prev.v.f and not (
                math.isnan(cur.v.f) and math.isnan(prev.v.f)
            ):
                count += 1
        elif (prev.v.h is None) != (cur.v.h is None):
            count += 1
        elif not cur.v.h == prev.v.h:
            count += 1
        prev = cur
    return float(count)


def resets(samples: Sequence[Sample]) -> float:
    """Number of counter resets, float and histogram samples merged by time."""
    float_points = [s for s in samples if s.v.h is None]
    hist_points = [s for s in samples if s.v.h is not None]
    count = 0
    prev: Optional[Sample] = None
    for cur in heapq.merge(float_points, hist_points, key=lambda s: s.t):
        if prev is not None:
            if prev.v.h is None and cur.v.h is None:
                if cur.v.f < prev.v.f:
                    count += 1
            elif (prev.v.h is None) != (cur.v.h is None):
                count += 1
            elif cur.v.h.detect_reset(prev.v.h):
                count += 1
        prev = cur
    return float(count)


def _float_points(
    samples: Sequence[Sample], annotations: Optional[Annotations]
) -> List[Sample]:
    ann = _annotations(annotations)
    floats: List[Sample] = []
    for s in samples:
        if s.v.h is None:
            floats.append(s)
        elif floats:
            ann.add(AnnotationKind.HISTOGRAM_IGNORED_IN_MIXED_RANGE)
    return floats


def deriv(
    samples: Sequence[Sample], annotations: Optional[Annotations] = None
) -> Tuple[float, bool]:
    """Per-second slope of a least-squares fit through the float samples."""
    floats = _float_points(samples, annotations)
    if len(floats) < 2:
        return 0.0, False
    # Intercept near the data keeps the regression numerically stable.
    slope, _ = linear_regression(floats, floats[0].t)
    return slope, True


def predict_linear(
    samples: Sequence[Sample],
    duration: float,
    step_time: int,
    annotations: Optional[Annotations] = None,
) -> Tuple[float, bool]:
    """Value predicted ``duration`` seconds after ``step_time`` by a linear fit."""
    floats = _float_points(samples, annotations)
    if len(floats) < 2:
        return 0.0, False
    slope, intercept = linear_regression(floats, step_time)
    return slope * duration + intercept, True


def linear_regression(
    samples: Sequence[Sample], intercept_time: int
) -> Tuple[float, float]:
    """Least-squares slope (per second) and intercept at ``intercept_time``."""
    if not samples:
        raise ValueError("no samples in range")
    n = sum_x = c_x = sum_y = c_y = sum_xy = c_xy = sum_x2 = c_x2 = 0.0
    init_y = samples[0].v.f
    const_y = True
    for i, s in enumerate(samples):
        if s.v.h is not None:
            continue
        if const_y and i > 0 and s.v.f != init_y:
            const_y = False
        n += 1.0
        x = (s.t - intercept_time) / 1e3
        sum_x, c_x = kahan_sum_inc(x, sum_x, c_x)
        sum_y, c_y = kahan_sum_inc(s.v.f, sum_y, c_y)
        sum_xy, c_xy = kahan_sum_inc(x * s.v.f, sum_xy, c_xy)
        sum_x2, c_x2 = kahan_sum_inc(x * x, sum_x2, c_x2)
    if const_y:
        if math.isinf(init_y):
            return math.nan, math.nan
        return 0.0, init_y
    sum_x += c_x
    sum_y += c_y
    sum_xy += c_xy
    sum_x2 += c_x2
    cov_xy = sum_xy - sum_x * sum_y / n
    var_x = sum_x2 - sum_x * sum_x / n
    slope = cov_xy / var_x
    intercept = sum_y / n - slope * sum_x / n
    return slope, intercept


def double_exponential_smoothing(
    samples: Sequence[Sample], sf: float, tf: float
) -> Tuple[float, bool]:
    """Holt's linear smoothing with smoothing factor ``sf`` and trend factor ``tf``."""
    if sf <= 0 or sf >= 1 or tf <= 0 or tf >= 1:
        return 0.0, False
    if len(samples) < 2:
        return 0.0, False
    if any(s.v.h is not None for s in samples):
        return 0.0, False
    s0 = 0.0
    s1 = samples[0].v.f
    b = samples[1].v.f - samples[0].v.f
    for i, s in enumerate(samples[1:], start=1):
        x = sf * s.v.f
        b = calc_trend_value(i - 1, tf, s0, s1, b)
        y = (1 - sf) * (s1 + b)
        s0, s1 = s1, x + y
    return s1, True


def calc_trend_value(i: int, tf: float, s0: float, s1: float, b: float) -> float:
    """Trend at index ``i`` from the last two smoothed values and the previous trend."""
    if i == 0:
        return b
    return tf * (s1 - s0) + (1 - tf) * b


def filter_float_only_samples(samples: Sequence[Sample]) -> Tuple[List[Sample], int]:
    """Split off the float samples; returns them and the number of histograms."""
    floats = [s for s in samples if s.v.h is None]
    return floats, len(samples) - len(floats)