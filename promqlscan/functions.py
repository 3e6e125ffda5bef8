"""Range vector functions evaluated over the samples of one window."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Tuple

from . import overtime
from .rates import extended_rate, extrapolated_rate, instant_value
from .samples import (
    AnnotationKind,
    FunctionArgs,
    FunctionCall,
    IncompatibleBoundsError,
    IncompatibleSchemaError,
)

Result = Tuple[float, Any, bool]

_NOTHING: Result = (0.0, None, False)
_EXT_FUNCTIONS = frozenset({"xrate", "xincrease", "xdelta"})


class UnknownFunctionError(ValueError):
    """Raised when a range function name is not known."""

    def __init__(self, name: str) -> None:
        super().__init__(f"unknown function: {name}")
        self.name = name


def _note_histogram_error(exc: Exception, args: FunctionArgs) -> None:
    if isinstance(exc, IncompatibleSchemaError):
        args.annotations.add(AnnotationKind.MIXED_EXPONENTIAL_CUSTOM_HISTOGRAMS)
    else:
        args.annotations.add(AnnotationKind.INCOMPATIBLE_CUSTOM_BUCKETS_HISTOGRAMS)


def _mixed(args: FunctionArgs) -> bool:
    has_hist = any(s.v.h is not None for s in args.samples)
    has_float = any(s.v.h is None for s in args.samples)
    if has_hist and has_float:
        args.annotations.add(AnnotationKind.MIXED_FLOATS_HISTOGRAMS)
        return True
    return False


def _sum_over_time(args: FunctionArgs) -> Result:
    if not args.samples or _mixed(args):
        return _NOTHING
    first = args.samples[0]
    if first.v.h is not None:
        total = first.v.h.copy()
        try:
            for s in args.samples[1:]:
                total.add(s.v.h)
        except (IncompatibleSchemaError, IncompatibleBoundsError) as exc:
            _note_histogram_error(exc, args)
            return _NOTHING
        return 0.0, total, True
    return overtime.sum_over_time(args.samples, args.annotations), None, True


def _avg_over_time(args: FunctionArgs) -> Result:
    if not args.samples or _mixed(args):
        return _NOTHING
    first = args.samples[0]
    if first.v.h is None:
        return overtime.avg_over_time(args.samples), None, True
    mean = first.v.h.copy()
    for count_int, s in enumerate(args.samples[1:], start=2):
        count = float(count_int)
        to_add = s.v.h.copy()
        to_add.div(count)
        right = mean.copy()
        right.div(count)
        try:
            to_add.sub(right)
            mean.add(to_add)
        except (IncompatibleSchemaError, IncompatibleBoundsError) as exc:
            _note_histogram_error(exc, args)
            return 0.0, mean, False
    return 0.0, mean, True


def _mad_over_time(args: FunctionArgs) -> Result:
    if not args.samples:
        return _NOTHING
    value, ok = overtime.mad_over_time(args.samples, args.annotations)
    return value, None, ok


def _max_over_time(args: FunctionArgs) -> Result:
    if not args.samples:
        return _NOTHING
    value, _, ok = overtime.max_over_time(args.samples, args.annotations)
    return value, None, ok


def _min_over_time(args: FunctionArgs) -> Result:
    if not args.samples:
        return _NOTHING
    value, _, ok = overtime.min_over_time(args.samples, args.annotations)
    return value, None, ok


def _ts_of_max_over_time(args: FunctionArgs) -> Result:
    if not args.samples:
        return _NOTHING
    _, t, ok = overtime.max_over_time(args.samples, args.annotations)
    return t / 1000, None, ok


def _ts_of_min_over_time(args: FunctionArgs) -> Result:
    if not args.samples:
        return _NOTHING
    _, t, ok = overtime.min_over_time(args.samples, args.annotations)
    return t / 1000, None, ok


def _ts_of_last_over_time(args: FunctionArgs) -> Result:
    if not args.samples:
        return _NOTHING
    t = max(0, max(s.t for s in args.samples))
    return t / 1000, None, True


def _stddev_over_time(args: FunctionArgs) -> Result:
    if not args.samples:
        return _NOTHING
    value, ok = overtime.stddev_over_time(args.samples, args.annotations)
    return value, None, ok


def _stdvar_over_time(args: FunctionArgs) -> Result:
    if not args.samples:
        return _NOTHING
    value, ok = overtime.stdvar_over_time(args.samples, args.annotations)
    return value, None, ok


def _count_over_time(args: FunctionArgs) -> Result:
    if not args.samples:
        return _NOTHING
    return overtime.count_over_time(args.samples), None, True


def _last_over_time(args: FunctionArgs) -> Result:
    if not args.samples:
        return _NOTHING
    last_float = last_hist = None
    for s in args.samples:
        if s.v.h is not None:
            last_hist = s
        else:
            last_float = s
    if last_hist is None:
        return args.samples[-1].v.f, None, True
    if last_float is None or last_hist.t > last_float.t:
        return 0.0, last_hist.v.h.copy(), True
    return last_float.v.f, None, True


def _present_over_time(args: FunctionArgs) -> Result:
    if not args.samples:
        return _NOTHING
    return 1.0, None, True


def _quantile_over_time(args: FunctionArgs) -> Result:
    if not args.samples:
        return _NOTHING
    floats: List[float] = []
    for s in args.samples:
        if s.v.h is not None:
            if floats:
                args.annotations.add(AnnotationKind.HISTOGRAM_IGNORED_IN_MIXED_RANGE)
            continue
        floats.append(s.v.f)
    if not floats:
        return _NOTHING
    return overtime.quantile(args.scalar_point, floats), None, True


def _changes(args: FunctionArgs) -> Result:
    if not args.samples:
        return _NOTHING
    return overtime.changes(args.samples), None, True


def _resets(args: FunctionArgs) -> Result:
    if not args.samples:
        return _NOTHING
    return overtime.resets(args.samples), None, True


def _deriv(args: FunctionArgs) -> Result:
    if len(args.samples) < 2:
        return _NOTHING
    value, ok = overtime.deriv(args.samples, args.annotations)
    return value, None, ok


def _instant(is_rate: bool) -> FunctionCall:
    def call(args: FunctionArgs) -> Result:
        value, h, ok = instant_value(args.samples, is_rate, args.annotations)
        if not ok:
            return _NOTHING
        return value, h, True

    return call


def _extrapolated(is_counter: bool, is_rate: bool) -> FunctionCall:
    def call(args: FunctionArgs) -> Result:
        if len(args.samples) < 2:
            return _NOTHING
        return extrapolated_rate(
            args.samples,
            len(args.samples),
            is_counter,
            is_rate,
            args.step_time,
            args.select_range,
            args.offset,
            args.annotations,
        )

    return call


def _extended(is_counter: bool, is_rate: bool) -> FunctionCall:
    def call(args: FunctionArgs) -> Result:
        if not args.samples:
            return _NOTHING
        if args.metric_appeared_ts is None:
            raise RuntimeError("samples present but the metric has not appeared yet")
        value, h = extended_rate(
            args.samples,
            is_counter,
            is_rate,
            args.step_time,
            args.select_range,
            args.offset,
            args.metric_appeared_ts,
            args.annotations,
        )
        return value, h, True

    return call


def _predict_linear(args: FunctionArgs) -> Result:
    value, ok = overtime.predict_linear(
        args.samples, args.scalar_point, args.step_time, args.annotations
    )
    return value, None, ok


def _double_exponential_smoothing(args: FunctionArgs) -> Result:
    floats, num_histograms = overtime.filter_float_only_samples(args.samples)
    if num_histograms > 0 and floats:
        args.annotations.add(AnnotationKind.HISTOGRAM_IGNORED_IN_MIXED_RANGE)
    if len(floats) < 2:
        return _NOTHING
    value, ok = overtime.double_exponential_smoothing(
        floats, args.scalar_point, args.scalar_point2
    )
    return value, None, ok


_RANGE_VECTOR_FUNCS: Dict[str, Callable[[FunctionArgs], Result]] = {
    "sum_over_time": _sum_over_time,
    "mad_over_time": _mad_over_time,
    "max_over_time": _max_over_time,
    "min_over_time": _min_over_time,
    "ts_of_max_over_time": _ts_of_max_over_time,
    "ts_of_min_over_time": _ts_of_min_over_time,
    "ts_of_last_over_time": _ts_of_last_over_time,
    "avg_over_time": _avg_over_time,
    "stddev_over_time": _stddev_over_time,
    "stdvar_over_time": _stdvar_over_time,
    "count_over_time": _count_over_time,
    "last_over_time": _last_over_time,
    "present_over_time": _present_over_time,
    "quantile_over_time": _quantile_over_time,
    "changes": _changes,
    "resets": _resets,
    "deriv": _deriv,
    "irate": _instant(True),
    "idelta": _instant(False),
    "rate": _extrapolated(True, True),
    "delta": _extrapolated(False, False),
    "increase": _extrapolated(True, False),
    "xrate": _extended(True, True),
    "xdelta": _extended(False, False),
    "xincrease": _extended(True, False),
    "predict_linear": _predict_linear,
    "double_exponential_smoothing": _double_exponential_smoothing,
}


def new_range_vector_func(name: str) -> FunctionCall:
    """Look up the range function called ``name``."""
    try:
        return _RANGE_VECTOR_FUNCS[name]
    except KeyError:
        raise UnknownFunctionError(name) from None


def function_names() -> List[str]:
    """Names of all known range functions, sorted."""
    return sorted(_RANGE_VECTOR_FUNCS)


def is_ext_function(name: str) -> bool:
    """True for the extended range functions that look before the range start."""
    return name in _EXT_FUNCTIONS