import pytest

from promqlscan.functions import new_range_vector_func
from promqlscan.options import QueryOptions
from promqlscan.rate_buffer import RateBuffer
from promqlscan.samples import RingBuffer, Value

_MIN_INT64 = -(2**63)

KINDS = [
    ("rate", True, True),
    ("increase", True, False),
    ("delta", False, False),
]


def run_steps(options, select_range, samples, buffer):
    results = []
    step = max(1, options.step)
    ts = options.start
    pending = list(samples)
    while ts <= options.end:
        maxt = ts
        mint = maxt - select_range
        buffer.reset(mint, ts)
        floor = max(mint, buffer.max_t())
        while pending and pending[0][0] <= maxt:
            t, v = pending.pop(0)
            if t > floor:
                buffer.push(t, Value(v))
        results.append(buffer.eval(0.0, 0.0, None))
        ts += step
    return results


@pytest.mark.parametrize("name, is_counter, is_rate", KINDS)
@pytest.mark.parametrize(
    "values",
    [[1.0, 2.0, 3.0, 4.0, 5.0, 6.0], [1.0, 2.0, 3.0, 1.0, 2.0, 3.0]],
)
def test_instant_matches_window_function(name, is_counter, is_rate, values):
    options = QueryOptions(start=60000, end=60000)
    samples = [(10000 * (i + 1), v) for i, v in enumerate(values)]
    streaming = run_steps(
        options, 60000, samples, RateBuffer(options, is_counter, is_rate, 60000, 0)
    )
    windowed = run_steps(
        options, 60000, samples, RingBuffer(60000, 0, new_range_vector_func(name))
    )
    assert len(streaming) == 1
    value, h, ok = streaming[0]
    assert ok and h is None
    assert value == pytest.approx(windowed[0][0])


@pytest.mark.parametrize("name, is_counter, is_rate", KINDS)
def test_range_query_matches_window_function(name, is_counter, is_rate):
    options = QueryOptions(start=60000, end=120000, step=30000)
    values = [1, 2, 3, 4, 5, 6, 7, 2, 3, 4, 5, 6]
    samples = [(10000 * (i + 1), float(v)) for i, v in enumerate(values)]
    streaming = run_steps(
        options, 60000, samples, RateBuffer(options, is_counter, is_rate, 60000, 0)
    )
    windowed = run_steps(
        options, 60000, samples, RingBuffer(60000, 0, new_range_vector_func(name))
    )
    assert len(streaming) == 3
    for got, want in zip(streaming, windowed):
        assert got[2] is want[2] is True
        assert got[0] == pytest.approx(want[0])


def test_counts_and_max_t():
    options = QueryOptions(start=60000, end=60000)
    buffer = RateBuffer(options, True, True, 60000, 0)
    buffer.reset(0, 60000)
    for t in (10000, 20000, 30000):
        buffer.push(t, Value(1.0))
    assert len(buffer) == 3
    assert buffer.sample_count() == 3
    assert buffer.max_t() == 30000


def test_empty_buffer():
    options = QueryOptions(start=60000, end=60000)
    buffer = RateBuffer(options, True, True, 60000, 0)
    assert buffer.max_t() == _MIN_INT64
    assert buffer.eval() == (0.0, None, False)


def test_single_sample_has_no_rate():
    options = QueryOptions(start=60000, end=60000)
    buffer = RateBuffer(options, True, True, 60000, 0)
    buffer.reset(0, 60000)
    buffer.push(30000, Value(5.0))
    assert buffer.eval() == (0.0, None, False)


def test_replace_last_does_nothing():
    options = QueryOptions(start=60000, end=60000)
    buffer = RateBuffer(options, True, True, 60000, 0)
    buffer.reset(0, 60000)
    buffer.push(30000, Value(5.0))
    buffer.replace_last(40000, Value(9.0))
    assert buffer.max_t() == 30000
    assert len(buffer) == 1


def test_samples_outside_window_not_counted():
    options = QueryOptions(start=60000, end=60000)
    buffer = RateBuffer(options, True, True, 60000, 0)
    buffer.reset(0, 60000)
    buffer.push(70000, Value(1.0))
    assert len(buffer) == 0
    assert buffer.max_t() == 70000