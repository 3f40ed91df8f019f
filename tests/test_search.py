import asyncio
import threading

import pytest

from sizefit.errors import InvalidTargetError, SearchCancelled
from sizefit.search import (
    EncodeResult,
    SearchMode,
    SearchOptions,
    search,
    search_async,
    target_reached,
)


class LinearEncoder:
    """size = 1000 * quality * scale**2, recording every call."""

    def __init__(self, per_unit=1000):
        self.per_unit = per_unit
        self.calls = []

    def __call__(self, quality, scale):
        self.calls.append((quality, scale))
        size = int(round(self.per_unit * quality * scale * scale))
        return EncodeResult(size_bytes=size, payload=b"x" * 4, quality=quality, scale=scale)

    @property
    def sizes(self):
        return [int(round(self.per_unit * q * s * s)) for q, s in self.calls]


def test_linear_encoder_lands_just_under_target():
    encode = LinearEncoder()
    result = search(encode, 500)

    assert 450 < result.size_bytes <= 500
    assert len(encode.calls) <= 9
    assert encode.calls[0] == (0.8, 1.0)


@pytest.mark.parametrize("target", [50, 55, 61, 100, 333, 500, 777, 950, 999, 1000, 5000])
def test_monotonic_encoder_fits_whenever_possible(target):
    encode = LinearEncoder()
    result = search(encode, target)

    assert result.size_bytes <= target
    assert len(encode.calls) <= 9


def test_unreachable_target_returns_floor_result():
    encode = LinearEncoder()
    result = search(encode, 1)

    assert result.size_bytes == min(encode.sizes)
    assert result.quality == 0.05
    assert result.size_bytes == 50
    assert not target_reached(result, 1)


def test_encoder_error_propagates_without_further_calls():
    calls = []

    def encode(quality, scale):
        calls.append(quality)
        if len(calls) == 3:
            raise RuntimeError("encoder exploded")
        return EncodeResult(size_bytes=10_000)

    with pytest.raises(RuntimeError, match="encoder exploded"):
        search(encode, 500)

    assert len(calls) == 3


def test_search_is_idempotent():
    first = search(LinearEncoder(), 640)
    second = search(LinearEncoder(), 640)

    assert first == second


def test_prefers_largest_in_budget_result_over_last_one():
    sizes = iter([900, 480, 700, 300])

    def encode(quality, scale):
        return EncodeResult(size_bytes=next(sizes, 200), quality=quality)

    result = search(encode, 500)

    assert result.size_bytes == 480


def test_iteration_budget_is_respected():
    encode = LinearEncoder()
    options = SearchOptions.for_quality(max_iterations=3, convergence_epsilon=0.0001)

    search(encode, 1, options)

    assert len(encode.calls) == 3


@pytest.mark.parametrize("target", [0, -5, 1.5, "500", True, None])
def test_invalid_target_rejected_before_any_probe(target):
    encode = LinearEncoder()

    with pytest.raises(InvalidTargetError):
        search(encode, target)

    assert encode.calls == []


def test_invalid_target_is_a_value_error():
    with pytest.raises(ValueError):
        search(LinearEncoder(), 0)


def test_cancel_checked_between_probes():
    cancel = threading.Event()
    calls = []

    def encode(quality, scale):
        calls.append(quality)
        if len(calls) == 2:
            cancel.set()
        return EncodeResult(size_bytes=10_000)

    with pytest.raises(SearchCancelled) as excinfo:
        search(encode, 500, cancel=cancel)

    assert len(calls) == 2
    assert excinfo.value.iterations == 2


def test_cancelled_before_start_makes_no_calls():
    cancel = threading.Event()
    cancel.set()
    encode = LinearEncoder()

    with pytest.raises(SearchCancelled):
        search(encode, 500, cancel=cancel)

    assert encode.calls == []


def test_on_probe_sees_every_probe():
    seen = []
    encode = LinearEncoder()

    search(encode, 500, on_probe=lambda result, state: seen.append((result.size_bytes, state.probes)))

    assert [probes for _, probes in seen] == list(range(1, len(encode.calls) + 1))
    assert [size for size, _ in seen] == encode.sizes


def test_bracket_invariants_hold_during_search():
    def check(result, state):
        assert state.low <= state.high
        if state.best_under is not None:
            assert state.best_under.size_bytes <= state.target_bytes
        assert state.smallest_seen.size_bytes <= result.size_bytes

    search(LinearEncoder(), 420, on_probe=check)
    search(LinearEncoder(), 1, on_probe=check)


def test_async_search_matches_sync_search():
    sync_encode = LinearEncoder()
    expected = search(sync_encode, 500)

    async_calls = []

    async def encode(quality, scale):
        async_calls.append((quality, scale))
        await asyncio.sleep(0)
        return LinearEncoder()(quality, scale)

    result = asyncio.run(search_async(encode, 500))

    assert result == expected
    assert async_calls == sync_encode.calls


def test_async_search_propagates_errors():
    async def encode(quality, scale):
        raise OSError("disk full")

    with pytest.raises(OSError):
        asyncio.run(search_async(encode, 500))


class TestRasterMode:
    def test_defaults(self):
        options = SearchOptions.for_raster()

        assert options.mode is SearchMode.RASTER
        assert options.initial_quality is None
        assert options.quality_bounds == (0.1, 0.95)
        assert options.convergence_epsilon == 0.015
        assert options.max_probes == 54

    def test_first_probe_is_bracket_midpoint(self):
        encode = LinearEncoder()
        search(encode, 10_000, SearchOptions.for_raster())

        assert encode.calls[0] == (pytest.approx(0.525), 1.0)

    def test_returns_immediately_when_first_pass_fits(self):
        encode = LinearEncoder()
        result = search(encode, 400, SearchOptions.for_raster())

        assert result.size_bytes <= 400
        assert {scale for _, scale in encode.calls} == {1.0}

    def test_reduces_scale_until_target_fits(self):
        encode = LinearEncoder()
        result = search(encode, 50, SearchOptions.for_raster())

        assert result.size_bytes <= 50
        assert result.scale == pytest.approx(0.64)
        assert len(encode.calls) <= SearchOptions.for_raster().max_probes

    def test_unreachable_target_returns_global_smallest(self):
        encode = LinearEncoder()
        options = SearchOptions.for_raster()
        result = search(encode, 1, options)

        assert result.size_bytes == min(encode.sizes)
        assert result.scale == pytest.approx(0.8 ** 5)
        assert len({scale for _, scale in encode.calls}) == options.max_scale_passes
        assert len(encode.calls) <= options.max_probes

    def test_stops_below_min_scale(self):
        encode = LinearEncoder()
        options = SearchOptions.for_raster(min_scale=0.5, max_scale_passes=10)
        search(encode, 1, options)

        scales = sorted({scale for _, scale in encode.calls}, reverse=True)
        assert scales == [1.0, pytest.approx(0.8), pytest.approx(0.64), pytest.approx(0.512)]

    def test_each_pass_starts_with_a_fresh_bracket(self):
        encode = LinearEncoder()
        search(encode, 1, SearchOptions.for_raster(max_scale_passes=2))

        first_of_second_pass = next(q for q, s in encode.calls if s != 1.0)
        assert first_of_second_pass == pytest.approx(0.525)


class TestOptions:
    @pytest.mark.parametrize("bounds", [(0.5, 0.5), (0.9, 0.1), (-0.1, 0.5), (0.1, 1.5)])
    def test_rejects_bad_bounds(self, bounds):
        with pytest.raises(ValueError):
            SearchOptions(quality_bounds=bounds, initial_quality=None)

    def test_rejects_initial_quality_outside_bounds(self):
        with pytest.raises(ValueError):
            SearchOptions(initial_quality=0.01)

    @pytest.mark.parametrize("field, value", [
        ("max_iterations", 0),
        ("convergence_epsilon", 0),
        ("scale_decay_factor", 1.0),
        ("min_scale", 0),
        ("max_scale_passes", 0),
    ])
    def test_rejects_bad_values(self, field, value):
        with pytest.raises(ValueError):
            SearchOptions(**{field: value})

    def test_quality_preset(self):
        options = SearchOptions.for_quality()

        assert options.mode is SearchMode.QUALITY
        assert options.initial_quality == 0.8
        assert options.quality_bounds == (0.05, 1.0)
        assert options.max_iterations == 9
        assert options.convergence_epsilon == 0.02
        assert options.max_probes == 9
