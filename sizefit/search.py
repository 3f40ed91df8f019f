"""Target-size search for quality-driven encoders.

The search repeatedly asks an encoder to serialize the same content at
different quality settings and keeps the bracket ``[low, high]`` of qualities
that straddle the requested byte budget. In raster mode an outer loop shrinks
the render scale whenever a full quality pass fails to fit the budget.

Both :func:`search` and :func:`search_async` drive the same step generator, so
synchronous and ``async`` encoders follow identical probe sequences.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Generator, Optional

from .errors import InvalidTargetError, SearchCancelled
from .utils import format_size

logger = logging.getLogger(__name__)


class SearchMode(Enum):
    """Which parameters the search is allowed to adjust."""
    QUALITY = "quality"
    RASTER = "raster"


@dataclass(frozen=True)
class Probe:
    """One encoder invocation request."""
    quality: float
    scale: float = 1.0


@dataclass(frozen=True)
class EncodeResult:
    """Encoder output. The search only ever looks at ``size_bytes``."""
    size_bytes: int
    payload: bytes = field(default=b"", repr=False)
    quality: Optional[float] = None
    scale: float = 1.0

    @classmethod
    def from_payload(cls, payload: bytes, quality: float, scale: float = 1.0) -> "EncodeResult":
        return cls(size_bytes=len(payload), payload=payload, quality=quality, scale=scale)


@dataclass(frozen=True)
class SearchOptions:
    """
    Tuning knobs for a target-size search.

    Use :meth:`for_quality` or :meth:`for_raster` to get the defaults for each
    mode; any field can be overridden by keyword.
    """
    mode: SearchMode = SearchMode.QUALITY
    initial_quality: Optional[float] = 0.8
    quality_bounds: tuple = (0.05, 1.0)
    max_iterations: int = 9
    convergence_epsilon: float = 0.02
    scale_decay_factor: float = 0.8
    min_scale: float = 0.2
    max_scale_passes: int = 6

    def __post_init__(self):
        low, high = self.quality_bounds
        if not 0.0 <= low < high <= 1.0:
            raise ValueError(f"quality_bounds must satisfy 0 <= low < high <= 1, got {self.quality_bounds}")
        if self.initial_quality is not None and not low <= self.initial_quality <= high:
            raise ValueError(f"initial_quality {self.initial_quality} lies outside {self.quality_bounds}")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if self.convergence_epsilon <= 0:
            raise ValueError("convergence_epsilon must be positive")
        if not 0.0 < self.scale_decay_factor < 1.0:
            raise ValueError("scale_decay_factor must be between 0 and 1")
        if self.min_scale <= 0:
            raise ValueError("min_scale must be positive")
        if self.max_scale_passes < 1:
            raise ValueError("max_scale_passes must be at least 1")

    @classmethod
    def for_quality(cls, **overrides) -> "SearchOptions":
        """Defaults for single-parameter (image) searches."""
        return cls(mode=SearchMode.QUALITY, **overrides)

    @classmethod
    def for_raster(cls, **overrides) -> "SearchOptions":
        """Defaults for scale-augmented (rasterized PDF) searches."""
        params = {
            "initial_quality": None,
            "quality_bounds": (0.1, 0.95),
            "convergence_epsilon": 0.015,
        }
        params.update(overrides)
        return cls(mode=SearchMode.RASTER, **params)

    @property
    def max_probes(self) -> int:
        """Upper bound on encoder calls for one search."""
        if self.mode is SearchMode.RASTER:
            return self.max_iterations * self.max_scale_passes
        return self.max_iterations


@dataclass
class SearchState:
    """Mutable bookkeeping for a single search call."""
    low: float
    high: float
    target_bytes: int
    scale: float = 1.0
    best_under: Optional[EncodeResult] = None
    smallest_seen: Optional[EncodeResult] = None
    iterations: int = 0
    probes: int = 0

    def reset_bracket(self, bounds: tuple, scale: float):
        self.low, self.high = bounds
        self.scale = scale
        self.iterations = 0

    def record(self, quality: float, result: EncodeResult):
        """Fold one probe outcome into the bracket and the best-so-far results."""
        self.iterations += 1
        self.probes += 1

        if self.smallest_seen is None or result.size_bytes < self.smallest_seen.size_bytes:
            self.smallest_seen = result

        if result.size_bytes > self.target_bytes:
            self.high = quality
        else:
            self.low = quality
            # Largest in-budget output wins: closest to the target.
            if self.best_under is None or result.size_bytes > self.best_under.size_bytes:
                self.best_under = result

    def converged(self, options: SearchOptions) -> bool:
        return (
            self.iterations >= options.max_iterations
            or (self.high - self.low) < options.convergence_epsilon
        )


ProbeObserver = Callable[[EncodeResult, SearchState], None]


def validate_target(target_bytes) -> int:
    """Reject targets that are not positive integers."""
    if isinstance(target_bytes, bool) or not isinstance(target_bytes, int):
        raise InvalidTargetError(f"Target size must be an integer number of bytes, got {target_bytes!r}")
    if target_bytes <= 0:
        raise InvalidTargetError(f"Target size must be positive, got {target_bytes}")
    return target_bytes


def _steps(
    target_bytes: int,
    options: SearchOptions,
    cancel=None,
    on_probe: Optional[ProbeObserver] = None,
) -> Generator[Probe, EncodeResult, EncodeResult]:
    """Yield probes and receive their results; return the chosen result."""
    validate_target(target_bytes)
    low, high = options.quality_bounds
    state = SearchState(low=low, high=high, target_bytes=target_bytes)

    passes = options.max_scale_passes if options.mode is SearchMode.RASTER else 1
    scale = 1.0

    for pass_index in range(passes):
        state.reset_bracket(options.quality_bounds, scale)
        if options.initial_quality is not None:
            quality = options.initial_quality
        else:
            quality = (state.low + state.high) / 2
        floor_probed = False

        while True:
            if cancel is not None and cancel.is_set():
                raise SearchCancelled(state.probes)

            result = yield Probe(quality=quality, scale=scale)
            floor_probed = floor_probed or quality == low
            state.record(quality, result)
            logger.debug(
                "probe %d (pass %d): quality=%.4f scale=%.3f -> %s (target %s)",
                state.probes, pass_index + 1, quality, scale,
                format_size(result.size_bytes), format_size(target_bytes),
            )
            if on_probe:
                on_probe(result, state)

            if state.converged(options):
                # Bisection never reaches the bound itself; spend one probe on
                # the floor before giving up on this pass.
                if (
                    state.best_under is None
                    and not floor_probed
                    and state.iterations < options.max_iterations
                ):
                    quality = low
                    continue
                break
            quality = (state.low + state.high) / 2

        if state.best_under is not None:
            return state.best_under

        if options.mode is not SearchMode.RASTER:
            break

        scale *= options.scale_decay_factor
        if scale < options.min_scale:
            break

    logger.debug(
        "target %s not reached after %d probes; best effort is %s",
        format_size(target_bytes), state.probes,
        format_size(state.smallest_seen.size_bytes),
    )
    return state.best_under or state.smallest_seen


def search(
    encode: Callable[[float, float], EncodeResult],
    target_bytes: int,
    options: Optional[SearchOptions] = None,
    cancel=None,
    on_probe: Optional[ProbeObserver] = None,
) -> EncodeResult:
    """
    Find the encoding that best fits ``target_bytes``.

    Args:
        encode: Callable ``(quality, scale) -> EncodeResult``
        target_bytes: Byte budget, a positive integer
        options: Search options (default: :meth:`SearchOptions.for_quality`)
        cancel: Optional object with ``is_set()``, checked before each probe
        on_probe: Optional callback invoked after each probe

    Returns:
        The largest result within budget, or the smallest result seen if no
        probe fit. Callers compare ``size_bytes`` with the target to detect
        a shortfall.

    Raises:
        InvalidTargetError: If ``target_bytes`` is not a positive integer
        SearchCancelled: If ``cancel`` was set between probes
    """
    steps = _steps(target_bytes, options or SearchOptions.for_quality(), cancel, on_probe)
    probe = next(steps)
    while True:
        result = encode(probe.quality, probe.scale)
        try:
            probe = steps.send(result)
        except StopIteration as done:
            return done.value


async def search_async(
    encode: Callable[[float, float], Awaitable[EncodeResult]],
    target_bytes: int,
    options: Optional[SearchOptions] = None,
    cancel=None,
    on_probe: Optional[ProbeObserver] = None,
) -> EncodeResult:
    """Same as :func:`search` for coroutine encoders. Probes never overlap."""
    steps = _steps(target_bytes, options or SearchOptions.for_quality(), cancel, on_probe)
    probe = next(steps)
    while True:
        result = await encode(probe.quality, probe.scale)
        try:
            probe = steps.send(result)
        except StopIteration as done:
            return done.value


def target_reached(result: EncodeResult, target_bytes: int) -> bool:
    return result.size_bytes <= target_bytes
