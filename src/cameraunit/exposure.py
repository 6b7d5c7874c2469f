"""Adaptive exposure determination.

Given a captured frame, compute the exposure for the next capture so that
a chosen percentile of pixel intensities lands at a target fraction of the
representable range, without saturating the sensor and without
oscillating.

Algorithm (per frame):
    1. Drop ``pixel_exclusion_fraction`` of the most extreme pixels, half
       from the dark end (cold/dead pixels) and half from the bright end
       (hot pixels, cosmic rays).
    2. P = intensity at ``target_percentile`` of the remaining pixels.
    3. scale = target_saturation_fraction * max_value / P, clamped to
       [1 / max_bump_factor, max_bump_factor].
    4. next = clamp(current * scale, min_exposure, max_exposure).
    5. If P is within ``tolerance * max_value`` of the target, keep the
       current exposure.

A fully saturated percentile (P == max_value) forces the minimum scale,
since the formula underestimates how far over the target the scene is. A
frame with P == 0 has no signal to scale and raises
InsufficientSignalError.

Everything here is pure: no I/O, no shared state, safe from any thread.

Example:
    config = OptimizerConfig(target_percentile=99.0,
                             target_saturation_fraction=0.6,
                             max_exposure=30.0)
    optimizer = ExposureOptimizer(config)

    frame = handle.capture()
    handle.configure(optimizer.next_setting(frame))
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

from cameraunit.errors import InsufficientSignalError, InvalidParameterError
from cameraunit.observability import get_logger
from cameraunit.types import ROI, DeviceCapability, ExposureSetting

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from cameraunit.frame import Frame

logger = get_logger(__name__)

__all__ = [
    "OptimizerConfig",
    "PixelStatistics",
    "ExposurePlan",
    "ExposureOptimizer",
    "compute_next",
]


@dataclass(frozen=True)
class OptimizerConfig:
    """Tuning for the exposure optimizer.

    Attributes:
        target_percentile: Percentile (0-100) of retained pixels to steer.
        target_saturation_fraction: Where that percentile should land, as a
            fraction (0-1] of the maximum representable value.
        max_bump_factor: Largest factor by which one step may lengthen or
            shorten the exposure. Must be > 1.
        min_exposure: Shortest exposure to propose, in seconds.
        max_exposure: Longest exposure to propose, in seconds.
        pixel_exclusion_fraction: Fraction [0, 1) of extreme pixels ignored.
        tolerance: Acceptance band around the target, as a fraction of the
            maximum representable value. Inside it the exposure is kept.
        max_bin: Largest square binning plan() may propose. 1 disables
            binning adaptation.

    Raises:
        InvalidParameterError: If any field is out of range.
    """

    target_percentile: float = 95.0
    target_saturation_fraction: float = 0.5
    max_bump_factor: float = 2.0
    min_exposure: float = 1e-3
    max_exposure: float = 120.0
    pixel_exclusion_fraction: float = 1e-4
    tolerance: float = 0.01
    max_bin: int = 1

    def __post_init__(self) -> None:
        if not 0.0 <= self.target_percentile <= 100.0:
            raise InvalidParameterError(
                f"target_percentile must be in [0, 100], got {self.target_percentile}"
            )
        if not 0.0 < self.target_saturation_fraction <= 1.0:
            raise InvalidParameterError(
                "target_saturation_fraction must be in (0, 1], got "
                f"{self.target_saturation_fraction}"
            )
        if not self.max_bump_factor > 1.0:
            raise InvalidParameterError(
                f"max_bump_factor must be > 1, got {self.max_bump_factor}"
            )
        if not 0.0 < self.min_exposure < self.max_exposure:
            raise InvalidParameterError(
                "Need 0 < min_exposure < max_exposure, got "
                f"{self.min_exposure} and {self.max_exposure}"
            )
        if not 0.0 <= self.pixel_exclusion_fraction < 1.0:
            raise InvalidParameterError(
                "pixel_exclusion_fraction must be in [0, 1), got "
                f"{self.pixel_exclusion_fraction}"
            )
        if not 0.0 <= self.tolerance < 1.0:
            raise InvalidParameterError(f"tolerance must be in [0, 1), got {self.tolerance}")
        if self.max_bin < 1:
            raise InvalidParameterError(f"max_bin must be >= 1, got {self.max_bin}")

    @classmethod
    def for_device(cls, capability: DeviceCapability, **overrides: Any) -> OptimizerConfig:
        """Config bounded by a device's exposure range and maximum bin.

        Explicit keyword overrides take precedence.
        """
        values: dict[str, Any] = {
            "min_exposure": capability.exposure_range.min,
            "max_exposure": capability.exposure_range.max,
            "max_bin": capability.roi_bounds.max_bin,
        }
        values.update(overrides)
        return cls(**values)

    @property
    def min_scale(self) -> float:
        """Smallest single-step scale factor."""
        return 1.0 / self.max_bump_factor


@dataclass(frozen=True, slots=True)
class PixelStatistics:
    """Intensity statistics of one frame after extreme-pixel exclusion.

    Attributes:
        percentile_value: Intensity P at the configured percentile.
        max_value: Largest representable sample value of the frame format.
        pixel_count: Pixels in the frame.
        excluded_count: Pixels dropped from the statistics (both ends).
        peak: Brightest retained intensity.
    """

    percentile_value: float
    max_value: int
    pixel_count: int
    excluded_count: int
    peak: float

    @classmethod
    def from_pixels(
        cls,
        luminance: NDArray[Any],
        max_value: int,
        config: OptimizerConfig,
    ) -> PixelStatistics:
        """Compute statistics from a single-channel intensity array.

        Uses np.partition, so the cost is linear in the pixel count.

        Raises:
            InsufficientSignalError: If the array is empty.
        """
        flat = np.asarray(luminance).ravel()
        count = int(flat.size)
        if count == 0:
            raise InsufficientSignalError("Frame contains no pixels")

        per_side = int(count * config.pixel_exclusion_fraction / 2)
        if count - 2 * per_side < 1:
            per_side = (count - 1) // 2
        retained = count - 2 * per_side

        index = per_side + math.floor(config.target_percentile / 100.0 * (retained - 1))
        top = count - 1 - per_side
        ordered = np.partition(flat, sorted({index, top}))

        return cls(
            percentile_value=float(ordered[index]),
            max_value=int(max_value),
            pixel_count=count,
            excluded_count=2 * per_side,
            peak=float(ordered[top]),
        )

    @classmethod
    def from_frame(cls, frame: Frame, config: OptimizerConfig) -> PixelStatistics:
        """Compute statistics from a frame's luminance."""
        return cls.from_pixels(frame.luminance(), frame.max_value, config)

    @property
    def is_saturated(self) -> bool:
        """True if the percentile sits at the representable maximum."""
        return self.percentile_value >= self.max_value


@dataclass(frozen=True, slots=True)
class ExposurePlan:
    """Full optimizer decision for the next capture.

    Attributes:
        setting: ExposureSetting to configure next.
        bin: Square binning factor to use next.
        converged: True if the current exposure was already on target.
        statistics: Statistics the decision was based on.
    """

    setting: ExposureSetting
    bin: int
    converged: bool
    statistics: PixelStatistics

    def roi_for(self, roi: ROI) -> ROI:
        """The given ROI re-binned to this plan's bin (unchanged if equal)."""
        if roi.bin_x == self.bin and roi.bin_y == self.bin:
            return roi
        return roi.with_binning(self.bin, self.bin)


def _scaled_duration(
    stats: PixelStatistics,
    config: OptimizerConfig,
    duration: float,
) -> tuple[float, bool]:
    """Unclamped next duration and whether the current one is on target.

    The returned duration has the single-step bump limit applied but not
    the [min_exposure, max_exposure] clamp, so callers can trade the excess
    for binning.

    Raises:
        InsufficientSignalError: If the percentile intensity is zero.
    """
    value = stats.percentile_value
    target = config.target_saturation_fraction * stats.max_value

    if value <= 0:
        raise InsufficientSignalError(
            f"Percentile {config.target_percentile} intensity is {value}; "
            "no signal to scale the exposure from"
        )

    if value >= stats.max_value:
        logger.info(
            "Frame saturated at target percentile, stepping exposure down",
            percentile_value=value,
            max_value=stats.max_value,
        )
        return duration * config.min_scale, False

    if abs(value - target) <= config.tolerance * stats.max_value:
        logger.debug(
            "Target pixel value reached, exposure unchanged",
            percentile_value=value,
            target=target,
            duration_s=duration,
        )
        return duration, True

    scale = min(max(target / value, config.min_scale), config.max_bump_factor)
    return duration * scale, False


def _clamp_exposure(duration: float, config: OptimizerConfig) -> float:
    return min(max(duration, config.min_exposure), config.max_exposure)


def compute_next(
    frame_stats: PixelStatistics,
    config: OptimizerConfig,
    current_setting: ExposureSetting,
) -> ExposureSetting:
    """Next ExposureSetting for the given frame statistics.

    Only the duration changes; gain and offset are carried over. Returns
    ``current_setting`` itself when the frame is already on target.

    Args:
        frame_stats: Statistics of the frame taken with current_setting.
        config: Optimizer tuning.
        current_setting: Setting the frame was captured with.

    Returns:
        ExposureSetting for the next capture.

    Raises:
        InsufficientSignalError: If the percentile intensity is zero (an
            all-zero frame in particular).

    Example:
        >>> stats = PixelStatistics(45000.0, 65535, 1000, 0, 45000.0)
        >>> config = OptimizerConfig(target_saturation_fraction=0.7)
        >>> compute_next(stats, config, ExposureSetting(1.0)).duration
        1.019...
    """
    duration, converged = _scaled_duration(frame_stats, config, current_setting.duration)
    if converged:
        return current_setting

    next_duration = _clamp_exposure(duration, config)
    logger.info(
        "Target exposure computed",
        current_s=current_setting.duration,
        next_s=next_duration,
        percentile_value=frame_stats.percentile_value,
    )
    return current_setting.with_duration(next_duration)


class ExposureOptimizer:
    """Frame-level front end to compute_next with optional binning.

    Holds only an immutable config, so one instance can be shared between
    threads.

    Example:
        optimizer = ExposureOptimizer(OptimizerConfig.for_device(handle.capability))
        plan = optimizer.plan(frame)
        handle.configure(plan.setting, plan.roi_for(frame.roi))
    """

    __slots__ = ("_config",)

    def __init__(self, config: OptimizerConfig | None = None) -> None:
        self._config = config or OptimizerConfig()

    def __repr__(self) -> str:
        return f"ExposureOptimizer({self._config!r})"

    @property
    def config(self) -> OptimizerConfig:
        return self._config

    def statistics(self, frame: Frame) -> PixelStatistics:
        """Pixel statistics of a frame under this optimizer's config."""
        return PixelStatistics.from_frame(frame, self._config)

    def next_setting(
        self,
        frame: Frame,
        current: ExposureSetting | None = None,
    ) -> ExposureSetting:
        """Next setting for a frame, starting from the frame's own exposure.

        Raises:
            InsufficientSignalError: If the frame has no usable signal.
        """
        return compute_next(
            self.statistics(frame),
            self._config,
            current if current is not None else frame.exposure,
        )

    def plan(self, frame: Frame, current: ExposureSetting | None = None) -> ExposurePlan:
        """Exposure and binning for the next capture.

        With ``max_bin >= 2`` and square binning on the frame, exposure is
        traded for binning in factors of 4 (one bin doubling collects four
        times the light per output pixel): the bin is halved while the
        longer exposure still fits under max_exposure, and doubled while
        the exposure exceeds max_exposure and the bin stays within max_bin.

        Raises:
            InsufficientSignalError: If the frame has no usable signal.
        """
        config = self._config
        current = current if current is not None else frame.exposure
        stats = self.statistics(frame)
        duration, converged = _scaled_duration(stats, config, current.duration)
        bin_factor = frame.roi.bin_x

        if converged:
            return ExposurePlan(current, bin_factor, True, stats)

        if config.max_bin >= 2 and frame.roi.bin_x == frame.roi.bin_y:
            if duration > config.max_exposure:
                while duration > config.max_exposure and bin_factor * 2 <= config.max_bin:
                    bin_factor *= 2
                    duration /= 4
            else:
                while bin_factor > 1 and duration * 4 <= config.max_exposure:
                    bin_factor //= 2
                    duration *= 4
            bin_factor = min(max(bin_factor, 1), config.max_bin)

        next_duration = _clamp_exposure(duration, config)
        logger.info(
            "Exposure plan computed",
            current_s=current.duration,
            next_s=next_duration,
            bin=bin_factor,
            percentile_value=stats.percentile_value,
        )
        return ExposurePlan(
            current.with_duration(next_duration), bin_factor, False, stats
        )
