"""Track, depth and altitude smoothing.

This module suppresses sensor noise and spikes in navigation data.  A
run smooths up to three channels, each with its own method, window and
threshold:

* position -- easting and northing treated jointly as a 2D signal;
* depth and altitude -- independent 1D signals over the fixes that
  actually reported a value.

Available filters are a moving average (plain or linearly weighted), a
median filter, a threshold filter that only clips outliers, a Kalman
filter followed by a Rauch–Tung–Striebel backward pass, Savitzky–Golay
and Gaussian smoothing, and sigma-based spike removal.

Windowed filters never pad the signal: near either end the window
shrinks symmetrically, so the first and last samples are averaged only
with themselves.  The threshold filter compares a sample with its
neighbours, so it keeps the one-sided neighbourhood at the ends instead
and an end-point outlier still gets clipped.  Spike detection also
excludes the sample itself but needs more than two neighbours to form a
standard deviation: with a window of three it never flags anything, and
with a window of five it never flags the first or last sample.

Window sizes are coerced to the next odd value of at least three.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..common.models import NavigationFix
from ..errors import ConfigurationError
from ..utils.logging import get_logger
from .qa_report import QualityReport

MODIFIED_TOLERANCE = 1e-4
"""Corrections at or below this value do not count as a modification."""

logger = get_logger(__name__)


class SmoothingMethod(str, Enum):
    """Filter applied to a channel."""

    NONE = "none"
    MOVING_AVERAGE = "moving_average"
    WEIGHTED_MOVING_AVERAGE = "weighted_moving_average"
    MEDIAN = "median"
    THRESHOLD = "threshold"
    KALMAN = "kalman"
    SAVITZKY_GOLAY = "savitzky_golay"
    GAUSSIAN = "gaussian"
    SPIKE_REMOVAL = "spike_removal"

    @classmethod
    def parse(cls, value) -> "SmoothingMethod":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ConfigurationError(f"unknown smoothing method {value!r}") from exc


def normalize_window(size: int) -> int:
    """Return the effective window: odd and at least 3."""
    return max(3, int(size) | 1)


@dataclass
class ChannelSettings:
    """Smoothing settings for one channel."""

    enabled: bool = False
    method: SmoothingMethod = SmoothingMethod.MOVING_AVERAGE
    window: int = 5
    """Window length in samples.  Coerced to odd and >= 3."""

    threshold: float = 0.5
    """Deviation limit for ``THRESHOLD`` (coordinate units) or the
    standard-deviation multiple for ``SPIKE_REMOVAL``.  Spike removal needs
    a window of at least five to detect anything."""

    def __post_init__(self):
        self.method = SmoothingMethod.parse(self.method)
        self.window = normalize_window(self.window)
        if self.threshold < 0:
            raise ConfigurationError("smoothing threshold must not be negative")

    @property
    def active(self) -> bool:
        return self.enabled and self.method is not SmoothingMethod.NONE


@dataclass
class SmoothingConfiguration:
    """Per-channel smoothing settings plus shared filter parameters."""

    position: ChannelSettings = field(default_factory=lambda: ChannelSettings(enabled=True))
    depth: ChannelSettings = field(default_factory=lambda: ChannelSettings(threshold=0.1))
    altitude: ChannelSettings = field(default_factory=lambda: ChannelSettings(threshold=0.1))

    process_noise: float = 0.01
    """Kalman process noise Q (variance per step)."""

    measurement_noise: float = 0.1
    """Kalman measurement noise R (variance)."""

    polynomial_order: int = 2
    """Polynomial order for Savitzky–Golay."""

    gaussian_sigma: Optional[float] = None
    """Gaussian sigma in samples; ``None`` uses window / 3."""

    def __post_init__(self):
        for name in ("position", "depth", "altitude"):
            value = getattr(self, name)
            if isinstance(value, dict):
                setattr(self, name, ChannelSettings(**value))
        if self.process_noise <= 0 or self.measurement_noise <= 0:
            raise ConfigurationError("Kalman process and measurement noise must be positive")
        if self.polynomial_order < 0:
            raise ConfigurationError("polynomial order must not be negative")
        if self.gaussian_sigma is not None and self.gaussian_sigma <= 0:
            raise ConfigurationError("gaussian sigma must be positive")

    @property
    def enabled(self) -> bool:
        return self.position.active or self.depth.active or self.altitude.active

    @classmethod
    def from_dict(cls, data: Dict) -> "SmoothingConfiguration":
        return cls(**(data or {}))


@dataclass(frozen=True)
class SmoothingResult:
    """Summary of one smoothing run."""

    total_points: int = 0
    position_modified: int = 0
    max_position_correction: float = 0.0
    depth_modified: int = 0
    max_depth_correction: float = 0.0
    altitude_modified: int = 0
    max_altitude_correction: float = 0.0
    modified_indices: FrozenSet[int] = frozenset()

    @property
    def spikes_removed(self) -> int:
        """Number of fixes changed in at least one channel."""
        return len(self.modified_indices)


# --------------------------------------------------------------------------
# Filters.  Each accepts a 1D array or an (N, C) array and returns the same
# shape; 2D input is filtered column by column unless stated otherwise.
# --------------------------------------------------------------------------

def _columns(data) -> Tuple[np.ndarray, bool]:
    arr = np.asarray(data, dtype=float)
    if arr.ndim == 1:
        return arr.reshape(-1, 1), True
    if arr.ndim != 2:
        raise ValueError("data must be a 1D or 2D array")
    return arr, False


def _restore(arr: np.ndarray, flat: bool) -> np.ndarray:
    return arr[:, 0] if flat else arr


def _half_widths(n: int, half: int) -> np.ndarray:
    idx = np.arange(n)
    return np.minimum(half, np.minimum(idx, n - 1 - idx))


def _weighted_window(data, window: int, weight: Callable[[int], float]) -> np.ndarray:
    arr, flat = _columns(data)
    n = len(arr)
    if n == 0:
        return _restore(arr.copy(), flat)
    half = normalize_window(window) // 2
    h = _half_widths(n, half)
    idx = np.arange(n)
    num = np.zeros_like(arr)
    den = np.zeros(n)
    for j in range(-half, half + 1):
        valid = abs(j) <= h
        w = weight(j)
        src = np.clip(idx + j, 0, n - 1)
        num[valid] += w * arr[src[valid]]
        den[valid] += w
    return _restore(num / den[:, None], flat)


def moving_average(data, window: int) -> np.ndarray:
    """Centred moving average with symmetric shrinking at the ends."""
    arr, flat = _columns(data)
    n = len(arr)
    if n == 0:
        return _restore(arr.copy(), flat)
    half = normalize_window(window) // 2
    h = _half_widths(n, half)
    idx = np.arange(n)
    # centre before the cumulative sum to keep precision on large eastings
    offset = arr.mean(axis=0)
    cs = np.vstack([np.zeros((1, arr.shape[1])), np.cumsum(arr - offset, axis=0)])
    out = (cs[idx + h + 1] - cs[idx - h]) / (2 * h + 1)[:, None] + offset
    out[h == 0] = arr[h == 0]
    return _restore(out, flat)


def weighted_moving_average(data, window: int) -> np.ndarray:
    """Moving average with weights decreasing linearly from the centre."""
    half = normalize_window(window) // 2
    return _weighted_window(data, window, lambda j: half - abs(j) + 1)


def gaussian_smooth(data, window: int, sigma: Optional[float] = None) -> np.ndarray:
    """Gaussian-weighted average over the window."""
    if sigma is None:
        sigma = normalize_window(window) / 3.0
    return _weighted_window(data, window, lambda j: float(np.exp(-(j * j) / (2.0 * sigma * sigma))))


def median_filter(data, window: int) -> np.ndarray:
    """Replace each sample by the median of its window.

    Removes isolated spikes without blurring step changes.
    """
    arr, flat = _columns(data)
    n = len(arr)
    if n == 0:
        return _restore(arr.copy(), flat)
    half = normalize_window(window) // 2
    h = _half_widths(n, half)
    idx = np.arange(n)
    stack = np.full((2 * half + 1, n, arr.shape[1]), np.nan)
    for k, j in enumerate(range(-half, half + 1)):
        valid = abs(j) <= h
        stack[k][valid] = arr[idx[valid] + j]
    return _restore(np.nanmedian(stack, axis=0), flat)


def _neighbour_mean(arr: np.ndarray, half: int) -> Tuple[np.ndarray, np.ndarray]:
    """Mean of up to ``half`` neighbours on each side, excluding the sample itself."""
    n = len(arr)
    idx = np.arange(n)
    sums = np.zeros_like(arr)
    counts = np.zeros(n)
    for j in range(-half, half + 1):
        if j == 0:
            continue
        src = idx + j
        valid = (src >= 0) & (src < n)
        sums[valid] += arr[src[valid]]
        counts[valid] += 1
    return sums / np.maximum(counts, 1)[:, None], counts


def threshold_filter(data, window: int, threshold: float) -> np.ndarray:
    """Clip samples that deviate from their local average by more than ``threshold``.

    For 2D input the deviation is the Euclidean distance, and both
    components of an outlier are replaced together.  Samples within the
    threshold are returned unchanged, so genuine trends survive.
    """
    arr, flat = _columns(data)
    n = len(arr)
    if n < 2:
        return _restore(arr.copy(), flat)
    half = normalize_window(window) // 2
    avg, counts = _neighbour_mean(arr, half)
    deviation = np.linalg.norm(arr - avg, axis=1)
    replace = (counts > 0) & (deviation > threshold)
    out = arr.copy()
    out[replace] = avg[replace]
    return _restore(out, flat)


def kalman_rts_smooth(data, process_noise: float, measurement_noise: float,
                      initial_variance: Optional[float] = None) -> np.ndarray:
    """Fixed-interval Kalman smoother for a random-walk signal.

    A forward Kalman filter runs over the whole sequence, then a
    Rauch–Tung–Striebel backward pass combines each filtered estimate
    with the smoothed estimate of its successor.  The result is the
    minimum mean-square-error estimate at every index given all
    samples.  Columns of 2D input share the same gains, so filtering
    easting and northing together equals filtering them one by one.

    Parameters
    ----------
    data : array_like
        1D signal or (N, C) array.
    process_noise : float
        Q, variance of the random-walk step.
    measurement_noise : float
        R, variance of each observation.
    initial_variance : float, optional
        Prior variance at the first sample; defaults to R.

    Returns
    -------
    numpy.ndarray
        Smoothed signal with the input shape.
    """
    arr, flat = _columns(data)
    n = len(arr)
    if n == 0:
        return _restore(arr.copy(), flat)
    q = float(process_noise)
    r = float(measurement_noise)
    p = float(measurement_noise if initial_variance is None else initial_variance)

    x_filt = np.empty_like(arr)
    p_filt = np.empty(n)
    p_pred = np.empty(n)
    x = arr[0].copy()
    for k in range(n):
        if k > 0:
            p = p + q
        p_pred[k] = p
        gain = p / (p + r)
        x = x + gain * (arr[k] - x)
        p = (1.0 - gain) * p
        x_filt[k] = x
        p_filt[k] = p

    smoothed = np.empty_like(arr)
    smoothed[-1] = x_filt[-1]
    for k in range(n - 2, -1, -1):
        c = p_filt[k] / p_pred[k + 1]
        smoothed[k] = x_filt[k] + c * (smoothed[k + 1] - x_filt[k])
    return _restore(smoothed, flat)


def _savgol_centre_weights(half: int, order: int) -> np.ndarray:
    offsets = np.arange(-half, half + 1, dtype=float)
    degree = min(order, 2 * half)
    vander = np.vander(offsets, degree + 1, increasing=True)
    return np.linalg.pinv(vander)[0]


def savitzky_golay(data, window: int, order: int = 2) -> np.ndarray:
    """Least-squares polynomial smoothing evaluated at the window centre.

    Shrunken windows near the ends lower the polynomial degree when
    there are too few samples to fit it.
    """
    arr, flat = _columns(data)
    n = len(arr)
    if n == 0:
        return _restore(arr.copy(), flat)
    half = normalize_window(window) // 2
    h = _half_widths(n, half)
    out = np.empty_like(arr)
    for hv in np.unique(h):
        rows = np.nonzero(h == hv)[0]
        weights = _savgol_centre_weights(int(hv), order)
        acc = np.zeros((len(rows), arr.shape[1]))
        for w, j in zip(weights, range(-hv, hv + 1)):
            acc += w * arr[rows + j]
        out[rows] = acc
    return _restore(out, flat)


def detect_spikes(data, window: int, n_sigma: float = 3.0) -> np.ndarray:
    """Indices of samples more than ``n_sigma`` standard deviations from their neighbours.

    Parameters
    ----------
    data : array_like
        1D signal.
    window : int
        Neighbourhood size (coerced to odd >= 3), the sample excluded.
        Samples with two or fewer neighbours in the truncated window are
        never flagged.
    n_sigma : float, optional
        Detection threshold in neighbourhood standard deviations.

    Returns
    -------
    numpy.ndarray
        Sorted integer indices of detected spikes.
    """
    values = np.asarray(data, dtype=float)
    n = len(values)
    if n < 3:
        return np.array([], dtype=int)
    half = normalize_window(window) // 2
    centred = (values - values.mean()).reshape(-1, 1)
    mean, counts = _neighbour_mean(centred, half)
    mean_sq, _ = _neighbour_mean(centred ** 2, half)
    std = np.sqrt(np.maximum(mean_sq[:, 0] - mean[:, 0] ** 2, 0.0))
    spikes = (counts > 2) & (std > 0) & (np.abs(centred[:, 0] - mean[:, 0]) > n_sigma * std)
    return np.nonzero(spikes)[0]


def remove_spikes(data, spike_indices: Sequence[int]) -> np.ndarray:
    """Replace spikes by linear interpolation between the nearest clean samples.

    Spikes before the first or after the last clean sample take that
    sample's value.
    """
    values = np.asarray(data, dtype=float).copy()
    n = len(values)
    mask = np.zeros(n, dtype=bool)
    indices = [i for i in spike_indices if 0 <= i < n]
    mask[indices] = True
    if not mask.any() or mask.all():
        return values
    idx = np.arange(n)
    values[mask] = np.interp(idx[mask], idx[~mask], values[~mask])
    return values


def spike_removal(data, window: int, n_sigma: float = 3.0) -> np.ndarray:
    """Detect and interpolate over spikes, column by column."""
    arr, flat = _columns(data)
    out = arr.copy()
    for c in range(arr.shape[1]):
        out[:, c] = remove_spikes(arr[:, c], detect_spikes(arr[:, c], window, n_sigma))
    return _restore(out, flat)


_FILTERS: Dict[SmoothingMethod, Callable[[np.ndarray, ChannelSettings, SmoothingConfiguration], np.ndarray]] = {
    SmoothingMethod.NONE: lambda d, ch, cfg: np.array(d, dtype=float),
    SmoothingMethod.MOVING_AVERAGE: lambda d, ch, cfg: moving_average(d, ch.window),
    SmoothingMethod.WEIGHTED_MOVING_AVERAGE: lambda d, ch, cfg: weighted_moving_average(d, ch.window),
    SmoothingMethod.MEDIAN: lambda d, ch, cfg: median_filter(d, ch.window),
    SmoothingMethod.THRESHOLD: lambda d, ch, cfg: threshold_filter(d, ch.window, ch.threshold),
    SmoothingMethod.KALMAN: lambda d, ch, cfg: kalman_rts_smooth(d, cfg.process_noise, cfg.measurement_noise),
    SmoothingMethod.SAVITZKY_GOLAY: lambda d, ch, cfg: savitzky_golay(d, ch.window, cfg.polynomial_order),
    SmoothingMethod.GAUSSIAN: lambda d, ch, cfg: gaussian_smooth(d, ch.window, cfg.gaussian_sigma),
    SmoothingMethod.SPIKE_REMOVAL: lambda d, ch, cfg: spike_removal(d, ch.window, ch.threshold),
}


def apply_filter(data, channel: ChannelSettings, config: SmoothingConfiguration) -> np.ndarray:
    """Run the filter selected by ``channel.method`` on ``data``."""
    return _FILTERS[channel.method](data, channel, config)


class SmoothingEngine:
    """Apply per-channel smoothing to a working set of fixes.

    The engine writes only the ``smoothed_*`` fields.  Channels that are
    disabled, or that have fewer samples than their window, receive a
    copy of the raw values so later stages can always read them.
    """

    def smooth(
        self,
        fixes: List[NavigationFix],
        config: SmoothingConfiguration,
        report: Optional[QualityReport] = None
    ) -> SmoothingResult:
        """Smooth position, depth and altitude in place.

        Parameters
        ----------
        fixes : list of NavigationFix
            Working fixes, in time order.
        config : SmoothingConfiguration
            Channel settings.
        report : QualityReport, optional
            Receives an ``insufficient_data`` finding for every enabled
            channel that had too few samples.

        Returns
        -------
        SmoothingResult
            Counts and maximum corrections per channel.
        """
        n = len(fixes)
        modified = set()

        raw_xy = np.array([[f.easting, f.northing] for f in fixes], dtype=float).reshape(-1, 2)
        if self._ready(n, config.position, "position", report):
            smoothed_xy = apply_filter(raw_xy, config.position, config)
        else:
            smoothed_xy = raw_xy.copy()
        correction = np.hypot(smoothed_xy[:, 0] - raw_xy[:, 0], smoothed_xy[:, 1] - raw_xy[:, 1])
        changed = correction > MODIFIED_TOLERANCE
        for fix, (e, nn) in zip(fixes, smoothed_xy):
            fix.smoothed_easting = float(e)
            fix.smoothed_northing = float(nn)
        modified.update(np.nonzero(changed)[0].tolist())
        position_count = int(changed.sum())
        position_max = float(correction[changed].max()) if position_count else 0.0

        depth_count, depth_max, depth_idx = self._smooth_optional(
            fixes, "depth", "smoothed_depth", config.depth, config, report)
        altitude_count, altitude_max, altitude_idx = self._smooth_optional(
            fixes, "altitude", "smoothed_altitude", config.altitude, config, report)
        modified.update(depth_idx)
        modified.update(altitude_idx)

        result = SmoothingResult(
            total_points=n,
            position_modified=position_count,
            max_position_correction=position_max,
            depth_modified=depth_count,
            max_depth_correction=depth_max,
            altitude_modified=altitude_count,
            max_altitude_correction=altitude_max,
            modified_indices=frozenset(modified),
        )
        if config.position.active:
            logger.info("Position: %s - %d points modified (max %.3f)",
                        config.position.method.value, position_count, position_max)
        if config.depth.active:
            logger.info("Depth: %s - %d points modified (max %.3f)",
                        config.depth.method.value, depth_count, depth_max)
        if config.altitude.active:
            logger.info("Altitude: %s - %d points modified (max %.3f)",
                        config.altitude.method.value, altitude_count, altitude_max)
        return result

    @staticmethod
    def _ready(count: int, channel: ChannelSettings, name: str, report: Optional[QualityReport]) -> bool:
        if not channel.active:
            return False
        if count < channel.window:
            if report is not None and count > 0:
                report.add("smoothing", "insufficient_data", "info",
                           f"{name} smoothing skipped: {count} samples for a window of {channel.window}",
                           channel=name, samples=count, window=channel.window)
            return False
        return True

    def _smooth_optional(
        self,
        fixes: List[NavigationFix],
        source: str,
        target: str,
        channel: ChannelSettings,
        config: SmoothingConfiguration,
        report: Optional[QualityReport]
    ) -> Tuple[int, float, List[int]]:
        values = [getattr(f, source) for f in fixes]
        present = np.array([i for i, v in enumerate(values) if v is not None], dtype=int)
        raw = np.array([values[i] for i in present], dtype=float)
        if self._ready(len(raw), channel, source, report):
            smoothed = apply_filter(raw, channel, config)
        else:
            smoothed = raw.copy()
        for fix in fixes:
            setattr(fix, target, None)
        for i, value in zip(present, smoothed):
            setattr(fixes[i], target, float(value))
        correction = np.abs(smoothed - raw)
        changed = correction > MODIFIED_TOLERANCE
        count = int(changed.sum())
        largest = float(correction[changed].max()) if count else 0.0
        return count, largest, present[changed].tolist()


@dataclass(frozen=True)
class SmoothingStatistics:
    """Differences between raw and smoothed positions."""
    mean_easting_diff: float = 0.0
    max_easting_diff: float = 0.0
    rms_easting_diff: float = 0.0
    mean_northing_diff: float = 0.0
    max_northing_diff: float = 0.0
    rms_northing_diff: float = 0.0
    mean_displacement: float = 0.0
    max_displacement: float = 0.0
    rms_displacement: float = 0.0


def smoothing_statistics(fixes: Sequence[NavigationFix]) -> SmoothingStatistics:
    """Mean, maximum and RMS of the smoothing corrections in ``fixes``."""
    pairs = [(f.smoothed_easting - f.easting, f.smoothed_northing - f.northing)
             for f in fixes if f.smoothed_easting is not None and f.smoothed_northing is not None]
    if not pairs:
        return SmoothingStatistics()
    d = np.array(pairs)
    disp = np.hypot(d[:, 0], d[:, 1])
    return SmoothingStatistics(
        mean_easting_diff=float(d[:, 0].mean()),
        max_easting_diff=float(np.abs(d[:, 0]).max()),
        rms_easting_diff=float(np.sqrt(np.mean(d[:, 0] ** 2))),
        mean_northing_diff=float(d[:, 1].mean()),
        max_northing_diff=float(np.abs(d[:, 1]).max()),
        rms_northing_diff=float(np.sqrt(np.mean(d[:, 1] ** 2))),
        mean_displacement=float(disp.mean()),
        max_displacement=float(disp.max()),
        rms_displacement=float(np.sqrt(np.mean(disp ** 2))),
    )


def comparison_frame(original: Sequence[NavigationFix], working: Sequence[NavigationFix]) -> pd.DataFrame:
    """Before/after table pairing each archived fix with its working copy."""
    if len(original) != len(working):
        raise ValueError("original and working collections differ in length")
    rows = []
    for before, after in zip(original, working):
        rows.append({
            "record_number": before.record_number,
            "raw_easting": before.easting,
            "raw_northing": before.northing,
            "smoothed_easting": after.x,
            "smoothed_northing": after.y,
            "position_shift": float(np.hypot(after.x - before.easting, after.y - before.northing)),
            "raw_depth": before.depth,
            "smoothed_depth": after.smoothed_depth,
            "raw_altitude": before.altitude,
            "smoothed_altitude": after.smoothed_altitude,
        })
    return pd.DataFrame(rows)
