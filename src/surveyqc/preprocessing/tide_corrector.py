"""Tidal reduction of measured depths.

Depths are reduced to a common datum by subtracting the tide height
interpolated at each fix's timestamp.  A positive tide means higher
water, so the corrected depth is shallower than the measured one.

The tide curve is never extrapolated.  Fixes outside its span keep
their measured depth as the corrected depth, and the fallback is
recorded in the quality report.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..common.models import NavigationFix, TideCurve
from ..errors import ConfigurationError
from ..utils.logging import get_logger
from .qa_report import QualityReport

FEET_PER_METRE = 1.0 / 0.3048

logger = get_logger(__name__)


@dataclass
class TideSettings:
    """Configuration for the tide and seabed Z stages."""

    use_feet: bool = False
    """Return tide heights in feet instead of metres."""

    gap_threshold_minutes: float = 5.0
    """Tide samples further apart than this are reported as a gap."""

    vertical_offset: Optional[float] = None
    """Offset added to every Z; ``None`` keeps each fix's own offset."""

    include_altitude: bool = True

    def __post_init__(self):
        if self.gap_threshold_minutes <= 0:
            raise ConfigurationError("tide gap threshold must be positive")

    @property
    def gap_threshold(self) -> timedelta:
        return timedelta(minutes=self.gap_threshold_minutes)


@dataclass(frozen=True)
class TideApplication:
    """Outcome of :meth:`TideCorrector.apply_to_all`."""

    corrected: int = 0
    """Fixes whose depth was corrected with an interpolated tide."""

    uncovered_records: Tuple[int, ...] = ()
    """Record numbers with a depth but no tide coverage."""

    @property
    def fallback_count(self) -> int:
        return len(self.uncovered_records)


@dataclass(frozen=True)
class TideValidation:
    """Coverage of the survey by the tide curve."""

    covers_survey: bool
    survey_start: Optional[datetime]
    survey_end: Optional[datetime]
    tide_start: datetime
    tide_end: datetime
    gaps: List[Tuple[datetime, datetime]] = field(default_factory=list)

    @property
    def has_gaps(self) -> bool:
        return bool(self.gaps)


@dataclass(frozen=True)
class TideStatistics:
    """Ranges of the applied corrections and corrected depths."""
    count: int = 0
    min_tide: Optional[float] = None
    max_tide: Optional[float] = None
    mean_tide: Optional[float] = None
    min_corrected_depth: Optional[float] = None
    max_corrected_depth: Optional[float] = None
    mean_corrected_depth: Optional[float] = None


def apply_correction(depth: float, tide: float) -> float:
    """Depth reduced by the tide height."""
    return depth - tide


class TideCorrector:
    """Interpolate a tide curve and apply it to fixes.

    Parameters
    ----------
    curve : TideCurve
        Tide heights in metres.
    use_feet : bool, optional
        Report heights in feet.  Depths are then expected in feet too.
    """

    def __init__(self, curve: TideCurve, use_feet: bool = False):
        self.curve = curve
        self.use_feet = use_feet

    def _scale(self, value):
        return value * FEET_PER_METRE if self.use_feet else value

    def get_tide(self, timestamp) -> Optional[float]:
        """Tide height at ``timestamp``, or ``None`` outside the curve."""
        height = self.curve.interpolate(timestamp)
        return None if height is None else self._scale(height)

    def apply_correction(self, depth: float, tide: float) -> float:
        return apply_correction(depth, tide)

    def apply_to_all(self, fixes: Sequence[NavigationFix], report: Optional[QualityReport] = None) -> TideApplication:
        """Set ``tide_correction`` and ``corrected_depth`` on every fix.

        The depth used is the smoothed depth when present, else the raw
        one.  Fixes without any depth keep ``corrected_depth = None``.

        Parameters
        ----------
        fixes : sequence of NavigationFix
            Working fixes, modified in place.
        report : QualityReport, optional
            Receives a ``tide_coverage`` warning listing the fixes
            outside the curve.

        Returns
        -------
        TideApplication
            Number of corrected fixes and records that fell back.
        """
        tides = self._scale(self.curve.interpolate_many([f.timestamp for f in fixes]))
        corrected = 0
        uncovered = []
        for fix, tide in zip(fixes, tides):
            depth = fix.best_depth
            has_tide = not np.isnan(tide)
            fix.tide_correction = float(tide) if has_tide else None
            if depth is None:
                fix.corrected_depth = None
            elif has_tide:
                fix.corrected_depth = apply_correction(depth, float(tide))
                corrected += 1
            else:
                fix.corrected_depth = depth
                uncovered.append(fix.record_number)

        if uncovered:
            message = (f"{len(uncovered)} fixes outside tide coverage "
                       f"({self.curve.start_time} to {self.curve.end_time}); raw depth kept")
            if report is not None:
                report.warn("tide", "tide_coverage", message,
                            records=list(uncovered),
                            tide_start=self.curve.start_time, tide_end=self.curve.end_time)
            else:
                logger.warning(message)
        logger.info("Tide applied to %d of %d fixes", corrected, len(fixes))
        return TideApplication(corrected=corrected, uncovered_records=tuple(uncovered))

    def validate(self, fixes: Sequence[NavigationFix], gap_threshold: timedelta = timedelta(minutes=5)) -> TideValidation:
        """Check that the curve spans the survey and has no long gaps."""
        gaps = self.curve.gaps(gap_threshold.total_seconds())
        if not fixes:
            return TideValidation(covers_survey=True, survey_start=None, survey_end=None,
                                  tide_start=self.curve.start_time, tide_end=self.curve.end_time, gaps=gaps)
        times = sorted(f.timestamp for f in fixes)
        return TideValidation(
            covers_survey=self.curve.covers(times[0], times[-1]),
            survey_start=times[0],
            survey_end=times[-1],
            tide_start=self.curve.start_time,
            tide_end=self.curve.end_time,
            gaps=gaps,
        )

    @staticmethod
    def statistics(fixes: Sequence[NavigationFix]) -> TideStatistics:
        tides = np.array([f.tide_correction for f in fixes if f.tide_correction is not None], dtype=float)
        depths = np.array([f.corrected_depth for f in fixes if f.corrected_depth is not None], dtype=float)
        if tides.size == 0 and depths.size == 0:
            return TideStatistics()
        return TideStatistics(
            count=int(tides.size),
            min_tide=float(tides.min()) if tides.size else None,
            max_tide=float(tides.max()) if tides.size else None,
            mean_tide=float(tides.mean()) if tides.size else None,
            min_corrected_depth=float(depths.min()) if depths.size else None,
            max_corrected_depth=float(depths.max()) if depths.size else None,
            mean_corrected_depth=float(depths.mean()) if depths.size else None,
        )


def compute_seabed_z(
    fixes: Sequence[NavigationFix],
    vertical_offset: Optional[float] = None,
    include_altitude: bool = True
) -> int:
    """Derive ``calculated_z`` for every fix with a depth.

    ``Z = corrected depth + altitude + vertical offset``.  The corrected
    depth falls back to the best available depth when no tide was
    applied, altitude is added only when present, and the offset
    defaults to each fix's own ``vertical_offset`` (zero when unset).

    Returns
    -------
    int
        Number of fixes that received a Z value.
    """
    count = 0
    for fix in fixes:
        if vertical_offset is not None:
            fix.vertical_offset = vertical_offset
        depth = fix.corrected_depth if fix.corrected_depth is not None else fix.best_depth
        if depth is None:
            fix.calculated_z = None
            continue
        z = depth + (fix.vertical_offset or 0.0)
        altitude = fix.best_altitude
        if include_altitude and altitude is not None:
            z += altitude
        fix.calculated_z = z
        count += 1
    logger.info("Seabed Z computed for %d of %d fixes", count, len(fixes))
    return count
