"""Coordinate system sanity checks between survey fixes and the route.

Before any processing the survey extent is compared with the route
extent.  Mixing geographic and projected coordinates, or two projected
systems, produces KP/DCC values that look valid but are meaningless, so
the checker looks for the usual symptoms:

* one side looks geographic (degrees) and the other projected (hard);
* the coordinate magnitudes differ by more than a factor of 100 (soft);
* the survey does not overlap the route, even with a generous buffer;
* the survey centroid is far from every route vertex.

The last check is the only one that stops the run: the caller is asked
through a :class:`MismatchDecision` whether to continue.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from ..common.models import NavigationFix, RouteGeometry
from ..errors import ConfigurationError
from ..utils.logging import get_logger
from .qa_report import QualityIssue, QualityReport

Bounds = Tuple[float, float, float, float]

logger = get_logger(__name__)


def is_likely_geographic(min_e: float, max_e: float, min_n: float, max_n: float) -> bool:
    """Whether a coordinate range looks like longitude/latitude in degrees."""
    in_degrees = -180.0 <= min_e and max_e <= 180.0 and -90.0 <= min_n and max_n <= 90.0
    small = max(abs(min_e), abs(max_e)) < 200.0 and max(abs(min_n), abs(max_n)) < 100.0
    return in_degrees or small


def _magnitude(bounds: Bounds) -> float:
    return max(abs(v) for v in bounds)


def _expand(bounds: Bounds, buffer: float) -> Bounds:
    min_e, max_e, min_n, max_n = bounds
    return min_e - buffer, max_e + buffer, min_n - buffer, max_n + buffer


def _overlaps(a: Bounds, b: Bounds) -> bool:
    return a[0] <= b[1] and b[0] <= a[1] and a[2] <= b[3] and b[2] <= a[3]


@dataclass
class CoordinateCheckSettings:
    """Thresholds for the coordinate sanity checks."""

    magnitude_ratio_bounds: Tuple[float, float] = (0.01, 100.0)
    """Accepted range of survey magnitude / route magnitude."""

    overlap_buffer_factor: float = 10.0
    """Route bounding box is grown by this multiple of its width."""

    distance_threshold: float = 500.0
    """Largest acceptable centroid-to-route distance, coordinate units."""

    def __post_init__(self):
        lo, hi = self.magnitude_ratio_bounds
        self.magnitude_ratio_bounds = (float(lo), float(hi))
        if not 0 < lo < hi:
            raise ConfigurationError("magnitude ratio bounds must satisfy 0 < low < high")
        if self.overlap_buffer_factor < 0 or self.distance_threshold <= 0:
            raise ConfigurationError("overlap buffer must be >= 0 and distance threshold > 0")


@dataclass
class CoordinateCheckResult:
    """Outcome of :meth:`CoordinateSanityChecker.check`."""

    survey_geographic: Optional[bool] = None
    route_geographic: Optional[bool] = None
    survey_bounds: Optional[Bounds] = None
    route_bounds: Optional[Bounds] = None
    magnitude_ratio: Optional[float] = None
    overlaps: Optional[bool] = None
    centroid_distance: Optional[float] = None
    issues: List[QualityIssue] = field(default_factory=list)
    requires_confirmation: bool = False

    @property
    def passed(self) -> bool:
        return not self.issues

    @property
    def summary(self) -> str:
        """Text shown to whoever decides whether to continue."""
        lines = []
        if self.survey_bounds is not None:
            lines.append("Survey E %.3f..%.3f N %.3f..%.3f" % self.survey_bounds)
        if self.route_bounds is not None:
            lines.append("Route  E %.3f..%.3f N %.3f..%.3f" % self.route_bounds)
        if self.centroid_distance is not None:
            lines.append(f"Survey centroid is {self.centroid_distance:.1f} units from the nearest route vertex")
        for issue in self.issues:
            lines.append(f"[{issue.severity}] {issue.message}")
        if not self.issues:
            lines.append("No coordinate system issues detected")
        return "\n".join(lines)


class MismatchDecision(Protocol):
    """Decides whether processing continues after a likely CRS mismatch."""

    def confirm_mismatch(self, summary: str) -> bool:
        ...


@dataclass
class FixedDecision:
    """Always give the same answer.  Records every summary it was shown."""

    answer: bool = True
    prompts: List[str] = field(default_factory=list)

    def confirm_mismatch(self, summary: str) -> bool:
        self.prompts.append(summary)
        return self.answer


@dataclass
class ConsoleDecision:
    """Ask on the terminal; anything but yes declines, as does a closed input."""

    input_fn: Callable[[str], str] = input
    output_fn: Callable[[str], None] = print

    def confirm_mismatch(self, summary: str) -> bool:
        self.output_fn("Possible coordinate system mismatch between survey and route:")
        self.output_fn(summary)
        try:
            answer = self.input_fn("Continue processing? [y/N] ")
        except EOFError:
            self.output_fn("No answer on input; not continuing.")
            return False
        return answer.strip().lower() in ("y", "yes")


class CoordinateSanityChecker:
    """Run the coordinate checks and record findings.

    Parameters
    ----------
    settings : CoordinateCheckSettings, optional
        Thresholds; defaults are suitable for metric projected systems.
    """

    def __init__(self, settings: Optional[CoordinateCheckSettings] = None):
        self.settings = settings or CoordinateCheckSettings()

    def check(
        self,
        fixes: Sequence[NavigationFix],
        route: RouteGeometry,
        report: Optional[QualityReport] = None
    ) -> CoordinateCheckResult:
        """Compare the extent of ``fixes`` (raw positions) with ``route``.

        Returns
        -------
        CoordinateCheckResult
            Classifications, ranges and the findings added to ``report``.
        """
        report = report if report is not None else QualityReport()
        first = len(report.issues)
        result = CoordinateCheckResult()

        if not fixes or not route.segments:
            report.add("coordinate_check", "insufficient_data", "info",
                       "coordinate check skipped: no fixes or no route")
            result.issues = report.issues[first:]
            return result

        xy = np.array([[f.easting, f.northing] for f in fixes], dtype=float)
        survey = (float(xy[:, 0].min()), float(xy[:, 0].max()),
                  float(xy[:, 1].min()), float(xy[:, 1].max()))
        route_bounds = route.bounds()
        result.survey_bounds = survey
        result.route_bounds = route_bounds
        result.survey_geographic = is_likely_geographic(*survey)
        result.route_geographic = is_likely_geographic(*route_bounds)

        if result.survey_geographic != result.route_geographic:
            kinds = {True: "geographic", False: "projected"}
            report.add("coordinate_check", "crs_classification", "hard",
                       f"survey looks {kinds[result.survey_geographic]} "
                       f"but route looks {kinds[result.route_geographic]}",
                       survey_bounds=survey, route_bounds=route_bounds)

        route_magnitude = _magnitude(route_bounds)
        if route_magnitude > 0:
            ratio = _magnitude(survey) / route_magnitude
            result.magnitude_ratio = ratio
            lo, hi = self.settings.magnitude_ratio_bounds
            if not lo <= ratio <= hi:
                report.add("coordinate_check", "magnitude_ratio", "soft",
                           f"survey/route coordinate magnitude ratio {ratio:.4g} outside [{lo:g}, {hi:g}]",
                           ratio=ratio)

        width = max(route_bounds[1] - route_bounds[0], route_bounds[3] - route_bounds[2])
        buffered = _expand(route_bounds, self.settings.overlap_buffer_factor * width)
        result.overlaps = _overlaps(survey, buffered)
        if not result.overlaps:
            report.warn("coordinate_check", "no_overlap",
                        "survey extent does not overlap the buffered route extent",
                        buffer=self.settings.overlap_buffer_factor * width)

        if not result.survey_geographic and not result.route_geographic:
            cx, cy = xy.mean(axis=0)
            vertices = route.vertices()[:, :2]
            distance = float(np.min(np.hypot(vertices[:, 0] - cx, vertices[:, 1] - cy)))
            result.centroid_distance = distance
            if distance > self.settings.distance_threshold:
                result.requires_confirmation = True
                report.warn("coordinate_check", "route_distance",
                            f"survey centroid is {distance:.1f} units from the route "
                            f"(threshold {self.settings.distance_threshold:g})",
                            distance=distance, threshold=self.settings.distance_threshold)

        result.issues = report.issues[first:]
        if result.passed:
            logger.info("Coordinate check passed")
        return result
