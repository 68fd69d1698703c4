"""Fixed-distance resampling of a polyline.

The first vertex is always emitted at distance 0.  Walking the
polyline, a point is interpolated every time the cumulative
planimetric distance reaches the next multiple of the interval, so one
long segment can yield several points.  Distance is measured in x/y
only; z is interpolated linearly along with the position.
"""

import math
from enum import Enum
from dataclasses import dataclass, asdict
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from ..common.models import IntervalPoint, NavigationFix, RouteGeometry
from ..errors import ConfigurationError
from ..utils.logging import get_logger
from .qa_report import QualityReport

logger = get_logger(__name__)


class IntervalSource(str, Enum):
    """Polyline to resample."""

    RAW = "raw"
    SMOOTHED = "smoothed"
    SPLINE = "spline"
    ROUTE = "route"

    @classmethod
    def parse(cls, value) -> "IntervalSource":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ConfigurationError(f"unknown interval source {value!r}") from exc


@dataclass
class IntervalSettings:
    interval: float = 1.0
    """Spacing between emitted points, in coordinate units."""

    source: IntervalSource = IntervalSource.SPLINE

    def __post_init__(self):
        self.source = IntervalSource.parse(self.source)
        if not self.interval > 0:
            raise ConfigurationError(f"interval must be positive, got {self.interval}")


def resample(vertices, interval: float, report: Optional[QualityReport] = None) -> List[IntervalPoint]:
    """Emit points every ``interval`` units of planimetric distance.

    Parameters
    ----------
    vertices : array_like
        Ordered (N, 3) or (N, 2) vertices.
    interval : float
        Spacing; must be positive.
    report : QualityReport, optional
        Receives an ``insufficient_data`` finding for fewer than two
        vertices.

    Returns
    -------
    list of IntervalPoint
        Points in order of increasing distance, starting at 0.

    Raises
    ------
    ConfigurationError
        If ``interval`` is not positive.
    """
    if not interval > 0:
        raise ConfigurationError(f"interval must be positive, got {interval}")
    pts = np.asarray(vertices, dtype=float)
    if pts.size == 0:
        pts = np.empty((0, 3))
    elif pts.shape[1] == 2:
        pts = np.column_stack([pts, np.zeros(len(pts))])

    if len(pts) < 2:
        if report is not None:
            report.add("interval", "insufficient_data", "info",
                       f"interval resampling needs at least 2 vertices, got {len(pts)}",
                       vertices=len(pts))
        return []

    x0, y0, z0 = pts[0]
    points = [IntervalPoint(float(x0), float(y0), float(z0), 0.0)]
    total = 0.0
    k = 1
    for (ax, ay, az), (bx, by, bz) in zip(pts[:-1], pts[1:]):
        seg = math.hypot(bx - ax, by - ay)
        if seg == 0:
            continue
        # tolerance absorbs accumulated rounding so a crossing on a vertex is not lost
        eps = 1e-9 * max(1.0, total + seg)
        while k * interval <= total + seg + eps:
            frac = min(1.0, max(0.0, (k * interval - total) / seg))
            points.append(IntervalPoint(
                float(ax + frac * (bx - ax)),
                float(ay + frac * (by - ay)),
                float(az + frac * (bz - az)),
                k * interval,
            ))
            k += 1
        total += seg

    logger.info("Resampled %.3f units at %.3f -> %d points", total, interval, len(points))
    return points


def interval_source_vertices(
    source: IntervalSource,
    fixes: Sequence[NavigationFix] = (),
    spline_points: Optional[np.ndarray] = None,
    route: Optional[RouteGeometry] = None
) -> np.ndarray:
    """(N, 3) vertices for the chosen source; empty when it is unavailable."""
    source = IntervalSource.parse(source)
    if source is IntervalSource.SPLINE:
        if spline_points is None:
            return np.empty((0, 3))
        return np.asarray(spline_points, dtype=float).reshape(-1, 3)
    if source is IntervalSource.ROUTE:
        return route.vertices() if route is not None else np.empty((0, 3))
    rows = []
    for fix in fixes:
        if source is IntervalSource.RAW:
            rows.append((fix.easting, fix.northing, fix.depth if fix.depth is not None else 0.0))
        else:
            z = fix.calculated_z if fix.calculated_z is not None else fix.best_depth
            rows.append((fix.x, fix.y, z if z is not None else 0.0))
    return np.array(rows, dtype=float).reshape(-1, 3)


def interval_points_to_frame(points: Sequence[IntervalPoint]) -> pd.DataFrame:
    """Tabulate interval points with columns ``distance, x, y, z``."""
    columns = ["distance", "x", "y", "z"]
    return pd.DataFrame([asdict(p) for p in points], columns=columns)
