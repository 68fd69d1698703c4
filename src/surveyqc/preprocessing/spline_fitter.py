"""Spline fitting of survey tracks.

Four curve families are available:

``CATMULL_ROM``
    Cardinal spline through every vertex.  ``tension`` (0 to 5) tightens
    the curve: 0 is the classic Catmull-Rom curve and 5 collapses each
    span to a straight line.
``NATURAL_CUBIC``
    Global cubic per axis over cumulative chord length, with zero
    curvature at both ends.
``B_SPLINE``
    Uniform cubic B-spline.  It approximates the interior vertices
    rather than passing through them.
``POLYLINE_EDIT_FIT``
    Uniform quadratic B-spline over successive vertex triples, the curve
    CAD polyline-edit tools produce.

Every algorithm samples uniformly in its curve parameter, returns
``max(n * multiplier, min_output)`` points, and starts and ends exactly
at the first and last input vertex.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

import numpy as np
from scipy.interpolate import CubicSpline

from ..common.models import NavigationFix
from ..errors import ConfigurationError
from ..utils.logging import get_logger
from .qa_report import QualityReport

logger = get_logger(__name__)


class SplineAlgorithm(str, Enum):
    CATMULL_ROM = "catmull_rom"
    NATURAL_CUBIC = "natural_cubic"
    B_SPLINE = "b_spline"
    POLYLINE_EDIT_FIT = "polyline_edit_fit"

    @classmethod
    def parse(cls, value) -> "SplineAlgorithm":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ConfigurationError(f"unknown spline algorithm {value!r}") from exc


class SplineSource(str, Enum):
    """Which positions feed the spline."""

    RAW = "raw"
    SMOOTHED = "smoothed"

    @classmethod
    def parse(cls, value) -> "SplineSource":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ConfigurationError(f"unknown spline source {value!r}") from exc


@dataclass
class SplineConfiguration:
    """Spline settings.  Out-of-range tension and multiplier are clamped."""

    algorithm: SplineAlgorithm = SplineAlgorithm.CATMULL_ROM
    tension: float = 0.5
    """Catmull-Rom tension, clamped to [0, 5]."""

    multiplier: int = 10
    """Output points per input vertex, clamped to [1, 50]."""

    source: SplineSource = SplineSource.SMOOTHED
    min_output: int = 100
    """Lower bound on the number of output points."""

    def __post_init__(self):
        self.algorithm = SplineAlgorithm.parse(self.algorithm)
        self.source = SplineSource.parse(self.source)
        self.tension = min(5.0, max(0.0, float(self.tension)))
        self.multiplier = min(50, max(1, int(self.multiplier)))
        if self.min_output < 2:
            raise ConfigurationError("min_output must be at least 2")

    @property
    def cardinal_scale(self) -> float:
        """Tangent scale of the cardinal spline."""
        return 0.5 * (1.0 - self.tension / 5.0)

    def output_count(self, vertex_count: int) -> int:
        return max(vertex_count * self.multiplier, self.min_output)


def _as_vertices(vertices) -> np.ndarray:
    pts = np.asarray(vertices, dtype=float)
    if pts.size == 0:
        return np.empty((0, 3))
    if pts.ndim != 2 or pts.shape[1] not in (2, 3):
        raise ValueError("vertices must be an (N, 2) or (N, 3) array")
    if pts.shape[1] == 2:
        pts = np.column_stack([pts, np.zeros(len(pts))])
    return pts


def _segment_params(count: int, spans: int):
    u = np.linspace(0.0, float(spans), count)
    seg = np.minimum(np.floor(u).astype(int), spans - 1)
    return seg, (u - seg)[:, None]


def catmull_rom(pts: np.ndarray, count: int, scale: float = 0.5) -> np.ndarray:
    """Cardinal spline with the end vertices repeated as outer control points."""
    n = len(pts)
    ctrl = np.vstack([pts[:1], pts, pts[-1:]])
    seg, t = _segment_params(count, n - 1)
    t2 = t * t
    t3 = t2 * t
    s = scale
    h1 = -s * t3 + 2 * s * t2 - s * t
    h2 = (2 - s) * t3 + (s - 3) * t2 + 1
    h3 = (s - 2) * t3 + (3 - 2 * s) * t2 + s * t
    h4 = s * t3 - s * t2
    return h1 * ctrl[seg] + h2 * ctrl[seg + 1] + h3 * ctrl[seg + 2] + h4 * ctrl[seg + 3]


def natural_cubic(pts: np.ndarray, count: int) -> np.ndarray:
    """Natural cubic spline parametrised by normalised chord length.

    Consecutive duplicate vertices are dropped first since they add a
    zero-length knot interval.
    """
    keep = np.ones(len(pts), dtype=bool)
    keep[1:] = np.linalg.norm(np.diff(pts, axis=0), axis=1) > 1e-10
    pts = pts[keep]
    if len(pts) < 2:
        return np.repeat(pts[:1], count, axis=0)

    chord = np.concatenate([[0.0], np.cumsum(np.linalg.norm(np.diff(pts, axis=0), axis=1))])
    t = chord / chord[-1]
    return CubicSpline(t, pts, bc_type="natural", axis=0)(np.linspace(0.0, 1.0, count))


def cubic_b_spline(pts: np.ndarray, count: int) -> np.ndarray:
    """Uniform cubic B-spline with each end vertex tripled so the curve is clamped."""
    ctrl = np.vstack([pts[:1], pts[:1], pts, pts[-1:], pts[-1:]])
    seg, t = _segment_params(count, len(ctrl) - 3)
    t2 = t * t
    t3 = t2 * t
    b0 = (-t3 + 3 * t2 - 3 * t + 1) / 6.0
    b1 = (3 * t3 - 6 * t2 + 4) / 6.0
    b2 = (-3 * t3 + 3 * t2 + 3 * t + 1) / 6.0
    b3 = t3 / 6.0
    return b0 * ctrl[seg] + b1 * ctrl[seg + 1] + b2 * ctrl[seg + 2] + b3 * ctrl[seg + 3]


def quadratic_b_spline(pts: np.ndarray, count: int) -> np.ndarray:
    """Uniform quadratic B-spline with each end vertex doubled."""
    ctrl = np.vstack([pts[:1], pts, pts[-1:]])
    seg, t = _segment_params(count, len(ctrl) - 2)
    b0 = 0.5 * (1 - t) ** 2
    b1 = 0.5 * (-2 * t * t + 2 * t + 1)
    b2 = 0.5 * t * t
    return b0 * ctrl[seg] + b1 * ctrl[seg + 1] + b2 * ctrl[seg + 2]


def fit(vertices, config: Optional[SplineConfiguration] = None, report: Optional[QualityReport] = None) -> np.ndarray:
    """Fit a spline through ordered vertices.

    Parameters
    ----------
    vertices : array_like
        (N, 3) or (N, 2) vertices; 2D input gets z = 0.
    config : SplineConfiguration, optional
        Algorithm and sampling settings.
    report : QualityReport, optional
        Receives an ``insufficient_data`` warning for fewer than two
        vertices.

    Returns
    -------
    numpy.ndarray
        (M, 3) array of spline points, or an empty (0, 3) array.
    """
    config = config or SplineConfiguration()
    pts = _as_vertices(vertices)
    n = len(pts)
    if n < 2:
        message = f"spline needs at least 2 vertices, got {n}"
        if report is not None:
            report.warn("spline", "insufficient_data", message, vertices=n)
        else:
            logger.warning(message)
        return np.empty((0, 3))

    count = config.output_count(n)
    algorithm = config.algorithm
    if algorithm is SplineAlgorithm.CATMULL_ROM:
        out = catmull_rom(pts, count, config.cardinal_scale)
    elif algorithm is SplineAlgorithm.NATURAL_CUBIC:
        out = natural_cubic(pts, count)
    elif algorithm is SplineAlgorithm.B_SPLINE:
        out = cubic_b_spline(pts, count)
    else:
        out = quadratic_b_spline(pts, count)

    out[0] = pts[0]
    out[-1] = pts[-1]
    logger.info("Spline (%s): %d vertices -> %d points", algorithm.value, n, len(out))
    return out


def source_vertices(fixes: Sequence[NavigationFix], source: SplineSource = SplineSource.SMOOTHED) -> np.ndarray:
    """(N, 3) vertices for the spline from raw or smoothed positions.

    Z is the corrected depth when available, else the best depth, else 0.
    """
    source = SplineSource.parse(source)
    rows = []
    for fix in fixes:
        if source is SplineSource.RAW:
            x, y = fix.easting, fix.northing
            z = fix.depth
        else:
            x, y = fix.x, fix.y
            z = fix.corrected_depth if fix.corrected_depth is not None else fix.best_depth
        rows.append((x, y, 0.0 if z is None else z))
    return np.array(rows, dtype=float).reshape(-1, 3)


def simplify_to_control_points(vertices, max_points: int) -> np.ndarray:
    """Reduce a dense track to at most ``max_points`` evenly spaced vertices.

    The first and last vertices are always kept.
    """
    if max_points < 2:
        raise ConfigurationError("max_points must be at least 2")
    pts = _as_vertices(vertices)
    if len(pts) <= max_points:
        return pts.copy()
    idx = np.unique(np.round(np.linspace(0, len(pts) - 1, max_points)).astype(int))
    return pts[idx]
