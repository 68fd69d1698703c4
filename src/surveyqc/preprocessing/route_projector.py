"""KP and DCC against a planned route.

Every position is projected perpendicularly onto each route segment.
The projection parameter is clamped to the segment, so a point beyond
an end vertex projects onto that vertex rather than onto the extension
of the segment.  The closest segment gives:

* KP  -- the segment's start KP plus the clamped fraction of its KP span;
* DCC -- the distance to the projected point, signed by the side of the
  segment the point lies on.

By default DCC is positive to the left of the direction of travel.
``dcc_right_positive`` reverses the convention.  When several segments
are equally close (within 1e-9), the first one along the route wins.
"""

import math
from concurrent.futures import Executor
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..common.models import NavigationFix, RouteGeometry
from ..errors import ConfigurationError
from ..utils.logging import get_logger
from .qa_report import QualityReport

TIE_TOLERANCE = 1e-9
US_SURVEY_FOOT = 1200.0 / 3937.0

logger = get_logger(__name__)


class KpUnit(str, Enum):
    """Unit of the reported KP.

    ``ROUTE`` reports KP exactly as the route declares it.  The other
    units assume route KP is in kilometres.
    """

    ROUTE = "route"
    KILOMETER = "km"
    METER = "m"
    US_SURVEY_FEET = "us_ft"
    NAUTICAL_MILE = "nmi"

    @property
    def factor(self) -> float:
        return _KP_FACTORS[self]

    @classmethod
    def parse(cls, value) -> "KpUnit":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ConfigurationError(f"unknown KP unit {value!r}") from exc


_KP_FACTORS = {
    KpUnit.ROUTE: 1.0,
    KpUnit.KILOMETER: 1.0,
    KpUnit.METER: 1000.0,
    KpUnit.US_SURVEY_FEET: 1000.0 / US_SURVEY_FOOT,
    KpUnit.NAUTICAL_MILE: 1.0 / 1.852,
}


class KpDccMode(str, Enum):
    """Which of KP and DCC a projection pass computes."""

    BOTH = "both"
    KP_ONLY = "kp_only"
    DCC_ONLY = "dcc_only"
    NONE = "none"

    @property
    def wants_kp(self) -> bool:
        return self in (KpDccMode.BOTH, KpDccMode.KP_ONLY)

    @property
    def wants_dcc(self) -> bool:
        return self in (KpDccMode.BOTH, KpDccMode.DCC_ONLY)

    @classmethod
    def parse(cls, value) -> "KpDccMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ConfigurationError(f"unknown KP/DCC mode {value!r}") from exc


@dataclass
class ProjectionSettings:
    """Configuration for the route projection stage."""

    mode: KpDccMode = KpDccMode.BOTH
    kp_unit: KpUnit = KpUnit.ROUTE
    dcc_right_positive: bool = False

    kp_tolerance: float = 1.0
    """Allowed excess beyond the declared KP range, in output KP units."""

    dcc_threshold: float = 1000.0
    """Largest plausible |DCC| in coordinate units."""

    chunk_size: int = 4096
    """Points per vectorised block."""

    def __post_init__(self):
        self.mode = KpDccMode.parse(self.mode)
        self.kp_unit = KpUnit.parse(self.kp_unit)
        if self.kp_tolerance < 0 or self.dcc_threshold <= 0:
            raise ConfigurationError("KP tolerance must be >= 0 and DCC threshold > 0")
        if self.chunk_size < 1:
            raise ConfigurationError("chunk size must be at least 1")


@dataclass(frozen=True)
class ProjectionDiagnostics:
    """Aggregate figures from one projection pass."""

    count: int = 0
    min_kp: Optional[float] = None
    max_kp: Optional[float] = None
    max_abs_dcc: Optional[float] = None
    kp_out_of_range: bool = False
    excessive_dcc: bool = False


class RouteProjector:
    """Compute KP and DCC of positions against a route.

    Parameters
    ----------
    route : RouteGeometry
        Planned route; validated on construction.
    kp_unit : KpUnit, optional
        Unit of the returned KP.
    dcc_right_positive : bool, optional
        Report DCC positive to the right of travel instead of the left.
    """

    def __init__(self, route: RouteGeometry, kp_unit: KpUnit = KpUnit.ROUTE, dcc_right_positive: bool = False):
        route.validate()
        self.route = route
        self.kp_unit = KpUnit.parse(kp_unit)
        self.dcc_sign = -1.0 if dcc_right_positive else 1.0

        segs = route.segments
        self._start = np.array([[s.start_easting, s.start_northing] for s in segs], dtype=float)
        self._delta = np.array([[s.end_easting - s.start_easting, s.end_northing - s.start_northing]
                                for s in segs], dtype=float)
        self._len_sq = np.sum(self._delta ** 2, axis=1)
        self._start_kp = np.array([s.start_kp for s in segs], dtype=float)
        self._kp_span = np.array([s.kp_length for s in segs], dtype=float)

    @classmethod
    def from_settings(cls, route: RouteGeometry, settings: ProjectionSettings) -> "RouteProjector":
        return cls(route, kp_unit=settings.kp_unit, dcc_right_positive=settings.dcc_right_positive)

    @property
    def declared_kp_range(self) -> Tuple[float, float]:
        """Route start and end KP in the output unit."""
        f = self.kp_unit.factor
        return self.route.start_kp * f, self.route.end_kp * f

    def calculate(self, x: float, y: float) -> Tuple[float, float]:
        """KP and DCC of a single point, scanning the segments one by one."""
        distances = []
        candidates = []
        for (sx, sy), (dx, dy), len_sq in zip(self._start, self._delta, self._len_sq):
            t = 0.0 if len_sq == 0 else ((x - sx) * dx + (y - sy) * dy) / len_sq
            t = min(1.0, max(0.0, t))
            px = sx + t * dx
            py = sy + t * dy
            distances.append(math.hypot(x - px, y - py))
            candidates.append((t, dx * (y - sy) - dy * (x - sx)))

        best = min(distances)
        i = next(k for k, d in enumerate(distances) if d <= best + TIE_TOLERANCE)
        t, cross = candidates[i]
        kp = (self._start_kp[i] + t * self._kp_span[i]) * self.kp_unit.factor
        dcc = distances[i] if cross >= 0 else -distances[i]
        return float(kp), float(self.dcc_sign * dcc)

    def _calculate_block(self, xy: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        rel = xy[:, None, :] - self._start[None, :, :]
        dot = np.einsum("nid,id->ni", rel, self._delta)
        safe_len_sq = np.where(self._len_sq > 0.0, self._len_sq, 1.0)
        t = np.where(self._len_sq[None, :] > 0.0, dot / safe_len_sq, 0.0)
        t = np.clip(t, 0.0, 1.0)
        nearest = self._start[None, :, :] + t[..., None] * self._delta[None, :, :]
        dist = np.hypot(xy[:, None, 0] - nearest[..., 0], xy[:, None, 1] - nearest[..., 1])

        best = dist.min(axis=1)
        idx = np.argmax(dist <= best[:, None] + TIE_TOLERANCE, axis=1)
        rows = np.arange(len(xy))
        best_t = t[rows, idx]
        cross = (self._delta[idx, 0] * rel[rows, idx, 1] - self._delta[idx, 1] * rel[rows, idx, 0])
        kp = (self._start_kp[idx] + best_t * self._kp_span[idx]) * self.kp_unit.factor
        dcc = np.where(cross >= 0, dist[rows, idx], -dist[rows, idx]) * self.dcc_sign
        return kp, dcc

    def calculate_many(self, xy, chunk_size: int = 4096, executor: Optional[Executor] = None) -> Tuple[np.ndarray, np.ndarray]:
        """Vectorised :meth:`calculate` over an (N, 2) array.

        Points are processed in blocks of ``chunk_size`` so memory stays
        bounded by ``chunk_size * segments``.  Blocks run on ``executor``
        when one is given; results keep input order.

        Returns
        -------
        kp, dcc : numpy.ndarray
            Arrays of length N.
        """
        pts = np.asarray(xy, dtype=float).reshape(-1, 2)
        if len(pts) == 0:
            return np.empty(0), np.empty(0)
        blocks = [pts[i:i + chunk_size] for i in range(0, len(pts), chunk_size)]
        if executor is not None:
            results = list(executor.map(self._calculate_block, blocks))
        else:
            results = [self._calculate_block(b) for b in blocks]
        kp = np.concatenate([r[0] for r in results])
        dcc = np.concatenate([r[1] for r in results])
        return kp, dcc

    def diagnose(
        self,
        kp: np.ndarray,
        dcc: np.ndarray,
        settings: ProjectionSettings,
        report: Optional[QualityReport] = None,
        stage: str = "projection"
    ) -> ProjectionDiagnostics:
        """Summarise a pass and report implausible KP or DCC.

        Both warnings usually mean the positions and the route are in
        different coordinate systems.
        """
        count = max(len(kp), len(dcc))
        if count == 0:
            return ProjectionDiagnostics()
        min_kp = float(np.min(kp)) if len(kp) else None
        max_kp = float(np.max(kp)) if len(kp) else None
        max_dcc = float(np.max(np.abs(dcc))) if len(dcc) else None

        start, end = self.declared_kp_range
        out_of_range = min_kp is not None and (
            min_kp < start - settings.kp_tolerance or max_kp > end + settings.kp_tolerance)
        excessive = max_dcc is not None and max_dcc > settings.dcc_threshold

        if out_of_range:
            message = f"KP range {min_kp:.3f} to {max_kp:.3f} outside route range {start:.3f} to {end:.3f}"
            if report is not None:
                report.warn(stage, "kp_out_of_range", message, min_kp=min_kp, max_kp=max_kp,
                            route_start_kp=start, route_end_kp=end, tolerance=settings.kp_tolerance)
            else:
                logger.warning(message)
        if excessive:
            message = f"max |DCC| {max_dcc:.1f} exceeds {settings.dcc_threshold:.1f}"
            if report is not None:
                report.warn(stage, "excessive_dcc", message, max_abs_dcc=max_dcc,
                            threshold=settings.dcc_threshold)
            else:
                logger.warning(message)

        return ProjectionDiagnostics(
            count=count,
            min_kp=min_kp,
            max_kp=max_kp,
            max_abs_dcc=max_dcc,
            kp_out_of_range=bool(out_of_range),
            excessive_dcc=bool(excessive),
        )

    def project_all(
        self,
        fixes: Sequence[NavigationFix],
        settings: Optional[ProjectionSettings] = None,
        report: Optional[QualityReport] = None,
        executor: Optional[Executor] = None
    ) -> ProjectionDiagnostics:
        """Write ``kp`` and ``dcc`` on every fix from its best position.

        Only the quantities selected by ``settings.mode`` are written;
        with ``KpDccMode.NONE`` nothing is computed.
        """
        settings = settings or ProjectionSettings()
        mode = settings.mode
        if mode is KpDccMode.NONE or not fixes:
            return ProjectionDiagnostics()

        xy = np.array([[f.x, f.y] for f in fixes], dtype=float)
        kp, dcc = self.calculate_many(xy, chunk_size=settings.chunk_size, executor=executor)
        for fix, k, d in zip(fixes, kp, dcc):
            if mode.wants_kp:
                fix.kp = float(k)
            if mode.wants_dcc:
                fix.dcc = float(d)

        diagnostics = self.diagnose(kp if mode.wants_kp else np.empty(0),
                                    dcc if mode.wants_dcc else np.empty(0),
                                    settings, report)
        logger.info("Projected %d fixes: KP %s to %s, max |DCC| %s",
                    diagnostics.count, _fmt(diagnostics.min_kp), _fmt(diagnostics.max_kp),
                    _fmt(diagnostics.max_abs_dcc))
        return diagnostics


def _fmt(value: Optional[float]) -> str:
    return "--" if value is None else f"{value:.3f}"


def project_points(projector: RouteProjector, points: np.ndarray, settings: ProjectionSettings,
                   report: Optional[QualityReport] = None, stage: str = "spline_projection"
                   ) -> Tuple[List[float], List[float], ProjectionDiagnostics]:
    """Project arbitrary (N, 2+) vertices, e.g. a fitted spline."""
    pts = np.asarray(points, dtype=float)
    if pts.size == 0:
        return [], [], ProjectionDiagnostics()
    kp, dcc = projector.calculate_many(pts[:, :2], chunk_size=settings.chunk_size)
    diagnostics = projector.diagnose(kp, dcc, settings, report, stage=stage)
    return kp.tolist(), dcc.tolist(), diagnostics
