"""Data structures shared by all conditioning stages.

A survey run works on two parallel collections of
:class:`NavigationFix`: an immutable archive of the raw records kept
for before/after comparison, and a working set that the stages fill in.
They are separated with :func:`clone_fixes` and never alias each other.

Optional measurements (depth, altitude, heading) and every derived
field use ``None`` for "no value"; zero is a valid measurement.
"""

import math
from dataclasses import dataclass, field, replace, asdict
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..errors import ConfigurationError

CONTINUITY_TOLERANCE = 1e-6


@dataclass
class NavigationFix:
    """A single navigation record and the fields derived from it."""

    record_number: int
    timestamp: datetime
    easting: float
    northing: float
    depth: Optional[float] = None
    altitude: Optional[float] = None
    heading: Optional[float] = None

    # Written by the smoothing stage.
    smoothed_easting: Optional[float] = None
    smoothed_northing: Optional[float] = None
    smoothed_depth: Optional[float] = None
    smoothed_altitude: Optional[float] = None

    # Written by the tide stage.
    tide_correction: Optional[float] = None
    corrected_depth: Optional[float] = None
    vertical_offset: Optional[float] = None
    calculated_z: Optional[float] = None

    # Written by the route projection stage.
    kp: Optional[float] = None
    dcc: Optional[float] = None

    @property
    def x(self) -> float:
        """Best available easting (smoothed if present)."""
        return self.smoothed_easting if self.smoothed_easting is not None else self.easting

    @property
    def y(self) -> float:
        """Best available northing (smoothed if present)."""
        return self.smoothed_northing if self.smoothed_northing is not None else self.northing

    @property
    def best_depth(self) -> Optional[float]:
        return self.smoothed_depth if self.smoothed_depth is not None else self.depth

    @property
    def best_altitude(self) -> Optional[float]:
        return self.smoothed_altitude if self.smoothed_altitude is not None else self.altitude

    def clone(self) -> "NavigationFix":
        return replace(self)

    def __str__(self) -> str:
        kp = f"KP:{self.kp:.6f}" if self.kp is not None else "KP:--"
        z = f"Z:{self.calculated_z:.2f}" if self.calculated_z is not None else "Z:--"
        return f"[{self.record_number}] {self.timestamp:%H:%M:%S} X:{self.x:.2f} Y:{self.y:.2f} {z} {kp}"


def clone_fixes(fixes: Iterable[NavigationFix]) -> List[NavigationFix]:
    """Return independent copies of ``fixes``."""
    return [fix.clone() for fix in fixes]


def fixes_to_frame(fixes: Sequence[NavigationFix]) -> pd.DataFrame:
    """Tabulate fixes, one row per record, ``None`` shown as NaN."""
    columns = [f.name for f in NavigationFix.__dataclass_fields__.values()]
    if not fixes:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame([asdict(fix) for fix in fixes], columns=columns)


def _optional(value) -> Optional[float]:
    if value is None:
        return None
    value = float(value)
    return None if math.isnan(value) else value


def _parse_timestamps(column: pd.Series, table: str) -> pd.Series:
    try:
        return pd.to_datetime(column)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{table} table has unreadable timestamps: {exc}") from exc


def fixes_from_frame(frame: pd.DataFrame) -> List[NavigationFix]:
    """Build fixes from a table with at least ``timestamp``, ``easting`` and ``northing``.

    ``record_number`` defaults to the 1-based row position.  Missing or
    NaN depth/altitude/heading become ``None``.
    """
    required = {"timestamp", "easting", "northing"}
    missing = required - set(frame.columns)
    if missing:
        raise ConfigurationError(f"navigation table is missing columns: {sorted(missing)}")
    timestamps = _parse_timestamps(frame["timestamp"], "navigation")
    fixes = []
    for pos, (_, row) in enumerate(frame.iterrows()):
        record = row.get("record_number", pos + 1)
        fixes.append(NavigationFix(
            record_number=int(record) if not pd.isna(record) else pos + 1,
            timestamp=timestamps.iloc[pos].to_pydatetime(),
            easting=float(row["easting"]),
            northing=float(row["northing"]),
            depth=_optional(row.get("depth")),
            altitude=_optional(row.get("altitude")),
            heading=_optional(row.get("heading")),
        ))
    return fixes


@dataclass(frozen=True)
class RouteSegment:
    """Straight route segment with KP at both ends."""
    start_easting: float
    start_northing: float
    end_easting: float
    end_northing: float
    start_kp: float
    end_kp: float

    @property
    def length(self) -> float:
        """Planimetric length in coordinate units."""
        return math.hypot(self.end_easting - self.start_easting, self.end_northing - self.start_northing)

    @property
    def kp_length(self) -> float:
        return self.end_kp - self.start_kp


@dataclass
class RouteGeometry:
    """Planned route as a contiguous polyline of KP-tagged segments.

    ``start_kp`` and ``end_kp`` are the declared KP range; they default
    to the first segment's start KP and the last segment's end KP.
    """

    segments: List[RouteSegment]
    name: str = "route"
    start_kp: Optional[float] = None
    end_kp: Optional[float] = None

    def __post_init__(self):
        self.segments = list(self.segments)
        if self.segments:
            if self.start_kp is None:
                self.start_kp = self.segments[0].start_kp
            if self.end_kp is None:
                self.end_kp = self.segments[-1].end_kp

    def __len__(self) -> int:
        return len(self.segments)

    def validate(self) -> None:
        """Check contiguity and non-decreasing KP.

        Raises
        ------
        ConfigurationError
            If the route is empty, a segment does not start where the
            previous one ended, or KP decreases along the route.
        """
        if not self.segments:
            raise ConfigurationError("route has no segments")
        for i, seg in enumerate(self.segments):
            if seg.end_kp < seg.start_kp:
                raise ConfigurationError(f"segment {i} has decreasing KP")
            if i == 0:
                continue
            prev = self.segments[i - 1]
            gap = math.hypot(seg.start_easting - prev.end_easting, seg.start_northing - prev.end_northing)
            if gap > CONTINUITY_TOLERANCE:
                raise ConfigurationError(f"segment {i} does not start at the end of segment {i - 1}")
            if seg.start_kp < prev.end_kp - CONTINUITY_TOLERANCE:
                raise ConfigurationError(f"KP decreases between segments {i - 1} and {i}")

    def vertices(self) -> np.ndarray:
        """Route polyline as an (N, 3) array with zero elevation."""
        if not self.segments:
            return np.empty((0, 3))
        xy = [(s.start_easting, s.start_northing) for s in self.segments]
        last = self.segments[-1]
        xy.append((last.end_easting, last.end_northing))
        out = np.zeros((len(xy), 3))
        out[:, :2] = xy
        return out

    def bounds(self) -> Tuple[float, float, float, float]:
        """(min_e, max_e, min_n, max_n) over all segment end points."""
        v = self.vertices()
        return (float(v[:, 0].min()), float(v[:, 0].max()),
                float(v[:, 1].min()), float(v[:, 1].max()))

    @classmethod
    def from_vertices(cls, xy, start_kp: float = 0.0, kp_scale: float = 1.0, name: str = "route") -> "RouteGeometry":
        """Build a route whose KP is chainage times ``kp_scale``.

        With coordinates in metres, ``kp_scale=0.001`` gives KP in
        kilometres.
        """
        pts = np.asarray(xy, dtype=float)
        if pts.ndim != 2 or pts.shape[0] < 2 or pts.shape[1] < 2:
            raise ConfigurationError("a route needs at least two (x, y) vertices")
        segments = []
        kp = start_kp
        for (x0, y0), (x1, y1) in zip(pts[:-1, :2], pts[1:, :2]):
            end_kp = kp + math.hypot(x1 - x0, y1 - y0) * kp_scale
            segments.append(RouteSegment(x0, y0, x1, y1, kp, end_kp))
            kp = end_kp
        return cls(segments=segments, name=name)

    def find_segment(self, kp: float) -> Optional[RouteSegment]:
        """First segment whose KP range contains ``kp``."""
        for seg in self.segments:
            if seg.start_kp <= kp <= seg.end_kp:
                return seg
        return None

    def coordinates_at_kp(self, kp: float) -> Optional[Tuple[float, float]]:
        """Position on the route at ``kp``, or ``None`` outside the route."""
        seg = self.find_segment(kp)
        if seg is None:
            return None
        frac = 0.0 if seg.kp_length == 0 else (kp - seg.start_kp) / seg.kp_length
        return (seg.start_easting + frac * (seg.end_easting - seg.start_easting),
                seg.start_northing + frac * (seg.end_northing - seg.start_northing))

    def offset_point(self, kp: float, offset: float, right_positive: bool = False) -> Optional[Tuple[float, float]]:
        """Point ``offset`` units off the centreline at ``kp``.

        Positive offsets go to the left of travel unless
        ``right_positive`` is set, matching the DCC sign convention of
        :class:`~surveyqc.preprocessing.route_projector.RouteProjector`.
        """
        seg = self.find_segment(kp)
        coords = self.coordinates_at_kp(kp)
        if seg is None or coords is None or seg.length == 0:
            return None
        ux = (seg.end_easting - seg.start_easting) / seg.length
        uy = (seg.end_northing - seg.start_northing) / seg.length
        # left normal
        nx, ny = -uy, ux
        if right_positive:
            nx, ny = -nx, -ny
        return coords[0] + offset * nx, coords[1] + offset * ny

    def points_at_interval(self, step: float) -> List[Tuple[float, float, float]]:
        """``(kp, easting, northing)`` every ``step`` KP units from start to end."""
        if step <= 0:
            raise ConfigurationError("KP step must be positive")
        out = []
        count = int(math.floor((self.end_kp - self.start_kp) / step + 1e-9))
        for k in range(count + 1):
            kp = self.start_kp + k * step
            coords = self.coordinates_at_kp(kp)
            if coords is not None:
                out.append((kp, coords[0], coords[1]))
        return out


def _to_ns(value) -> int:
    return pd.Timestamp(value).value


@dataclass
class TideCurve:
    """Time series of tide heights (metres), strictly increasing in time."""

    timestamps: Sequence[datetime]
    heights: Sequence[float]
    _ns: np.ndarray = field(init=False, repr=False, compare=False)
    _seconds: np.ndarray = field(init=False, repr=False, compare=False)
    _h: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if len(self.timestamps) != len(self.heights):
            raise ConfigurationError("tide timestamps and heights differ in length")
        if len(self.timestamps) == 0:
            raise ConfigurationError("tide curve is empty")
        self._ns = np.array([_to_ns(t) for t in self.timestamps], dtype=np.int64)
        self._h = np.asarray(self.heights, dtype=float)
        if np.any(np.diff(self._ns) <= 0):
            raise ConfigurationError("tide timestamps must be strictly increasing")
        self._seconds = (self._ns - self._ns[0]) / 1e9

    def __len__(self) -> int:
        return len(self._ns)

    @property
    def start_time(self) -> datetime:
        return pd.Timestamp(self._ns[0]).to_pydatetime()

    @property
    def end_time(self) -> datetime:
        return pd.Timestamp(self._ns[-1]).to_pydatetime()

    def covers(self, start, end) -> bool:
        return self._ns[0] <= _to_ns(start) and _to_ns(end) <= self._ns[-1]

    def interpolate(self, timestamp) -> Optional[float]:
        """Linear interpolation in metres; ``None`` outside the curve's span."""
        t = _to_ns(timestamp)
        if t < self._ns[0] or t > self._ns[-1]:
            return None
        return float(np.interp((t - self._ns[0]) / 1e9, self._seconds, self._h))

    def interpolate_many(self, timestamps: Sequence) -> np.ndarray:
        """Vectorised :meth:`interpolate`; NaN marks times outside the span."""
        t = np.array([_to_ns(ts) for ts in timestamps], dtype=np.int64)
        out = np.full(len(t), np.nan)
        inside = (t >= self._ns[0]) & (t <= self._ns[-1])
        if inside.any():
            out[inside] = np.interp((t[inside] - self._ns[0]) / 1e9, self._seconds, self._h)
        return out

    def gaps(self, threshold_seconds: float) -> List[Tuple[datetime, datetime]]:
        """Consecutive samples further apart than ``threshold_seconds``."""
        diffs = np.diff(self._ns) / 1e9
        idx = np.nonzero(diffs > threshold_seconds)[0]
        return [(pd.Timestamp(self._ns[i]).to_pydatetime(), pd.Timestamp(self._ns[i + 1]).to_pydatetime())
                for i in idx]

    @classmethod
    def from_frame(cls, frame: pd.DataFrame) -> "TideCurve":
        """Build a curve from a table with ``timestamp`` and ``height`` columns."""
        if not {"timestamp", "height"} <= set(frame.columns):
            raise ConfigurationError("tide table needs 'timestamp' and 'height' columns")
        ordered = frame.assign(timestamp=_parse_timestamps(frame["timestamp"], "tide")).sort_values("timestamp")
        return cls(timestamps=[t.to_pydatetime() for t in ordered["timestamp"]],
                   heights=ordered["height"].astype(float).tolist())


@dataclass(frozen=True)
class IntervalPoint:
    """Point regenerated at a fixed along-track distance."""
    x: float
    y: float
    z: float
    distance: float
