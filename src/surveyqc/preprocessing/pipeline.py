"""Complete conditioning pipeline for survey navigation data.

This module chains the conditioning stages into one run: coordinate
sanity check, smoothing, tide correction, seabed Z, KP/DCC projection,
spline fitting, fixed-interval resampling and KP/DCC of the spline.

Every stage that changes fixes works on a fresh copy of the previous
stage's output, and the raw input is archived untouched for
before/after comparison.  Data-quality findings never stop the run;
they are collected in a :class:`QualityReport`.  Only two events end a
run early, and both keep the outputs of completed stages:

* the mismatch decision declines to continue (``aborted``);
* the caller sets the cancel event (``cancelled``), checked between
  stages.

Usage:
    python -m surveyqc.preprocessing.pipeline --fixes nav.csv --route route.csv \
        --tide tide.csv --output out/
"""

import argparse
import sys
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..common.models import (
    IntervalPoint,
    NavigationFix,
    RouteGeometry,
    RouteSegment,
    TideCurve,
    clone_fixes,
    fixes_from_frame,
    fixes_to_frame,
)
from ..errors import ConfigurationError, PipelineCancelled, SurveyQCError, UserAbort
from ..utils.config import load_config
from ..utils.logging import get_logger
from .coordinate_checker import (
    ConsoleDecision,
    CoordinateCheckResult,
    CoordinateCheckSettings,
    CoordinateSanityChecker,
    FixedDecision,
    MismatchDecision,
)
from .interval_resampler import (
    IntervalSettings,
    IntervalSource,
    interval_points_to_frame,
    interval_source_vertices,
    resample,
)
from .qa_report import QualityReport
from .route_projector import (
    ProjectionDiagnostics,
    ProjectionSettings,
    RouteProjector,
    project_points,
)
from .smoothing_engine import SmoothingConfiguration, SmoothingEngine, SmoothingResult
from .spline_fitter import SplineConfiguration, fit, source_vertices
from .tide_corrector import TideApplication, TideCorrector, TideSettings, TideValidation, compute_seabed_z

logger = get_logger(__name__)


@dataclass
class StageFlags:
    """Which stages a run executes."""
    coordinate_check: bool = True
    smoothing: bool = True
    tide: bool = True
    seabed_z: bool = True
    projection: bool = True
    spline: bool = False
    interval: bool = False
    reproject_spline: bool = True


def _plain(value):
    """Convert enums and tuples so the value can be written as YAML or JSON."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


@dataclass
class PipelineConfig:
    """Configuration of every stage plus the stage switches."""

    stages: StageFlags = field(default_factory=StageFlags)
    coordinate_check: CoordinateCheckSettings = field(default_factory=CoordinateCheckSettings)
    smoothing: SmoothingConfiguration = field(default_factory=SmoothingConfiguration)
    tide: TideSettings = field(default_factory=TideSettings)
    projection: ProjectionSettings = field(default_factory=ProjectionSettings)
    spline: SplineConfiguration = field(default_factory=SplineConfiguration)
    interval: IntervalSettings = field(default_factory=IntervalSettings)

    workers: int = 1
    """Threads used for KP/DCC projection; 1 runs it inline."""

    def __post_init__(self):
        if (self.stages.interval and not self.stages.spline
                and self.interval.source is IntervalSource.SPLINE):
            raise ConfigurationError(
                "interval source 'spline' needs the spline stage; enable stages.spline "
                "or choose another interval source")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PipelineConfig":
        """Build a configuration from nested dictionaries.

        Missing sections keep their defaults.

        Raises
        ------
        ConfigurationError
            On unknown sections or keys, or invalid values.
        """
        data = dict(data or {})
        sections = {
            "stages": StageFlags,
            "coordinate_check": CoordinateCheckSettings,
            "smoothing": SmoothingConfiguration,
            "tide": TideSettings,
            "projection": ProjectionSettings,
            "spline": SplineConfiguration,
            "interval": IntervalSettings,
        }
        unknown = set(data) - set(sections) - {"workers"}
        if unknown:
            raise ConfigurationError(f"unknown configuration sections: {sorted(unknown)}")
        kwargs = {}
        for name, section_cls in sections.items():
            section = data.get(name) or {}
            if not isinstance(section, dict):
                raise ConfigurationError(f"configuration section '{name}' must be a mapping")
            try:
                kwargs[name] = section_cls(**section)
            except ConfigurationError:
                raise
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"invalid '{name}' configuration: {exc}") from exc
        try:
            workers = int(data.get("workers", 1))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"invalid workers value: {exc}") from exc
        if workers < 1:
            raise ConfigurationError("workers must be at least 1")
        return cls(workers=workers, **kwargs)

    @classmethod
    def from_yaml(cls, path) -> "PipelineConfig":
        return cls.from_dict(load_config(path))

    def to_dict(self) -> Dict[str, Any]:
        return _plain(asdict(self))


@dataclass(frozen=True)
class SplineProjection:
    """KP and DCC of every spline point."""
    kp: List[float]
    dcc: List[float]
    diagnostics: ProjectionDiagnostics


@dataclass
class PipelineResult:
    """Outputs of a run.  Stages that did not run leave their field ``None``."""

    original: Tuple[NavigationFix, ...]
    """Copies of the input fixes as received.  Read-only by contract: the
    records are plain dataclasses, so callers that want to edit them take
    their own copy with :func:`clone_fixes`."""

    working: List[NavigationFix]
    """Fixes with every derived field the run produced."""

    report: QualityReport = field(default_factory=QualityReport)
    coordinate_check: Optional[CoordinateCheckResult] = None
    smoothing: Optional[SmoothingResult] = None
    tide: Optional[TideApplication] = None
    tide_validation: Optional[TideValidation] = None
    z_count: Optional[int] = None
    projection: Optional[ProjectionDiagnostics] = None
    spline_points: Optional[np.ndarray] = None
    spline_projection: Optional[SplineProjection] = None
    interval_points: Optional[List[IntervalPoint]] = None
    aborted: bool = False
    cancelled: bool = False
    completed_stages: List[str] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return not (self.aborted or self.cancelled)

    def summary(self) -> Dict[str, Any]:
        """Flat summary of the run, in the order the stages ran."""
        out = {
            "input_fixes": len(self.original),
            "completed_stages": list(self.completed_stages),
            "aborted": self.aborted,
            "cancelled": self.cancelled,
            "issues": len(self.report),
            "worst_severity": self.report.worst_severity(),
        }
        if self.smoothing is not None:
            out["smoothed_fixes_modified"] = self.smoothing.spikes_removed
            out["max_position_correction"] = self.smoothing.max_position_correction
        if self.tide is not None:
            out["tide_corrected"] = self.tide.corrected
            out["tide_fallbacks"] = self.tide.fallback_count
        if self.z_count is not None:
            out["z_computed"] = self.z_count
        if self.projection is not None:
            out["min_kp"] = self.projection.min_kp
            out["max_kp"] = self.projection.max_kp
            out["max_abs_dcc"] = self.projection.max_abs_dcc
        if self.spline_points is not None:
            out["spline_points"] = len(self.spline_points)
        if self.interval_points is not None:
            out["interval_points"] = len(self.interval_points)
        return out

    def fixes_frame(self) -> pd.DataFrame:
        return fixes_to_frame(self.working)

    def spline_frame(self) -> pd.DataFrame:
        """Spline points with KP/DCC columns when they were computed."""
        pts = self.spline_points if self.spline_points is not None else np.empty((0, 3))
        frame = pd.DataFrame(pts, columns=["x", "y", "z"])
        if self.spline_projection is not None and len(self.spline_projection.kp) == len(frame):
            frame["kp"] = self.spline_projection.kp
            frame["dcc"] = self.spline_projection.dcc
        return frame


class SurveyPipeline:
    """Conditioning pipeline for one set of navigation fixes.

    The pipeline holds configuration only; every :meth:`run` starts from
    its own copies of the inputs, so one instance can serve several runs
    and several threads.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        decision: Optional[MismatchDecision] = None
    ):
        """Initialize the pipeline.

        Parameters
        ----------
        config : PipelineConfig, optional
            Stage settings; defaults when omitted.
        decision : MismatchDecision, optional
            Asked whether to continue after a likely coordinate system
            mismatch.  Defaults to always continuing.
        """
        self.config = config or PipelineConfig()
        self.decision = decision if decision is not None else FixedDecision(True)
        self.checker = CoordinateSanityChecker(self.config.coordinate_check)
        self.smoother = SmoothingEngine()

    @staticmethod
    def _check_cancel(cancel_event: Optional[threading.Event], next_stage: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise PipelineCancelled(f"cancelled before {next_stage}")

    def step_1_check_coordinates(
        self,
        fixes: Sequence[NavigationFix],
        route: RouteGeometry,
        report: QualityReport
    ) -> CoordinateCheckResult:
        """Compare survey and route extents; ask the decision when needed.

        Raises
        ------
        UserAbort
            If the decision declines to continue.
        """
        logger.info("Step 1: Checking coordinate systems...")
        result = self.checker.check(fixes, route, report)
        if result.requires_confirmation and not self.decision.confirm_mismatch(result.summary):
            report.add("coordinate_check", "user_abort", "hard",
                       "processing stopped after coordinate mismatch warning")
            raise UserAbort("coordinate system mismatch not confirmed")
        return result

    def step_2_smooth(self, fixes: List[NavigationFix], report: QualityReport) -> SmoothingResult:
        logger.info("Step 2: Smoothing...")
        return self.smoother.smooth(fixes, self.config.smoothing, report)

    def step_3_apply_tide(
        self,
        fixes: List[NavigationFix],
        tide: TideCurve,
        report: QualityReport
    ) -> Tuple[TideApplication, TideValidation]:
        """Validate tide coverage, then correct depths."""
        logger.info("Step 3: Applying tide correction...")
        settings = self.config.tide
        corrector = TideCorrector(tide, use_feet=settings.use_feet)
        validation = corrector.validate(fixes, settings.gap_threshold)
        for start, end in validation.gaps:
            report.warn("tide", "tide_gap", f"tide data gap from {start} to {end}",
                        start=start, end=end, threshold_minutes=settings.gap_threshold_minutes)
        return corrector.apply_to_all(fixes, report), validation

    def step_4_compute_z(self, fixes: List[NavigationFix]) -> int:
        logger.info("Step 4: Computing seabed Z...")
        settings = self.config.tide
        return compute_seabed_z(fixes, settings.vertical_offset, settings.include_altitude)

    def step_5_project(
        self,
        fixes: List[NavigationFix],
        route: RouteGeometry,
        report: QualityReport
    ) -> ProjectionDiagnostics:
        """KP/DCC of every fix, fanned out over threads when ``workers > 1``."""
        logger.info("Step 5: Computing KP/DCC...")
        projector = RouteProjector.from_settings(route, self.config.projection)
        if self.config.workers > 1:
            with ThreadPoolExecutor(max_workers=self.config.workers) as executor:
                return projector.project_all(fixes, self.config.projection, report, executor=executor)
        return projector.project_all(fixes, self.config.projection, report)

    def step_6_fit_spline(self, fixes: Sequence[NavigationFix], report: QualityReport) -> np.ndarray:
        logger.info("Step 6: Fitting spline...")
        vertices = source_vertices(fixes, self.config.spline.source)
        return fit(vertices, self.config.spline, report)

    def step_7_resample(
        self,
        fixes: Sequence[NavigationFix],
        spline_points: Optional[np.ndarray],
        route: Optional[RouteGeometry],
        report: QualityReport
    ) -> List[IntervalPoint]:
        logger.info("Step 7: Resampling at fixed interval...")
        settings = self.config.interval
        vertices = interval_source_vertices(settings.source, fixes, spline_points, route)
        return resample(vertices, settings.interval, report)

    def step_8_reproject_spline(
        self,
        spline_points: np.ndarray,
        route: RouteGeometry,
        report: QualityReport
    ) -> SplineProjection:
        logger.info("Step 8: Computing KP/DCC of spline points...")
        projector = RouteProjector.from_settings(route, self.config.projection)
        kp, dcc, diagnostics = project_points(projector, spline_points, self.config.projection, report)
        return SplineProjection(kp=kp, dcc=dcc, diagnostics=diagnostics)

    def run(
        self,
        fixes: Sequence[NavigationFix],
        route: Optional[RouteGeometry] = None,
        tide: Optional[TideCurve] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> PipelineResult:
        """Run every enabled stage in order.

        Parameters
        ----------
        fixes : sequence of NavigationFix
            Raw fixes in time order.  Never modified.
        route : RouteGeometry, optional
            Planned route; stages that need it are skipped without one.
        tide : TideCurve, optional
            Tide heights; the tide stage is skipped without one.
        cancel_event : threading.Event, optional
            Checked before every stage.

        Returns
        -------
        PipelineResult
            Outputs of the stages that completed.

        Raises
        ------
        ConfigurationError
            If the route is malformed, or the interval stage resamples the
            route and none was given.
        """
        flags = self.config.stages
        report = QualityReport()
        result = PipelineResult(original=tuple(clone_fixes(fixes)), working=clone_fixes(fixes), report=report)
        if route is not None:
            route.validate()
        elif flags.interval and self.config.interval.source is IntervalSource.ROUTE:
            raise ConfigurationError("interval source 'route' needs a route")

        logger.info("=" * 60)
        logger.info("Survey conditioning pipeline: %d fixes", len(fixes))
        logger.info("=" * 60)

        try:
            if flags.coordinate_check and route is not None:
                self._check_cancel(cancel_event, "coordinate_check")
                result.coordinate_check = self.step_1_check_coordinates(result.working, route, report)
                result.completed_stages.append("coordinate_check")

            if flags.smoothing:
                self._check_cancel(cancel_event, "smoothing")
                snapshot = clone_fixes(result.working)
                result.smoothing = self.step_2_smooth(snapshot, report)
                result.working = snapshot
                result.completed_stages.append("smoothing")

            if flags.tide:
                self._check_cancel(cancel_event, "tide")
                if tide is None:
                    report.add("tide", "stage_skipped", "info", "no tide curve supplied; tide stage skipped")
                else:
                    snapshot = clone_fixes(result.working)
                    result.tide, result.tide_validation = self.step_3_apply_tide(snapshot, tide, report)
                    result.working = snapshot
                    result.completed_stages.append("tide")

            if flags.seabed_z:
                self._check_cancel(cancel_event, "seabed_z")
                snapshot = clone_fixes(result.working)
                result.z_count = self.step_4_compute_z(snapshot)
                result.working = snapshot
                result.completed_stages.append("seabed_z")

            if flags.projection:
                self._check_cancel(cancel_event, "projection")
                if route is None:
                    report.add("projection", "stage_skipped", "info", "no route supplied; KP/DCC skipped")
                else:
                    snapshot = clone_fixes(result.working)
                    result.projection = self.step_5_project(snapshot, route, report)
                    result.working = snapshot
                    result.completed_stages.append("projection")

            if flags.spline:
                self._check_cancel(cancel_event, "spline")
                result.spline_points = self.step_6_fit_spline(clone_fixes(result.working), report)
                result.completed_stages.append("spline")

            if flags.interval:
                self._check_cancel(cancel_event, "interval")
                result.interval_points = self.step_7_resample(
                    clone_fixes(result.working), result.spline_points, route, report)
                result.completed_stages.append("interval")

            if flags.spline and flags.reproject_spline and route is not None and result.spline_points is not None:
                self._check_cancel(cancel_event, "spline_projection")
                result.spline_projection = self.step_8_reproject_spline(result.spline_points, route, report)
                result.completed_stages.append("spline_projection")

        except UserAbort as exc:
            logger.warning("Run aborted: %s", exc)
            result.aborted = True
        except PipelineCancelled as exc:
            logger.warning("Run cancelled: %s", exc)
            report.add("pipeline", "cancelled", "info", str(exc))
            result.cancelled = True

        summary = result.summary()
        logger.info("=" * 60)
        logger.info("Pipeline %s", "complete!" if result.finished else "stopped early")
        logger.info("=" * 60)
        logger.info("Stages run:   %s", ", ".join(summary["completed_stages"]) or "none")
        logger.info("Issues:       %d (worst: %s)", summary["issues"], summary["worst_severity"])
        return result

    def submit(
        self,
        executor: Executor,
        fixes: Sequence[NavigationFix],
        route: Optional[RouteGeometry] = None,
        tide: Optional[TideCurve] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> "Future[PipelineResult]":
        """Run on ``executor`` and return the future of the result."""
        return executor.submit(self.run, fixes, route, tide, cancel_event)


def route_from_frame(frame: pd.DataFrame, kp_scale: float = 0.001, name: str = "route") -> RouteGeometry:
    """Build a route from a vertex table.

    The table needs ``easting`` and ``northing`` columns.  With a ``kp``
    column the vertex KPs are used as given; otherwise KP is chainage
    times ``kp_scale`` (metres to kilometres by default).
    """
    if not {"easting", "northing"} <= set(frame.columns):
        raise ConfigurationError("route table needs 'easting' and 'northing' columns")
    xy = frame[["easting", "northing"]].to_numpy(dtype=float)
    if "kp" not in frame.columns:
        return RouteGeometry.from_vertices(xy, kp_scale=kp_scale, name=name)
    if len(xy) < 2:
        raise ConfigurationError("a route needs at least two vertices")
    kp = frame["kp"].to_numpy(dtype=float)
    segments = [RouteSegment(xy[i, 0], xy[i, 1], xy[i + 1, 0], xy[i + 1, 1], kp[i], kp[i + 1])
                for i in range(len(xy) - 1)]
    return RouteGeometry(segments=segments, name=name)


def write_outputs(result: PipelineResult, output_dir: Path) -> List[Path]:
    """Write fixes, spline, interval points and the quality report."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    written = []

    path = output_dir / "fixes.csv"
    result.fixes_frame().to_csv(path, index=False)
    written.append(path)

    if result.spline_points is not None:
        path = output_dir / "spline.csv"
        result.spline_frame().to_csv(path, index=False)
        written.append(path)

    if result.interval_points is not None:
        path = output_dir / "interval_points.csv"
        interval_points_to_frame(result.interval_points).to_csv(path, index=False)
        written.append(path)

    path = output_dir / "quality_report.json"
    result.report.save(path)
    written.append(path)
    for p in written:
        logger.info("  Wrote %s", p)
    return written


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command-line entry point."""
    parser = argparse.ArgumentParser(
        description="Condition survey navigation data: smoothing, tide, KP/DCC, spline and interval points"
    )
    parser.add_argument(
        "--fixes",
        type=str,
        required=True,
        help="CSV with timestamp, easting, northing and optional depth, altitude, heading"
    )
    parser.add_argument(
        "--route",
        type=str,
        default=None,
        help="CSV of route vertices (easting, northing, optional kp)"
    )
    parser.add_argument(
        "--tide",
        type=str,
        default=None,
        help="CSV with timestamp and height columns"
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="YAML configuration file"
    )
    parser.add_argument(
        "--output",
        type=str,
        required=True,
        help="Output directory"
    )
    parser.add_argument(
        "--kp-scale",
        type=float,
        default=0.001,
        help="KP per coordinate unit when the route has no kp column (default: 0.001)"
    )
    parser.add_argument(
        "--assume-yes",
        action="store_true",
        help="Continue without asking after a coordinate mismatch warning"
    )

    args = parser.parse_args(argv)

    try:
        config = PipelineConfig.from_yaml(args.config) if args.config else PipelineConfig()
        fixes = fixes_from_frame(pd.read_csv(args.fixes))
        route = route_from_frame(pd.read_csv(args.route), kp_scale=args.kp_scale) if args.route else None
        tide = TideCurve.from_frame(pd.read_csv(args.tide)) if args.tide else None
    except (SurveyQCError, OSError, ValueError) as exc:
        logger.error("Invalid input: %s", exc)
        return 2

    decision = FixedDecision(True) if args.assume_yes else ConsoleDecision()
    pipeline = SurveyPipeline(config, decision=decision)
    try:
        result = pipeline.run(fixes, route, tide)
    except ConfigurationError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    write_outputs(result, Path(args.output))
    return 0 if result.finished else 1


if __name__ == "__main__":
    sys.exit(main())
