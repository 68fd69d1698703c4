"""Conditioning stages package.

This package contains the stages that turn raw survey navigation fixes
into conditioned deliverables: coordinate sanity checks, track and
depth smoothing, tide correction, KP/DCC projection against the planned
route, spline fitting and fixed-interval resampling.  Each module
exposes one or more classes or functions for a single stage, and
``pipeline`` chains them together.
"""

from .qa_report import QualityIssue, QualityReport
from .smoothing_engine import (
    SmoothingMethod,
    ChannelSettings,
    SmoothingConfiguration,
    SmoothingEngine,
    SmoothingResult,
    normalize_window,
    detect_spikes,
    remove_spikes,
)
from .tide_corrector import TideCorrector, TideSettings, compute_seabed_z
from .route_projector import KpUnit, KpDccMode, ProjectionSettings, RouteProjector
from .spline_fitter import SplineAlgorithm, SplineSource, SplineConfiguration, fit
from .interval_resampler import IntervalSource, IntervalSettings, resample
from .coordinate_checker import (
    CoordinateSanityChecker,
    CoordinateCheckSettings,
    ConsoleDecision,
    FixedDecision,
    is_likely_geographic,
)
from .pipeline import PipelineConfig, PipelineResult, SurveyPipeline

__all__ = [
    "QualityIssue",
    "QualityReport",
    "SmoothingMethod",
    "ChannelSettings",
    "SmoothingConfiguration",
    "SmoothingEngine",
    "SmoothingResult",
    "normalize_window",
    "detect_spikes",
    "remove_spikes",
    "TideCorrector",
    "TideSettings",
    "compute_seabed_z",
    "KpUnit",
    "KpDccMode",
    "ProjectionSettings",
    "RouteProjector",
    "SplineAlgorithm",
    "SplineSource",
    "SplineConfiguration",
    "fit",
    "IntervalSource",
    "IntervalSettings",
    "resample",
    "CoordinateSanityChecker",
    "CoordinateCheckSettings",
    "ConsoleDecision",
    "FixedDecision",
    "is_likely_geographic",
    "PipelineConfig",
    "PipelineResult",
    "SurveyPipeline",
]
