"""Central error types used across the conditioning pipeline.

Data-quality findings (tide gaps, out-of-range KP, CRS heuristics) are
not exceptions; they are collected in a
:class:`~surveyqc.preprocessing.qa_report.QualityReport`.  The classes
below cover the cases where a stage cannot or must not continue.
"""


class SurveyQCError(RuntimeError):
    """Base error for the survey conditioning package."""


class ConfigurationError(SurveyQCError, ValueError):
    """Raised when a configuration value is invalid and cannot be normalised."""


class UserAbort(SurveyQCError):
    """Raised when the coordinate mismatch decision declines to continue."""


class PipelineCancelled(SurveyQCError):
    """Raised when cooperative cancellation is observed between stages."""


__all__ = [
    "SurveyQCError",
    "ConfigurationError",
    "UserAbort",
    "PipelineCancelled",
]
