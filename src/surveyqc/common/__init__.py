"""Shared data model for navigation fixes, routes and tide curves."""

from .models import (
    NavigationFix,
    RouteSegment,
    RouteGeometry,
    TideCurve,
    IntervalPoint,
    clone_fixes,
    fixes_to_frame,
    fixes_from_frame,
)

__all__ = [
    "NavigationFix",
    "RouteSegment",
    "RouteGeometry",
    "TideCurve",
    "IntervalPoint",
    "clone_fixes",
    "fixes_to_frame",
    "fixes_from_frame",
]
