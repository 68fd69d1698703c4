"""Survey navigation conditioning.

Smoothing, tide reduction, KP/DCC against a planned route, spline
fitting and fixed-interval resampling of survey navigation data.
"""

__version__ = "0.1.0"
