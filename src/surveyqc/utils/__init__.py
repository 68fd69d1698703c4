"""Utility functions for the survey conditioning pipeline."""

from .logging import get_logger
from .config import load_config
from .pagination import page_count, paginate

__all__ = ["get_logger", "load_config", "page_count", "paginate"]
