"""Utility helpers."""

from .cancellation import CancellationToken
from .debug_logger import DebugLogger

__all__ = ["CancellationToken", "DebugLogger"]
