"""Resilience helpers: dead-letter record of discarded messages."""

from .dead_letter import DiscardRecorder

__all__ = ["DiscardRecorder"]
