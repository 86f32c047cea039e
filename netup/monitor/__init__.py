"""Delay and loss statistics."""

from .stats import LatencySummary, Monitor, find_silences, summarize

__all__ = ["LatencySummary", "Monitor", "find_silences", "summarize"]
