"""Probe history: ordered store and event recorder."""

from .recorder import ProbeStatus, Recorder, classify
from .store import FindMode, OrderedStore, TrackedRecord

__all__ = ["FindMode", "OrderedStore", "ProbeStatus", "Recorder", "TrackedRecord", "classify"]
