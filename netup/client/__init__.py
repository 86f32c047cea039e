"""Probe client role."""

from .probe_client import ProbeClient

__all__ = ["ProbeClient"]
