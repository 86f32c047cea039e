"""
netup - UDP Latency and Uptime Probe

A client emits timestamped, hash-checked probes over UDP to an echo
responder, measures the round-trip delay of every echo and classifies
probes that never come back as lost.
"""

__version__ = "1.0.0"
__author__ = "netup Authors"
__license__ = "MIT"

from .core.config import Config
from .core.logger import setup_logging

__all__ = ["Config", "setup_logging"]
