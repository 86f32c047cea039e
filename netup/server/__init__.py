"""Echo responder role."""

from .responder import EchoPolicy, Responder

__all__ = ["EchoPolicy", "Responder"]
