"""Shared building blocks: wire codec, events, clock, configuration."""
