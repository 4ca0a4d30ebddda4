"""Autonomous per-account futures trader."""

__version__ = "1.0.0"
