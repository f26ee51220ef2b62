"""Persistent AI Horde generation queue."""

__version__ = "1.0.0"
