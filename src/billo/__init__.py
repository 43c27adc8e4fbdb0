"""Billo: receipt item splitting and settlement tracking."""

__version__ = "1.0.0"
