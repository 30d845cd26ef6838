"""Crash-recoverable voice attendance tracking for Discord movie and game nights."""

__version__ = "0.1.0"
