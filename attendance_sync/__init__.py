"""Biometric attendance synchronization for ZKTeco time-clock devices."""

__version__ = "1.0.0"
