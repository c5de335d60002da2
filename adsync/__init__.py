"""Ads platform synchronization pipeline."""

__version__ = "0.1.0"
