"""Scheduled delivery and access lifecycle engine."""

__version__ = "0.1.0"
