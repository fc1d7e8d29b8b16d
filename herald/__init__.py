"""Notification batching and delivery engine."""

__version__ = "0.1.0"
