"""Scheduled agent trading and treasury flywheel jobs settling through CoW Protocol."""

__version__ = "0.1.0"
