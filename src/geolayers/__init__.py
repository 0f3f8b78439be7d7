"""Layered maps from tabular location records."""

__version__ = "0.1.0"
