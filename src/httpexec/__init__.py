"""Declarative HTTP request execution."""

__version__ = "0.1.0"
