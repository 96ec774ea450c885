"""Everse batch analytics and billing core."""

__version__ = "0.1.0"
