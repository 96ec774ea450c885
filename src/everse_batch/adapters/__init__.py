"""Persistence and infrastructure adapters."""
