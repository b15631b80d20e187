"""Offline-first data plane for the MLG.clan mobile client."""

__version__ = "0.1.0"
