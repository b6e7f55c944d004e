"""Parkchain realtime presence and broadcast service."""

__version__ = "0.1.0"
