"""Encore: artist catalog, show and setlist import service."""

__version__ = "0.1.0"
