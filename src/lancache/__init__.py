"""Caching reverse proxy for the Steam depot CDN."""

__version__ = "0.0.1"
