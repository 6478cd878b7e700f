"""Poster URL resolution with caching, fallback and per-source resilience."""

__version__ = "0.1.0"
