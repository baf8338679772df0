"""Conductor -- turns one large prompt into dependent tasks run by coding agents."""

__version__ = "0.1.0"
