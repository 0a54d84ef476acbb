"""Chorus — reconcile the output streams of CLI coding agents into one log."""

__version__ = "0.1.0"
