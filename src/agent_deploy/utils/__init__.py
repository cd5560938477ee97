"""Logging, metrics and port probing helpers."""
