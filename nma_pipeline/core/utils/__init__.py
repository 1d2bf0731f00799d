"""Logging and error classification helpers."""
