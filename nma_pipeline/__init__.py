"""Nested Manager Accounts hierarchy resolution pipeline."""

__version__ = "1.0.0"
