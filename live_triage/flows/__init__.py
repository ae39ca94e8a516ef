"""Caller segment definitions."""
