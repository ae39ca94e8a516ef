"""
Configuration for the live triage engine.

This module contains:
- Environment settings (API keys, timeouts, server options)
- Versioned timing configuration for the debounce lanes
"""

from .settings import Settings, get_settings
from .timing import TimingConfig, TimingConfigStore

__all__ = [
    'Settings',
    'get_settings',
    'TimingConfig',
    'TimingConfigStore',
]
