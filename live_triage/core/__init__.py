"""
Core triage modules.

This module contains:
- DebounceScheduler: per-call lane timers with at-most-one-in-flight coalescing
- CallSession: mutable per-call state and its merge rules
- synthesize_route: jobs/segment -> operator recommendation
- TriageEngine: session actors, lane runs and snapshot publishing
"""

from .scheduler import DebounceScheduler, Lane, RETRY_DELAY_MS
from .session import CallSession
from .route_synthesizer import synthesize_route
from .engine import TriageEngine

__all__ = [
    'DebounceScheduler',
    'Lane',
    'RETRY_DELAY_MS',
    'CallSession',
    'synthesize_route',
    'TriageEngine',
]
