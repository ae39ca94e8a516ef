"""
Live Call Triage Package

Real-time guidance for operators on inbound handyman calls:
- Tier 1 job matching against the priced SKU catalog (traffic lights)
- Tier 2 caller segment classification (OpenAI or keyword fallback)
- Caller detail extraction
- Debounced, per-call lanes and route recommendations
"""

__version__ = "1.0.0"

from .adapters.job_matcher import match_jobs
from .core.engine import TriageEngine
from .models import CallSessionSnapshot, TranscriptSegment

__all__ = [
    'match_jobs',
    'TriageEngine',
    'CallSessionSnapshot',
    'TranscriptSegment',
]
