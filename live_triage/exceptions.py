"""
Live Triage Exceptions

Exception classes for the call triage engine. Only input and configuration
errors ever reach callers; classifier failures are recorded on the session.
"""

from typing import Any, Dict, Optional


class TriageError(Exception):
    """Base exception for triage engine errors"""

    def __init__(self, message: str, call_id: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.call_id = call_id
        self.details = details or {}


class InvalidSegmentError(TriageError):
    """Exception for malformed transcript segments rejected at ingest"""
    pass


class SessionNotFoundError(TriageError):
    """Exception when no active session exists for a call"""

    def __init__(self, call_id: str):
        super().__init__(f"No active session for call {call_id}", call_id=call_id)


class ConfigurationError(TriageError):
    """Exception for out-of-range or unknown timing settings"""
    pass


class ClassifierError(TriageError):
    """Exception for Tier 2 / metadata upstream or parse failures"""
    pass


class ClassifierTimeoutError(ClassifierError):
    """Exception when a remote classification exceeds its timeout"""
    pass
