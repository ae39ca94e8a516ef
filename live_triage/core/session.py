import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..exceptions import TriageError
from ..models import (
    CallerDetails,
    CallSessionSnapshot,
    DetectedJob,
    JobMatchResult,
    LaneStatus,
    RemoteClassification,
    RouteRecommendation,
    SegmentClassification,
    SessionStatus,
    Speaker,
    TranscriptSegment,
)
from .route_synthesizer import synthesize_route
from .scheduler import Lane

logger = logging.getLogger(__name__)

METADATA_FIELDS = tuple(CallerDetails.model_fields)
# Answers about the caller; once heard they stick until reset
STICKY_METADATA_FIELDS = ("is_decision_maker", "is_remote", "has_tenant")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CallSession:
    """Mutable per-call state. Only the session's worker touches it."""

    def __init__(self, call_id: str):
        self.call_id = call_id
        self.generation = 0
        self.status = SessionStatus.LISTENING
        self.transcript: List[TranscriptSegment] = []
        self.interim: Optional[TranscriptSegment] = None
        self.jobs: Dict[str, DetectedJob] = {}
        self.segment: Optional[SegmentClassification] = None
        self.remote_recommendation: Optional[RouteRecommendation] = None
        self.recommendation: Optional[RouteRecommendation] = None
        self.metadata = CallerDetails()
        self.lanes: Dict[str, LaneStatus] = {lane.value: LaneStatus() for lane in Lane}
        self.updated_at = utcnow()

    @property
    def ended(self) -> bool:
        return self.status == SessionStatus.ENDED

    def touch(self) -> None:
        self.updated_at = utcnow()

    def append_segment(self, segment: TranscriptSegment) -> None:
        if segment.is_final:
            self.transcript.append(segment)
            self.interim = None
        else:
            self.interim = segment
        if self.status == SessionStatus.LISTENING and segment.speaker == Speaker.CALLER and segment.is_final:
            self.status = SessionStatus.ACTIVE
        self.touch()

    def caller_text(self) -> str:
        """One line per final caller segment."""
        return "\n".join(seg.text for seg in self.transcript if seg.speaker == Speaker.CALLER)

    def merge_jobs(self, result: JobMatchResult) -> None:
        """Add or update detected jobs. Jobs already seen are never dropped."""
        for job in result.jobs:
            existing = self.jobs.get(job.id)
            if existing is not None and existing.description != job.description:
                job = job.model_copy(update={"description": existing.description})
            self.jobs[job.id] = job
        self.touch()

    def merge_classification(self, remote: RemoteClassification) -> None:
        self.segment = remote.classification
        if remote.recommendation is not None:
            self.remote_recommendation = remote.recommendation
        self.touch()

    def merge_metadata(self, details: CallerDetails) -> None:
        """Additive: only fields present in the new result overwrite.

        The caller flags (decision maker, remote, tenant) keep their first value.
        """
        present = {
            field: value for field, value in details.model_dump(exclude_none=True).items()
            if field not in STICKY_METADATA_FIELDS or getattr(self.metadata, field) is None
        }
        if present:
            self.metadata = self.metadata.model_copy(update=present)
            self.touch()

    def reset_metadata(self, *fields: str) -> None:
        """Clear the named metadata fields, or all of them when none are named."""
        unknown = [f for f in fields if f not in METADATA_FIELDS]
        if unknown:
            raise TriageError(f"Unknown metadata field(s): {', '.join(unknown)}", call_id=self.call_id,
                              details={"fields": unknown})
        self.metadata = self.metadata.model_copy(update={f: None for f in (fields or METADATA_FIELDS)})
        self.touch()

    def refresh_recommendation(self) -> Optional[RouteRecommendation]:
        self.recommendation = synthesize_route(self.jobs.values(), self.segment, self.remote_recommendation)
        return self.recommendation

    def record_success(self, lane: Lane) -> None:
        status = self.lanes[lane.value]
        status.runs += 1
        status.last_error = None
        status.last_success_at = utcnow()
        status.stale = False

    def record_failure(self, lane: Lane, error: str) -> None:
        status = self.lanes[lane.value]
        status.runs += 1
        status.failures += 1
        status.last_error = error
        status.stale = True

    def end(self) -> None:
        self.status = SessionStatus.ENDED
        self.generation += 1
        self.touch()

    def snapshot(self) -> CallSessionSnapshot:
        return CallSessionSnapshot(
            call_id=self.call_id,
            generation=self.generation,
            status=self.status,
            transcript=list(self.transcript),
            interim=self.interim,
            jobs=dict(self.jobs),
            segment=self.segment,
            recommendation=self.recommendation,
            metadata=self.metadata,
            lanes={name: status.model_copy() for name, status in self.lanes.items()},
            updated_at=self.updated_at,
        )
