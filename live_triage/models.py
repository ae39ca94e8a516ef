from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Speaker(str, Enum):
    CALLER = "caller"
    AGENT = "agent"


# Track names the telephony side uses for each party
SPEAKER_ALIASES = {
    "caller": Speaker.CALLER,
    "customer": Speaker.CALLER,
    "inbound": Speaker.CALLER,
    "agent": Speaker.AGENT,
    "operator": Speaker.AGENT,
    "va": Speaker.AGENT,
    "outbound": Speaker.AGENT,
}


class TrafficLight(str, Enum):
    GREEN = "green"
    AMBER = "amber"
    RED = "red"


# Higher wins when the same job is seen with different lights
TRAFFIC_LIGHT_RANK = {TrafficLight.GREEN: 0, TrafficLight.AMBER: 1, TrafficLight.RED: 2}


class Route(str, Enum):
    INSTANT = "instant"
    VIDEO = "video"
    VISIT = "visit"
    REFER = "refer"


# Operator UI colour per route
ROUTE_COLORS = {
    Route.INSTANT: "#22C55E",
    Route.VIDEO: "#EAB308",
    Route.VISIT: "#EF4444",
    Route.REFER: "#6B7280",
}


class RouteSource(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class CallerSegment(str, Enum):
    LANDLORD = "LANDLORD"
    BUSY_PRO = "BUSY_PRO"
    PROP_MGR = "PROP_MGR"
    OAP = "OAP"
    SMALL_BIZ = "SMALL_BIZ"
    EMERGENCY = "EMERGENCY"
    BUDGET = "BUDGET"


class SessionStatus(str, Enum):
    LISTENING = "listening"
    ACTIVE = "active"
    ENDED = "ended"


class TranscriptSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    speaker: Speaker
    text: str
    timestamp_ms: int = Field(ge=0)
    is_final: bool = True

    @field_validator("speaker", mode="before")
    @classmethod
    def normalize_speaker(cls, v):
        if isinstance(v, str):
            speaker = SPEAKER_ALIASES.get(v.strip().lower())
            if speaker is None:
                raise ValueError(f"unknown speaker '{v}'")
            return speaker
        return v

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, v: str) -> str:
        v = " ".join(v.split())
        if not v:
            raise ValueError("text must not be empty")
        return v


class CatalogRef(BaseModel):
    sku_code: str
    name: str
    price_pence: int


class DetectedJob(BaseModel):
    id: str
    description: str
    matched: bool
    catalog_ref: Optional[CatalogRef] = None
    traffic_light: TrafficLight
    confidence: int = Field(ge=0, le=100)
    signals: List[str] = Field(default_factory=list)


class JobMatchResult(BaseModel):
    jobs: List[DetectedJob] = Field(default_factory=list)
    signals: List[str] = Field(default_factory=list)


class SegmentCandidate(BaseModel):
    segment: CallerSegment
    confidence: int = Field(ge=0, le=100)


class SegmentClassification(BaseModel):
    segment: CallerSegment
    confidence: int = Field(ge=0, le=100)
    alternatives: List[SegmentCandidate] = Field(default_factory=list)
    signals: List[str] = Field(default_factory=list)


class RouteRecommendation(BaseModel):
    route: Route
    reason_text: str
    color: str
    confidence: int = Field(ge=0, le=100)
    source: RouteSource = RouteSource.LOCAL


class RemoteClassification(BaseModel):
    """What one Tier 2 run returns: a segment and optionally its own routing call."""
    classification: SegmentClassification
    recommendation: Optional[RouteRecommendation] = None
    # Set when the model call failed and the keyword guess stands in for it
    fallback_error: Optional[str] = None


class CallerDetails(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    postcode: Optional[str] = None
    contact: Optional[str] = None
    is_decision_maker: Optional[bool] = None
    is_remote: Optional[bool] = None
    has_tenant: Optional[bool] = None


class LaneStatus(BaseModel):
    runs: int = 0
    failures: int = 0
    last_error: Optional[str] = None
    last_success_at: Optional[datetime] = None
    stale: bool = False


class CallSessionSnapshot(BaseModel):
    call_id: str
    generation: int
    status: SessionStatus
    transcript: List[TranscriptSegment] = Field(default_factory=list)
    interim: Optional[TranscriptSegment] = None
    jobs: Dict[str, DetectedJob] = Field(default_factory=dict)
    segment: Optional[SegmentClassification] = None
    recommendation: Optional[RouteRecommendation] = None
    metadata: CallerDetails = Field(default_factory=CallerDetails)
    lanes: Dict[str, LaneStatus] = Field(default_factory=dict)
    updated_at: datetime
