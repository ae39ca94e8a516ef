import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from openai import OpenAI

from ..exceptions import ClassifierError
from ..flows.segments import detect_segments
from ..models import (
    ROUTE_COLORS,
    CallerSegment,
    RemoteClassification,
    Route,
    RouteRecommendation,
    RouteSource,
    SegmentCandidate,
    SegmentClassification,
    Speaker,
    TranscriptSegment,
)
from ..prompts.prompt_layer import SEGMENT_CLASSIFICATION_PROMPT

logger = logging.getLogger(__name__)

KEYWORD_HIT_CONFIDENCE = 25
MAX_KEYWORD_CONFIDENCE = 95
MAX_ALTERNATIVES = 3
# Keyword results at or above this skip the model call
KEYWORD_MIN_CONFIDENCE = 70
# What a call with no segment signals is treated as
DEFAULT_SEGMENT = CallerSegment.BUSY_PRO
DEFAULT_CONFIDENCE = 20


def format_transcript(transcript: Sequence[TranscriptSegment]) -> str:
    """Render segments as 'Caller: ...' / 'Agent: ...' lines."""
    return "\n".join(f"{seg.speaker.value.capitalize()}: {seg.text}" for seg in transcript)


def caller_text(transcript: Sequence[TranscriptSegment]) -> str:
    return "\n".join(seg.text for seg in transcript if seg.speaker == Speaker.CALLER)


def _clamp_confidence(value: Any, default: int = 50) -> int:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return default
    if 0 < value <= 1:
        value *= 100  # Model answered as a fraction
    return max(0, min(100, int(round(value))))


class SegmentClassifier:
    """Tier 2: classifies the caller into a customer segment.

    Keyword detection over the segment definitions always runs first. A strong
    keyword result is used as is; otherwise OpenAI is asked when a client is
    configured. If that call fails the keyword best guess is returned with
    `fallback_error` set.
    """

    def __init__(self, openai_api_key: Optional[str] = None, model: str = "gpt-4o-mini",
                 client: Optional[OpenAI] = None, request_timeout: float = 5.0):
        self.model = model
        if client is not None:
            self.openai_client = client
        elif openai_api_key:
            # One attempt per lane run, bounded by the lane timeout
            self.openai_client = OpenAI(api_key=openai_api_key, timeout=request_timeout, max_retries=0)
        else:
            self.openai_client = None

    @property
    def uses_llm(self) -> bool:
        return self.openai_client is not None

    async def classify(self, transcript: Sequence[TranscriptSegment]) -> RemoteClassification:
        if not transcript:
            raise ClassifierError("Empty transcript")
        keyword_result = self.classify_keywords(transcript)
        if self.openai_client is None:
            return keyword_result
        if keyword_result.classification.confidence >= KEYWORD_MIN_CONFIDENCE:
            logger.debug(f"Keyword segment {keyword_result.classification.segment.value} is confident, "
                         f"skipping the model call")
            return keyword_result

        try:
            result = await self._classify_llm(transcript)
        except ClassifierError as e:
            logger.warning(f"⚠️ Segment model call failed, using keyword guess: {e}")
            return keyword_result.model_copy(update={"fallback_error": str(e)})

        keyword = keyword_result.classification
        if not keyword.signals:
            return result
        # Keyword hits the model didn't pick become the alternatives
        hits = [SegmentCandidate(segment=keyword.segment, confidence=keyword.confidence), *keyword.alternatives]
        alternatives = [hit for hit in hits if hit.segment != result.classification.segment]
        classification = result.classification.model_copy(update={"alternatives": alternatives[:MAX_ALTERNATIVES]})
        return result.model_copy(update={"classification": classification})

    def classify_keywords(self, transcript: Sequence[TranscriptSegment]) -> RemoteClassification:
        """Deterministic classification from segment detection keywords"""
        hits = detect_segments(caller_text(transcript))
        if not hits:
            return RemoteClassification(classification=SegmentClassification(
                segment=DEFAULT_SEGMENT, confidence=DEFAULT_CONFIDENCE))

        candidates = [
            SegmentCandidate(
                segment=CallerSegment(tag),
                confidence=min(len(keywords) * KEYWORD_HIT_CONFIDENCE, MAX_KEYWORD_CONFIDENCE),
            )
            for tag, keywords in hits
        ]
        best_tag, best_keywords = hits[0]
        classification = SegmentClassification(
            segment=candidates[0].segment,
            confidence=candidates[0].confidence,
            alternatives=candidates[1:1 + MAX_ALTERNATIVES],
            signals=best_keywords,
        )
        logger.debug(f"Keyword segment {best_tag} from {best_keywords}")
        return RemoteClassification(classification=classification)

    async def _classify_llm(self, transcript: Sequence[TranscriptSegment]) -> RemoteClassification:
        try:
            response = await asyncio.to_thread(
                self.openai_client.chat.completions.create,
                model=self.model,
                messages=[
                    {"role": "system", "content": SEGMENT_CLASSIFICATION_PROMPT},
                    {"role": "user", "content": format_transcript(transcript)},
                ],
                response_format={"type": "json_object"},
                temperature=0.1,
                max_tokens=400,
            )
        except Exception as e:
            raise ClassifierError(f"Segment classification request failed: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ClassifierError("Empty response from segment classifier")
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ClassifierError(f"Segment classifier returned invalid JSON: {e}") from e
        return self.parse_response(data)

    @staticmethod
    def parse_response(data: Dict[str, Any]) -> RemoteClassification:
        """Validate a model response into a RemoteClassification"""
        if not isinstance(data, dict):
            raise ClassifierError("Segment classifier response is not an object")

        raw_segment = str(data.get("segment") or "").strip().upper()
        try:
            segment = CallerSegment(raw_segment)
        except ValueError:
            raise ClassifierError(f"Unknown segment '{raw_segment}'", details={"response": data})

        confidence = _clamp_confidence(data.get("confidence"))
        alternatives: List[SegmentCandidate] = []
        for alt in data.get("alternatives") or []:
            if not isinstance(alt, dict):
                continue
            try:
                alt_segment = CallerSegment(str(alt.get("segment", "")).strip().upper())
            except ValueError:
                continue  # Ignore alternatives we don't know
            if alt_segment != segment:
                alternatives.append(SegmentCandidate(segment=alt_segment,
                                                     confidence=_clamp_confidence(alt.get("confidence"), 0)))

        signals = [str(s) for s in (data.get("signals") or []) if s]
        classification = SegmentClassification(
            segment=segment,
            confidence=confidence,
            alternatives=alternatives[:MAX_ALTERNATIVES],
            signals=signals,
        )

        recommendation = None
        raw_route = str(data.get("route") or "").strip().lower()
        if raw_route and raw_route != "null":
            try:
                route = Route(raw_route)
            except ValueError:
                logger.warning(f"Ignoring unknown route '{raw_route}' from segment classifier")
            else:
                recommendation = RouteRecommendation(
                    route=route,
                    reason_text=str(data.get("reason") or f"Recommended: {route.value}"),
                    color=ROUTE_COLORS[route],
                    confidence=confidence,
                    source=RouteSource.REMOTE,
                )
        return RemoteClassification(classification=classification, recommendation=recommendation)
