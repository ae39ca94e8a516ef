"""
Route synthesis: turns the current jobs (and optionally the caller segment or a
remote recommendation) into the next action for the operator.
"""

from typing import Iterable, List, Optional

from ..models import (
    ROUTE_COLORS,
    CallerSegment,
    DetectedJob,
    Route,
    RouteRecommendation,
    RouteSource,
    SegmentClassification,
    TrafficLight,
)

EMERGENCY_PREFIX = "Emergency caller: "


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def synthesize_route(jobs: Iterable[DetectedJob],
                     segment: Optional[SegmentClassification] = None,
                     remote: Optional[RouteRecommendation] = None) -> Optional[RouteRecommendation]:
    """
    Pick the route for the operator.

    A remote recommendation wins outright. Otherwise: any red job -> visit,
    any amber job -> video, all green -> instant. No jobs -> None (still
    listening). The segment never changes the route; an EMERGENCY caller only
    prefixes the reason.
    """
    if remote is not None:
        return remote.model_copy(update={"source": RouteSource.REMOTE})

    jobs: List[DetectedJob] = list(jobs)
    if not jobs:
        return None

    red = [job for job in jobs if job.traffic_light == TrafficLight.RED]
    amber = [job for job in jobs if job.traffic_light == TrafficLight.AMBER]

    if red:
        route, deciding = Route.VISIT, red
        reason = f"{_plural(len(red), 'job')} need a specialist site visit"
        if len(red) == 1:
            reason = f"1 job needs a specialist site visit: {red[0].description}"
    elif amber:
        route, deciding = Route.VIDEO, amber
        reason = f"{_plural(len(amber), 'job')} need visual confirmation before pricing"
        if len(amber) == 1:
            reason = f"1 job needs visual confirmation before pricing: {amber[0].description}"
    else:
        route, deciding = Route.INSTANT, jobs
        reason = f"All {_plural(len(jobs), 'job')} priced from the catalog"
        if len(jobs) == 1:
            reason = f"Job priced from the catalog: {jobs[0].description}"

    if segment is not None and segment.segment == CallerSegment.EMERGENCY:
        reason = EMERGENCY_PREFIX + reason

    return RouteRecommendation(
        route=route,
        reason_text=reason,
        color=ROUTE_COLORS[route],
        confidence=max(job.confidence for job in deciding),
        source=RouteSource.LOCAL,
    )
