"""
Offline scenario runner.

A fixed corpus of caller transcripts with the route, job lights and caller
segment an operator should see. Runs Tier 1, the keyword segment classifier
and route synthesis with no network access.
"""

import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .adapters.job_matcher import match_jobs
from .adapters.segment_classifier import SegmentClassifier
from .core.route_synthesizer import synthesize_route
from .models import CallerSegment, Route, Speaker, TrafficLight, TranscriptSegment

logger = logging.getLogger(__name__)


class Scenario(BaseModel):
    name: str
    caller_lines: List[str]
    expected_route: Optional[Route]
    expected_lights: List[TrafficLight] = Field(default_factory=list)
    expected_segment: Optional[CallerSegment] = None


class ScenarioResult(BaseModel):
    name: str
    passed: bool
    route: Optional[Route] = None
    lights: List[TrafficLight] = Field(default_factory=list)
    segment: Optional[CallerSegment] = None
    reason: Optional[str] = None
    problems: List[str] = Field(default_factory=list)


SCENARIOS = [
    Scenario(
        name="burst_pipe_emergency",
        caller_lines=["Hi, my pipe has burst and there's water everywhere",
                      "I need someone round right now, it's urgent"],
        expected_route=Route.VISIT,
        expected_lights=[TrafficLight.RED],
        expected_segment=CallerSegment.EMERGENCY,
    ),
    Scenario(
        name="burst_pipe_flooding_kitchen",
        caller_lines=["My pipe has burst and water is everywhere",
                      "Its flooding the kitchen right now",
                      "I need someone immediately"],
        expected_route=Route.VISIT,
        expected_lights=[TrafficLight.RED],
        expected_segment=CallerSegment.EMERGENCY,
    ),
    Scenario(
        name="tv_mount_instant",
        caller_lines=["Hello, can you mount a 55 inch TV on the wall in my living room?"],
        expected_route=Route.INSTANT,
        expected_lights=[TrafficLight.GREEN],
    ),
    Scenario(
        name="tv_65_inch",
        caller_lines=["mount a 65 inch TV"],
        expected_route=Route.INSTANT,
        expected_lights=[TrafficLight.GREEN],
    ),
    Scenario(
        name="tap_and_damp_patch",
        caller_lines=["I've got a dripping tap in the kitchen and the bathroom has a damp patch on the ceiling"],
        expected_route=Route.VIDEO,
        expected_lights=[TrafficLight.GREEN, TrafficLight.AMBER],
    ),
    Scenario(
        name="flatpack_and_shelves",
        caller_lines=["I need an IKEA PAX wardrobe built",
                      "also a couple of shelves put up in the hallway"],
        expected_route=Route.INSTANT,
        expected_lights=[TrafficLight.GREEN, TrafficLight.GREEN],
    ),
    Scenario(
        name="gas_smell_boiler",
        caller_lines=["My boiler is making a banging noise and there's a smell of gas"],
        expected_route=Route.VISIT,
        expected_lights=[TrafficLight.RED],
    ),
    Scenario(
        name="flickering_light_matched_but_red",
        caller_lines=["Can you swap the light fitting, the lights keep flickering"],
        expected_route=Route.VISIT,
        expected_lights=[TrafficLight.RED],
    ),
    Scenario(
        name="budget_shopper_vague",
        caller_lines=["How much per hour do you charge?",
                      "I just want the cheapest option for a few things"],
        expected_route=Route.VIDEO,
        expected_lights=[TrafficLight.AMBER],
        expected_segment=CallerSegment.BUDGET,
    ),
    Scenario(
        name="landlord_toilet",
        caller_lines=["I'm a landlord, my tenant says the toilet won't stop running"],
        expected_route=Route.INSTANT,
        expected_lights=[TrafficLight.GREEN],
        expected_segment=CallerSegment.LANDLORD,
    ),
    Scenario(
        name="small_talk_only",
        caller_lines=["Hi there, just wondering what your opening hours are"],
        expected_route=None,
    ),
]


def run_scenario(scenario: Scenario, classifier: Optional[SegmentClassifier] = None) -> ScenarioResult:
    classifier = classifier or SegmentClassifier()
    result = match_jobs("\n".join(scenario.caller_lines))
    transcript = [
        TranscriptSegment(speaker=Speaker.CALLER, text=line, timestamp_ms=i * 1000)
        for i, line in enumerate(scenario.caller_lines)
    ]
    segment = classifier.classify_keywords(transcript).classification
    recommendation = synthesize_route(result.jobs, segment)

    route = recommendation.route if recommendation else None
    lights = [job.traffic_light for job in result.jobs]
    problems = []
    if route != scenario.expected_route:
        problems.append(f"route {route} != expected {scenario.expected_route}")
    if scenario.expected_lights and lights != scenario.expected_lights:
        problems.append(f"lights {[l.value for l in lights]} != expected "
                        f"{[l.value for l in scenario.expected_lights]}")
    if scenario.expected_segment and (segment is None or segment.segment != scenario.expected_segment):
        problems.append(f"segment {segment.segment if segment else None} != expected {scenario.expected_segment}")

    return ScenarioResult(
        name=scenario.name,
        passed=not problems,
        route=route,
        lights=lights,
        segment=segment.segment if segment else None,
        reason=recommendation.reason_text if recommendation else None,
        problems=problems,
    )


def run_all(scenarios: Optional[List[Scenario]] = None) -> List[ScenarioResult]:
    classifier = SegmentClassifier()
    results = [run_scenario(s, classifier) for s in (scenarios or SCENARIOS)]
    failed = [r.name for r in results if not r.passed]
    if failed:
        logger.warning(f"{len(failed)} scenario(s) failed: {failed}")
    return results


def summarize(results: List[ScenarioResult]) -> Dict[str, int]:
    passed = sum(1 for r in results if r.passed)
    return {"total": len(results), "passed": passed, "failed": len(results) - passed}
