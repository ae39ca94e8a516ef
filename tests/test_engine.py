import asyncio
import gc
import json
import threading
import time
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import agent, caller
from live_triage.adapters.job_matcher import JobMatcher
from live_triage.adapters.segment_classifier import SegmentClassifier
from live_triage.config.settings import Settings
from live_triage.config.timing import TimingConfig, TimingConfigStore
from live_triage.core.engine import TriageEngine
from live_triage.core.scheduler import Lane
from live_triage.exceptions import (
    ClassifierError,
    ConfigurationError,
    InvalidSegmentError,
    SessionNotFoundError,
    TriageError,
)
from live_triage.models import (
    CallerDetails,
    CallerSegment,
    RemoteClassification,
    Route,
    SegmentClassification,
    SessionStatus,
    TrafficLight,
)

EMERGENCY_RESULT = RemoteClassification(
    classification=SegmentClassification(segment=CallerSegment.EMERGENCY, confidence=90)
)


def openai_response(content):
    response = Mock()
    response.choices = [Mock(message=Mock(content=content))]
    return response


def mock_classifier(**kwargs):
    classifier = Mock()
    classifier.classify = AsyncMock(**kwargs)
    return classifier


class TestTriageEngine:
    """Unit tests for the triage engine session actors"""

    @pytest.fixture
    def make_engine(self, settings, fast_timing):
        def _make(**kwargs):
            kwargs.setdefault("settings", settings)
            kwargs.setdefault("timing_store", fast_timing)
            return TriageEngine(**kwargs)
        return _make

    @pytest.mark.asyncio
    async def test_burst_pipe_emergency_visit(self, make_engine):
        engine = make_engine()
        await engine.start_session("CA1")
        await engine.submit_segment("CA1", caller("Hi, my pipe has burst and there's water everywhere", 0))
        await engine.submit_segment("CA1", caller("I need someone round right now, it's urgent", 1500))
        await asyncio.sleep(0.5)

        snapshot = engine.get_snapshot("CA1")
        assert snapshot.status == SessionStatus.ACTIVE
        assert [job.traffic_light for job in snapshot.jobs.values()] == [TrafficLight.RED]
        assert snapshot.segment.segment == CallerSegment.EMERGENCY
        assert snapshot.recommendation.route == Route.VISIT
        assert snapshot.recommendation.color == "#EF4444"
        assert snapshot.recommendation.reason_text.startswith("Emergency caller: ")
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_tv_mount_instant(self, make_engine):
        engine = make_engine()
        await engine.start_session("CA2")
        await engine.submit_segment("CA2", caller("Can you mount a 55 inch TV on the wall?"))
        await asyncio.sleep(0.4)

        snapshot = engine.get_snapshot("CA2")
        job = snapshot.jobs["sku-handy-tv-mount"]
        assert job.traffic_light == TrafficLight.GREEN
        assert job.catalog_ref.price_pence == 8500
        assert snapshot.recommendation.route == Route.INSTANT
        # No segment keywords: low-confidence default, not a failure
        assert snapshot.segment.segment == CallerSegment.BUSY_PRO
        assert snapshot.segment.confidence == 20
        assert not snapshot.lanes["tier2"].stale
        assert snapshot.lanes["tier2"].failures == 0
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_agent_and_interim_segments_do_not_run_lanes(self, make_engine):
        engine = make_engine()
        await engine.start_session("CA3")
        await engine.submit_segment("CA3", agent("Thanks for calling, how can I help?"))
        await engine.submit_segment("CA3", caller("my boiler is", is_final=False))
        await asyncio.sleep(0.3)

        snapshot = engine.get_snapshot("CA3")
        assert len(snapshot.transcript) == 1
        assert snapshot.interim.text == "my boiler is"
        assert snapshot.jobs == {}
        assert all(status.runs == 0 for status in snapshot.lanes.values())
        assert snapshot.status == SessionStatus.LISTENING
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_dict_segments_and_speaker_aliases(self, make_engine):
        engine = make_engine()
        await engine.start_session("CA4")
        await engine.submit_segment("CA4", {"speaker": "inbound", "text": "blocked sink", "timestamp_ms": 10})
        await engine.wait_idle("CA4")
        assert engine.get_snapshot("CA4").transcript[0].speaker.value == "caller"
        await engine.shutdown()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"speaker": "robot", "text": "hello", "timestamp_ms": 0},
        {"speaker": "caller", "text": "   ", "timestamp_ms": 0},
        {"speaker": "caller", "text": "hello", "timestamp_ms": -5},
        {"speaker": "caller"},
    ])
    async def test_invalid_segment_rejected(self, make_engine, payload):
        engine = make_engine()
        await engine.start_session("CA5")
        with pytest.raises(InvalidSegmentError) as exc_info:
            await engine.submit_segment("CA5", payload)
        assert exc_info.value.details["errors"]
        await asyncio.sleep(0.1)
        assert engine.get_snapshot("CA5").transcript == []
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_session(self, make_engine):
        engine = make_engine()
        with pytest.raises(SessionNotFoundError):
            engine.get_snapshot("nope")
        with pytest.raises(SessionNotFoundError):
            await engine.reset_metadata("nope")
        assert await engine.end_session("nope") is None
        assert engine.list_sessions(include_ended=True) == []

    @pytest.mark.asyncio
    async def test_first_segment_starts_the_session(self, make_engine):
        engine = make_engine()
        await engine.submit_segment("fresh", caller("my tap drips"))
        await asyncio.sleep(0.3)

        snapshot = engine.get_snapshot("fresh")
        assert snapshot.status == SessionStatus.ACTIVE
        assert snapshot.generation == 0
        assert [job.catalog_ref.sku_code for job in snapshot.jobs.values()] == ["PLUMB-TAP-REPAIR"]
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_end_session(self, make_engine):
        engine = make_engine()
        await engine.submit_segment("CA19", caller("blocked sink"))
        first, second = await asyncio.gather(engine.end_session("CA19"), engine.end_session("CA19"))
        assert first.status == second.status == SessionStatus.ENDED
        assert first.generation == second.generation == 1
        assert engine.list_sessions() == []

    @pytest.mark.asyncio
    async def test_debounce_coalesces_classifier_calls(self, make_engine):
        classifier = mock_classifier(return_value=EMERGENCY_RESULT)
        engine = make_engine(segment_classifier=classifier)
        await engine.start_session("CA6")
        for i, text in enumerate(["my pipe", "has burst", "water everywhere"]):
            await engine.submit_segment("CA6", caller(text, i * 20))
            await asyncio.sleep(0.02)
        await asyncio.sleep(0.4)

        assert classifier.classify.await_count == 1
        transcript = classifier.classify.await_args.args[0]
        assert [seg.text for seg in transcript] == ["my pipe", "has burst", "water everywhere"]
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_at_most_one_classifier_call_in_flight(self, make_engine):
        state = {"active": 0, "max": 0, "calls": 0}

        async def slow_classify(transcript):
            state["active"] += 1
            state["calls"] += 1
            state["max"] = max(state["max"], state["active"])
            await asyncio.sleep(0.3)
            state["active"] -= 1
            return EMERGENCY_RESULT

        engine = make_engine(segment_classifier=mock_classifier(side_effect=slow_classify))
        await engine.start_session("CA7")
        await engine.submit_segment("CA7", caller("my pipe has burst"))
        await asyncio.sleep(0.15)
        # Tier 2 is in flight; this segment's fire must wait for it
        await engine.submit_segment("CA7", caller("water everywhere"))
        await asyncio.sleep(0.9)

        assert state["max"] == 1
        assert state["calls"] == 2
        assert engine.get_snapshot("CA7").segment.segment == CallerSegment.EMERGENCY
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_result_after_end_is_discarded(self, make_engine):
        async def slow_classify(transcript):
            await asyncio.sleep(0.3)
            return EMERGENCY_RESULT

        engine = make_engine(segment_classifier=mock_classifier(side_effect=slow_classify))
        await engine.start_session("CA8")
        await engine.submit_segment("CA8", caller("my pipe has burst"))
        await asyncio.sleep(0.15)
        ended = await engine.end_session("CA8")
        await asyncio.sleep(0.4)

        snapshot = engine.get_snapshot("CA8")
        assert snapshot.status == SessionStatus.ENDED
        assert snapshot.segment is None
        assert snapshot.lanes["tier2"].runs == 0
        assert snapshot.generation == ended.generation == 1

    @pytest.mark.asyncio
    async def test_stale_generation_is_discarded(self, make_engine):
        engine = make_engine()
        await engine.start_session("CA9")
        worker = engine._workers["CA9"]
        worker.post("lane_resolved", (Lane.TIER2, worker.session.generation - 1, EMERGENCY_RESULT, None))
        await engine.wait_idle("CA9")

        snapshot = engine.get_snapshot("CA9")
        assert snapshot.segment is None
        assert snapshot.lanes["tier2"].runs == 0
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_classifier_failure_keeps_last_known_segment(self, make_engine):
        classifier = mock_classifier(side_effect=[EMERGENCY_RESULT, ClassifierError("upstream 500")])
        engine = make_engine(segment_classifier=classifier)
        await engine.start_session("CA10")
        await engine.submit_segment("CA10", caller("my pipe has burst"))
        await asyncio.sleep(0.3)
        assert engine.get_snapshot("CA10").segment.segment == CallerSegment.EMERGENCY

        await engine.submit_segment("CA10", caller("and the tap drips"))
        await asyncio.sleep(0.3)

        snapshot = engine.get_snapshot("CA10")
        assert snapshot.segment.segment == CallerSegment.EMERGENCY
        assert snapshot.lanes["tier2"].stale
        assert snapshot.lanes["tier2"].failures == 1
        assert snapshot.lanes["tier2"].last_error == "upstream 500"
        # No immediate retry
        await asyncio.sleep(0.3)
        assert classifier.classify.await_count == 2
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_classifier_timeout_is_a_failure(self, make_engine):
        async def hang(transcript):
            await asyncio.sleep(1)
            return EMERGENCY_RESULT

        engine = make_engine(segment_classifier=mock_classifier(side_effect=hang))
        engine.tier2_timeout_s = 0.05
        await engine.start_session("CA11")
        await engine.submit_segment("CA11", caller("my pipe has burst"))
        await asyncio.sleep(0.4)

        status = engine.get_snapshot("CA11").lanes["tier2"]
        assert status.stale
        assert "timed out" in status.last_error
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_remote_recommendation_wins(self, make_engine):
        remote = RemoteClassification(
            classification=SegmentClassification(segment=CallerSegment.BUDGET, confidence=70),
            recommendation={"route": "refer", "reason_text": "Price shopper", "color": "#6B7280",
                            "confidence": 70, "source": "remote"},
        )
        engine = make_engine(segment_classifier=mock_classifier(return_value=remote))
        await engine.start_session("CA12")
        await engine.submit_segment("CA12", caller("mount my tv, what's the cheapest you can do"))
        await asyncio.sleep(0.4)

        recommendation = engine.get_snapshot("CA12").recommendation
        assert recommendation.route == Route.REFER
        assert recommendation.source.value == "remote"
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_metadata_fires_early_on_chunk_interval(self, settings):
        timing = TimingConfigStore(TimingConfig(sku_debounce_ms=50, tier2_llm_debounce_ms=100,
                                                metadata_debounce_ms=30000, metadata_chunk_interval=2))
        engine = TriageEngine(settings=settings, timing_store=timing)
        await engine.start_session("CA13")
        await engine.submit_segment("CA13", caller("My name is Sarah Jones"))
        await engine.submit_segment("CA13", caller("I'm at 12 Baker Street, NW1 6XE"))
        await asyncio.sleep(0.2)

        metadata = engine.get_snapshot("CA13").metadata
        assert metadata == CallerDetails(name="Sarah Jones", address="12 Baker Street", postcode="NW1 6XE")

        # A later run that finds nothing new does not wipe captured fields
        await engine.submit_segment("CA13", caller("the tap drips"))
        await engine.submit_segment("CA13", caller("and the toilet runs"))
        await asyncio.sleep(0.2)
        assert engine.get_snapshot("CA13").lanes["metadata"].runs == 2
        assert engine.get_snapshot("CA13").metadata.name == "Sarah Jones"

        snapshot = await engine.reset_metadata("CA13", "postcode")
        assert snapshot.metadata.postcode is None
        assert snapshot.metadata.name == "Sarah Jones"
        with pytest.raises(TriageError):
            await engine.reset_metadata("CA13", "shoe_size")
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_subscribers_receive_snapshots(self, make_engine):
        engine = make_engine()
        received = []
        async_received = []

        async def async_listener(snapshot):
            async_received.append(snapshot)

        def broken_listener(snapshot):
            raise RuntimeError("dashboard down")

        engine.subscribe(broken_listener)
        engine.subscribe(received.append)
        unsubscribe = engine.subscribe(async_listener)

        await engine.start_session("CA14")
        await engine.submit_segment("CA14", caller("blocked sink"))
        await asyncio.sleep(0.3)
        unsubscribe()
        count = len(async_received)
        await engine.end_session("CA14")

        assert received[-1].status == SessionStatus.ENDED
        assert any(s.jobs for s in received)
        assert len(async_received) == count
        assert count >= 2

    @pytest.mark.asyncio
    async def test_end_session_idempotent_and_restart(self, make_engine):
        engine = make_engine()
        await engine.start_session("CA15")
        first = await engine.end_session("CA15")
        second = await engine.end_session("CA15")
        assert first.status == second.status == SessionStatus.ENDED
        assert first.generation == second.generation == 1

        with pytest.raises(SessionNotFoundError):
            await engine.submit_segment("CA15", caller("hello"))

        restarted = await engine.start_session("CA15")
        assert restarted.generation == 2
        assert restarted.status == SessionStatus.LISTENING
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_start_session_is_idempotent(self, make_engine):
        engine = make_engine()
        await engine.start_session("CA16")
        await engine.submit_segment("CA16", caller("blocked sink"))
        await engine.wait_idle("CA16")
        again = await engine.start_session("CA16")
        assert len(again.transcript) == 1
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_list_sessions(self, make_engine):
        engine = make_engine()
        await engine.start_session("A")
        await engine.start_session("B")
        await engine.end_session("A")
        assert [s.call_id for s in engine.list_sessions()] == ["B"]
        assert {s.call_id for s in engine.list_sessions(include_ended=True)} == {"A", "B"}
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_tier1_bug_stops_only_that_session_in_strict_mode(self, make_engine):
        real = JobMatcher()

        def flaky(text, whole_text_fallback=False):
            if "explode" in text:
                raise RuntimeError("matcher bug")
            return real.match(text)

        matcher = Mock()
        matcher.match.side_effect = flaky
        engine = make_engine(job_matcher=matcher)
        await engine.start_session("BAD")
        await engine.start_session("GOOD")
        await engine.submit_segment("BAD", caller("explode the tv"))
        await engine.submit_segment("GOOD", caller("mount my tv"))
        await asyncio.sleep(0.3)

        with pytest.raises(TriageError):
            await engine.submit_segment("BAD", caller("hello?"))
        assert engine.get_snapshot("GOOD").recommendation.route == Route.INSTANT

        await engine.shutdown()
        assert engine.get_snapshot("BAD").status == SessionStatus.ENDED

    @pytest.mark.asyncio
    async def test_tier1_bug_skipped_outside_strict_mode(self, fast_timing):
        settings = Settings(OPENAI_API_KEY=None, TRIAGE_MOCK_LLM=True, TRIAGE_STRICT_MODE=False)
        matcher = Mock()
        matcher.match.side_effect = RuntimeError("matcher bug")
        engine = TriageEngine(settings=settings, timing_store=fast_timing, job_matcher=matcher)
        await engine.start_session("CA17")
        await engine.submit_segment("CA17", caller("mount my tv"))
        await asyncio.sleep(0.3)

        status = engine.get_snapshot("CA17").lanes["sku"]
        assert status.failures == 1
        assert "RuntimeError" in status.last_error
        await engine.submit_segment("CA17", caller("still there?"))
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_timing_config_hot_update(self, make_engine):
        engine = make_engine()
        updated = engine.set_timing_config(skuDebounceMs=5000)
        assert updated.version == 2
        assert engine.get_timing_config().sku_debounce_ms == 5000
        with pytest.raises(ConfigurationError):
            engine.set_timing_config(sku_debounce_ms=1)

        await engine.start_session("CA18")
        await engine.submit_segment("CA18", caller("blocked sink"))
        await asyncio.sleep(0.3)
        # New delay applies to the next arm
        assert engine.get_snapshot("CA18").lanes["sku"].runs == 0
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_flooding_kitchen_call_goes_to_site_visit(self, make_engine):
        engine = make_engine()
        await engine.submit_segment("CA20", caller("My pipe has burst and water is everywhere", 0))
        await engine.submit_segment("CA20", caller("Its flooding the kitchen right now", 1200))
        await engine.submit_segment("CA20", caller("I need someone immediately", 2500))
        await asyncio.sleep(0.5)

        snapshot = engine.get_snapshot("CA20")
        assert snapshot.segment.segment == CallerSegment.EMERGENCY
        assert [job.traffic_light for job in snapshot.jobs.values()] == [TrafficLight.RED]
        assert snapshot.recommendation.route == Route.VISIT
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_segment_burst_runs_tier1_once(self, make_engine):
        engine = make_engine()
        for i, text in enumerate(["my tap", "is dripping", "and the toilet runs"]):
            await engine.submit_segment("CA21", caller(text, i * 10))
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.3)

        snapshot = engine.get_snapshot("CA21")
        assert snapshot.lanes["sku"].runs == 1
        assert len(snapshot.jobs) == 2
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_timed_out_request_keeps_lane_busy(self, make_engine):
        state = {"active": 0, "max": 0, "calls": 0}
        lock = threading.Lock()

        def blocking_create(**kwargs):
            with lock:
                state["active"] += 1
                state["calls"] += 1
                state["max"] = max(state["max"], state["active"])
            time.sleep(0.6)
            with lock:
                state["active"] -= 1
            return openai_response(json.dumps({"segment": "LANDLORD", "confidence": 80}))

        client = Mock()
        client.chat.completions.create.side_effect = blocking_create
        engine = make_engine(segment_classifier=SegmentClassifier(client=client))
        engine.tier2_timeout_s = 0.1

        await engine.submit_segment("CA22", caller("my tap drips"))
        await asyncio.sleep(0.3)
        # First request has timed out but its thread is still running
        await engine.submit_segment("CA22", caller("and the toilet runs"))
        await asyncio.sleep(1.4)

        assert state["calls"] == 2
        assert state["max"] == 1
        status = engine.get_snapshot("CA22").lanes["tier2"]
        assert status.stale
        assert "timed out" in status.last_error
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_keyword_fallback_fills_only_an_empty_segment(self, make_engine):
        fallback = RemoteClassification(
            classification=SegmentClassification(segment=CallerSegment.BUSY_PRO, confidence=20),
            fallback_error="Segment classification request failed: 503",
        )
        classifier = mock_classifier(side_effect=[fallback, EMERGENCY_RESULT, fallback])
        engine = make_engine(segment_classifier=classifier)

        await engine.submit_segment("CA23", caller("my tap drips"))
        await asyncio.sleep(0.3)
        snapshot = engine.get_snapshot("CA23")
        assert snapshot.segment.segment == CallerSegment.BUSY_PRO
        assert snapshot.lanes["tier2"].stale
        assert "503" in snapshot.lanes["tier2"].last_error

        await engine.submit_segment("CA23", caller("it's flooding"))
        await asyncio.sleep(0.3)
        assert engine.get_snapshot("CA23").segment.segment == CallerSegment.EMERGENCY
        assert not engine.get_snapshot("CA23").lanes["tier2"].stale

        await engine.submit_segment("CA23", caller("please hurry"))
        await asyncio.sleep(0.3)
        snapshot = engine.get_snapshot("CA23")
        assert snapshot.segment.segment == CallerSegment.EMERGENCY
        assert snapshot.lanes["tier2"].stale
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_crashed_worker_error_is_retrieved(self, make_engine):
        loop = asyncio.get_running_loop()
        reported = []
        previous = loop.get_exception_handler()
        loop.set_exception_handler(lambda loop, context: reported.append(context["message"]))
        try:
            matcher = Mock()
            matcher.match.side_effect = RuntimeError("matcher bug")
            engine = make_engine(job_matcher=matcher)
            await engine.submit_segment("CA24", caller("mount my tv"))
            await asyncio.sleep(0.3)

            # Drop the call without ending it
            worker = engine._workers.pop("CA24")
            assert worker.task.done()
            del worker
            gc.collect()
        finally:
            loop.set_exception_handler(previous)
        assert not any("never retrieved" in message for message in reported)
