"""
Triage engine: owns the live call sessions.

Every call gets its own worker task consuming an ordered event queue, so all
merges into a session happen one at a time. Tier 1 runs inline on the worker;
Tier 2 and metadata extraction run as separate tasks and come back to the
worker as `lane_resolved` events carrying the generation they started with.
A request that outlives its timeout keeps its lane busy until it returns
(`lane_released`), so a lane never has two requests open.
"""

import asyncio
import inspect
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from pydantic import ValidationError

from ..adapters.job_matcher import JobMatcher
from ..adapters.metadata_extractor import MetadataExtractor
from ..adapters.segment_classifier import SegmentClassifier
from ..config.settings import Settings, get_settings
from ..config.timing import TimingConfig, TimingConfigStore
from ..exceptions import ClassifierError, ClassifierTimeoutError, InvalidSegmentError, SessionNotFoundError, TriageError
from ..models import CallSessionSnapshot, TranscriptSegment
from .scheduler import DebounceScheduler, Lane
from .session import CallSession

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[CallSessionSnapshot], Union[None, Awaitable[None]]]

# Ended sessions kept around for late snapshot reads
MAX_ENDED_SESSIONS = 500


class SessionWorker:
    """Single-writer actor for one call session"""

    def __init__(self, engine: "TriageEngine", session: CallSession):
        self.engine = engine
        self.session = session
        self.queue: "asyncio.Queue[Tuple[str, Any]]" = asyncio.Queue()
        self.scheduler = DebounceScheduler(on_fire=self._on_timer)
        self.lane_tasks: Set[asyncio.Task] = set()
        self.task: Optional[asyncio.Task] = None
        self.error: Optional[BaseException] = None
        self.ending: Optional[asyncio.Future] = None

    @property
    def call_id(self) -> str:
        return self.session.call_id

    @property
    def alive(self) -> bool:
        return self.task is not None and not self.task.done()

    def start(self) -> None:
        self.task = asyncio.create_task(self._run(), name=f"triage-session-{self.call_id}")
        self.task.add_done_callback(self._on_stopped)

    def _on_stopped(self, task: asyncio.Task) -> None:
        # Already logged by _run; read it so a crashed call that is never ended stays quiet
        if not task.cancelled():
            task.exception()

    def post(self, kind: str, payload: Any = None) -> None:
        self.queue.put_nowait((kind, payload))

    def _on_timer(self, lane: Lane) -> None:
        self.post("lane_fired", lane)

    async def _run(self) -> None:
        try:
            while True:
                kind, payload = await self.queue.get()
                try:
                    if kind == "end":
                        await self._handle_end(payload)
                        return
                    await self._handle(kind, payload)
                finally:
                    self.queue.task_done()
        except asyncio.CancelledError:
            self._teardown()
            raise
        except Exception as e:
            self.error = e
            logger.error(f"❌ Session worker for call {self.call_id} stopped: {e}")
            self._teardown()
            raise

    def _teardown(self) -> None:
        self.scheduler.cancel_all()
        for task in list(self.lane_tasks):
            task.cancel()
        # Unblock anyone waiting on an event that will never be handled
        while not self.queue.empty():
            kind, payload = self.queue.get_nowait()
            if isinstance(payload, asyncio.Future) and not payload.done():
                payload.set_exception(TriageError(f"Session worker for call {self.call_id} stopped",
                                                  call_id=self.call_id))
            self.queue.task_done()

    async def _handle(self, kind: str, payload: Any) -> None:
        if kind == "segment":
            await self._handle_segment(payload)
        elif kind == "lane_fired":
            await self._fire(payload)
        elif kind == "lane_resolved":
            await self._handle_resolved(*payload)
        elif kind == "lane_released":
            self.scheduler.finish(payload)
        elif kind == "reset_metadata":
            fields, future = payload
            try:
                self.session.reset_metadata(*fields)
            except TriageError as e:
                future.set_exception(e)
                return
            future.set_result(None)
            await self.engine._publish(self.session.snapshot())
        else:
            logger.warning(f"Unknown session event '{kind}' for call {self.call_id}")

    async def _handle_segment(self, segment: TranscriptSegment) -> None:
        self.session.append_segment(segment)
        immediate = self.scheduler.on_segment(segment, self.engine.timing_store.get())
        await self.engine._publish(self.session.snapshot())
        for lane in immediate:
            logger.debug(f"Metadata threshold reached for call {self.call_id}, firing early")
            await self._fire(lane)

    async def _handle_end(self, future: "asyncio.Future") -> None:
        self._teardown()
        self.session.end()
        logger.info(f"📴 Session ended for call {self.call_id} (generation {self.session.generation})")
        await self.engine._publish(self.session.snapshot())
        if not future.done():
            future.set_result(self.session.snapshot())

    async def _fire(self, lane: Lane) -> None:
        if self.session.ended or not self.scheduler.try_start(lane):
            return
        config = self.engine.timing_store.get()
        if lane == Lane.SKU:
            self._run_tier1()
            await self.engine._publish(self.session.snapshot())
            return

        transcript = list(self.session.transcript)
        task = asyncio.create_task(
            self._run_remote(lane, self.session.generation, transcript, config),
            name=f"triage-{lane.value}-{self.call_id}",
        )
        self.lane_tasks.add(task)
        task.add_done_callback(self.lane_tasks.discard)

    def _run_tier1(self) -> None:
        try:
            result = self.engine.job_matcher.match(self.session.caller_text())
        except Exception as e:
            logger.exception(f"Tier 1 job matching crashed for call {self.call_id}")
            self.session.record_failure(Lane.SKU, f"{type(e).__name__}: {e}")
            if self.engine.strict_mode:
                raise
            return
        finally:
            self.scheduler.finish(Lane.SKU)
        self.session.merge_jobs(result)
        self.session.record_success(Lane.SKU)
        self.session.refresh_recommendation()
        logger.info(f"🔧 Call {self.call_id}: {len(self.session.jobs)} job(s), "
                    f"route={self.session.recommendation.route.value if self.session.recommendation else None}")

    async def _run_remote(self, lane: Lane, generation: int, transcript: List[TranscriptSegment],
                          config: TimingConfig) -> None:
        engine = self.engine
        if lane == Lane.TIER2:
            call, timeout = engine.segment_classifier.classify(transcript), engine.tier2_timeout_s
        else:
            call, timeout = engine.metadata_extractor.extract(transcript), engine.metadata_timeout_s

        # Not cancelled on timeout: a request running in a thread can't be
        # stopped, so the lane stays in flight until it really returns
        request = asyncio.ensure_future(call)
        self.lane_tasks.add(request)
        request.add_done_callback(self.lane_tasks.discard)

        result, error, released = None, None, True
        done, _ = await asyncio.wait({request}, timeout=timeout)
        if not done:
            error = ClassifierTimeoutError(f"{lane.value} timed out after {timeout}s", call_id=self.call_id)
            released = False
            request.add_done_callback(lambda task: self._release_late(lane, task))
        else:
            try:
                result = request.result()
            except ClassifierError as e:
                error = e
            except Exception as e:
                error = ClassifierError(f"{lane.value} failed: {type(e).__name__}: {e}", call_id=self.call_id)
        logger.debug(f"Lane {lane.value} for call {self.call_id} resolved (timing v{config.version})")
        self.post("lane_resolved", (lane, generation, result, error, released))

    def _release_late(self, lane: Lane, task: "asyncio.Future") -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Timed out {lane.value} request for call {self.call_id} failed: {task.exception()}")
        self.post("lane_released", lane)

    async def _handle_resolved(self, lane: Lane, generation: int, result: Any,
                               error: Optional[Exception], released: bool = True) -> None:
        if released:
            self.scheduler.finish(lane)
        if generation != self.session.generation or self.session.ended:
            logger.debug(f"Discarding stale {lane.value} result for call {self.call_id} "
                         f"(generation {generation} != {self.session.generation})")
            return

        if error is not None:
            logger.warning(f"⚠️ {lane.value} failed for call {self.call_id}, keeping last known state: {error}")
            self.session.record_failure(lane, str(error))
        elif lane == Lane.TIER2 and result.fallback_error:
            # Model failed; the keyword guess only fills an empty segment
            self.session.record_failure(lane, result.fallback_error)
            if self.session.segment is None:
                self.session.merge_classification(result)
        elif lane == Lane.TIER2:
            self.session.merge_classification(result)
            self.session.record_success(lane)
            logger.info(f"🎯 Call {self.call_id}: segment {result.classification.segment.value} "
                        f"({result.classification.confidence}%)")
        else:
            self.session.merge_metadata(result)
            self.session.record_success(lane)
        self.session.refresh_recommendation()
        await self.engine._publish(self.session.snapshot())


class TriageEngine:
    """Live call triage: sessions, lanes, and snapshot publishing"""

    def __init__(self, settings: Optional[Settings] = None,
                 timing_store: Optional[TimingConfigStore] = None,
                 job_matcher: Optional[JobMatcher] = None,
                 segment_classifier: Optional[SegmentClassifier] = None,
                 metadata_extractor: Optional[MetadataExtractor] = None):
        self.settings = settings or get_settings()
        self.timing_store = timing_store or TimingConfigStore.from_settings(self.settings)
        api_key = self.settings.OPENAI_API_KEY if self.settings.use_llm else None
        self.job_matcher = job_matcher or JobMatcher()
        self.segment_classifier = segment_classifier or SegmentClassifier(
            api_key, model=self.settings.TRIAGE_LLM_MODEL, request_timeout=self.settings.TRIAGE_TIER2_TIMEOUT_S)
        self.metadata_extractor = metadata_extractor or MetadataExtractor(
            api_key, model=self.settings.TRIAGE_LLM_MODEL, request_timeout=self.settings.TRIAGE_METADATA_TIMEOUT_S)
        self.tier2_timeout_s = self.settings.TRIAGE_TIER2_TIMEOUT_S
        self.metadata_timeout_s = self.settings.TRIAGE_METADATA_TIMEOUT_S
        self.strict_mode = self.settings.strict_mode

        self._workers: Dict[str, SessionWorker] = {}
        self._ended: "OrderedDict[str, CallSession]" = OrderedDict()
        self._subscribers: List[SnapshotCallback] = []

        mode = "OpenAI" if api_key else "keyword fallback"
        logger.info(f"✅ Triage engine ready (tier2: {mode}, strict_mode={self.strict_mode})")

    # ---------------- Sessions ----------------

    async def start_session(self, call_id: str) -> CallSessionSnapshot:
        """Start tracking a call. Starting an active call is a no-op; starting an ended call restarts it."""
        worker = self._workers.get(call_id)
        if worker is not None and worker.alive:
            return worker.session.snapshot()

        session = CallSession(call_id)
        previous = self._ended.pop(call_id, None) or (worker.session if worker else None)
        if previous is not None:
            session.generation = previous.generation + 1
        worker = SessionWorker(self, session)
        self._workers[call_id] = worker
        worker.start()
        logger.info(f"📞 Session started for call {call_id}")
        snapshot = session.snapshot()
        await self._publish(snapshot)
        return snapshot

    def _active_worker(self, call_id: str) -> SessionWorker:
        worker = self._workers.get(call_id)
        if worker is None:
            raise SessionNotFoundError(call_id)
        if not worker.alive:
            raise TriageError(f"Session worker for call {call_id} has stopped", call_id=call_id,
                              details={"error": repr(worker.error)} if worker.error else None)
        return worker

    async def submit_segment(self, call_id: str,
                             segment: Union[TranscriptSegment, Dict[str, Any]]) -> None:
        """Queue one transcript segment for a call. Malformed segments are rejected here."""
        if isinstance(segment, dict):
            try:
                segment = TranscriptSegment.model_validate(segment)
            except ValidationError as e:
                logger.warning(f"Rejected segment for call {call_id}: {e.error_count()} error(s)")
                raise InvalidSegmentError(
                    "Invalid transcript segment", call_id=call_id,
                    details={"errors": e.errors(include_url=False, include_context=False)},
                ) from e
        elif not isinstance(segment, TranscriptSegment):
            raise InvalidSegmentError(f"Unsupported segment type {type(segment).__name__}", call_id=call_id)

        if call_id not in self._workers:
            if call_id in self._ended:
                raise SessionNotFoundError(call_id)
            # First segment for a call nobody started
            await self.start_session(call_id)
        self._active_worker(call_id).post("segment", segment)

    async def end_session(self, call_id: str) -> Optional[CallSessionSnapshot]:
        """End a call. Safe to call more than once, concurrently, or for a call that never started."""
        worker = self._workers.get(call_id)
        if worker is None:
            if call_id in self._ended:
                return self._ended[call_id].snapshot()
            logger.debug(f"end_session for unknown call {call_id}, nothing to end")
            return None
        if worker.ending is None:
            worker.ending = asyncio.ensure_future(self._stop_worker(worker))
        return await asyncio.shield(worker.ending)

    async def _stop_worker(self, worker: SessionWorker) -> CallSessionSnapshot:
        if worker.alive:
            future = asyncio.get_running_loop().create_future()
            worker.post("end", future)
            await asyncio.gather(worker.task, return_exceptions=True)
            if not future.done():
                future.cancel()
        else:
            # Worker already stopped on a Tier 1 bug; its error was logged when it happened
            worker.scheduler.cancel_all()
            worker.session.end()

        if self._workers.get(worker.call_id) is worker:
            del self._workers[worker.call_id]
        self._remember_ended(worker.session)
        return worker.session.snapshot()

    def _remember_ended(self, session: CallSession) -> None:
        self._ended[session.call_id] = session
        while len(self._ended) > MAX_ENDED_SESSIONS:
            self._ended.popitem(last=False)

    async def reset_metadata(self, call_id: str, *fields: str) -> CallSessionSnapshot:
        """Clear caller details (all, or just the named fields)."""
        worker = self._active_worker(call_id)
        future = asyncio.get_running_loop().create_future()
        worker.post("reset_metadata", (fields, future))
        await future
        return worker.session.snapshot()

    async def wait_idle(self, call_id: str) -> None:
        """Wait until every queued event for the call has been handled."""
        await self._active_worker(call_id).queue.join()

    def get_snapshot(self, call_id: str) -> CallSessionSnapshot:
        worker = self._workers.get(call_id)
        if worker is not None:
            return worker.session.snapshot()
        if call_id in self._ended:
            return self._ended[call_id].snapshot()
        raise SessionNotFoundError(call_id)

    def list_sessions(self, include_ended: bool = False) -> List[CallSessionSnapshot]:
        snapshots = [worker.session.snapshot() for worker in self._workers.values()]
        if include_ended:
            snapshots.extend(session.snapshot() for session in self._ended.values())
        return snapshots

    async def shutdown(self) -> None:
        for call_id in list(self._workers):
            await self.end_session(call_id)
        logger.info("🛑 Triage engine shut down")

    # ---------------- Publishing ----------------

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Register a snapshot listener; returns a function that removes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def _publish(self, snapshot: CallSessionSnapshot) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Snapshot subscriber failed for call {snapshot.call_id}: {e}")

    # ---------------- Timing config ----------------

    def get_timing_config(self) -> TimingConfig:
        return self.timing_store.get()

    def set_timing_config(self, **changes: Any) -> TimingConfig:
        return self.timing_store.update(**changes)
