"""
Per-session debounce scheduler.

Each lane (sku, tier2, metadata) has at most one pending timer and at most one
run in flight. Every new final caller segment pushes the pending timers back;
a lane that fires while its previous run is still going is re-armed for
RETRY_DELAY_MS instead of starting a second run.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..config.timing import TimingConfig
from ..models import Speaker, TranscriptSegment

logger = logging.getLogger(__name__)

RETRY_DELAY_MS = 100


class Lane(str, Enum):
    SKU = "sku"
    TIER2 = "tier2"
    METADATA = "metadata"


def lane_delay_ms(lane: Lane, config: TimingConfig) -> int:
    if lane == Lane.SKU:
        return config.sku_debounce_ms
    if lane == Lane.TIER2:
        return config.tier2_llm_debounce_ms
    return config.metadata_debounce_ms


def arms_lanes(segment: TranscriptSegment) -> bool:
    """Only settled caller speech moves the lanes."""
    return segment.speaker == Speaker.CALLER and segment.is_final


class DebounceScheduler:
    """Owns the timers for one call. Not thread-safe; lives on the session's event loop."""

    def __init__(self, on_fire: Callable[[Lane], None], loop: Optional[asyncio.AbstractEventLoop] = None):
        self._on_fire = on_fire
        self._loop = loop
        self._handles: Dict[Lane, asyncio.TimerHandle] = {}
        self._in_flight: Dict[Lane, bool] = {lane: False for lane in Lane}
        self.chunks_since_metadata = 0
        self.chars_since_metadata = 0
        self.closed = False

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def on_segment(self, segment: TranscriptSegment, config: TimingConfig) -> List[Lane]:
        """
        Re-arm lanes for a new segment.

        Returns the lanes that should fire right away (metadata when enough
        caller speech has built up since its last run).
        """
        if self.closed or not arms_lanes(segment):
            return []

        self.chunks_since_metadata += 1
        self.chars_since_metadata += len(segment.text)
        for lane in Lane:
            self.arm(lane, lane_delay_ms(lane, config))

        if (self.chunks_since_metadata >= config.metadata_chunk_interval
                or self.chars_since_metadata > config.metadata_char_threshold):
            self.cancel(Lane.METADATA)
            return [Lane.METADATA]
        return []

    def arm(self, lane: Lane, delay_ms: int) -> None:
        if self.closed:
            return
        self.cancel(lane)
        self._handles[lane] = self.loop.call_later(delay_ms / 1000.0, self._fire, lane)

    def cancel(self, lane: Lane) -> None:
        handle = self._handles.pop(lane, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        self.closed = True
        for lane in list(self._handles):
            self.cancel(lane)

    def is_armed(self, lane: Lane) -> bool:
        return lane in self._handles

    def is_in_flight(self, lane: Lane) -> bool:
        return self._in_flight[lane]

    def try_start(self, lane: Lane) -> bool:
        """
        Claim the lane for a run. If a run is already in flight the lane is
        re-armed for RETRY_DELAY_MS and False is returned.
        """
        if self.closed:
            return False
        if self._in_flight[lane]:
            logger.debug(f"Lane {lane.value} busy, retrying in {RETRY_DELAY_MS}ms")
            self.arm(lane, RETRY_DELAY_MS)
            return False
        self._in_flight[lane] = True
        if lane == Lane.METADATA:
            self.chunks_since_metadata = 0
            self.chars_since_metadata = 0
        return True

    def finish(self, lane: Lane) -> None:
        self._in_flight[lane] = False

    def _fire(self, lane: Lane) -> None:
        self._handles.pop(lane, None)
        if not self.closed:
            self._on_fire(lane)
