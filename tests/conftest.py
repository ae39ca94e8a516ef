import pytest

from live_triage.config.settings import Settings
from live_triage.config.timing import TimingConfig, TimingConfigStore
from live_triage.models import Speaker, TranscriptSegment


@pytest.fixture
def settings():
    """Offline settings: no OpenAI key, keyword classifier, strict Tier 1."""
    return Settings(
        OPENAI_API_KEY=None,
        TRIAGE_MOCK_LLM=True,
        TRIAGE_ENVIRONMENT="test",
        TRIAGE_STRICT_MODE=True,
        TRIAGE_TIER2_TIMEOUT_S=2.0,
        TRIAGE_METADATA_TIMEOUT_S=2.0,
    )


@pytest.fixture
def fast_timing():
    """Short lanes so tests settle in well under a second."""
    return TimingConfigStore(TimingConfig(
        sku_debounce_ms=50,
        tier2_llm_debounce_ms=100,
        metadata_debounce_ms=100,
        metadata_chunk_interval=50,
        metadata_char_threshold=5000,
    ))


def caller(text, timestamp_ms=0, is_final=True):
    return TranscriptSegment(speaker=Speaker.CALLER, text=text, timestamp_ms=timestamp_ms, is_final=is_final)


def agent(text, timestamp_ms=0):
    return TranscriptSegment(speaker=Speaker.AGENT, text=text, timestamp_ms=timestamp_ms)
