"""
Timing configuration for the live triage lanes.

A TimingConfig is an immutable, versioned snapshot. Lanes read one snapshot when
they fire and keep it for the whole run, so a settings change never lands
mid-flight. TimingConfigStore is the single process-wide writer.
"""

import logging
import threading
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class TimingConfig(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    sku_debounce_ms: int = Field(default=300, ge=50, le=5000,
                                 description="Quiet period before Tier 1 job matching runs")
    tier2_llm_debounce_ms: int = Field(default=500, ge=100, le=10000,
                                       description="Quiet period before the Tier 2 classifier runs")
    metadata_debounce_ms: int = Field(default=1500, ge=100, le=30000,
                                      description="Quiet period before metadata extraction runs")
    metadata_chunk_interval: int = Field(default=5, ge=1, le=50,
                                         description="Final caller segments that force an early metadata run")
    metadata_char_threshold: int = Field(default=150, ge=20, le=5000,
                                         description="Buffered characters that force an early metadata run")
    version: int = Field(default=1, ge=1)


TUNABLE_FIELDS = tuple(name for name in TimingConfig.model_fields if name != "version")


def _normalize_keys(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Accept both snake_case and camelCase keys."""
    by_alias = {TimingConfig.model_fields[name].alias: name for name in TUNABLE_FIELDS}
    normalized = {}
    for key, value in changes.items():
        name = by_alias.get(key, key)
        if name not in TUNABLE_FIELDS:
            raise ConfigurationError(f"Unknown timing setting: {key}", details={"setting": key})
        normalized[name] = value
    return normalized


class TimingConfigStore:
    """Process-wide, hot-reloadable holder of the current TimingConfig."""

    def __init__(self, initial: Optional[TimingConfig] = None):
        self._lock = threading.Lock()
        self._current = initial or TimingConfig()

    @classmethod
    def from_settings(cls, settings) -> "TimingConfigStore":
        try:
            initial = TimingConfig(
                sku_debounce_ms=settings.TRIAGE_SKU_DEBOUNCE_MS,
                tier2_llm_debounce_ms=settings.TRIAGE_TIER2_LLM_DEBOUNCE_MS,
                metadata_debounce_ms=settings.TRIAGE_METADATA_DEBOUNCE_MS,
                metadata_chunk_interval=settings.TRIAGE_METADATA_CHUNK_INTERVAL,
                metadata_char_threshold=settings.TRIAGE_METADATA_CHAR_THRESHOLD,
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid timing settings in environment: {e}") from e
        return cls(initial)

    def get(self) -> TimingConfig:
        with self._lock:
            return self._current

    def update(self, **changes: Any) -> TimingConfig:
        """Apply a partial update; out-of-range values are rejected before anything changes."""
        normalized = _normalize_keys(changes)
        with self._lock:
            merged = self._current.model_dump()
            merged.update(normalized)
            merged["version"] = self._current.version + 1
            try:
                updated = TimingConfig.model_validate(merged)
            except ValidationError as e:
                logger.warning(f"Rejected timing update {changes}: {e.error_count()} error(s)")
                raise ConfigurationError(
                    "Timing setting out of range",
                    details={"errors": e.errors(include_url=False, include_context=False)},
                ) from e
            self._current = updated
        logger.info(f"⏱️ Timing config updated to v{updated.version}: {normalized}")
        return updated

    def reset(self) -> TimingConfig:
        with self._lock:
            self._current = TimingConfig(version=self._current.version + 1)
            return self._current
