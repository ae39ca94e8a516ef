import threading

import pytest
from pydantic import ValidationError

from live_triage.config.settings import Settings
from live_triage.config.timing import TimingConfig, TimingConfigStore
from live_triage.exceptions import ConfigurationError


class TestTimingConfig:
    """Unit tests for the versioned timing snapshot and its store"""

    @pytest.fixture
    def store(self):
        return TimingConfigStore()

    def test_defaults(self):
        config = TimingConfig()
        assert config.sku_debounce_ms == 300
        assert config.tier2_llm_debounce_ms == 500
        assert config.metadata_debounce_ms == 1500
        assert config.metadata_chunk_interval == 5
        assert config.metadata_char_threshold == 150
        assert config.version == 1

    def test_snapshot_is_frozen(self):
        config = TimingConfig()
        with pytest.raises(ValidationError):
            config.sku_debounce_ms = 1000

    def test_camel_case_dump(self):
        dumped = TimingConfig().model_dump(by_alias=True)
        assert dumped["skuDebounceMs"] == 300
        assert dumped["tier2LlmDebounceMs"] == 500

    def test_update_bumps_version(self, store):
        updated = store.update(sku_debounce_ms=250)
        assert updated.sku_debounce_ms == 250
        assert updated.version == 2
        assert store.get() is updated

    def test_update_accepts_camel_case(self, store):
        updated = store.update(skuDebounceMs=400, metadataChunkInterval=3)
        assert updated.sku_debounce_ms == 400
        assert updated.metadata_chunk_interval == 3

    def test_old_snapshot_unchanged_after_update(self, store):
        before = store.get()
        store.update(tier2_llm_debounce_ms=900)
        assert before.tier2_llm_debounce_ms == 500
        assert before.version == 1

    @pytest.mark.parametrize("changes", [
        {"sku_debounce_ms": 10},
        {"sku_debounce_ms": 6000},
        {"tier2_llm_debounce_ms": 50},
        {"metadata_debounce_ms": 40000},
        {"metadata_chunk_interval": 0},
        {"metadata_char_threshold": 5},
    ])
    def test_out_of_range_rejected(self, store, changes):
        with pytest.raises(ConfigurationError) as exc_info:
            store.update(**changes)
        assert exc_info.value.details["errors"]
        # Nothing changed
        assert store.get() == TimingConfig()

    def test_partial_invalid_update_is_atomic(self, store):
        with pytest.raises(ConfigurationError):
            store.update(sku_debounce_ms=200, metadata_chunk_interval=0)
        assert store.get().sku_debounce_ms == 300

    def test_unknown_key_rejected(self, store):
        with pytest.raises(ConfigurationError) as exc_info:
            store.update(turbo=True)
        assert exc_info.value.details["setting"] == "turbo"

    def test_version_cannot_be_set_directly(self, store):
        with pytest.raises(ConfigurationError):
            store.update(version=99)

    def test_reset_restores_defaults_with_new_version(self, store):
        store.update(sku_debounce_ms=1000)
        reset = store.reset()
        assert reset.sku_debounce_ms == 300
        assert reset.version == 3

    def test_from_settings(self):
        settings = Settings(TRIAGE_SKU_DEBOUNCE_MS=120, TRIAGE_METADATA_CHUNK_INTERVAL=2)
        store = TimingConfigStore.from_settings(settings)
        assert store.get().sku_debounce_ms == 120
        assert store.get().metadata_chunk_interval == 2

    def test_from_settings_out_of_range(self):
        settings = Settings(TRIAGE_SKU_DEBOUNCE_MS=1)
        with pytest.raises(ConfigurationError):
            TimingConfigStore.from_settings(settings)

    def test_concurrent_updates_get_unique_versions(self, store):
        versions = []

        def bump():
            versions.append(store.update(sku_debounce_ms=200).version)

        threads = [threading.Thread(target=bump) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(versions) == list(range(2, 12))
