"""Tests for sync configuration loading"""
import os
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from synclayer.config import (
    DEFAULT_PRIORITY_ORDER,
    DEFAULT_TABLES,
    SyncConfig,
    load_config,
    load_config_section,
)


def write_config(base_path: Path, section: dict) -> None:
    base_path.mkdir(parents=True, exist_ok=True)
    (base_path / "config.yaml").write_text(yaml.safe_dump({"sync": section}))


class TestSyncConfig:
    """Tests for defaults and validation."""

    def test_defaults(self):
        config = SyncConfig(backend_url="http://x/")
        assert config.backend_url == "http://x"
        assert config.priority_order == DEFAULT_PRIORITY_ORDER
        assert config.tables == DEFAULT_TABLES
        assert config.resolved_bus_db_path == config.base_path / "bus.sqlite"
        config.validate()

    def test_backend_url_required(self):
        with pytest.raises(ValueError, match="backend_url"):
            SyncConfig().validate()

    @pytest.mark.parametrize("overrides", [
        {"polling_interval_seconds": 0},
        {"timeout_seconds": -1},
        {"polling_interval_seconds": 10, "max_polling_interval_seconds": 5},
        {"stream_reconnect_seconds": 5, "max_stream_reconnect_seconds": 1},
        {"backoff_factor": 0.5},
        {"tables": ()},
        {"user_id": ""},
        {"priority_class": "tablet"},
        {"priority_order": ("desktop", "desktop")},
        {"priority_class": "9", "priority_order": ("9", "desktop")},
    ])
    def test_invalid_values(self, overrides):
        with pytest.raises(ValueError):
            SyncConfig(backend_url="http://x", **overrides).validate()

    def test_custom_priority_class_listed_in_order(self):
        SyncConfig(backend_url="http://x", priority_class="tablet",
                   priority_order=("desktop", "tablet", "mobile")).validate()

    def test_unlisted_priority_class_message(self):
        with pytest.raises(ValueError, match="not in priority_order"):
            SyncConfig(backend_url="http://x", priority_class="tablet").validate()

    def test_round_trip_through_dict(self, tmp_path):
        config = SyncConfig(backend_url="http://x", base_path=tmp_path, tables=("checklist_sets",))
        again = SyncConfig.from_dict(config.to_dict())
        assert again == config

    def test_unknown_keys_ignored(self):
        config = SyncConfig.from_dict({"backend_url": "http://x", "colour": "blue"})
        assert config.backend_url == "http://x"


class TestLoading:
    """Tests for config.yaml and environment overrides."""

    def test_missing_file_gives_defaults(self, tmp_path):
        config = SyncConfig.from_file(tmp_path)
        assert config.base_path == tmp_path
        assert config.backend_url == ""

    def test_from_file(self, tmp_path):
        write_config(tmp_path, {
            "backend_url": "http://sync.local",
            "app_key": "k",
            "priority_order": ["mobile", "desktop"],
            "polling_interval_seconds": 5,
            "fallback_polling": False,
        })
        config = SyncConfig.from_file(tmp_path)
        assert config.backend_url == "http://sync.local"
        assert config.priority_order == ("mobile", "desktop")
        assert config.polling_interval_seconds == 5.0
        assert config.fallback_polling is False

    def test_invalid_yaml(self, tmp_path):
        (tmp_path / "config.yaml").write_text("sync: [unclosed")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config_section(tmp_path)

    def test_non_mapping_section(self, tmp_path):
        (tmp_path / "config.yaml").write_text("sync: just a string\n")
        assert load_config_section(tmp_path) == {}

    def test_env_overrides_file(self, tmp_path):
        write_config(tmp_path, {"backend_url": "http://file", "user_id": "from-file"})
        env = {
            "SYNCLAYER_BACKEND_URL": "http://env",
            "SYNCLAYER_TABLES": "checklist_sets, dictionary_entries",
            "SYNCLAYER_FALLBACK_POLLING": "no",
            "SYNCLAYER_BACKOFF_FACTOR": "3",
        }
        with patch.dict(os.environ, env):
            config = load_config(tmp_path)
        assert config.backend_url == "http://env"
        assert config.user_id == "from-file"
        assert config.tables == ("checklist_sets", "dictionary_entries")
        assert config.fallback_polling is False
        assert config.backoff_factor == 3.0

    def test_base_path_from_env(self, tmp_path):
        write_config(tmp_path, {"backend_url": "http://file"})
        with patch.dict(os.environ, {"SYNCLAYER_BASE_PATH": str(tmp_path)}):
            config = load_config()
        assert config.backend_url == "http://file"
        assert config.base_path == tmp_path
