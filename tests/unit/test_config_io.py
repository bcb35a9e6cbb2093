"""
Unit tests for the YAML key-path store and settings loading.
"""

import pytest

from smartstream.config_io import ConfigStore, load_supervisor_settings
from smartstream.config.supervisor_defaults import KILL_GRACE_SECONDS, MAX_AUTOSTART_RETRIES


@pytest.fixture
def store(tmp_path):
    return ConfigStore(tmp_path / "smartstream.yml", in_memory=False)


class TestConfigStore:
    """Tests for ConfigStore."""

    def test_missing_file_is_empty(self, store):
        """Should return an empty document when the file does not exist."""
        assert store.load() == {}
        assert store.get("cams/10.0.0.5") is None

    def test_set_creates_intermediate_maps(self, store):
        """Should create nested maps along a key path and persist them."""
        store.set("cams/10.0.0.5", {"autostart": True})

        assert store.get("cams/10.0.0.5") == {"autostart": True}
        assert "10.0.0.5" in store.path.read_text(encoding="utf-8")

    def test_get_default(self, store):
        """Should return the default for absent keys."""
        assert store.get("cams", {}) == {}

    def test_delete(self, store):
        """Should delete keys and report whether they existed."""
        store.set("cams/10.0.0.5", {"autostart": True})

        assert store.delete("cams/10.0.0.5") is True
        assert store.delete("cams/10.0.0.5") is False
        assert store.get("cams") == {}

    def test_corrupt_file_recovers(self, store):
        """Should reinitialize a corrupt document."""
        store.path.write_text("cams: [unclosed", encoding="utf-8")

        assert store.load() == {}
        store.set("cams/10.0.0.5", {"port": 554})
        assert store.get("cams/10.0.0.5/port") == 554

    def test_non_dict_document_recovers(self, store):
        """Should reinitialize a document that is not a map."""
        store.path.write_text("- a\n- b\n", encoding="utf-8")
        assert store.load() == {}

    def test_no_temp_files_left(self, store, tmp_path):
        """Should leave only the target file after saving."""
        store.set("a/b", 1)
        assert [p.name for p in tmp_path.iterdir()] == ["smartstream.yml"]

    def test_save_rejects_non_dict(self, store):
        """Should refuse non-dict documents."""
        with pytest.raises(ValueError):
            store.save(["not", "a", "dict"])

    def test_invalid_key(self, store):
        """Should reject empty key paths."""
        with pytest.raises(ValueError):
            store.get("/")

    def test_in_memory_mode(self):
        """Should keep data in memory without a path."""
        memory = ConfigStore(in_memory=True)
        memory.set("cams/10.0.0.5", {"autostart": True})

        assert memory.path is None
        assert memory.get("cams/10.0.0.5/autostart") is True

    def test_load_returns_copy_in_memory(self):
        """Should not expose internal state to callers."""
        memory = ConfigStore(in_memory=True)
        memory.set("cams/10.0.0.5", {"autostart": True})

        memory.load()["cams"]["10.0.0.5"]["autostart"] = False

        assert memory.get("cams/10.0.0.5/autostart") is True


class TestLoadSupervisorSettings:
    """Tests for load_supervisor_settings()."""

    def test_defaults(self):
        """Should use defaults without overrides."""
        settings = load_supervisor_settings({})
        assert settings.kill_grace_seconds == KILL_GRACE_SECONDS
        assert settings.max_autostart_retries == MAX_AUTOSTART_RETRIES

    def test_overrides(self):
        """Should apply valid SMARTSTREAM_* overrides."""
        settings = load_supervisor_settings({
            "SMARTSTREAM_KILL_GRACE_SECONDS": "2.5",
            "SMARTSTREAM_MAX_AUTOSTART_RETRIES": "3",
            "SMARTSTREAM_FFMPEG_BINARY": "/usr/local/bin/ffmpeg",
        })

        assert settings.kill_grace_seconds == 2.5
        assert settings.max_autostart_retries == 3
        assert settings.ffmpeg_binary == "/usr/local/bin/ffmpeg"

    def test_invalid_values_ignored(self):
        """Should keep defaults for invalid values."""
        settings = load_supervisor_settings({
            "SMARTSTREAM_KILL_GRACE_SECONDS": "-1",
            "SMARTSTREAM_MAX_AUTOSTART_RETRIES": "many",
            "SMARTSTREAM_START_TIMEOUT_SECONDS": "20",
        })

        assert settings.kill_grace_seconds == KILL_GRACE_SECONDS
        assert settings.max_autostart_retries == MAX_AUTOSTART_RETRIES
        assert settings.start_timeout_seconds == 20.0
