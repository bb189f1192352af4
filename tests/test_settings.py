"""Tests for StreamSettings configuration."""

from __future__ import annotations

import pytest
from piece_stream.settings import (
    DEFAULT_MEDIA_EXTENSIONS,
    MIB,
    StreamSettings,
    load_settings_from_env,
)
from pydantic import ValidationError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "PIECE_STREAM_MAX_CHUNK_SIZE",
        "PIECE_STREAM_INITIAL_CHUNK_SIZE",
        "PIECE_STREAM_READ_AHEAD",
        "PIECE_STREAM_READINESS_TIMEOUT",
        "PIECE_STREAM_MAX_MEMORY",
        "MAX_MEMORY_USAGE",
        "PIECE_STREAM_PIECE_LENGTH",
        "PIECE_STREAM_MEDIA_EXTENSIONS",
    ):
        monkeypatch.delenv(name, raising=False)


class TestStreamSettings:
    def test_default_settings(self):
        """Test that StreamSettings has sensible defaults."""
        settings = StreamSettings()
        assert settings.max_chunk_size == 10 * MIB
        assert settings.initial_chunk_size == 2 * MIB
        assert settings.read_ahead_bytes == 10 * MIB
        assert settings.readiness_timeout == 30.0
        assert settings.max_memory_bytes == 500 * MIB
        assert settings.media_type == "video/mp4"
        assert settings.media_extensions == DEFAULT_MEDIA_EXTENSIONS

    def test_load_from_env(self, monkeypatch):
        monkeypatch.setenv("PIECE_STREAM_MAX_CHUNK_SIZE", "1048576")
        monkeypatch.setenv("PIECE_STREAM_READ_AHEAD", "0")
        monkeypatch.setenv("PIECE_STREAM_READINESS_TIMEOUT", "2.5")
        settings = load_settings_from_env()
        assert settings.max_chunk_size == MIB
        assert settings.read_ahead_bytes == 0
        assert settings.readiness_timeout == 2.5

    @pytest.mark.parametrize("name", ["PIECE_STREAM_MAX_MEMORY", "MAX_MEMORY_USAGE"])
    def test_memory_budget_aliases(self, monkeypatch, name):
        monkeypatch.setenv(name, str(64 * MIB))
        assert load_settings_from_env().max_memory_bytes == 64 * MIB

    def test_media_extensions_from_env(self, monkeypatch):
        monkeypatch.setenv("PIECE_STREAM_MEDIA_EXTENSIONS", "MP4, mkv,,.webm")
        settings = load_settings_from_env()
        assert settings.media_extensions == (".mp4", ".mkv", ".webm")

    def test_initial_chunk_never_exceeds_max_chunk(self):
        settings = StreamSettings(max_chunk_size=1000, initial_chunk_size=5000)
        assert settings.effective_initial_chunk == 1000

    @pytest.mark.parametrize(
        "overrides",
        [
            {"max_chunk_size": 0},
            {"piece_length": -1},
            {"read_ahead_bytes": -1},
            {"readiness_timeout": 0},
            {"max_memory_bytes": 1024, "piece_length": 2048},
        ],
    )
    def test_invalid_values(self, overrides):
        with pytest.raises(ValidationError):
            StreamSettings(**overrides)
