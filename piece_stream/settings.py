from __future__ import annotations

from typing import Annotated

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

MIB = 1024 * 1024

DEFAULT_MEDIA_EXTENSIONS = (".mp4", ".mkv", ".avi", ".mov", ".webm", ".m4v")


class StreamSettings(BaseSettings):
    """Configuration for range streaming, scheduling and the memory budget."""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    max_chunk_size: int = Field(
        default=10 * MIB,
        validation_alias="PIECE_STREAM_MAX_CHUNK_SIZE",
    )
    initial_chunk_size: int = Field(
        default=2 * MIB,
        validation_alias="PIECE_STREAM_INITIAL_CHUNK_SIZE",
    )
    read_ahead_bytes: int = Field(
        default=10 * MIB,
        validation_alias="PIECE_STREAM_READ_AHEAD",
    )
    readiness_timeout: float = Field(
        default=30.0,
        validation_alias="PIECE_STREAM_READINESS_TIMEOUT",
    )
    metadata_timeout: float = Field(
        default=30.0,
        validation_alias="PIECE_STREAM_METADATA_TIMEOUT",
    )
    read_timeout: float = Field(
        default=60.0,
        validation_alias="PIECE_STREAM_READ_TIMEOUT",
    )
    max_memory_bytes: int = Field(
        default=500 * MIB,
        validation_alias=AliasChoices(
            "PIECE_STREAM_MAX_MEMORY",
            "MAX_MEMORY_USAGE",
        ),
    )
    piece_length: int = Field(
        default=1 * MIB,
        validation_alias="PIECE_STREAM_PIECE_LENGTH",
    )
    fetch_concurrency: int = Field(
        default=4,
        validation_alias="PIECE_STREAM_FETCH_CONCURRENCY",
    )
    media_type: str = Field(
        default="video/mp4",
        validation_alias="PIECE_STREAM_MEDIA_TYPE",
    )
    media_extensions: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_MEDIA_EXTENSIONS,
        validation_alias="PIECE_STREAM_MEDIA_EXTENSIONS",
    )

    @field_validator(
        "max_chunk_size",
        "initial_chunk_size",
        "max_memory_bytes",
        "piece_length",
        "fetch_concurrency",
    )
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            msg = "must be a positive integer"
            raise ValueError(msg)
        return value

    @field_validator("read_ahead_bytes")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            msg = "must not be negative"
            raise ValueError(msg)
        return value

    @field_validator("readiness_timeout", "metadata_timeout", "read_timeout")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            msg = "timeout must be positive"
            raise ValueError(msg)
        return value

    @field_validator("media_extensions", mode="before")
    @classmethod
    def _parse_extensions(cls, value: object) -> tuple[str, ...]:
        if isinstance(value, str):
            items = [item.strip() for item in value.split(",")]
        elif isinstance(value, (list, tuple, set)):
            items = [str(item).strip() for item in value]
        else:
            msg = "Invalid media extensions format"
            raise ValueError(msg)
        extensions = []
        for item in items:
            if not item:
                continue
            lowered = item.lower()
            extensions.append(lowered if lowered.startswith(".") else f".{lowered}")
        return tuple(extensions)

    @model_validator(mode="after")
    def _piece_fits_budget(self) -> StreamSettings:
        if self.piece_length > self.max_memory_bytes:
            msg = (
                f"piece_length ({self.piece_length}) exceeds "
                f"max_memory_bytes ({self.max_memory_bytes})"
            )
            raise ValueError(msg)
        return self

    @property
    def effective_initial_chunk(self) -> int:
        """Size of the chunk served to requests that carry no Range header."""
        return min(self.initial_chunk_size, self.max_chunk_size)


def load_settings_from_env() -> StreamSettings:
    """Load stream settings from environment variables.

    Returns:
        StreamSettings instance populated from environment variables.
    """
    return StreamSettings()
