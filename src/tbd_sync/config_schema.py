"""Unified configuration schema for tbd_sync.

Defines Pydantic models for the ``.tbd/config.yml`` structure with
dedicated sections for sync, ID allocation, storage, display and logging.

Usage:
    from tbd_sync.config_schema import UnifiedConfig, build_config

    raw = load_hierarchical_config(repo_root)
    unified = build_config(raw)
"""

from __future__ import annotations

import logging
import re
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from tbd_sync.errors import ConfigError

logger = logging.getLogger(__name__)

_BRANCH_RE = re.compile(r"^[a-zA-Z0-9._/-]+$")
_REMOTE_RE = re.compile(r"^[a-zA-Z0-9._-]+$")


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class SyncSection(BaseModel):
    """Transport log settings."""

    branch: str = Field(default="tbd-sync", description="Sync branch name")
    remote: str = Field(default="origin", description="Remote name")
    max_push_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Fetch/merge/push attempts before giving up (1-10)",
    )
    tie_break: Literal["remote", "content-hash"] = Field(
        default="remote",
        description="Winner when both sides have the same updated_at",
    )

    model_config = {"frozen": True}

    @field_validator("branch")
    @classmethod
    def _check_branch(cls, value: str) -> str:
        if value.startswith("-") or ".." in value or not _BRANCH_RE.match(value):
            raise ValueError(f"invalid branch name: {value!r}")
        return value

    @field_validator("remote")
    @classmethod
    def _check_remote(cls, value: str) -> str:
        if value.startswith("-") or ".." in value or not _REMOTE_RE.match(value):
            raise ValueError(f"invalid remote name: {value!r}")
        return value


class IdsSection(BaseModel):
    """Entity ID allocation."""

    prefix: str = Field(default="is", pattern=r"^[a-z]+$")
    hex_width: int = Field(default=6, ge=4, le=16)
    max_attempts: int = Field(default=10, ge=1, le=100)

    model_config = {"frozen": True}


class StorageSection(BaseModel):
    """Local storage behaviour."""

    temp_grace_seconds: int = Field(
        default=3600,
        ge=0,
        description="Age before an orphaned temp file may be swept",
    )

    model_config = {"frozen": True}


class DisplaySection(BaseModel):
    """How IDs are shown to (and accepted from) users."""

    id_prefix: str = Field(default="is", pattern=r"^[a-z]+$")

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has sensible defaults, so ``UnifiedConfig()``
    (zero-config) is always valid.
    """

    sync: SyncSection = Field(default_factory=SyncSection)
    ids: IdsSection = Field(default_factory=IdsSection)
    storage: StorageSection = Field(default_factory=StorageSection)
    display: DisplaySection = Field(default_factory=DisplaySection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully; anything absent gets defaults.

    Raises:
        ConfigError: If a value fails validation.
    """
    if not raw_data:
        return UnifiedConfig()

    try:
        return UnifiedConfig(**raw_data)
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
