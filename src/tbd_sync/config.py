"""Runtime configuration for the sync engine.

Resolves the settings a ``Tracker`` needs from explicit overrides,
environment variables, ``.env`` files, and the YAML config.

Precedence (highest to lowest):
    Overrides > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    TBD_SYNC_BRANCH: Sync branch name (optional, default: tbd-sync)
    TBD_SYNC_REMOTE: Remote name (optional, default: origin)
    TBD_MAX_PUSH_ATTEMPTS: Push attempts before giving up (optional, default: 3)
    TBD_DEBUG: Enable debug logging (optional, default: false)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from tbd_sync.config_schema import UnifiedConfig
from tbd_sync.core.git import validate_git_name
from tbd_sync.errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class Config:
    repo_root: Path
    branch: str = "tbd-sync"
    remote: str = "origin"
    max_push_attempts: int = 3
    tie_break: str = "remote"
    id_prefix: str = "is"
    hex_width: int = 6
    id_max_attempts: int = 10
    temp_grace_seconds: int = 3600
    debug: bool = False
    log_level: str = "INFO"
    log_file: str | None = None


def validate_config(config: Config) -> None:
    """Validate configuration values.

    Raises:
        ConfigError: If the branch or remote name is unsafe or a numeric
            setting is out of range.
    """
    config.branch = validate_git_name("branch", config.branch.strip())
    config.remote = validate_git_name("remote", config.remote.strip())

    if not (1 <= config.max_push_attempts <= 10):
        raise ConfigError(
            f"Invalid max_push_attempts {config.max_push_attempts}: "
            "must be between 1 and 10"
        )
    if config.tie_break not in ("remote", "content-hash"):
        raise ConfigError(
            f"Invalid tie_break '{config.tie_break}': "
            "must be 'remote' or 'content-hash'"
        )


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def load_config(
    repo_root: Path | None = None,
    branch: str | None = None,
    remote: str | None = None,
    max_push_attempts: int | None = None,
    debug: bool = False,
    unified: UnifiedConfig | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        override arg > env var / .env > unified (YAML) > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        repo_root: Repository root; defaults to the current directory.
        branch: Override sync branch.
        remote: Override remote.
        max_push_attempts: Override push attempts.
        debug: Enable debug logging.
        unified: Config built from the YAML files.

    Returns:
        Validated Config instance.

    Raises:
        ConfigError: If a value is invalid after checking all sources.
    """
    yaml_cfg = unified or UnifiedConfig()

    final_branch = branch or os.getenv("TBD_SYNC_BRANCH") or yaml_cfg.sync.branch
    final_remote = remote or os.getenv("TBD_SYNC_REMOTE") or yaml_cfg.sync.remote

    if max_push_attempts is not None:
        final_attempts = max_push_attempts
    else:
        raw = os.getenv("TBD_MAX_PUSH_ATTEMPTS")
        if raw is not None:
            try:
                final_attempts = int(raw)
            except ValueError:
                raise ConfigError(
                    f"Invalid TBD_MAX_PUSH_ATTEMPTS '{raw}': must be a number between 1 and 10"
                ) from None
        else:
            final_attempts = yaml_cfg.sync.max_push_attempts

    if debug:
        final_debug = True
    else:
        final_debug = bool(_get_bool_env("TBD_DEBUG"))

    config = Config(
        repo_root=(repo_root or Path.cwd()).resolve(),
        branch=final_branch,
        remote=final_remote,
        max_push_attempts=final_attempts,
        tie_break=yaml_cfg.sync.tie_break,
        id_prefix=yaml_cfg.ids.prefix,
        hex_width=yaml_cfg.ids.hex_width,
        id_max_attempts=yaml_cfg.ids.max_attempts,
        temp_grace_seconds=yaml_cfg.storage.temp_grace_seconds,
        debug=final_debug,
        log_level=yaml_cfg.logging.level,
        log_file=yaml_cfg.logging.file,
    )

    validate_config(config)

    return config
