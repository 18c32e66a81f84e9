"""Startup wiring: environment, configuration, logging, tracker."""

import logging
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from tbd_sync import paths
from tbd_sync.config import load_config
from tbd_sync.config_loader import (
    discover_config_files,
    ensure_config,
    load_hierarchical_config,
)
from tbd_sync.config_schema import build_config
from tbd_sync.logger import setup_logging
from tbd_sync.sync.engine import Transport
from tbd_sync.tracker import Tracker

logger = logging.getLogger(__name__)


def init_repository(repo_root: Path) -> Path:
    """Create the ``.tbd/`` layout and a starter config if missing.

    Returns:
        Path to the config file.
    """
    paths.data_sync_dir(repo_root).mkdir(parents=True, exist_ok=True)
    paths.cache_dir(repo_root).mkdir(parents=True, exist_ok=True)
    return ensure_config(repo_root)


def open_tracker(
    repo_root: Path | None = None,
    mode: str = "cli",
    debug: bool = False,
    transport: Transport | None = None,
    configure_logging: bool = True,
    **overrides: Any,
) -> Tracker:
    """Build a ``Tracker`` from every configuration source.

    Loading order:
    - ``.env`` (so values are visible to env lookups and YAML interpolation)
    - YAML config files, merged and validated
    - ``load_config()``: overrides > env vars > .env > YAML > defaults
    - logging setup for *mode* (``"cli"`` or ``"daemon"``)

    Args:
        repo_root: Repository root; defaults to the current directory.
        mode: Logging mode.
        debug: Force debug logging.
        transport: Transport to use instead of ``GitTransport``.
        configure_logging: Set to ``False`` when the host application
            owns logging.
        **overrides: ``branch``, ``remote`` or ``max_push_attempts``.

    Raises:
        ConfigError: If the configuration is invalid.
    """
    root = (repo_root or Path.cwd()).resolve()

    load_dotenv()

    raw = load_hierarchical_config(root)
    unified = build_config(raw)
    config = load_config(repo_root=root, debug=debug, unified=unified, **overrides)

    if configure_logging:
        setup_logging(
            mode=mode,
            debug=config.debug,
            log_file=config.log_file,
            level=config.log_level,
        )

    sources = discover_config_files(root)
    logger.info(
        "Opened tracker at %s (branch=%s, remote=%s, config=%s)",
        root,
        config.branch,
        config.remote,
        sources[0] if sources else "defaults",
    )
    return Tracker(config, transport=transport)
