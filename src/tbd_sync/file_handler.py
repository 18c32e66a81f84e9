"""File handler module: path validation, atomic write, read, temp sweep.

Provides the crash-safe file I/O underneath the entity store and the attic.

* ``atomic_write`` writes to a temp file in the destination directory,
  flushes and fsyncs it, then ``os.replace()``s it over the target, so no
  reader ever observes a partially written file.
* Temp files are named ``.{name}.{pid}.{token}.tmp``.  The pid lets
  ``sweep_temp_files`` skip in-flight writes of other live processes.
* ``resolve_within`` rejects tree paths that would escape the data
  directory (paths read from the transport are untrusted).
"""

from __future__ import annotations

import logging
import os
import re
import secrets
import time
from pathlib import Path

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"
DEFAULT_TEMP_GRACE_SECONDS = 3600

_TEMP_NAME = re.compile(r"^\..+\.(\d+)\.[0-9a-f]+\.tmp$")

# =============================================================================
# Path Validation
# =============================================================================


def resolve_within(base_dir: Path, rel_path: str) -> Path:
    """Resolve *rel_path* under *base_dir*, refusing escapes.

    Args:
        base_dir: Directory the result must stay inside.
        rel_path: Forward-slash relative path (e.g. from a git tree).

    Returns:
        Absolute path inside *base_dir*.

    Raises:
        ValueError: If the path is absolute or resolves outside *base_dir*.
    """
    if not rel_path or rel_path.startswith("/") or "\\" in rel_path:
        raise ValueError(f"Invalid relative path: {rel_path!r}")
    base_resolved = base_dir.resolve()
    resolved = (base_resolved / rel_path).resolve()
    if not resolved.is_relative_to(base_resolved):
        raise ValueError(
            f"Path is outside base directory: {rel_path} not under {base_resolved}"
        )
    return resolved


# =============================================================================
# File Read/Write
# =============================================================================


def read_bytes(path: Path) -> bytes | None:
    """Return the file content, or ``None`` if the file does not exist."""
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None


def _temp_name(target: Path) -> Path:
    token = secrets.token_hex(4)
    return target.with_name(
        f".{target.name}.{os.getpid()}.{token}{TEMP_SUFFIX}"
    )


def atomic_write(path: Path, data: bytes) -> int:
    """Atomically replace *path* with *data*, creating parent directories.

    If anything fails before the rename, the temp file is removed and the
    original file is untouched.

    Returns:
        Number of bytes written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = _temp_name(path)
    try:
        with open(tmp_path, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        # Clean up temp file on any failure.
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    return len(data)


def atomic_move(source: Path, destination: Path) -> None:
    """Move *source* to *destination* with a single rename."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    os.replace(source, destination)


# =============================================================================
# Temp-file sweep
# =============================================================================


def _pid_alive(pid: int) -> bool:
    if pid == os.getpid():
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    except OSError:
        return False
    return True


def sweep_temp_files(
    root: Path,
    grace_seconds: float = DEFAULT_TEMP_GRACE_SECONDS,
    now: float | None = None,
) -> list[Path]:
    """Remove temp artifacts left behind by interrupted writes.

    A temp file is removed only when it is older than *grace_seconds* and
    its writer process is no longer alive.

    Args:
        root: Directory to scan recursively.
        grace_seconds: Minimum age before a temp file may be removed.
        now: Current time (epoch seconds); defaults to ``time.time()``.

    Returns:
        The paths that were removed.
    """
    if not root.exists():
        return []
    current = time.time() if now is None else now
    removed: list[Path] = []
    for candidate in root.rglob(f"*{TEMP_SUFFIX}"):
        match = _TEMP_NAME.match(candidate.name)
        if match is None or not candidate.is_file():
            continue
        try:
            age = current - candidate.stat().st_mtime
        except FileNotFoundError:
            continue
        if age < grace_seconds:
            continue
        if _pid_alive(int(match.group(1))):
            logger.debug("Keeping temp file of live writer: %s", candidate)
            continue
        try:
            candidate.unlink()
        except FileNotFoundError:
            continue
        logger.info("Removed stale temp file: %s", candidate)
        removed.append(candidate)
    return removed
