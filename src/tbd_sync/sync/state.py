"""Per-node sync bookkeeping.

Manages ``.tbd/cache/state.yml``, which records when this node last synced
and which transport commit its local replica matches.  The file lives in
the cache directory and is never part of the replicated log: replicating
it would make every sync from every node contend on the same file.

Key design choices:

* **Atomic writes** -- ``save()`` goes through ``atomic_write`` so readers
  never see partial data.
* **Dict-based state** -- state is a plain ``dict`` so callers can update
  it during a sync run and persist once at the end.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

from tbd_sync.codec import dump_yaml
from tbd_sync.file_handler import atomic_write
from tbd_sync.paths import STATE_FILE
from tbd_sync.timeutils import now

logger = logging.getLogger(__name__)


class LocalSyncState:
    """Load, save, and query this node's sync bookkeeping.

    Args:
        cache_dir: Path to the never-synced cache directory
            (typically ``.tbd/cache/``).
    """

    def __init__(self, cache_dir: Path) -> None:
        self._cache_dir = cache_dir

    @property
    def path(self) -> Path:
        return self._cache_dir / STATE_FILE

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> dict:
        """Load state from disk.

        Returns:
            The state dict.  If the file does not exist (or is unreadable)
            an empty state is returned, which makes the next sync run
            without a merge base.
        """
        empty = {"last_sync_at": None, "last_synced_commit": None}
        if not self.path.exists():
            return empty
        try:
            with open(self.path, encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Ignoring unreadable sync state %s: %s", self.path, exc)
            return empty
        if not isinstance(data, dict):
            return empty
        return {**empty, **data}

    def save(self, state: dict) -> None:
        """Persist state atomically, stamping ``last_sync_at``."""
        state["last_sync_at"] = now()
        atomic_write(self.path, dump_yaml(state).encode("utf-8"))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def last_synced_commit(self) -> str | None:
        return self.load().get("last_synced_commit")

    def record_sync(self, commit: str | None) -> None:
        """Record that the local replica now matches *commit*."""
        state = self.load()
        state["last_synced_commit"] = commit
        self.save(state)
        logger.debug("Recorded last synced commit %s", commit)
