"""Conflict detection by content hash.

Two copies of an entity conflict exactly when their content hashes
differ.  ``version`` is excluded from the hash and never consulted: two
replicas can reach the same version number through unrelated edits.
"""

from __future__ import annotations

import logging

from tbd_sync import codec
from tbd_sync.models import Issue
from tbd_sync.sync.models import SyncAction

logger = logging.getLogger(__name__)


class ConflictDetector:
    """Decide what to do with one entity seen locally and/or remotely."""

    @staticmethod
    def needs_merge(local: Issue, remote: Issue) -> bool:
        """True if the two copies differ in content."""
        return codec.content_hash(local) != codec.content_hash(remote)

    @staticmethod
    def classify(
        local_hash: str | None,
        remote_hash: str | None,
        base_hash: str | None,
    ) -> SyncAction:
        """Three-way decision from the hashes of both sides and the base.

        Args:
            local_hash: Hash of the local copy, ``None`` if absent.
            remote_hash: Hash of the remote copy, ``None`` if absent.
            base_hash: Hash at the last synced commit, ``None`` if unknown.

        Returns:
            The ``SyncAction`` to take.
        """
        if local_hash is None and remote_hash is None:
            return SyncAction.SKIP
        if remote_hash is None:
            return SyncAction.CREATE_REMOTE
        if local_hash is None:
            return SyncAction.CREATE_LOCAL
        if local_hash == remote_hash:
            return SyncAction.SKIP

        # Both exist and differ.
        if base_hash is not None:
            if local_hash == base_hash:
                return SyncAction.PULL
            if remote_hash == base_hash:
                return SyncAction.PUSH
        return SyncAction.MERGE
