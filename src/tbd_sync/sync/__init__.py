"""Sync and conflict-resolution engine.

Public API for reconciling the local replica (``.tbd/data-sync/``) with the
shared sync branch.

Architecture
------------
Every entity is one file.  Two copies conflict exactly when their content
hashes differ (``version`` is never consulted).  With a merge base (the
commit recorded by this node's last sync) a copy changed on one side only
is taken whole; copies changed on both sides are merged field by field.

Modules:

- ``engine``    -- ``SyncEngine``: fetch / reconcile / commit / push loop.
- ``detector``  -- ``ConflictDetector``: hash comparison, three-way decision.
- ``merger``    -- ``MergeRuleEngine``: per-field rule table, derived fields.
- ``resolver``  -- Field strategies (lww, union, merge-by-key, ...).
- ``state``     -- ``LocalSyncState``: per-node bookkeeping, never synced.
- ``models``    -- ``SyncAction``, ``SyncPhase``, ``EntitySyncResult``,
  ``SyncReport``, ``SyncStatus``: core data contracts.

Usage example
-------------
::

    from pathlib import Path
    from tbd_sync.core.git import GitTransport
    from tbd_sync.store import EntityStore
    from tbd_sync.sync import LocalSyncState, SyncEngine

    root = Path(".")
    engine = SyncEngine(
        store=EntityStore(root / ".tbd/data-sync", root / ".tbd/cache"),
        transport=GitTransport(root),
        state=LocalSyncState(root / ".tbd/cache"),
    )
    print(engine.run().summary())
"""

from .detector import ConflictDetector
from .engine import SyncEngine, SyncMode, SyncPlan, Transport
from .merger import ISSUE_RULES, MergeResult, MergeRuleEngine
from .models import (
    EntitySyncResult,
    SyncAction,
    SyncPhase,
    SyncReport,
    SyncStatus,
)
from .resolver import create_strategy
from .state import LocalSyncState

__all__ = [
    "ConflictDetector",
    "EntitySyncResult",
    "ISSUE_RULES",
    "LocalSyncState",
    "MergeResult",
    "MergeRuleEngine",
    "SyncAction",
    "SyncEngine",
    "SyncMode",
    "SyncPhase",
    "SyncPlan",
    "SyncReport",
    "SyncStatus",
    "Transport",
    "create_strategy",
]
