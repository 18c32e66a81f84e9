"""Shared pytest fixtures for tbd-sync tests."""

from __future__ import annotations

import itertools
from pathlib import Path
from typing import Any, Callable, Iterable

import pytest
from dotenv import load_dotenv

from tbd_sync.errors import TransportRejected
from tbd_sync.models import Issue
from tbd_sync.store import EntityStore
from tbd_sync.sync.engine import SyncEngine
from tbd_sync.sync.state import LocalSyncState

load_dotenv()

T0 = "2025-01-01T00:00:00.000Z"
T1 = "2025-01-07T10:30:00.000Z"
T2 = "2025-01-07T11:00:00.000Z"
T3 = "2025-01-08T09:00:00.000Z"


def make_issue(**overrides: Any) -> Issue:
    """Build an Issue with stable defaults."""
    data: dict[str, Any] = {
        "id": "is-a1b2c3",
        "version": 1,
        "created_at": T0,
        "updated_at": T0,
        "title": "Fix auth",
    }
    data.update(overrides)
    return Issue(**data)


# ---------------------------------------------------------------------------
# In-memory transport
# ---------------------------------------------------------------------------


class FakeRemote:
    """A shared branch with compare-and-swap push semantics.

    Attributes:
        commits: commit id -> tree (path -> bytes).
        tip: Current branch tip.
        before_push: Optional hook run before each push is evaluated;
            used to simulate a concurrent writer.
    """

    def __init__(self) -> None:
        self.commits: dict[str, dict[str, bytes]] = {}
        self.parents: dict[str, str | None] = {}
        self.tip: str | None = None
        self.push_calls = 0
        self.before_push: Callable[[], None] | None = None
        self._ids = itertools.count(1)

    def new_commit(self, parent: str | None, tree: dict[str, bytes]) -> str:
        commit = f"c{next(self._ids):04d}"
        self.commits[commit] = dict(tree)
        self.parents[commit] = parent
        return commit

    def commit_directly(self, files: dict[str, bytes]) -> str:
        """Advance the branch as another writer would."""
        tree = dict(self.commits[self.tip]) if self.tip else {}
        tree.update(files)
        self.tip = self.new_commit(self.tip, tree)
        return self.tip

    def tree(self, ref: str | None = None) -> dict[str, bytes]:
        ref = ref or self.tip
        return dict(self.commits[ref]) if ref else {}


class FakeTransport:
    """Transport bound to a ``FakeRemote``; one per node."""

    def __init__(
        self,
        remote: FakeRemote,
        branch: str = "tbd-sync",
        remote_name: str = "origin",
    ) -> None:
        self.shared = remote
        self.branch = branch
        self.remote = remote_name
        self.fetch_calls = 0

    def fetch(self) -> str | None:
        self.fetch_calls += 1
        return self.shared.tip

    def read_file(self, ref: str, path: str) -> bytes | None:
        return self.shared.commits.get(ref, {}).get(path)

    def list_files(self, ref: str, prefix: str = "") -> list[str]:
        tree = self.shared.commits.get(ref, {})
        return sorted(p for p in tree if p.startswith(prefix))

    def build_revision(
        self,
        parent: str | None,
        files: dict[str, bytes],
        removals: Iterable[str],
        message: str,
    ) -> str | None:
        tree = self.shared.tree(parent) if parent else {}
        before = dict(tree)
        tree.update(files)
        for path in removals:
            tree.pop(path, None)
        if parent is not None and tree == before:
            return None
        return self.shared.new_commit(parent, tree)

    def push(self, commit: str) -> None:
        self.shared.push_calls += 1
        if self.shared.before_push is not None:
            self.shared.before_push()
        if self.shared.parents[commit] != self.shared.tip:
            raise TransportRejected("remote advanced")
        self.shared.tip = commit


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


class Node:
    """One replica: a store, its bookkeeping and an engine."""

    def __init__(self, root: Path, remote: FakeRemote, **engine_kwargs: Any) -> None:
        self.root = root
        self.store = EntityStore(root / "data-sync", root / "cache")
        self.state = LocalSyncState(root / "cache")
        self.transport = FakeTransport(remote)
        self.engine = SyncEngine(
            self.store, self.transport, self.state, **engine_kwargs
        )

    def sync(self, mode: str = "full"):
        return self.engine.run(mode)

    def snapshot(self) -> dict[str, bytes]:
        return {
            rel: self.store.read_file(rel) for rel in self.store.list_files()
        }


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def make_node(tmp_path: Path, remote: FakeRemote):
    """Factory fixture creating replicas that share one remote."""

    def _make(name: str, **engine_kwargs: Any) -> Node:
        return Node(tmp_path / name, remote, **engine_kwargs)

    return _make


@pytest.fixture
def store(tmp_path: Path) -> EntityStore:
    return EntityStore(tmp_path / "data-sync", tmp_path / "cache")
