"""Per-field merge strategies.

Each strategy decides the merged value of one field when the local and
remote copies of an entity disagree:

- ``ImmutableStrategy``: values must match; a mismatch is fatal.
- ``LastWriteWinsStrategy``: the entity-level winner's value is kept.
- ``ArchivingLastWriteWinsStrategy``: as lww, but the losing value is
  reported as a discard so it lands in the attic.
- ``UnionStrategy``: set union of primitive collections.
- ``MergeByKeyStrategy``: union of structured items keyed by one field.
- ``MaxPlusOneStrategy``: ``max(local, remote) + 1`` (version only).
- ``RecomputeStrategy``: always the merge time (``updated_at`` only).
- ``EarliestWinsStrategy``: the value from the earlier-created copy.
- ``DeepMergeByNamespaceStrategy``: per-namespace lww over a mapping;
  a losing namespace is discarded in full.

Strategies operate on plain (JSON-mode) data, never on models, and do no
I/O.  The ``create_strategy()`` factory maps rule-table names to instances.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from tbd_sync.errors import IntegrityError
from tbd_sync.models import Side
from tbd_sync.timeutils import parse_timestamp

logger = logging.getLogger(__name__)


class _Missing:
    """Marker for "no merge base available"."""

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


# ---------------------------------------------------------------------------
# Context and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MergeContext:
    """Entity-level facts every field strategy may consult.

    Attributes:
        entity_id: Entity being merged.
        winner: Side whose edits win last-write-wins decisions.
        merge_time: Canonical timestamp of this merge.
        earliest: Side with the earlier ``created_at``, or ``None`` on a tie.
    """

    entity_id: str
    winner: Side
    merge_time: str
    earliest: Side | None = None

    @property
    def loser(self) -> Side:
        return "local" if self.winner == "remote" else "remote"

    def pick(self, local: Any, remote: Any) -> tuple[Any, Any]:
        """Return ``(winning_value, losing_value)``."""
        if self.winner == "local":
            return local, remote
        return remote, local


@dataclass(frozen=True)
class Discard:
    """A value a strategy threw away.

    Attributes:
        field: Field name, or ``<field>.<key>`` for nested discards.
        lost_value: The discarded value.
    """

    field: str
    lost_value: Any


@dataclass
class Resolution:
    """Merged value of one field plus whatever was discarded."""

    value: Any
    discards: list[Discard] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class FieldStrategy(Protocol):
    """Protocol that all field strategies must satisfy.

    Attributes:
        name: Rule-table name, recorded on attic entries.
        three_way: If true the merger may short-circuit with the merge
            base (a field changed on one side only takes that side).
    """

    name: str
    three_way: bool

    def resolve(
        self,
        field_name: str,
        local: Any,
        remote: Any,
        base: Any,
        ctx: MergeContext,
    ) -> Resolution:
        """Return the merged value for ``field_name``.

        Args:
            field_name: Field being merged.
            local: Local value.
            remote: Remote value.
            base: Merge-base value, or ``MISSING``.
            ctx: Entity-level merge context.
        """
        ...  # pragma: no cover


# ---------------------------------------------------------------------------
# Scalar strategies
# ---------------------------------------------------------------------------


class ImmutableStrategy:
    """Values must be identical; anything else is an integrity error."""

    name = "immutable"
    three_way = False

    def resolve(self, field_name, local, remote, base, ctx) -> Resolution:
        if local != remote:
            raise IntegrityError(ctx.entity_id, field_name, local, remote)
        return Resolution(local)


class LastWriteWinsStrategy:
    """Keep the value of the side that wrote last."""

    name = "lww"
    three_way = True

    def resolve(self, field_name, local, remote, base, ctx) -> Resolution:
        value, _ = ctx.pick(local, remote)
        return Resolution(value)


class ArchivingLastWriteWinsStrategy:
    """Last-write-wins, reporting the losing value for the attic."""

    name = "lww-with-archive"
    three_way = True

    def resolve(self, field_name, local, remote, base, ctx) -> Resolution:
        value, lost = ctx.pick(local, remote)
        if lost == value:
            return Resolution(value)
        logger.info(
            "%s.%s: keeping %s value, archiving %s value",
            ctx.entity_id,
            field_name,
            ctx.winner,
            ctx.loser,
        )
        return Resolution(value, [Discard(field_name, lost)])


class MaxPlusOneStrategy:
    name = "max-plus-one"
    three_way = False

    def resolve(self, field_name, local, remote, base, ctx) -> Resolution:
        return Resolution(max(int(local or 0), int(remote or 0)) + 1)


class RecomputeStrategy:
    name = "recompute"
    three_way = False

    def resolve(self, field_name, local, remote, base, ctx) -> Resolution:
        return Resolution(ctx.merge_time)


class EarliestWinsStrategy:
    """Creation facts come from the copy that was created first.

    On a ``created_at`` tie the non-null value wins, then the
    lexicographically smaller one, so every node picks the same value.
    """

    name = "earliest-wins"
    three_way = False

    def resolve(self, field_name, local, remote, base, ctx) -> Resolution:
        if ctx.earliest == "local":
            return Resolution(local)
        if ctx.earliest == "remote":
            return Resolution(remote)
        if local is None or remote is None:
            return Resolution(remote if local is None else local)
        if field_name.endswith("_at"):
            return Resolution(
                min(local, remote, key=lambda v: parse_timestamp(v))
            )
        return Resolution(min(local, remote, key=str))


# ---------------------------------------------------------------------------
# Collection strategies
# ---------------------------------------------------------------------------


class UnionStrategy:
    """Set union of two primitive collections, sorted."""

    name = "union"
    three_way = True

    def resolve(self, field_name, local, remote, base, ctx) -> Resolution:
        merged = set(local or []) | set(remote or [])
        return Resolution(sorted(merged, key=str))


class MergeByKeyStrategy:
    """Union of structured items keyed by ``key``.

    On a key collision with differing payloads the local item is kept.
    Remote items are never dropped.
    """

    name = "merge-by-key"
    three_way = True

    def __init__(self, key: str = "target") -> None:
        self.key = key

    def resolve(self, field_name, local, remote, base, ctx) -> Resolution:
        by_key: dict[Any, Any] = {}
        for item in remote or []:
            by_key[item[self.key]] = item
        for item in local or []:
            by_key[item[self.key]] = item
        return Resolution([by_key[k] for k in sorted(by_key, key=str)])


class DeepMergeByNamespaceStrategy:
    """Merge a namespace map: union of namespaces, lww inside each.

    A namespace edited on one side only (relative to the merge base) takes
    that side.  A namespace edited on both sides takes the winner's copy
    and reports the loser's copy in full as ``<field>.<namespace>``.
    """

    name = "deep-merge-by-namespace"
    three_way = True

    def resolve(self, field_name, local, remote, base, ctx) -> Resolution:
        local = local or {}
        remote = remote or {}
        base_map = {} if base is MISSING else (base or {})
        merged: dict[str, Any] = {}
        discards: list[Discard] = []
        for namespace in sorted(set(local) | set(remote)):
            if namespace not in remote:
                merged[namespace] = local[namespace]
                continue
            if namespace not in local:
                merged[namespace] = remote[namespace]
                continue
            lval, rval = local[namespace], remote[namespace]
            if lval == rval:
                merged[namespace] = lval
                continue
            if base is not MISSING and namespace in base_map:
                if lval == base_map[namespace]:
                    merged[namespace] = rval
                    continue
                if rval == base_map[namespace]:
                    merged[namespace] = lval
                    continue
            value, lost = ctx.pick(lval, rval)
            merged[namespace] = value
            discards.append(Discard(f"{field_name}.{namespace}", lost))
        return Resolution(merged, discards)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_STRATEGY_MAP: dict[str, type] = {
    "immutable": ImmutableStrategy,
    "lww": LastWriteWinsStrategy,
    "lww-with-archive": ArchivingLastWriteWinsStrategy,
    "union": UnionStrategy,
    "merge-by-key": MergeByKeyStrategy,
    "max-plus-one": MaxPlusOneStrategy,
    "recompute": RecomputeStrategy,
    "earliest-wins": EarliestWinsStrategy,
    "deep-merge-by-namespace": DeepMergeByNamespaceStrategy,
}


def create_strategy(name: str, **options: Any) -> FieldStrategy:
    """Create a field strategy from its rule-table name.

    Args:
        name: One of the keys of the strategy map (e.g. ``"lww"``).
        **options: Constructor options (``key`` for ``merge-by-key``).

    Raises:
        ValueError: If the strategy name is not recognised.
    """
    cls = _STRATEGY_MAP.get(name)
    if cls is None:
        raise ValueError(
            f"Unknown merge strategy: '{name}'. Valid strategies: {sorted(_STRATEGY_MAP.keys())}"
        )
    return cls(**options)  # type: ignore[return-value]
