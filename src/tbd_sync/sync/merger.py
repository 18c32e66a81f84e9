"""Field-level merge of two divergent copies of an entity.

``MergeRuleEngine`` walks a per-field rule table and asks each field's
strategy (see ``resolver``) for the merged value.

Key design choices:

* Merge operates on **canonical plain data** (``codec.canonical_dict``),
  so strategies never depend on model internals.  The result is
  re-validated into an ``Issue``.
* When a merge base is known, a field changed on one side only takes that
  side's value without consulting its strategy; nothing was discarded, so
  no attic entry is produced.
* ``immutable`` fields are always checked, base or not.
* Every discard reported by a strategy becomes an ``AtticEntry``.
* Copies with no known base are still merged field by field, so a merge
  never archives a whole entity; ``full`` attic entries are only ever
  restored, never produced here.
* ``closed_at`` and ``close_reason`` are re-derived from ``status`` after
  the table runs (``models.derive_close_fields``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from tbd_sync import codec
from tbd_sync.models import (
    AtticContext,
    AtticEntry,
    Issue,
    Side,
    derive_close_fields,
)
from tbd_sync.sync.resolver import (
    MISSING,
    FieldStrategy,
    MergeContext,
    create_strategy,
)
from tbd_sync.timeutils import now, parse_timestamp

logger = logging.getLogger(__name__)

TieBreak = Literal["remote", "content-hash"]

# Rule table for issues: field -> (strategy name, strategy options).
ISSUE_RULES: dict[str, tuple[str, dict[str, Any]]] = {
    "type": ("immutable", {}),
    "id": ("immutable", {}),
    "version": ("max-plus-one", {}),
    "updated_at": ("recompute", {}),
    "created_at": ("earliest-wins", {}),
    "created_by": ("earliest-wins", {}),
    "title": ("lww", {}),
    "kind": ("lww", {}),
    "status": ("lww", {}),
    "priority": ("lww", {}),
    "assignee": ("lww", {}),
    "parent_id": ("lww", {}),
    "due_date": ("lww", {}),
    "deferred_until": ("lww", {}),
    "closed_at": ("lww", {}),
    "close_reason": ("lww", {}),
    "description": ("lww-with-archive", {}),
    "notes": ("lww-with-archive", {}),
    "labels": ("union", {}),
    "dependencies": ("merge-by-key", {"key": "target"}),
    "extensions": ("deep-merge-by-namespace", {}),
}


@dataclass
class MergeResult:
    """Outcome of merging two copies of one entity.

    Attributes:
        merged: The merged entity.
        attic_entries: One entry per discarded value.
        changed_fields: Fields whose merged value differs from local.
    """

    merged: Issue
    attic_entries: list[AtticEntry] = field(default_factory=list)
    changed_fields: list[str] = field(default_factory=list)


class MergeRuleEngine:
    """Merge entities field by field according to a rule table.

    Args:
        rules: Mapping of field name to ``(strategy, options)``.
        tie_break: How equal ``updated_at`` values are decided:
            ``"remote"`` (the remote side wins) or ``"content-hash"``
            (the greater content hash wins, remote if equal).
    """

    def __init__(
        self,
        rules: dict[str, tuple[str, dict[str, Any]]] | None = None,
        tie_break: TieBreak = "remote",
    ) -> None:
        self.rules = dict(ISSUE_RULES if rules is None else rules)
        self.tie_break = tie_break
        self._strategies: dict[str, FieldStrategy] = {
            name: create_strategy(strategy, **options)
            for name, (strategy, options) in self.rules.items()
        }

    # ------------------------------------------------------------------
    # Winner selection
    # ------------------------------------------------------------------

    def lww_winner(self, local: Issue, remote: Issue) -> Side:
        """Return the side whose edits win last-write-wins decisions."""
        local_ts = parse_timestamp(local.updated_at)
        remote_ts = parse_timestamp(remote.updated_at)
        if local_ts > remote_ts:
            return "local"
        if remote_ts > local_ts:
            return "remote"
        if self.tie_break == "content-hash":
            local_hash = codec.content_hash(local)
            remote_hash = codec.content_hash(remote)
            if local_hash > remote_hash:
                return "local"
        return "remote"

    @staticmethod
    def _earliest(local: Issue, remote: Issue) -> Side | None:
        local_ts = parse_timestamp(local.created_at)
        remote_ts = parse_timestamp(remote.created_at)
        if local_ts < remote_ts:
            return "local"
        if remote_ts < local_ts:
            return "remote"
        return None

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def merge(
        self,
        local: Issue,
        remote: Issue,
        base: Issue | None = None,
        merge_time: str | None = None,
    ) -> MergeResult:
        """Merge two divergent copies of the same entity.

        Args:
            local: This replica's copy.
            remote: The copy read from the transport log.
            base: The copy both sides last agreed on, if known.
            merge_time: Timestamp to stamp; defaults to now.

        Returns:
            A ``MergeResult``.

        Raises:
            IntegrityError: If an immutable field differs.
        """
        merge_time = merge_time or now()
        ctx = MergeContext(
            entity_id=local.id,
            winner=self.lww_winner(local, remote),
            merge_time=merge_time,
            earliest=self._earliest(local, remote),
        )
        local_data = codec.canonical_dict(local)
        remote_data = codec.canonical_dict(remote)
        base_data = codec.canonical_dict(base) if base is not None else None

        merged: dict[str, Any] = {}
        entries: list[AtticEntry] = []
        for name, strategy in self._strategies.items():
            lval = local_data.get(name)
            rval = remote_data.get(name)
            bval = MISSING if base_data is None else base_data.get(name)

            if strategy.three_way:
                if lval == rval:
                    merged[name] = lval
                    continue
                if bval is not MISSING and lval == bval:
                    merged[name] = rval
                    continue
                if bval is not MISSING and rval == bval:
                    merged[name] = lval
                    continue

            resolution = strategy.resolve(name, lval, rval, bval, ctx)
            merged[name] = resolution.value
            for discard in resolution.discards:
                entries.append(
                    self._attic_entry(
                        local, remote, ctx, strategy.name, discard
                    )
                )

        # Fields outside the rule table are taken from the lww winner.
        winner_data = local_data if ctx.winner == "local" else remote_data
        for name, value in winner_data.items():
            merged.setdefault(name, value)

        self._apply_derived(merged, merge_time)
        result = Issue.model_validate(merged)
        changed = sorted(
            name
            for name, value in codec.canonical_dict(result).items()
            if local_data.get(name) != value
        )
        logger.info(
            "Merged %s (winner=%s, version=%d, attic entries=%d)",
            local.id,
            ctx.winner,
            result.version,
            len(entries),
        )
        return MergeResult(result, entries, changed)

    @staticmethod
    def _apply_derived(data: dict[str, Any], merge_time: str) -> None:
        data.update(
            derive_close_fields(
                data.get("status"),
                data.get("closed_at"),
                data.get("close_reason"),
                merge_time,
            )
        )

    @staticmethod
    def _attic_entry(
        local: Issue,
        remote: Issue,
        ctx: MergeContext,
        strategy: str,
        discard: Any,
    ) -> AtticEntry:
        return AtticEntry(
            entity_id=ctx.entity_id,
            timestamp=ctx.merge_time,
            field=discard.field,
            lost_value=discard.lost_value,
            winner_source=ctx.winner,
            loser_source=ctx.loser,
            strategy=strategy,
            context=AtticContext(
                local_version=local.version,
                remote_version=remote.version,
                local_updated_at=local.updated_at,
                remote_updated_at=remote.updated_at,
            ),
        )
