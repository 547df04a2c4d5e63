"""Per-run state for the import orchestrator.

The ``ImporterRunContext`` collects:

* Manifest metadata (manifest hash, run id, dry-run flag).
* One ``EntryRecord`` per manifest entry, tracking its reconciliation state.
* Dry-run actions (``would-create``, ``would-update``, ``would-publish``,
  ``would-delete``) in the order they would have been executed.
* Deterministic counts used for the run summary and completion log.

It has no database or logging side effects of its own.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class EntryState(str, enum.Enum):
    PENDING = "pending"
    CREATED = "created"
    UPDATED = "updated"
    LINKED = "linked"
    PUBLISHED = "published"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[EntryState, set[EntryState]] = {
    EntryState.PENDING: {EntryState.CREATED, EntryState.UPDATED, EntryState.FAILED},
    EntryState.CREATED: {EntryState.LINKED, EntryState.FAILED},
    EntryState.UPDATED: {EntryState.LINKED, EntryState.FAILED},
    EntryState.LINKED: {EntryState.PUBLISHED, EntryState.DONE, EntryState.FAILED},
    EntryState.PUBLISHED: {EntryState.DONE, EntryState.FAILED},
    EntryState.DONE: set(),
    EntryState.FAILED: set(),
}


@dataclass
class EntryRecord:
    uid: str
    document_id: str | None
    locale: str | None
    state: EntryState = EntryState.PENDING
    dest_document_id: str | None = None
    created: bool = False
    error: str | None = None

    def advance(self, state: EntryState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise ValueError(f"Invalid entry transition {self.state.value} -> {state.value}")
        if state is EntryState.CREATED:
            self.created = True
        self.state = state

    def fail(self, cause: str) -> None:
        if self.state is EntryState.FAILED:
            return
        self.error = cause
        self.state = EntryState.FAILED

    @property
    def terminal(self) -> bool:
        return self.state in (EntryState.DONE, EntryState.FAILED)


@dataclass
class ImporterRunContext:
    """Aggregates state and outcomes of one import run."""

    run_id: str
    manifest_hash: str | None = None
    dry_run: bool = False
    records: dict[tuple[str, str, str | None], EntryRecord] = field(default_factory=dict)
    actions: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    skipped_types: list[str] = field(default_factory=list)
    media: dict[str, int] = field(default_factory=dict)
    cleanup: dict[str, Any] | None = None
    duration_ms: int | None = None

    def record_for(self, uid: str, document_id: str | None, locale: str | None, index: int) -> EntryRecord:
        """Get or create the record for a manifest entry.

        Entries without a ``documentId`` are keyed by their position.
        """
        key = (uid, document_id if document_id is not None else f"#{index}", locale)
        record = self.records.get(key)
        if record is None:
            record = EntryRecord(uid=uid, document_id=document_id, locale=locale)
            self.records[key] = record
        return record

    def records_for(self, uid: str) -> list[EntryRecord]:
        return [r for r in self.records.values() if r.uid == uid]

    def record_action(self, action: str, kind: str, uid: str | None = None, **fields: Any) -> None:
        self.actions.append({"action": action, "kind": kind, "uid": uid, **fields})

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def failures(self) -> list[dict[str, Any]]:
        return [
            {"uid": r.uid, "documentId": r.document_id, "locale": r.locale, "error": r.error}
            for r in self.records.values()
            if r.state is EntryState.FAILED
        ]

    def summary_counts(self) -> dict[str, int]:
        """Return deterministic counts for the run."""
        records = list(self.records.values())
        return {
            "entries": len(records),
            "created": sum(1 for r in records if r.created),
            "updated": sum(1 for r in records if not r.created and r.state is not EntryState.FAILED),
            "done": sum(1 for r in records if r.state is EntryState.DONE),
            "failed": sum(1 for r in records if r.state is EntryState.FAILED),
            "skipped_types": len(self.skipped_types),
            "actions": len(self.actions),
        }

    def to_summary(self) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "run_id": self.run_id,
            "manifest_hash": self.manifest_hash,
            "dry_run": self.dry_run,
            "counts": self.summary_counts(),
            "media": dict(self.media),
            "skipped_types": list(self.skipped_types),
            "failures": self.failures(),
            "warnings": list(self.warnings),
            "duration_ms": self.duration_ms,
        }
        if self.cleanup is not None:
            summary["cleanup"] = self.cleanup
        if self.dry_run:
            summary["actions"] = list(self.actions)
        return summary


__all__ = ["EntryRecord", "EntryState", "ImporterRunContext"]
