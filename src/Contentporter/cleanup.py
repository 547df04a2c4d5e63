"""Scoped deletion of destination content before an import.

Only what the incoming manifest will re-create is removed: collection-type
documents whose ``documentId`` appears in the manifest, the single local
document of each imported singleton, and media assets whose content hash is
listed in the manifest (with their files). Everything else is left alone.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog

from Contentporter.manifest import Manifest
from Contentporter.media import asset_file_names
from Contentporter.metrics import inc_counter
from Contentporter.store import ContentStore, StoreError

log = structlog.get_logger()


@dataclass
class CleanupPlan:
    documents: dict[str, list[str]] = field(default_factory=dict)
    singletons: dict[str, list[str]] = field(default_factory=dict)
    media: list[dict[str, Any]] = field(default_factory=list)

    def total(self) -> int:
        return (
            sum(len(v) for v in self.documents.values())
            + sum(len(v) for v in self.singletons.values())
            + len(self.media)
        )


@dataclass
class CleanupResult:
    deleted: int = 0
    failed: int = 0
    actions: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {"deleted": self.deleted, "failed": self.failed, "planned": len(self.actions)}


class CleanupCoordinator:
    def __init__(self, store: ContentStore, *, dry_run: bool = False) -> None:
        self.store = store
        self.dry_run = dry_run

    async def plan(self, manifest: Manifest) -> CleanupPlan:
        """Compute the deletion set. Read-only."""
        plan = CleanupPlan()
        for uid in manifest.types:
            schema = self.store.registry.content_type(uid)
            if schema is None:
                continue
            local = await self.store.find_document_ids(uid)
            if schema.is_singleton:
                if local:
                    plan.singletons[uid] = sorted(local)
                continue
            scoped = sorted(local & manifest.document_ids(uid))
            if scoped:
                plan.documents[uid] = scoped

        hashes = manifest.media_hashes()
        if hashes:
            plan.media = [m for m in await self.store.list_media() if m.get("hash") in hashes]
        log.info(
            "cleanup.plan",
            documents=sum(len(v) for v in plan.documents.values()),
            singletons=sum(len(v) for v in plan.singletons.values()),
            media=len(plan.media),
        )
        return plan

    async def execute(self, plan: CleanupPlan) -> CleanupResult:
        """Delete everything in ``plan``; failures are counted per item."""
        result = CleanupResult()
        targets = [
            (uid, document_id)
            for group in (plan.documents, plan.singletons)
            for uid, ids in group.items()
            for document_id in ids
        ]
        for uid, document_id in targets:
            result.actions.append({"action": "would-delete", "kind": "entry", "uid": uid, "documentId": document_id})
            if self.dry_run:
                continue
            try:
                await self.store.delete_document(uid, document_id)
            except StoreError as exc:
                result.failed += 1
                inc_counter("cleanup.failed")
                log.error("cleanup.entry.failed", uid=uid, document_id=document_id, error=str(exc))
                continue
            result.deleted += 1
            inc_counter("cleanup.deleted")

        for media in plan.media:
            result.actions.append({"action": "would-delete", "kind": "media", "hash": media.get("hash"), "name": media.get("name")})
            if self.dry_run:
                continue
            try:
                await self.store.delete_media(media["id"])
                # Files go only once the record is gone
                self._remove_files(media)
            except (StoreError, OSError) as exc:
                result.failed += 1
                inc_counter("cleanup.failed")
                log.error("cleanup.media.failed", media_id=media.get("id"), error=str(exc))
                continue
            result.deleted += 1
            inc_counter("cleanup.deleted")

        log.info("cleanup.complete", dry_run=self.dry_run, **result.as_dict())
        return result

    def _remove_files(self, media: dict[str, Any]) -> None:
        for name in asset_file_names(media):
            path = self.store.uploads_dir / name
            if path.is_file():
                path.unlink()
