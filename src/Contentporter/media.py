"""Media resolution: map source media ids to destination media ids.

Resolution order for one asset reference:

1. already mapped during this run
2. a destination asset with the same content hash exists (dedup)
3. the source bytes are present: copy files, create the destination record
4. unresolved (``None``)

Resolutions for the same content hash are serialized so the first one wins
and later callers observe its mapping.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Any

import structlog

from Contentporter.manifest import is_media_object
from Contentporter.metrics import inc_counter
from Contentporter.store import ContentStore, StoreError

log = structlog.get_logger()

# Source-local or audit fields that never travel to the destination
_NON_PORTABLE = {
    "id",
    "documentId",
    "related",
    "createdAt",
    "updatedAt",
    "createdBy",
    "updatedBy",
    "publishedAt",
    "locale",
    "folder",
    "folderPath",
}


def portable_metadata(asset: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in asset.items() if k not in _NON_PORTABLE}


def asset_file_names(asset: dict[str, Any]) -> list[str]:
    """Basenames of the primary file and every rendition, primary first."""
    names: list[str] = []
    url = asset.get("url")
    if isinstance(url, str) and url:
        names.append(Path(url).name)
    formats = asset.get("formats") or {}
    if isinstance(formats, dict):
        for rendition in formats.values():
            r_url = rendition.get("url") if isinstance(rendition, dict) else None
            if isinstance(r_url, str) and r_url:
                name = Path(r_url).name
                if name not in names:
                    names.append(name)
    return names


class MediaResolver:
    """Owns the run's media identifier map (source id -> destination id)."""

    def __init__(
        self,
        store: ContentStore,
        source_uploads_dir: Path | None,
        *,
        dry_run: bool = False,
    ) -> None:
        self.store = store
        self.source_uploads_dir = Path(source_uploads_dir) if source_uploads_dir else None
        self.dry_run = dry_run
        self.id_map: dict[int, int] = {}
        self.actions: list[dict[str, Any]] = []
        self._by_hash: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _record(self, source_id: Any, content_hash: str, dest_id: int) -> int:
        if isinstance(source_id, int) and not isinstance(source_id, bool):
            self.id_map[source_id] = dest_id
        self._by_hash[content_hash] = dest_id
        return dest_id

    def _source_path(self, asset: dict[str, Any]) -> Path | None:
        if self.source_uploads_dir is None:
            return None
        names = asset_file_names(asset)
        if not names:
            return None
        path = self.source_uploads_dir / names[0]
        return path if path.is_file() else None

    async def resolve(self, ref: Any) -> int | None:
        """Return the destination media id for ``ref`` or ``None``.

        ``ref`` is either an embedded media object or a bare source id; bare
        ids resolve only through mappings already made in this run.
        """
        if isinstance(ref, int) and not isinstance(ref, bool):
            dest = self.id_map.get(ref)
            if dest is None:
                inc_counter("media.resolve.unresolved")
            return dest
        if not is_media_object(ref):
            return None

        source_id = ref.get("id")
        if source_id in self.id_map:
            inc_counter("media.resolve.mapped")
            return self.id_map[source_id]

        content_hash = ref["hash"]
        lock = self._locks.setdefault(content_hash, asyncio.Lock())
        async with lock:
            if source_id in self.id_map:
                inc_counter("media.resolve.mapped")
                return self.id_map[source_id]
            if content_hash in self._by_hash:
                inc_counter("media.resolve.mapped")
                return self._record(source_id, content_hash, self._by_hash[content_hash])

            existing = await self.store.find_media_by_hash(content_hash)
            if existing is not None:
                inc_counter("media.resolve.dedup")
                log.debug("media.resolve.dedup", hash=content_hash, source_id=source_id, dest_id=existing["id"])
                return self._record(source_id, content_hash, existing["id"])

            if self._source_path(ref) is None:
                inc_counter("media.resolve.unresolved")
                log.warning("media.resolve.missing_file", hash=content_hash, name=ref.get("name"))
                return None

            if self.dry_run:
                placeholder = -(len(self._by_hash) + 1)
                self.actions.append({"action": "would-create", "kind": "media", "hash": content_hash, "name": ref.get("name")})
                inc_counter("media.resolve.created")
                return self._record(source_id, content_hash, placeholder)

            try:
                copied = self.copy_asset_files(ref)
                created = await self.store.create_media(portable_metadata(ref))
            except (StoreError, OSError) as exc:
                inc_counter("media.resolve.failed")
                log.error("media.resolve.failed", hash=content_hash, name=ref.get("name"), error=str(exc))
                return None
            inc_counter("media.resolve.created")
            log.info("media.resolve.created", hash=content_hash, dest_id=created["id"], files=copied)
            return self._record(source_id, content_hash, created["id"])

    async def import_all(self, media_list: list[dict[str, Any]]) -> dict[str, int]:
        """Bulk pre-pass over the manifest media list."""
        resolved = 0
        unresolved = 0
        for asset in media_list:
            if await self.resolve(asset) is None:
                unresolved += 1
            else:
                resolved += 1
        log.info("media.import.complete", resolved=resolved, unresolved=unresolved, dry_run=self.dry_run)
        return {"resolved": resolved, "unresolved": unresolved}

    def copy_asset_files(self, asset: dict[str, Any]) -> list[str]:
        """Copy primary and rendition files into the destination uploads dir.

        Files already present at the destination are left untouched, so the
        operation can be repeated safely.
        """
        if self.source_uploads_dir is None:
            return []
        dest_dir = self.store.uploads_dir
        dest_dir.mkdir(parents=True, exist_ok=True)
        copied: list[str] = []
        for name in asset_file_names(asset):
            src = self.source_uploads_dir / name
            dst = dest_dir / name
            if dst.exists():
                continue
            if not src.is_file():
                log.warning("media.copy.missing_rendition", name=name)
                continue
            shutil.copy2(src, dst)
            copied.append(name)
        return copied
