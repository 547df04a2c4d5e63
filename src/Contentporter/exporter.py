"""Export traversal: snapshot selected content types into an archive.

For every selected type the exporter fetches draft rows across all locales
with a schema-derived population plan, overlays the publish timestamp of the
matching published row (same ``documentId`` and locale), collects every
reachable media asset and records the view configuration. The manifest and
media files are staged in ``<export_dir>/export-<timestamp>/`` and packed into
``export-<timestamp>.tar.gz``.
"""

from __future__ import annotations

import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import structlog

from Contentporter.archive import create_archive, remove_tree
from Contentporter.config import Settings
from Contentporter.manifest import UPLOADS_DIRNAME, LocaleRecord, Manifest, iter_media_objects, write_manifest
from Contentporter.media import asset_file_names
from Contentporter.metrics import inc_counter, observe_histogram
from Contentporter.schema_walker import build_population_plan, collect_fragments
from Contentporter.store import ALL_LOCALES, DRAFT, PUBLISHED, ContentStore, StoreError

log = structlog.get_logger()

_PUBLISHED_FIELDS = ["documentId", "publishedAt", "locale"]


class ExportError(Exception):
    """Raised when an export cannot start (bad selection, invalid filter)."""


@dataclass
class ExportResult:
    types: list[str] = field(default_factory=list)
    entries: dict[str, int] = field(default_factory=dict)
    media: int = 0
    archive_name: str | None = None
    archive_path: Path | None = None
    dry_run: bool = False
    failed_types: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "types": list(self.types),
            "entries": dict(self.entries),
            "media": self.media,
            "archive": str(self.archive_path) if self.archive_path else self.archive_name,
            "dry_run": self.dry_run,
            "failed_types": list(self.failed_types),
            "warnings": list(self.warnings),
        }


def _compile(pattern: str | None, option: str) -> re.Pattern[str] | None:
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ExportError(f"Invalid regex for {option}: {exc}") from exc


def _timestamp() -> str:
    return re.sub(r"[:.]", "-", datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"))


class ContentExporter:
    def __init__(self, store: ContentStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.registry = store.registry

    def select_types(
        self,
        types: Iterable[str] = (),
        *,
        all_types: bool = False,
        filter_api: str | None = None,
    ) -> list[str]:
        """Resolve the CLI selection into content-type uids (order preserved).

        Raises:
            ExportError: If ``filter_api`` is not a valid regex
        """
        regex = _compile(filter_api, "--filter-api")
        selected: list[str] = []
        for uid in types:
            if self.registry.content_type(uid) is None:
                log.warning("export.type.unknown", uid=uid)
                continue
            if uid not in selected:
                selected.append(uid)
        if regex is not None:
            for uid in self.registry.api_types():
                name = self.registry.content_types[uid].collection_name
                if name and regex.search(name) and uid not in selected:
                    selected.append(uid)
        if not selected and all_types:
            selected = self.registry.api_types()
        return selected

    async def export_type(self, uid: str) -> tuple[list[dict[str, Any]], int]:
        """Fetch and merge all rows of ``uid``.

        Returns:
            Tuple of (entries, published_only_count)
        """
        schema = self.registry.content_types[uid]
        plan = build_population_plan(schema, self.registry, self.settings.populate_depth)
        if not schema.draft_and_publish:
            # Published rows are the canonical snapshot and keep their own timestamps
            entries = await self.store.find_many(uid, populate=plan, status=PUBLISHED, locale=ALL_LOCALES)
            return entries, 0

        drafts = await self.store.find_many(uid, populate=plan, status=DRAFT, locale=ALL_LOCALES)
        published = await self.store.find_many(
            uid, status=PUBLISHED, locale=ALL_LOCALES, fields=_PUBLISHED_FIELDS
        )
        published_at = {(p["documentId"], p.get("locale")): p.get("publishedAt") for p in published}
        entries = [
            {**d, "publishedAt": published_at.get((d["documentId"], d.get("locale")))} for d in drafts
        ]

        draft_keys = {(d["documentId"], d.get("locale")) for d in drafts}
        orphan_keys = set(published_at) - draft_keys
        if orphan_keys:
            full = await self.store.find_many(uid, populate=plan, status=PUBLISHED, locale=ALL_LOCALES)
            entries.extend(p for p in full if (p["documentId"], p.get("locale")) in orphan_keys)
        return entries, len(orphan_keys)

    async def build_manifest(
        self, uids: list[str], *, filter_components: str | None = None
    ) -> tuple[Manifest, ExportResult]:
        comp_regex = _compile(filter_components, "--filter-components")
        result = ExportResult()
        manifest = Manifest(createdAt=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"))
        media: dict[Any, dict[str, Any]] = {}

        for uid in uids:
            log.info("export.type.start", uid=uid)
            try:
                entries, published_only = await self.export_type(uid)
                view = await self.store.get_view_config(uid)
            except (StoreError, ValueError, KeyError) as exc:
                result.failed_types.append(uid)
                result.warnings.append(f"{uid}: export failed: {exc}")
                log.error("export.type.failed", uid=uid, error=str(exc))
                continue
            if published_only:
                result.warnings.append(f"{uid}: {published_only} published row(s) without a draft exported as-is")
                log.warning("export.type.published_only", uid=uid, count=published_only)

            manifest.types[uid] = entries
            if view is not None:
                manifest.views[uid] = view
            result.types.append(uid)
            result.entries[uid] = len(entries)
            inc_counter("export.entries", len(entries))
            for found in iter_media_objects(entries):
                media.setdefault(found.get("id", found["hash"]), found)
            log.info("export.type.complete", uid=uid, entries=len(entries))

        manifest.media = list(media.values())
        result.media = len(manifest.media)
        inc_counter("export.media", result.media)

        fragments: set[str] = set()
        for uid in result.types:
            collect_fragments(uid, self.registry, fragments)
        if comp_regex is not None:
            kept = set()
            for uid in fragments:
                fragment = self.registry.component(uid)
                if fragment is not None and fragment.collection_name and comp_regex.search(fragment.collection_name):
                    kept.add(uid)
            log.info("export.components.filtered", kept=len(kept), total=len(fragments))
            fragments = kept
        manifest.schemas = self.registry.to_dict(content_types=result.types, components=sorted(fragments))
        manifest.locales = [LocaleRecord.model_validate(loc) for loc in await self.store.list_locales()]
        return manifest, result

    async def run_export(
        self,
        types: Iterable[str] = (),
        *,
        all_types: bool = False,
        filter_api: str | None = None,
        filter_components: str | None = None,
        dry_run: bool = False,
    ) -> ExportResult:
        start_time = datetime.now(timezone.utc)
        uids = self.select_types(types, all_types=all_types, filter_api=filter_api)
        if not uids:
            log.info("export.nothing_to_do")
            return ExportResult(dry_run=dry_run)

        name = f"export-{_timestamp()}"
        manifest, result = await self.build_manifest(uids, filter_components=filter_components)
        result.dry_run = dry_run
        result.archive_name = f"{name}.tar.gz"

        if dry_run:
            log.info(
                "export.dry_run",
                archive=result.archive_name,
                types=len(result.types),
                entries=sum(result.entries.values()),
                media=result.media,
            )
            return result

        export_dir = Path(self.settings.export_dir)
        staging = export_dir / name
        uploads = staging / UPLOADS_DIRNAME
        uploads.mkdir(parents=True, exist_ok=True)
        try:
            copied = self._copy_media_files(manifest.media, uploads, result)
            write_manifest(manifest, staging)
            result.archive_path = create_archive(staging, export_dir / result.archive_name)
        finally:
            remove_tree(staging)

        duration_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        observe_histogram("export.duration_ms", duration_ms)
        log.info(
            "export.complete",
            archive=str(result.archive_path),
            types=len(result.types),
            entries=sum(result.entries.values()),
            media=result.media,
            files=copied,
            duration_ms=duration_ms,
        )
        return result

    def _copy_media_files(self, media: list[dict[str, Any]], dest: Path, result: ExportResult) -> int:
        source = self.store.uploads_dir
        copied = 0
        for asset in media:
            for file_name in asset_file_names(asset):
                src = source / file_name
                if not src.is_file():
                    result.warnings.append(f"media file missing: {file_name}")
                    log.warning("export.media.missing_file", name=file_name, hash=asset.get("hash"))
                    continue
                shutil.copy2(src, dest / file_name)
                copied += 1
        return copied
