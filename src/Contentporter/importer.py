"""Import orchestrator: reconcile a manifest into the destination store.

Run order:
- Schema compatibility check, locale registry and view configurations
  (skipped with ``skip_schema``)
- Scoped cleanup (``clean``)
- Media pre-pass (skipped with ``skip_media``; just-in-time resolution still runs)
- Phase 1: create or update every collection entry with relations stripped
- Phase 2: re-apply every entry with relations resolved, then publish
- Singleton pass: update-or-create with relations resolved in one step

Splitting collections into two phases makes cyclic and forward references
resolvable: every target exists before any relation is written. Entries are
reconciled by ``(documentId, locale)``, so a repeated run converges on the
same destination state.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from structlog.contextvars import bind_contextvars, unbind_contextvars

from Contentporter.cleanup import CleanupCoordinator
from Contentporter.ids import generate_document_id
from Contentporter.importer_context import EntryRecord, EntryState, ImporterRunContext
from Contentporter.manifest import Manifest
from Contentporter.media import MediaResolver
from Contentporter.metrics import get_counter, inc_counter, observe_histogram
from Contentporter.normalizer import NormalizeMode, PayloadNormalizer
from Contentporter.schema import ContentTypeSchema
from Contentporter.store import DRAFT, PUBLISHED, ContentStore, StoreError, StoreValidationError

log = structlog.get_logger()

# Failures that only affect the entry being processed
ENTRY_ERRORS = (StoreError, ValueError, KeyError, OSError)

_MEDIA_COUNTERS = ("mapped", "dedup", "created", "unresolved", "failed")


class ImporterError(Exception):
    """Raised when an import cannot start."""


def emit_structured_log(event: str, **fields: Any) -> None:
    log.info(event, **fields)


@dataclass(frozen=True)
class ImportOptions:
    clean: bool = False
    skip_media: bool = False
    skip_schema: bool = False
    dry_run: bool = False


def _lookup_status(schema: ContentTypeSchema) -> str:
    return DRAFT if schema.draft_and_publish else PUBLISHED


class ContentImporter:
    def __init__(self, store: ContentStore, options: ImportOptions | None = None, *, run_id: str | None = None) -> None:
        self.store = store
        self.options = options or ImportOptions()
        self.run_id = run_id or generate_document_id()
        self.registry = store.registry
        self.media: MediaResolver | None = None
        self.normalizer: PayloadNormalizer | None = None
        self.ctx: ImporterRunContext | None = None

    async def run(
        self,
        manifest: Manifest,
        uploads_dir: Path | None,
        *,
        manifest_hash: str | None = None,
    ) -> ImporterRunContext:
        """Reconcile ``manifest`` into the destination store.

        Args:
            manifest: Validated manifest
            uploads_dir: Directory holding the manifest's media files, if any
            manifest_hash: Hash of the manifest, carried into logs and the summary

        Returns:
            The run context with per-entry records and counts
        """
        opts = self.options
        start_time = datetime.now(timezone.utc)
        counters_before = {name: get_counter(f"media.resolve.{name}") for name in _MEDIA_COUNTERS}
        ctx = ImporterRunContext(run_id=self.run_id, manifest_hash=manifest_hash, dry_run=opts.dry_run)
        self.ctx = ctx
        self.media = MediaResolver(self.store, uploads_dir, dry_run=opts.dry_run)
        self.normalizer = PayloadNormalizer(self.registry, self.store, self.media)

        bind_contextvars(run_id=self.run_id)
        try:
            emit_structured_log(
                "import.start",
                manifest_hash=manifest_hash,
                types=len(manifest.types),
                entries=manifest.entry_count(),
                media=len(manifest.media),
                dry_run=opts.dry_run,
                clean=opts.clean,
                skip_media=opts.skip_media,
                skip_schema=opts.skip_schema,
            )
            await self._preflight(uploads_dir)
            selected = self._select_types(manifest)

            if not opts.skip_schema:
                bind_contextvars(phase="schema")
                self._check_schemas(manifest, [uid for uid, _, _ in selected])
                await self._restore_locales(manifest)
                await self._restore_views(manifest)

            if opts.clean:
                bind_contextvars(phase="cleanup")
                coordinator = CleanupCoordinator(self.store, dry_run=opts.dry_run)
                plan = await coordinator.plan(manifest)
                result = await coordinator.execute(plan)
                ctx.cleanup = result.as_dict()
                if opts.dry_run:
                    ctx.actions.extend(result.actions)

            if not opts.skip_media:
                bind_contextvars(phase="media")
                await self.media.import_all(manifest.media)

            collections = [t for t in selected if not t[1].is_singleton]
            singletons = [t for t in selected if t[1].is_singleton]

            bind_contextvars(phase="phase1")
            for uid, schema, entries in collections:
                await self._phase1(uid, schema, entries)

            bind_contextvars(phase="phase2")
            for uid, schema, entries in collections:
                await self._phase2(uid, schema, entries)

            bind_contextvars(phase="singletons")
            for uid, schema, entries in singletons:
                await self._singletons(uid, schema, entries)

            ctx.actions.extend(self.media.actions)
            ctx.media = {
                name: get_counter(f"media.resolve.{name}") - counters_before[name]
                for name in _MEDIA_COUNTERS
            }
        finally:
            unbind_contextvars("run_id", "phase")

        ctx.duration_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
        observe_histogram("import.duration_ms", ctx.duration_ms)
        counts = ctx.summary_counts()
        emit_structured_log(
            "import.complete",
            run_id=self.run_id,
            manifest_hash=manifest_hash,
            dry_run=opts.dry_run,
            duration_ms=ctx.duration_ms,
            **counts,
        )
        return ctx

    # ── Setup ────────────────────────────────────────────────────

    async def _preflight(self, uploads_dir: Path | None) -> None:
        if uploads_dir is not None and uploads_dir.exists() and not uploads_dir.is_dir():
            raise ImporterError(f"Uploads path is not a directory: {uploads_dir}")
        try:
            await self.store.list_locales()
        except (StoreError, SQLAlchemyError, OSError) as exc:
            raise ImporterError(f"Destination store unreachable: {exc}") from exc

    def _select_types(self, manifest: Manifest) -> list[tuple[str, ContentTypeSchema, list[dict[str, Any]]]]:
        selected = []
        for uid, entries in manifest.types.items():
            schema = self.registry.content_type(uid)
            if schema is None:
                self.ctx.skipped_types.append(uid)
                self.ctx.warn(f"{uid}: content type not present at destination, skipped")
                log.warning("import.type.missing", uid=uid, entries=len(entries))
                continue
            selected.append((uid, schema, entries))
        return selected

    def _check_schemas(self, manifest: Manifest, uids: list[str]) -> None:
        source = (manifest.schemas or {}).get("contentTypes") or {}
        for uid in uids:
            src = source.get(uid)
            dest = self.registry.content_type(uid)
            if not isinstance(src, dict) or dest is None:
                continue
            src_attrs = src.get("attributes") or {}
            for name, raw in src_attrs.items():
                attr = dest.attributes.get(name)
                if attr is None:
                    self.ctx.warn(f"{uid}.{name}: attribute not present at destination, values dropped")
                    log.warning("import.schema.attribute_missing", uid=uid, attribute=name)
                elif isinstance(raw, dict) and raw.get("type") != attr.type:
                    self.ctx.warn(f"{uid}.{name}: type {raw.get('type')} at source, {attr.type} at destination")
                    log.warning(
                        "import.schema.type_mismatch",
                        uid=uid,
                        attribute=name,
                        source_type=raw.get("type"),
                        dest_type=attr.type,
                    )
            for flag in ("localized", "draftAndPublish"):
                if flag in src and bool(src[flag]) != bool(
                    dest.localized if flag == "localized" else dest.draft_and_publish
                ):
                    self.ctx.warn(f"{uid}: {flag} differs between source and destination")
                    log.warning("import.schema.flag_mismatch", uid=uid, flag=flag)

    async def _restore_locales(self, manifest: Manifest) -> None:
        if not manifest.locales:
            return
        existing = await self.store.list_locales()
        codes = {loc["code"] for loc in existing}
        has_default = any(loc.get("isDefault") for loc in existing)
        for loc in manifest.locales:
            if loc.code in codes:
                continue
            is_default = loc.is_default and not has_default
            if self.options.dry_run:
                self.ctx.record_action("would-create", "locale", code=loc.code)
                continue
            try:
                await self.store.create_locale(loc.code, loc.name or loc.code, is_default)
            except StoreError as exc:
                self.ctx.warn(f"locale {loc.code}: {exc}")
                log.warning("import.locale.failed", code=loc.code, error=str(exc))
                continue
            has_default = has_default or is_default
            log.info("import.locale.created", code=loc.code, is_default=is_default)

    async def _restore_views(self, manifest: Manifest) -> None:
        for uid, value in manifest.views.items():
            if self.registry.content_type(uid) is None:
                continue
            if self.options.dry_run:
                self.ctx.record_action("would-update", "view", uid=uid)
                continue
            try:
                await self.store.set_view_config(uid, value)
            except StoreError as exc:
                self.ctx.warn(f"{uid}: view configuration not restored: {exc}")
                log.warning("import.view.failed", uid=uid, error=str(exc))

    # ── Phases ───────────────────────────────────────────────────

    def _fail(self, record: EntryRecord, exc: BaseException) -> None:
        record.fail(f"{type(exc).__name__}: {exc}")
        inc_counter("import.entry.failed")
        log.error(
            "import.entry.failed",
            uid=record.uid,
            document_id=record.document_id,
            locale=record.locale,
            state=record.state.value,
            error=str(exc),
        )

    @staticmethod
    def _entry_locale(schema: ContentTypeSchema, entry: dict[str, Any]) -> str | None:
        return entry.get("locale") if schema.localized else None

    async def _create(
        self,
        uid: str,
        payload: dict[str, Any],
        document_id: str | None,
        locale: str | None,
        status: str,
    ) -> str:
        """Create an entry, retrying once without the source identifier."""
        if self.options.dry_run:
            self.ctx.record_action("would-create", "entry", uid=uid, documentId=document_id, locale=locale)
            return document_id or f"new:{uid}:{len(self.ctx.actions)}"
        try:
            created = await self.store.create_entry(
                uid, payload, document_id=document_id, locale=locale, status=status
            )
        except StoreValidationError as exc:
            if document_id is None:
                raise
            log.warning(
                "import.create.retry_without_document_id",
                uid=uid,
                document_id=document_id,
                locale=locale,
                error=str(exc),
            )
            created = await self.store.create_entry(uid, payload, locale=locale, status=status)
            self.normalizer.document_id_map[(uid, document_id)] = created["documentId"]
        return created["documentId"]

    async def _phase1(self, uid: str, schema: ContentTypeSchema, entries: list[dict[str, Any]]) -> None:
        status = _lookup_status(schema)
        for index, entry in enumerate(entries):
            source_id = entry.get("documentId")
            locale = self._entry_locale(schema, entry)
            record = self.ctx.record_for(uid, source_id, locale, index)
            try:
                payload = await self.normalizer.normalize(entry, schema, NormalizeMode.RELATIONS_STRIPPED)
                document_id = self.normalizer.document_id_map.get((uid, source_id), source_id) if source_id else None
                existing = None
                if document_id is not None:
                    existing = await self.store.find_entry(uid, document_id, locale=locale, status=status)
                if existing is not None:
                    if self.options.dry_run:
                        self.ctx.record_action("would-update", "entry", uid=uid, documentId=document_id, locale=locale)
                    else:
                        await self.store.update_entry(uid, document_id, payload, locale=locale, status=status)
                    record.dest_document_id = document_id
                    record.advance(EntryState.UPDATED)
                    inc_counter("import.entry.updated")
                    log.debug("import.phase1.updated", uid=uid, document_id=document_id, locale=locale)
                else:
                    record.dest_document_id = await self._create(uid, payload, document_id, locale, status)
                    record.advance(EntryState.CREATED)
                    inc_counter("import.entry.created")
                    log.debug("import.phase1.created", uid=uid, document_id=record.dest_document_id, locale=locale)
            except ENTRY_ERRORS as exc:
                self._fail(record, exc)
        log.info("import.phase1.type_complete", uid=uid, entries=len(entries))

    async def _phase2(self, uid: str, schema: ContentTypeSchema, entries: list[dict[str, Any]]) -> None:
        for index, entry in enumerate(entries):
            locale = self._entry_locale(schema, entry)
            record = self.ctx.record_for(uid, entry.get("documentId"), locale, index)
            if record.terminal or record.dest_document_id is None:
                continue
            try:
                payload = await self.normalizer.normalize(entry, schema, NormalizeMode.RELATIONS_RESOLVED)
                if self.options.dry_run:
                    self.ctx.record_action(
                        "would-update", "entry", uid=uid, documentId=record.dest_document_id, locale=locale
                    )
                else:
                    await self.store.update_entry(
                        uid, record.dest_document_id, payload, locale=locale, status=_lookup_status(schema)
                    )
                record.advance(EntryState.LINKED)
                inc_counter("import.entry.linked")
                await self._publish_if_needed(uid, schema, entry, record)
                record.advance(EntryState.DONE)
            except ENTRY_ERRORS as exc:
                self._fail(record, exc)
        log.info("import.phase2.type_complete", uid=uid, entries=len(entries))

    async def _publish_if_needed(
        self, uid: str, schema: ContentTypeSchema, entry: dict[str, Any], record: EntryRecord
    ) -> None:
        if not entry.get("publishedAt") or not schema.draft_and_publish:
            return
        if self.options.dry_run:
            self.ctx.record_action(
                "would-publish", "entry", uid=uid, documentId=record.dest_document_id, locale=record.locale
            )
        else:
            await self.store.publish_entry(uid, record.dest_document_id, locale=record.locale)
        record.advance(EntryState.PUBLISHED)
        inc_counter("import.entry.published")

    async def _singletons(self, uid: str, schema: ContentTypeSchema, entries: list[dict[str, Any]]) -> None:
        status = _lookup_status(schema)
        for index, entry in enumerate(entries):
            source_id = entry.get("documentId")
            locale = self._entry_locale(schema, entry)
            record = self.ctx.record_for(uid, source_id, locale, index)
            try:
                payload = await self.normalizer.normalize(entry, schema, NormalizeMode.RELATIONS_RESOLVED)
                local_ids = await self.store.find_document_ids(uid)
                if local_ids:
                    document_id = source_id if source_id in local_ids else sorted(local_ids)[0]
                    existing = await self.store.find_entry(uid, document_id, locale=locale, status=status)
                else:
                    document_id = self.normalizer.document_id_map.get((uid, source_id), source_id) if source_id else None
                    existing = None

                if existing is not None:
                    if self.options.dry_run:
                        self.ctx.record_action("would-update", "entry", uid=uid, documentId=document_id, locale=locale)
                    else:
                        await self.store.update_entry(uid, document_id, payload, locale=locale, status=status)
                    record.dest_document_id = document_id
                    record.advance(EntryState.UPDATED)
                    inc_counter("import.entry.updated")
                else:
                    record.dest_document_id = await self._create(uid, payload, document_id, locale, status)
                    record.advance(EntryState.CREATED)
                    inc_counter("import.entry.created")
                record.advance(EntryState.LINKED)
                inc_counter("import.entry.linked")
                await self._publish_if_needed(uid, schema, entry, record)
                record.advance(EntryState.DONE)
                log.debug("import.singleton.reconciled", uid=uid, document_id=record.dest_document_id, locale=locale)
            except ENTRY_ERRORS as exc:
                self._fail(record, exc)
        log.info("import.singletons.type_complete", uid=uid, entries=len(entries))
