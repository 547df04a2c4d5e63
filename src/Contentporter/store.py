"""Content store interface and the SQLAlchemy-backed reference store.

The engine only talks to ``ContentStore``. ``SqlContentStore`` implements it
over the tables in ``Contentporter.models`` so that export and import can run
against a real database (SQLite or Postgres) and be tested end to end.

Stored form inside ``Entry.data``:

- relation values are target ``documentId`` strings (or lists of them)
- media values are ``MediaFile.id`` integers (or lists of them)
- fragments are nested dicts/lists, fragment-union items carry ``__component``

``find_many`` expands the stored form according to a population plan (see
``Contentporter.schema_walker``) into the wire form used in manifests.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from Contentporter import models
from Contentporter.ids import MAX_DOCUMENT_ID_LENGTH, generate_document_id, is_valid_document_id
from Contentporter.schema import (
    AttributeKind,
    ContentTypeSchema,
    SchemaLike,
    SchemaRegistry,
)
from Contentporter.schema_walker import FETCH_ALL, IDENTIFYING_FIELDS

log = structlog.get_logger()

DRAFT = "draft"
PUBLISHED = "published"
ALL_LOCALES = "*"
VIEW_CONFIG_PREFIX = "plugin_content_manager_configuration_content_types::"

# Keys the store owns; never persisted inside Entry.data
_RESERVED_KEYS = {"id", "documentId", "locale", "publishedAt", "createdAt", "updatedAt"}


class StoreError(Exception):
    """Base exception for content store failures."""


class StoreNotFoundError(StoreError):
    """Raised when an addressed entry, content type or asset does not exist."""


class StoreValidationError(StoreError):
    """Raised when the store rejects a write."""


@runtime_checkable
class ContentStore(Protocol):
    """Operations the migration engine consumes from a content store instance."""

    registry: SchemaRegistry
    uploads_dir: Path

    async def find_many(
        self,
        uid: str,
        *,
        populate: Any = None,
        status: str = DRAFT,
        locale: str = ALL_LOCALES,
        fields: list[str] | None = None,
    ) -> list[dict[str, Any]]: ...

    async def find_entry(
        self, uid: str, document_id: str, *, locale: str | None = None, status: str = DRAFT
    ) -> dict[str, Any] | None: ...

    async def find_document_ids(self, uid: str) -> set[str]: ...

    async def create_entry(
        self,
        uid: str,
        data: dict[str, Any],
        *,
        document_id: str | None = None,
        locale: str | None = None,
        status: str = DRAFT,
    ) -> dict[str, Any]: ...

    async def update_entry(
        self,
        uid: str,
        document_id: str,
        data: dict[str, Any],
        *,
        locale: str | None = None,
        status: str = DRAFT,
    ) -> dict[str, Any]: ...

    async def publish_entry(
        self, uid: str, document_id: str, *, locale: str | None = None
    ) -> dict[str, Any]: ...

    async def delete_document(self, uid: str, document_id: str) -> int: ...

    async def delete_all(self, uid: str) -> int: ...

    async def find_media_by_hash(self, content_hash: str) -> dict[str, Any] | None: ...

    async def get_media(self, media_id: int) -> dict[str, Any] | None: ...

    async def list_media(self) -> list[dict[str, Any]]: ...

    async def create_media(self, data: dict[str, Any]) -> dict[str, Any]: ...

    async def delete_media(self, media_id: int) -> None: ...

    async def get_view_config(self, uid: str) -> Any: ...

    async def set_view_config(self, uid: str, value: Any) -> None: ...

    async def list_locales(self) -> list[dict[str, Any]]: ...

    async def create_locale(self, code: str, name: str, is_default: bool = False) -> dict[str, Any]: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat().replace("+00:00", "Z")


def _parse_ts(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


async def _flush_retry(s: AsyncSession, attempts: int = 5, delay: float = 0.2) -> None:
    """Retry session.flush() on transient SQLite 'database is locked' errors.

    Exponential backoff: delay * 2^i between attempts.
    """
    for i in range(attempts):
        try:
            await s.flush()
            return
        except OperationalError as e:  # pragma: no cover - timing dependent
            msg = str(e).lower()
            if "database is locked" in msg or "database is busy" in msg:
                if i == attempts - 1:
                    raise
                await asyncio.sleep(delay * (2**i))
                continue
            raise


def media_to_dict(row: models.MediaFile) -> dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "alternativeText": row.alternative_text,
        "caption": row.caption,
        "width": row.width,
        "height": row.height,
        "formats": row.formats,
        "hash": row.hash,
        "ext": row.ext,
        "mime": row.mime,
        "size": row.size,
        "url": row.url,
        "provider": row.provider,
        "createdAt": _iso(row.created_at),
        "updatedAt": _iso(row.updated_at),
    }


_MEDIA_COLUMNS = {
    "name": "name",
    "alternativeText": "alternative_text",
    "caption": "caption",
    "width": "width",
    "height": "height",
    "formats": "formats",
    "hash": "hash",
    "ext": "ext",
    "mime": "mime",
    "size": "size",
    "url": "url",
    "provider": "provider",
}


class SqlContentStore:
    """``ContentStore`` over an ``AsyncSession``.

    The caller owns the session lifecycle (see ``Contentporter.db.session_scope``);
    writes are flushed, never committed here.
    """

    def __init__(self, session: AsyncSession, registry: SchemaRegistry, uploads_dir: Path) -> None:
        self._s = session
        self.registry = registry
        self.uploads_dir = Path(uploads_dir)

    # ── Schema helpers ───────────────────────────────────────────

    def _schema(self, uid: str) -> ContentTypeSchema:
        schema = self.registry.content_type(uid)
        if schema is None:
            raise StoreNotFoundError(f"Unknown content type: {uid}")
        return schema

    async def _locale_key(self, schema: ContentTypeSchema, locale: str | None) -> str:
        if not schema.localized:
            return ""
        if locale:
            return locale
        return await self._default_locale()

    async def _default_locale(self) -> str:
        q = await self._s.execute(select(models.Locale).where(models.Locale.is_default.is_(True)))
        row = q.scalars().first()
        return row.code if row is not None else "en"

    # ── Entry reads ──────────────────────────────────────────────

    async def _rows(
        self,
        uid: str,
        *,
        document_id: str | None = None,
        locale: str | None = None,
        status: str | None = None,
    ) -> list[models.Entry]:
        stmt = select(models.Entry).where(models.Entry.content_type == uid)
        if document_id is not None:
            stmt = stmt.where(models.Entry.document_id == document_id)
        if locale is not None and locale != ALL_LOCALES:
            stmt = stmt.where(models.Entry.locale == locale)
        if status is not None:
            stmt = stmt.where(models.Entry.status == models.EntryStatus(status))
        stmt = stmt.order_by(models.Entry.id)
        q = await self._s.execute(stmt)
        return list(q.scalars().all())

    def _row_meta(self, row: models.Entry) -> dict[str, Any]:
        return {
            "id": row.id,
            "documentId": row.document_id,
            "locale": row.locale or None,
            "publishedAt": _iso(row.published_at) if row.status == models.EntryStatus.published else None,
            "createdAt": _iso(row.created_at),
            "updatedAt": _iso(row.updated_at),
        }

    async def find_many(
        self,
        uid: str,
        *,
        populate: Any = None,
        status: str = DRAFT,
        locale: str = ALL_LOCALES,
        fields: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        schema = self._schema(uid)
        rows = await self._rows(uid, locale=locale, status=status)
        out: list[dict[str, Any]] = []
        for row in rows:
            meta = self._row_meta(row)
            if fields is not None:
                out.append({k: v for k, v in meta.items() if k in fields or k == "id"})
                continue
            body = await self._expand(row.data or {}, schema, populate, row.locale, status)
            out.append({**meta, **body})
        return out

    async def find_entry(
        self, uid: str, document_id: str, *, locale: str | None = None, status: str = DRAFT
    ) -> dict[str, Any] | None:
        schema = self._schema(uid)
        locale_key = None if locale is None else await self._locale_key(schema, locale)
        rows = await self._rows(uid, document_id=document_id, locale=locale_key, status=status)
        if not rows:
            return None
        row = rows[0]
        return {**self._row_meta(row), **(row.data or {})}

    async def find_document_ids(self, uid: str) -> set[str]:
        self._schema(uid)
        q = await self._s.execute(
            select(models.Entry.document_id).where(models.Entry.content_type == uid).distinct()
        )
        return set(q.scalars().all())

    # ── Population ───────────────────────────────────────────────

    async def _expand(
        self, data: dict[str, Any], schema: SchemaLike, plan: Any, locale: str, status: str
    ) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key, value in data.items():
            attr = schema.attributes.get(key)
            if attr is None or attr.kind is AttributeKind.SCALAR:
                out[key] = value
                continue
            if plan == FETCH_ALL:
                node: Any = FETCH_ALL
            elif isinstance(plan, dict) and key in plan:
                node = plan[key]
            else:
                # Structural attribute not requested by the plan
                continue
            out[key] = await self._expand_attribute(attr, value, node, locale, status)
        return out

    async def _expand_attribute(self, attr, value: Any, node: Any, locale: str, status: str) -> Any:
        kind = attr.kind
        if value is None:
            return None
        if kind is AttributeKind.MEDIA:
            if isinstance(value, list):
                items = [await self.get_media(v) for v in value if isinstance(v, int)]
                return [m for m in items if m is not None]
            return await self.get_media(value) if isinstance(value, int) else None
        if kind is AttributeKind.RELATION:
            fields = node.get("fields", IDENTIFYING_FIELDS) if isinstance(node, dict) else IDENTIFYING_FIELDS
            if isinstance(value, list):
                refs = [await self._relation_ref(attr.target, v, fields, locale, status) for v in value]
                return [r for r in refs if r is not None]
            return await self._relation_ref(attr.target, value, fields, locale, status)
        if kind is AttributeKind.FRAGMENT:
            fragment = self.registry.component(attr.component)
            sub_plan = node.get("populate", FETCH_ALL) if isinstance(node, dict) else FETCH_ALL
            if fragment is None or node == FETCH_ALL:
                # One level only: nested structure stays in stored form
                return value
            if isinstance(value, list):
                return [await self._expand(v, fragment, sub_plan, locale, status) for v in value if isinstance(v, dict)]
            if isinstance(value, dict):
                return await self._expand(value, fragment, sub_plan, locale, status)
            return value
        if kind is AttributeKind.FRAGMENT_UNION:
            if not isinstance(value, list) or node == FETCH_ALL:
                return value
            on = node.get("on", {}) if isinstance(node, dict) else {}
            items = []
            for item in value:
                tag = item.get("__component") if isinstance(item, dict) else None
                fragment = self.registry.component(tag) if tag else None
                member = on.get(tag)
                if fragment is None or member is None:
                    items.append(item)
                    continue
                expanded = await self._expand(
                    item, fragment, member.get("populate", FETCH_ALL), locale, status
                )
                expanded["__component"] = tag
                items.append(expanded)
            return items
        return value

    async def _relation_ref(
        self, target: str, document_id: Any, fields: list[str], locale: str, status: str
    ) -> dict[str, Any] | None:
        if not isinstance(document_id, str) or self.registry.content_type(target) is None:
            return None
        rows = await self._rows(target, document_id=document_id)
        if not rows:
            return None

        def rank(r: models.Entry) -> tuple[int, int]:
            return (0 if r.locale == locale else 1, 0 if r.status.value == status else 1)

        row = sorted(rows, key=rank)[0]
        meta = self._row_meta(row)
        return {k: meta[k] for k in fields if k in meta}

    # ── Validation ───────────────────────────────────────────────

    async def _validate(self, schema: SchemaLike, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        clean: dict[str, Any] = {}
        for key, value in data.items():
            if key in _RESERVED_KEYS and not path:
                continue
            where = f"{path}{key}"
            attr = schema.attributes.get(key)
            if attr is None:
                if key == "__component":
                    clean[key] = value
                    continue
                if isinstance(value, dict) or (
                    isinstance(value, list) and any(isinstance(v, dict) for v in value)
                ):
                    raise StoreValidationError(f"{where}: undeclared attribute cannot hold an object")
                clean[key] = value
                continue
            clean[key] = await self._validate_attribute(attr, value, where)
        return clean

    async def _validate_attribute(self, attr, value: Any, where: str) -> Any:
        kind = attr.kind
        if value is None or kind is AttributeKind.SCALAR:
            return value
        if kind is AttributeKind.MEDIA:
            ids = value if isinstance(value, list) else [value]
            for media_id in ids:
                if not isinstance(media_id, int) or isinstance(media_id, bool):
                    raise StoreValidationError(f"{where}: media must be referenced by id")
                if await self._s.get(models.MediaFile, media_id) is None:
                    raise StoreValidationError(f"{where}: media {media_id} does not exist")
            return value
        if kind is AttributeKind.RELATION:
            refs = value if isinstance(value, list) else [value]
            for ref in refs:
                if not isinstance(ref, str):
                    raise StoreValidationError(f"{where}: relations must be document ids")
                if not await self._rows(attr.target, document_id=ref):
                    raise StoreValidationError(f"{where}: {attr.target} {ref} does not exist")
            return value
        if kind is AttributeKind.FRAGMENT:
            fragment = self.registry.component(attr.component)
            if fragment is None:
                raise StoreValidationError(f"{where}: unknown fragment {attr.component}")
            if isinstance(value, list):
                return [await self._validate(fragment, v, f"{where}.") for v in value]
            if not isinstance(value, dict):
                raise StoreValidationError(f"{where}: fragment must be an object")
            return await self._validate(fragment, value, f"{where}.")
        if kind is AttributeKind.FRAGMENT_UNION:
            if not isinstance(value, list):
                raise StoreValidationError(f"{where}: fragment union must be a list")
            items = []
            for item in value:
                tag = item.get("__component") if isinstance(item, dict) else None
                if tag not in attr.components or self.registry.component(tag) is None:
                    raise StoreValidationError(f"{where}: fragment {tag!r} not allowed")
                items.append(await self._validate(self.registry.component(tag), item, f"{where}."))
            return items
        return value

    # ── Entry writes ─────────────────────────────────────────────

    async def create_entry(
        self,
        uid: str,
        data: dict[str, Any],
        *,
        document_id: str | None = None,
        locale: str | None = None,
        status: str = DRAFT,
    ) -> dict[str, Any]:
        schema = self._schema(uid)
        if document_id is not None and not is_valid_document_id(document_id):
            raise StoreValidationError(
                f"documentId {document_id!r} must be 1..{MAX_DOCUMENT_ID_LENGTH} characters"
            )
        locale_key = await self._locale_key(schema, locale)

        if schema.is_singleton:
            existing = await self.find_document_ids(uid)
            if existing and (document_id is None or document_id not in existing):
                if document_id is None:
                    document_id = next(iter(existing))
                else:
                    raise StoreValidationError(f"{uid} is a singleton and already has a document")
        document_id = document_id or generate_document_id()

        if not schema.draft_and_publish:
            status = PUBLISHED
        if await self._rows(uid, document_id=document_id, locale=locale_key, status=status):
            raise StoreValidationError(f"{uid} {document_id} ({locale_key or '-'}, {status}) already exists")

        clean = await self._validate(schema, data)
        now = _now()
        row = models.Entry(
            content_type=uid,
            document_id=document_id,
            locale=locale_key,
            status=models.EntryStatus(status),
            published_at=now if status == PUBLISHED else None,
            data=clean,
            created_at=now,
            updated_at=now,
        )
        self._s.add(row)
        if status == PUBLISHED and schema.draft_and_publish:
            # Publishing always keeps a draft counterpart
            self._s.add(
                models.Entry(
                    content_type=uid,
                    document_id=document_id,
                    locale=locale_key,
                    status=models.EntryStatus.draft,
                    data=dict(clean),
                    created_at=now,
                    updated_at=now,
                )
            )
        await _flush_retry(self._s)
        log.debug("store.entry.created", uid=uid, document_id=document_id, locale=locale_key, status=status)
        return {**self._row_meta(row), **clean}

    async def update_entry(
        self,
        uid: str,
        document_id: str,
        data: dict[str, Any],
        *,
        locale: str | None = None,
        status: str = DRAFT,
    ) -> dict[str, Any]:
        schema = self._schema(uid)
        if not schema.draft_and_publish:
            status = PUBLISHED
        locale_key = await self._locale_key(schema, locale)
        rows = await self._rows(uid, document_id=document_id, locale=locale_key, status=status)
        if not rows:
            raise StoreNotFoundError(f"{uid} {document_id} ({locale_key or '-'}, {status}) not found")
        row = rows[0]
        clean = await self._validate(schema, data)
        row.data = {**(row.data or {}), **clean}
        row.updated_at = _now()
        await _flush_retry(self._s)
        return {**self._row_meta(row), **row.data}

    async def publish_entry(self, uid: str, document_id: str, *, locale: str | None = None) -> dict[str, Any]:
        schema = self._schema(uid)
        locale_key = await self._locale_key(schema, locale)
        if not schema.draft_and_publish:
            entry = await self.find_entry(uid, document_id, locale=locale, status=PUBLISHED)
            if entry is None:
                raise StoreNotFoundError(f"{uid} {document_id} not found")
            return entry
        drafts = await self._rows(uid, document_id=document_id, locale=locale_key, status=DRAFT)
        if not drafts:
            raise StoreNotFoundError(f"{uid} {document_id} ({locale_key or '-'}) has no draft to publish")
        draft = drafts[0]
        now = _now()
        published = await self._rows(uid, document_id=document_id, locale=locale_key, status=PUBLISHED)
        if published:
            row = published[0]
            row.data = dict(draft.data or {})
            row.published_at = now
            row.updated_at = now
        else:
            row = models.Entry(
                content_type=uid,
                document_id=document_id,
                locale=locale_key,
                status=models.EntryStatus.published,
                published_at=now,
                data=dict(draft.data or {}),
                created_at=draft.created_at,
                updated_at=now,
            )
            self._s.add(row)
        await _flush_retry(self._s)
        return {**self._row_meta(row), **(row.data or {})}

    async def delete_document(self, uid: str, document_id: str) -> int:
        self._schema(uid)
        result = await self._s.execute(
            delete(models.Entry).where(
                models.Entry.content_type == uid, models.Entry.document_id == document_id
            )
        )
        await _flush_retry(self._s)
        return result.rowcount or 0

    async def delete_all(self, uid: str) -> int:
        self._schema(uid)
        result = await self._s.execute(delete(models.Entry).where(models.Entry.content_type == uid))
        await _flush_retry(self._s)
        return result.rowcount or 0

    # ── Media ────────────────────────────────────────────────────

    async def find_media_by_hash(self, content_hash: str) -> dict[str, Any] | None:
        q = await self._s.execute(
            select(models.MediaFile).where(models.MediaFile.hash == content_hash).order_by(models.MediaFile.id)
        )
        row = q.scalars().first()
        return media_to_dict(row) if row is not None else None

    async def get_media(self, media_id: int) -> dict[str, Any] | None:
        row = await self._s.get(models.MediaFile, media_id)
        return media_to_dict(row) if row is not None else None

    async def list_media(self) -> list[dict[str, Any]]:
        q = await self._s.execute(select(models.MediaFile).order_by(models.MediaFile.id))
        return [media_to_dict(r) for r in q.scalars().all()]

    async def create_media(self, data: dict[str, Any]) -> dict[str, Any]:
        missing = [k for k in ("hash", "name", "mime", "url") if not data.get(k)]
        if missing:
            raise StoreValidationError(f"media is missing {', '.join(missing)}")
        kwargs = {col: data[key] for key, col in _MEDIA_COLUMNS.items() if key in data and data[key] is not None}
        now = _now()
        row = models.MediaFile(created_at=now, updated_at=now, **kwargs)
        self._s.add(row)
        await _flush_retry(self._s)
        return media_to_dict(row)

    async def delete_media(self, media_id: int) -> None:
        row = await self._s.get(models.MediaFile, media_id)
        if row is None:
            raise StoreNotFoundError(f"media {media_id} not found")
        await self._s.delete(row)
        await _flush_retry(self._s)

    # ── Core store / locales ─────────────────────────────────────

    async def _core_row(self, key: str) -> models.CoreStoreValue | None:
        q = await self._s.execute(select(models.CoreStoreValue).where(models.CoreStoreValue.key == key))
        return q.scalar_one_or_none()

    async def get_view_config(self, uid: str) -> Any:
        row = await self._core_row(VIEW_CONFIG_PREFIX + uid)
        return row.value if row is not None else None

    async def set_view_config(self, uid: str, value: Any) -> None:
        key = VIEW_CONFIG_PREFIX + uid
        row = await self._core_row(key)
        if row is None:
            self._s.add(models.CoreStoreValue(key=key, value=value))
        else:
            row.value = value
        await _flush_retry(self._s)

    async def list_locales(self) -> list[dict[str, Any]]:
        q = await self._s.execute(select(models.Locale).order_by(models.Locale.id))
        return [
            {"code": r.code, "name": r.name, "isDefault": r.is_default} for r in q.scalars().all()
        ]

    async def create_locale(self, code: str, name: str, is_default: bool = False) -> dict[str, Any]:
        q = await self._s.execute(select(models.Locale).where(models.Locale.code == code))
        if q.scalar_one_or_none() is not None:
            raise StoreValidationError(f"locale {code} already exists")
        row = models.Locale(code=code, name=name, is_default=is_default)
        self._s.add(row)
        await _flush_retry(self._s)
        return {"code": row.code, "name": row.name, "isDefault": row.is_default}
