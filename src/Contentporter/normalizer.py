"""Transform exported entries into create/update payloads for the destination."""

from __future__ import annotations

import enum
from typing import Any

import structlog

from Contentporter.media import MediaResolver
from Contentporter.schema import AttributeKind, RelationAttribute, SchemaLike, SchemaRegistry
from Contentporter.store import DRAFT, PUBLISHED, ContentStore

log = structlog.get_logger()

# Identity, audit and addressing fields; the importer passes identity explicitly
TOP_LEVEL_STRIP = frozenset(
    {
        "id",
        "documentId",
        "createdAt",
        "updatedAt",
        "publishedAt",
        "createdBy",
        "updatedBy",
        "localizations",
        "locale",
    }
)
FRAGMENT_STRIP = frozenset({"id"})

_OMIT = object()


class NormalizeMode(str, enum.Enum):
    RELATIONS_STRIPPED = "relations-stripped"
    RELATIONS_RESOLVED = "relations-resolved"


def _holds_objects(value: Any) -> bool:
    if isinstance(value, dict):
        return True
    return isinstance(value, list) and any(isinstance(v, dict) for v in value)


def stable_identifier(ref: Any) -> str | None:
    """Portable identifier of a relation reference.

    An embedded object contributes its ``documentId``; a bare string is taken
    as an identifier. Numeric store-local ids cannot cross instances.
    """
    if isinstance(ref, dict):
        document_id = ref.get("documentId")
        return document_id if isinstance(document_id, str) and document_id else None
    if isinstance(ref, str) and ref:
        return ref
    return None


class PayloadNormalizer:
    def __init__(
        self,
        registry: SchemaRegistry,
        store: ContentStore,
        media_resolver: MediaResolver,
    ) -> None:
        self.registry = registry
        self.store = store
        self.media = media_resolver
        # (target uid, source documentId) -> destination documentId, when they differ
        self.document_id_map: dict[tuple[str, str], str] = {}

    async def normalize(
        self,
        entry: dict[str, Any],
        schema: SchemaLike,
        mode: NormalizeMode,
        *,
        locale: str | None = None,
    ) -> dict[str, Any]:
        """Return the payload for ``entry``.

        Args:
            entry: Exported entry (or fragment) in wire form
            schema: Schema describing ``entry``
            mode: Whether relations are omitted or resolved against the destination
            locale: Locale preferred when resolving relations; defaults to the entry's
        """
        if locale is None:
            locale = entry.get("locale")
        return await self._normalize(entry, schema, mode, locale, TOP_LEVEL_STRIP)

    async def _normalize(
        self,
        data: dict[str, Any],
        schema: SchemaLike,
        mode: NormalizeMode,
        locale: str | None,
        strip: frozenset[str],
    ) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key, value in data.items():
            if key in strip:
                continue
            attr = schema.attributes.get(key)
            if attr is None:
                # Undeclared: keep scalars, drop anything structural
                if not _holds_objects(value):
                    out[key] = value
                continue

            kind = attr.kind
            if kind is AttributeKind.SCALAR:
                out[key] = value
            elif kind is AttributeKind.MEDIA:
                resolved = await self._media(value)
                if resolved is not _OMIT:
                    out[key] = resolved
            elif kind is AttributeKind.RELATION:
                if mode is NormalizeMode.RELATIONS_STRIPPED:
                    continue
                resolved = await self._relation(attr, value, locale)
                if resolved is not _OMIT:
                    out[key] = resolved
            elif kind is AttributeKind.FRAGMENT:
                fragment = self.registry.component(attr.component)
                if fragment is None:
                    continue
                if value is None:
                    out[key] = None
                elif isinstance(value, list):
                    out[key] = [
                        await self._normalize(v, fragment, mode, locale, FRAGMENT_STRIP)
                        for v in value
                        if isinstance(v, dict)
                    ]
                elif isinstance(value, dict):
                    out[key] = await self._normalize(value, fragment, mode, locale, FRAGMENT_STRIP)
            elif kind is AttributeKind.FRAGMENT_UNION:
                if not isinstance(value, list):
                    continue
                items = []
                for item in value:
                    tag = item.get("__component") if isinstance(item, dict) else None
                    fragment = self.registry.component(tag) if tag in attr.components else None
                    if fragment is None:
                        log.debug("normalize.union.dropped", attribute=key, tag=tag)
                        continue
                    body = await self._normalize(item, fragment, mode, locale, FRAGMENT_STRIP)
                    body["__component"] = tag
                    items.append(body)
                out[key] = items
        return out

    async def _media(self, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, list):
            ids = []
            for ref in value:
                media_id = await self.media.resolve(ref)
                if media_id is not None:
                    ids.append(media_id)
            return ids
        media_id = await self.media.resolve(value)
        return _OMIT if media_id is None else media_id

    async def _relation(self, attr: RelationAttribute, value: Any, locale: str | None) -> Any:
        if value is None:
            return None
        if isinstance(value, list):
            refs = []
            for ref in value:
                document_id = await self.resolve_reference(attr.target, ref, locale)
                if document_id is not None:
                    refs.append(document_id)
            return refs
        document_id = await self.resolve_reference(attr.target, value, locale)
        return _OMIT if document_id is None else document_id

    async def resolve_reference(self, target: str, ref: Any, locale: str | None) -> str | None:
        """Destination ``documentId`` for a relation reference, or ``None``.

        The referencing entry's locale is preferred; any locale is accepted.
        """
        source_id = stable_identifier(ref)
        if source_id is None:
            log.debug("normalize.relation.unportable", target=target, ref=ref)
            return None
        schema = self.registry.content_type(target)
        if schema is None:
            return None
        document_id = self.document_id_map.get((target, source_id), source_id)
        status = DRAFT if schema.draft_and_publish else PUBLISHED

        found = None
        if locale and schema.localized:
            found = await self.store.find_entry(target, document_id, locale=locale, status=status)
        if found is None:
            found = await self.store.find_entry(target, document_id, status=status)
        if found is None:
            log.debug("normalize.relation.unresolved", target=target, document_id=source_id)
            return None
        return found["documentId"]
