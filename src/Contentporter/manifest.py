"""Export manifest (``data.json``) model, loading, hashing and invariant checks.

This module provides:
- The ``Manifest`` model written by the exporter and read by the importer
- Deterministic manifest hashing over canonical JSON
- Structural invariants: unique ``(documentId, locale)`` per type, media
  entries carrying a content hash, no entry referencing undeclared media
"""

from __future__ import annotations

import hashlib
import unicodedata
from pathlib import Path
from typing import Any

import orjson
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

log = structlog.get_logger()

MANIFEST_FILENAME = "data.json"
UPLOADS_DIRNAME = "uploads"


class ManifestValidationError(ValueError):
    """Raised when manifest validation fails."""


class LocaleRecord(BaseModel):
    code: str
    name: str | None = None
    is_default: bool = Field(default=False, alias="isDefault")

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Manifest(BaseModel):
    """Portable snapshot of selected content types, their media and metadata."""

    created_at: str | None = Field(default=None, alias="createdAt")
    types: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)
    media: list[dict[str, Any]] = Field(default_factory=list)
    views: dict[str, Any] = Field(default_factory=dict)
    locales: list[LocaleRecord] = Field(default_factory=list)
    schemas: dict[str, Any] | None = None

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_json_dict(self) -> dict[str, Any]:
        data = self.model_dump(by_alias=True)
        for key in ("createdAt", "schemas"):
            if data.get(key) is None:
                data.pop(key, None)
        return data

    def entry_count(self) -> int:
        return sum(len(entries) for entries in self.types.values())

    def media_hashes(self) -> set[str]:
        return {m["hash"] for m in self.media if isinstance(m.get("hash"), str)}

    def document_ids(self, uid: str) -> set[str]:
        return {
            e["documentId"] for e in self.types.get(uid, []) if isinstance(e.get("documentId"), str)
        }


def is_media_object(value: Any) -> bool:
    return isinstance(value, dict) and all(value.get(k) for k in ("hash", "mime", "url"))


def iter_media_objects(value: Any):
    """Yield every media object reachable inside ``value`` (depth first)."""
    if isinstance(value, list):
        for item in value:
            yield from iter_media_objects(item)
    elif isinstance(value, dict):
        if is_media_object(value):
            # Renditions under ``formats`` belong to this asset
            yield value
            return
        for item in value.values():
            if isinstance(item, (dict, list)):
                yield from iter_media_objects(item)


def _canonical(value: Any) -> Any:
    if isinstance(value, str):
        return unicodedata.normalize("NFC", value)
    if isinstance(value, dict):
        return {_canonical(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_canonical(v) for v in value]
    return value


def compute_manifest_hash(manifest: Manifest | dict[str, Any]) -> str:
    """Hex SHA-256 of the manifest's canonical JSON (NFC strings, sorted keys)."""
    payload = manifest.to_json_dict() if isinstance(manifest, Manifest) else manifest
    encoded = orjson.dumps(_canonical(payload), option=orjson.OPT_SORT_KEYS)
    return hashlib.sha256(encoded).hexdigest()


def validate_manifest_invariants(manifest: Manifest) -> list[str]:
    """Check structural invariants.

    Returns warnings for recoverable findings; raises for duplicate
    ``(documentId, locale)`` pairs, which make reconciliation ambiguous.
    """
    warnings: list[str] = []
    for uid, entries in manifest.types.items():
        seen: set[tuple[str, str | None]] = set()
        for entry in entries:
            if not isinstance(entry, dict):
                raise ManifestValidationError(f"{uid}: entries must be objects")
            document_id = entry.get("documentId")
            if document_id is None:
                warnings.append(f"{uid}: entry {entry.get('id')} has no documentId")
                continue
            key = (document_id, entry.get("locale"))
            if key in seen:
                raise ManifestValidationError(
                    f"{uid}: duplicate entry for documentId={document_id} locale={key[1]}"
                )
            seen.add(key)

    declared = manifest.media_hashes()
    for media in manifest.media:
        if not media.get("hash"):
            warnings.append(f"media {media.get('id')} has no content hash")
    orphans = 0
    for entries in manifest.types.values():
        for found in iter_media_objects(entries):
            if found["hash"] not in declared:
                orphans += 1
    if orphans:
        warnings.append(f"{orphans} media reference(s) not listed in manifest media")
    return warnings


def parse_manifest(raw: Any) -> Manifest:
    if not isinstance(raw, dict):
        raise ManifestValidationError("Manifest must be a JSON object")
    try:
        return Manifest.model_validate(raw)
    except ValidationError as exc:
        raise ManifestValidationError(f"Manifest schema validation failed: {exc}") from exc


def load_manifest(manifest_path: Path) -> tuple[Manifest, str]:
    """Load, validate and hash a ``data.json``.

    Returns:
        Tuple of (manifest, manifest_hash_hex)

    Raises:
        ManifestValidationError: If the file is unreadable or invalid
    """
    try:
        raw = orjson.loads(manifest_path.read_bytes())
    except (orjson.JSONDecodeError, OSError) as exc:
        raise ManifestValidationError(f"Failed to load manifest from {manifest_path}: {exc}") from exc

    manifest = parse_manifest(raw)
    for warning in validate_manifest_invariants(manifest):
        log.warning("manifest.invariant.warning", detail=warning)
    manifest_hash = compute_manifest_hash(raw)
    log.info(
        "manifest.loaded",
        path=str(manifest_path),
        types=len(manifest.types),
        entries=manifest.entry_count(),
        media=len(manifest.media),
        manifest_hash=manifest_hash,
    )
    return manifest, manifest_hash


def write_manifest(manifest: Manifest, directory: Path) -> Path:
    path = directory / MANIFEST_FILENAME
    path.write_bytes(orjson.dumps(manifest.to_json_dict(), option=orjson.OPT_INDENT_2))
    return path
