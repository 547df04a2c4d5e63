"""Tests for scoped cleanup before import."""

from pathlib import Path

import pytest

from Contentporter.archive import ImportSource
from Contentporter.cleanup import CleanupCoordinator, CleanupPlan
from Contentporter.manifest import parse_manifest
from Contentporter.metrics import get_counter
from Contentporter.store import SqlContentStore, StoreError

POST = "api::post.post"
HOME = "api::homepage.homepage"


async def _seed_destination(dest_store: SqlContentStore, add_media) -> dict:
    stale = await add_media(dest_store, "cover.png", b"stale", content_hash="abc123")
    keep = await add_media(dest_store, "keep.png", b"keep")
    await dest_store.create_entry(POST, {"title": "Stale"}, document_id="p1", locale="en")
    await dest_store.create_entry(POST, {"title": "Local only"}, document_id="local", locale="en")
    await dest_store.create_entry("api::tag.tag", {"label": "local"}, document_id="t-local")
    await dest_store.create_entry(HOME, {"headline": "Old"}, document_id="old-home", locale="en")
    return {"stale": stale, "keep": keep}


@pytest.mark.asyncio
async def test_plan_scopes_to_manifest(dest_store: SqlContentStore, add_media):
    await _seed_destination(dest_store, add_media)
    manifest = parse_manifest(
        {
            "types": {
                POST: [{"documentId": "p1", "locale": "en"}, {"documentId": "p2", "locale": "en"}],
                HOME: [{"documentId": "home", "locale": "en"}],
            },
            "media": [{"id": 1, "hash": "abc123", "name": "cover.png", "mime": "image/png", "url": "/uploads/abc123.png"}],
        }
    )

    plan = await CleanupCoordinator(dest_store).plan(manifest)

    assert plan.documents == {POST: ["p1"]}
    assert plan.singletons == {HOME: ["old-home"]}
    assert [m["hash"] for m in plan.media] == ["abc123"]
    assert plan.total() == 3


@pytest.mark.asyncio
async def test_clean_import_replaces_only_what_the_manifest_brings(
    dest_store: SqlContentStore, exported_blog: ImportSource, dest_uploads: Path, add_media, run_import
):
    seeded = await _seed_destination(dest_store, add_media)

    ctx = await run_import(dest_store, exported_blog, clean=True)

    assert ctx.cleanup == {"deleted": 3, "failed": 0, "planned": 3}
    assert get_counter("cleanup.deleted") == 3

    # Out-of-scope content survives
    assert await dest_store.find_document_ids(POST) == {"p1", "p2", "local"}
    assert await dest_store.find_document_ids("api::tag.tag") == {"t-local", "t1"}
    assert await dest_store.get_media(seeded["keep"]["id"]) is not None

    # In-scope content comes from the manifest
    assert (await dest_store.find_entry(POST, "p1", locale="en"))["title"] == "Hello"
    assert await dest_store.find_document_ids(HOME) == {"home"}
    cover = await dest_store.find_media_by_hash("abc123")
    assert cover["id"] != seeded["stale"]["id"]
    assert (dest_uploads / "abc123.png").read_bytes() == b"cover-bytes"


@pytest.mark.asyncio
async def test_dry_run_cleanup_only_reports(dest_store: SqlContentStore, exported_blog: ImportSource, add_media, run_import):
    seeded = await _seed_destination(dest_store, add_media)

    ctx = await run_import(dest_store, exported_blog, clean=True, dry_run=True)

    assert ctx.cleanup == {"deleted": 0, "failed": 0, "planned": 3}
    deletes = [a for a in ctx.actions if a["action"] == "would-delete"]
    assert {(a["kind"], a.get("documentId") or a.get("hash")) for a in deletes} == {
        ("entry", "p1"),
        ("entry", "old-home"),
        ("media", "abc123"),
    }
    assert (await dest_store.find_entry(POST, "p1", locale="en"))["title"] == "Stale"
    assert await dest_store.get_media(seeded["stale"]["id"]) is not None


@pytest.mark.asyncio
async def test_failed_media_delete_keeps_files(dest_store: SqlContentStore, dest_uploads: Path, add_media, monkeypatch):
    seeded = await _seed_destination(dest_store, add_media)

    async def _refuse(media_id: int) -> None:
        raise StoreError(f"media {media_id} is locked")

    monkeypatch.setattr(dest_store, "delete_media", _refuse)
    plan = CleanupPlan(media=[seeded["stale"]])

    result = await CleanupCoordinator(dest_store).execute(plan)

    assert result.as_dict() == {"deleted": 0, "failed": 1, "planned": 1}
    assert get_counter("cleanup.failed") == 1
    assert (dest_uploads / "abc123.png").read_bytes() == b"stale"
    assert await dest_store.get_media(seeded["stale"]["id"]) is not None
