# tests/conftest.py

import json
import os
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Point the app at a process-local in-memory DB before any app module creates an engine.
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ.setdefault("CONTENTPORTER_SQLITE_STATIC_POOL", "1")

import Contentporter.db as _db  # noqa: E402

_db.configure(TEST_DATABASE_URL)

# Import models so all ORM tables are registered on Base.metadata before create_all
from Contentporter import models as _models  # noqa: F401,E402
from Contentporter.archive import ImportSource, resolve_import_source  # noqa: E402
from Contentporter.config import Settings  # noqa: E402
from Contentporter.db import Base, get_engine, get_sessionmaker  # noqa: E402
from Contentporter.exporter import ContentExporter  # noqa: E402
from Contentporter.importer import ContentImporter, ImportOptions  # noqa: E402
from Contentporter.importer_context import ImporterRunContext  # noqa: E402
from Contentporter.manifest import load_manifest  # noqa: E402
from Contentporter.metrics import reset_counters  # noqa: E402
from Contentporter.schema import SchemaRegistry  # noqa: E402
from Contentporter.store import SqlContentStore  # noqa: E402

BLOG_SCHEMAS = {
    "contentTypes": {
        "api::post.post": {
            "kind": "collectionType",
            "collectionName": "posts",
            "draftAndPublish": True,
            "localized": True,
            "attributes": {
                "title": {"type": "string", "required": True},
                "slug": {"type": "uid", "targetField": "title"},
                "cover": {"type": "media", "multiple": False},
                "gallery": {"type": "media", "multiple": True},
                "author": {"type": "relation", "relation": "manyToOne", "target": "api::author.author"},
                "related": {"type": "relation", "relation": "manyToMany", "target": "api::post.post"},
                "seo": {"type": "component", "component": "shared.seo", "repeatable": False},
                "blocks": {"type": "dynamiczone", "components": ["blocks.hero", "blocks.quote"]},
            },
        },
        "api::author.author": {
            "kind": "collectionType",
            "collectionName": "authors",
            "draftAndPublish": True,
            "attributes": {
                "name": {"type": "string"},
                "avatar": {"type": "media"},
                "favorite": {"type": "relation", "relation": "oneToOne", "target": "api::post.post"},
            },
        },
        "api::tag.tag": {
            "kind": "collectionType",
            "collectionName": "tags",
            "draftAndPublish": False,
            "attributes": {"label": {"type": "string"}},
        },
        "api::homepage.homepage": {
            "kind": "singleType",
            "collectionName": "homepages",
            "draftAndPublish": True,
            "localized": True,
            "attributes": {
                "headline": {"type": "string"},
                "featured": {"type": "relation", "relation": "oneToOne", "target": "api::post.post"},
            },
        },
    },
    "components": {
        "shared.seo": {
            "collectionName": "components_shared_seos",
            "attributes": {
                "metaTitle": {"type": "string"},
                "shareImage": {"type": "media"},
            },
        },
        "blocks.hero": {
            "collectionName": "components_blocks_heroes",
            "attributes": {
                "heading": {"type": "string"},
                "image": {"type": "media"},
            },
        },
        "blocks.quote": {
            "collectionName": "components_blocks_quotes",
            "attributes": {
                "text": {"type": "text"},
                "by": {"type": "relation", "relation": "oneToOne", "target": "api::author.author"},
            },
        },
    },
}


@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    reset_counters()


@pytest.fixture
def registry() -> SchemaRegistry:
    return SchemaRegistry.from_dict(BLOG_SCHEMAS)


@pytest.fixture
async def db() -> AsyncIterator[AsyncSession]:
    """Session on the app engine with a freshly created schema."""
    _db.configure(TEST_DATABASE_URL)
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    sm = get_sessionmaker()
    async with sm() as s:
        try:
            yield s
        finally:
            await s.rollback()
            await s.close()
            await _db.dispose_engine()


@pytest.fixture
async def dest_db() -> AsyncIterator[AsyncSession]:
    """Session on a second, independent in-memory database."""
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    sm = async_sessionmaker(engine, expire_on_commit=False)
    async with sm() as s:
        try:
            yield s
        finally:
            await s.rollback()
            await s.close()
            await engine.dispose()


@pytest.fixture
def source_uploads(tmp_path: Path) -> Path:
    path = tmp_path / "source-uploads"
    path.mkdir()
    return path


@pytest.fixture
def dest_uploads(tmp_path: Path) -> Path:
    path = tmp_path / "dest-uploads"
    path.mkdir()
    return path


@pytest.fixture
def store(db: AsyncSession, registry: SchemaRegistry, source_uploads: Path) -> SqlContentStore:
    return SqlContentStore(db, registry, source_uploads)


@pytest.fixture
def dest_store(dest_db: AsyncSession, registry: SchemaRegistry, dest_uploads: Path) -> SqlContentStore:
    return SqlContentStore(dest_db, registry, dest_uploads)


async def _add_media(store: SqlContentStore, name: str, content: bytes, *, content_hash: str | None = None) -> dict:
    """Write a file into the store's uploads dir and register it."""
    stem, _, ext = name.rpartition(".")
    content_hash = content_hash or f"{stem}_h"
    file_name = f"{content_hash}.{ext}"
    (store.uploads_dir / file_name).write_bytes(content)
    return await store.create_media(
        {
            "name": name,
            "hash": content_hash,
            "ext": f".{ext}",
            "mime": "image/png",
            "url": f"/uploads/{file_name}",
            "size": round(len(content) / 1024, 2),
        }
    )


@pytest.fixture
def add_media():
    return _add_media


@pytest.fixture
async def blog_source(store: SqlContentStore, add_media) -> SqlContentStore:
    """Source store seeded with a small localized blog.

    p1 (en published, fr draft) and p2 reference each other, author a1 points
    back at p1, and the homepage singleton features p1.
    """
    await store.create_locale("en", "English", is_default=True)
    await store.create_locale("fr", "French")
    cover = await add_media(store, "cover.png", b"cover-bytes", content_hash="abc123")
    avatar = await add_media(store, "avatar.png", b"avatar-bytes")

    await store.create_entry("api::author.author", {"name": "Ada", "avatar": avatar["id"]}, document_id="a1")
    await store.create_entry(
        "api::post.post",
        {
            "title": "Hello",
            "slug": "hello",
            "cover": cover["id"],
            "gallery": [cover["id"], avatar["id"]],
            "author": "a1",
            "seo": {"metaTitle": "Hello SEO", "shareImage": cover["id"]},
            "blocks": [
                {"__component": "blocks.hero", "heading": "Welcome", "image": cover["id"]},
                {"__component": "blocks.quote", "text": "Quote", "by": "a1"},
            ],
        },
        document_id="p1",
        locale="en",
    )
    await store.create_entry("api::post.post", {"title": "Bonjour", "author": "a1"}, document_id="p1", locale="fr")
    await store.create_entry(
        "api::post.post", {"title": "Second", "related": ["p1"]}, document_id="p2", locale="en"
    )
    await store.update_entry("api::post.post", "p1", {"related": ["p2"]}, locale="en")
    await store.update_entry("api::author.author", "a1", {"favorite": "p1"})
    await store.publish_entry("api::post.post", "p1", locale="en")
    await store.publish_entry("api::author.author", "a1")

    await store.create_entry("api::tag.tag", {"label": "news"}, document_id="t1")
    await store.create_entry(
        "api::homepage.homepage", {"headline": "Welcome home", "featured": "p1"}, document_id="home", locale="en"
    )
    await store.publish_entry("api::homepage.homepage", "home", locale="en")
    await store.set_view_config("api::post.post", {"layouts": {"list": ["title", "slug"]}})
    return store


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=TEST_DATABASE_URL,
        export_dir=str(tmp_path / "export-data"),
        uploads_dir=str(tmp_path / "source-uploads"),
    )


@pytest.fixture
async def exported_blog(blog_source: SqlContentStore, settings: Settings, tmp_path: Path) -> ImportSource:
    """The seeded blog exported to an archive and unpacked as an import source."""
    result = await ContentExporter(blog_source, settings).run_export([], all_types=True)
    return await resolve_import_source(str(result.archive_path), tmp_path / "import-work")


async def _run_import(store: SqlContentStore, source: ImportSource, **options) -> ImporterRunContext:
    manifest, manifest_hash = load_manifest(source.manifest_path)
    importer = ContentImporter(store, ImportOptions(**options))
    return await importer.run(manifest, source.uploads_dir, manifest_hash=manifest_hash)


@pytest.fixture
def run_import():
    return _run_import


@pytest.fixture
def schema_dir(tmp_path: Path) -> Path:
    """BLOG_SCHEMAS laid out as a schema directory."""
    root = tmp_path / "schemas"
    (root / "content-types").mkdir(parents=True)
    for uid, definition in BLOG_SCHEMAS["contentTypes"].items():
        name = uid.rsplit(".", 1)[1]
        (root / "content-types" / f"{name}.json").write_text(json.dumps({"uid": uid, **definition}))
    for uid, definition in BLOG_SCHEMAS["components"].items():
        category, name = uid.split(".", 1)
        (root / "components" / category).mkdir(parents=True, exist_ok=True)
        (root / "components" / category / f"{name}.json").write_text(json.dumps(definition))
    return root
