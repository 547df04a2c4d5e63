"""Command line entry point.

Examples:
  contentporter export api::post.post api::author.author
  contentporter export --all --filter-components '^components_shared_'
  contentporter import export-data/export-2024-05-01T10-00-00-000Z.tar.gz --clean
  contentporter import https://example.com/export.tar.gz --dry-run

Settings come from config.toml / .env / environment (see ``Contentporter.config``).
Exit code 0 on completion (including runs with nothing to do), 1 when the run
cannot start. Per-entry failures are reported in the JSON summary only.
A dry run never creates the store: a missing SQLite file is a setup error.
"""

from __future__ import annotations

import asyncio
import sys
import tempfile
from pathlib import Path
from typing import Any

import click
import orjson
import structlog
from sqlalchemy.exc import SQLAlchemyError

from Contentporter import db
from Contentporter.archive import ArchiveError, resolve_import_source
from Contentporter.config import Settings, load_settings
from Contentporter.exporter import ContentExporter, ExportError
from Contentporter.importer import ContentImporter, ImporterError, ImportOptions
from Contentporter.logging import redact_settings, setup_logging
from Contentporter.manifest import ManifestValidationError, load_manifest
from Contentporter.schema import SchemaError, SchemaRegistry
from Contentporter.store import SqlContentStore

log = structlog.get_logger()

SETUP_ERRORS = (
    ArchiveError,
    ManifestValidationError,
    ExportError,
    ImporterError,
    SchemaError,
    SQLAlchemyError,
    OSError,
)


def _bootstrap() -> Settings:
    settings = load_settings()
    setup_logging(settings)
    db.configure(settings.database_url)
    log.info("cli.settings", **redact_settings(settings))
    return settings


def _echo_summary(summary: dict[str, Any]) -> None:
    click.echo(orjson.dumps(summary, option=orjson.OPT_INDENT_2, default=str).decode())


def _fail(action: str, exc: BaseException) -> None:
    log.error(f"cli.{action}.setup_failed", error=str(exc), error_type=type(exc).__name__)
    click.echo(click.style(f"{action.capitalize()} failed: {exc}", fg="red", bold=True), err=True)
    sys.exit(1)


async def _run_export(
    settings: Settings,
    types: tuple[str, ...],
    all_types: bool,
    filter_api: str | None,
    filter_components: str | None,
    dry_run: bool,
) -> dict[str, Any]:
    registry = SchemaRegistry.from_directory(Path(settings.schema_dir))
    try:
        async with db.session_scope(create_schema=not dry_run) as s:
            store = SqlContentStore(s, registry, Path(settings.uploads_dir))
            exporter = ContentExporter(store, settings)
            result = await exporter.run_export(
                types,
                all_types=all_types,
                filter_api=filter_api,
                filter_components=filter_components,
                dry_run=dry_run,
            )
    finally:
        await db.dispose_engine()
    return result.as_dict()


async def _run_import(settings: Settings, source: str, options: ImportOptions) -> dict[str, Any]:
    registry = SchemaRegistry.from_directory(Path(settings.schema_dir))
    with tempfile.TemporaryDirectory(prefix="contentporter-") as work:
        located = await resolve_import_source(
            source, Path(work), timeout=settings.download_timeout_seconds
        )
        manifest, manifest_hash = load_manifest(located.manifest_path)
        uploads_dir = located.uploads_dir if located.uploads_dir.is_dir() else None
        try:
            async with db.session_scope(create_schema=not options.dry_run) as s:
                store = SqlContentStore(s, registry, Path(settings.uploads_dir))
                importer = ContentImporter(store, options)
                ctx = await importer.run(manifest, uploads_dir, manifest_hash=manifest_hash)
        finally:
            await db.dispose_engine()
    return ctx.to_summary()


@click.group()
def cli() -> None:
    """Move content entries and media between store instances."""


@cli.command("export")
@click.argument("types", nargs=-1)
@click.option("--all", "all_types", is_flag=True, help="Export every api:: content type when none is selected.")
@click.option("--filter-api", default=None, help="Regex on collection names selecting api:: content types.")
@click.option("--filter-components", default=None, help="Regex on collection names of component schemas to include.")
@click.option("--dry-run", is_flag=True, help="Report what would be exported without writing anything.")
def export_cmd(
    types: tuple[str, ...],
    all_types: bool,
    filter_api: str | None,
    filter_components: str | None,
    dry_run: bool,
) -> None:
    """Export content types into a tar.gz archive."""
    settings = _bootstrap()
    try:
        summary = asyncio.run(
            _run_export(settings, types, all_types, filter_api, filter_components, dry_run)
        )
    except SETUP_ERRORS as exc:
        _fail("export", exc)
    if not summary["types"]:
        click.echo("Nothing to do: no content types selected.", err=True)
    _echo_summary(summary)


@cli.command("import")
@click.argument("source")
@click.option("--clean", is_flag=True, help="Delete destination entries and media the archive will re-create.")
@click.option("--skip-media", is_flag=True, help="Skip the media pre-pass.")
@click.option("--skip-schema", is_flag=True, help="Skip schema checks and locale/view restoration.")
@click.option("--dry-run", is_flag=True, help="Resolve everything, write nothing.")
def import_cmd(source: str, clean: bool, skip_media: bool, skip_schema: bool, dry_run: bool) -> None:
    """Import an archive (path, directory or URL) into the configured store."""
    settings = _bootstrap()
    options = ImportOptions(clean=clean, skip_media=skip_media, skip_schema=skip_schema, dry_run=dry_run)
    try:
        summary = asyncio.run(_run_import(settings, source, options))
    except SETUP_ERRORS as exc:
        _fail("import", exc)
    _echo_summary(summary)


def main() -> None:  # pragma: no cover
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
