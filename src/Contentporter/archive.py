"""Export archive packing and import source resolution.

An archive is a gzip tarball whose root holds ``data.json`` and ``uploads/``,
optionally wrapped in a single top-level directory (the exporter always
writes one). Import sources may be an archive file, an already extracted
directory or an ``http(s)://`` URL that is downloaded first.
"""

from __future__ import annotations

import shutil
import tarfile
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import httpx
import structlog

from Contentporter.manifest import MANIFEST_FILENAME, UPLOADS_DIRNAME

log = structlog.get_logger()

ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar")


class ArchiveError(Exception):
    """Raised when an import source cannot be located, fetched or unpacked."""


@dataclass(frozen=True)
class ImportSource:
    root: Path
    manifest_path: Path
    uploads_dir: Path


def is_archive(path: Path) -> bool:
    return path.name.lower().endswith(ARCHIVE_SUFFIXES)


def create_archive(staging_dir: Path, archive_path: Path) -> Path:
    """Pack ``staging_dir`` as the archive's single top-level directory."""
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive_path, "w:gz") as tar:
        tar.add(staging_dir, arcname=staging_dir.name)
    log.info("archive.created", path=str(archive_path), size_bytes=archive_path.stat().st_size)
    return archive_path


def extract_archive(archive_path: Path, dest_dir: Path) -> Path:
    dest_dir.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive_path, "r:*") as tar:
            tar.extractall(path=dest_dir, filter="data")
    except (tarfile.TarError, OSError) as exc:
        raise ArchiveError(f"Failed to extract {archive_path}: {exc}") from exc
    log.info("archive.extracted", path=str(archive_path), dest=str(dest_dir))
    return dest_dir


def locate_manifest_root(directory: Path) -> Path:
    """Return the directory holding ``data.json``.

    Accepts the manifest at the root or inside exactly one top-level
    directory.
    """
    if (directory / MANIFEST_FILENAME).is_file():
        return directory
    children = [p for p in directory.iterdir() if not p.name.startswith(".")]
    if len(children) == 1 and children[0].is_dir() and (children[0] / MANIFEST_FILENAME).is_file():
        return children[0]
    raise ArchiveError(f"{MANIFEST_FILENAME} not found in {directory}")


async def download_archive(url: str, dest_dir: Path, *, timeout: float = 60.0) -> Path:
    name = Path(urlparse(url).path).name or "import.tar.gz"
    if not is_archive(Path(name)):
        name = f"{name}.tar.gz"
    dest_dir.mkdir(parents=True, exist_ok=True)
    target = dest_dir / name
    log.info("archive.download.start", url=url)
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        try:
            async with client.stream("GET", url) as r:
                r.raise_for_status()
                with open(target, "wb") as f:
                    async for chunk in r.aiter_bytes():
                        f.write(chunk)
        except httpx.HTTPStatusError as e:
            log.error("archive.download.http_error", url=url, http_status_code=e.response.status_code)
            raise ArchiveError(f"Download failed with HTTP {e.response.status_code}: {url}") from e
        except httpx.RequestError as e:
            log.error("archive.download.network_error", url=url, error=str(e))
            raise ArchiveError(f"Download failed: {e}") from e
    log.info("archive.download.complete", url=url, path=str(target), size_bytes=target.stat().st_size)
    return target


async def resolve_import_source(source: str, work_dir: Path, *, timeout: float = 60.0) -> ImportSource:
    """Turn a path or URL into an extracted directory with ``data.json``.

    Raises:
        ArchiveError: If the source is missing, unsupported or malformed
    """
    if source.startswith(("http://", "https://")):
        path = await download_archive(source, work_dir / "download", timeout=timeout)
    else:
        path = Path(source).expanduser()
        if not path.exists():
            raise ArchiveError(f"Import source not found: {source}")

    if path.is_dir():
        root = locate_manifest_root(path)
    elif is_archive(path):
        root = locate_manifest_root(extract_archive(path, work_dir / "extracted"))
    else:
        raise ArchiveError(f"Unsupported import source (expected .tar.gz, .tgz, .tar or directory): {source}")

    return ImportSource(
        root=root,
        manifest_path=root / MANIFEST_FILENAME,
        uploads_dir=root / UPLOADS_DIRNAME,
    )


def remove_tree(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except OSError as exc:
        log.warning("archive.cleanup.failed", path=str(path), error=str(exc))
