"""CLI tests: exit codes and an export/import cycle over file-backed stores."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from Contentporter.cli import cli

COVER = {
    "id": 3,
    "name": "cover.png",
    "hash": "abc123",
    "ext": ".png",
    "mime": "image/png",
    "size": 0.01,
    "url": "/uploads/abc123.png",
}


def _env(tmp_path: Path, name: str, schema_dir: Path) -> dict[str, str]:
    return {
        "DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / f'{name}.sqlite3'}",
        "SCHEMA_DIR": str(schema_dir),
        "UPLOADS_DIR": str(tmp_path / f"{name}-uploads"),
        "EXPORT_DIR": str(tmp_path / "export-data"),
        "LOGGING_CONSOLE": "CRITICAL",
    }


def _summary(result) -> dict:
    text = result.stdout
    return json.loads(text[text.index("{"):])


@pytest.fixture
def seed_dir(tmp_path: Path) -> Path:
    root = tmp_path / "seed"
    (root / "uploads").mkdir(parents=True)
    (root / "uploads" / "abc123.png").write_bytes(b"png-bytes")
    manifest = {
        "types": {
            "api::post.post": [
                {
                    "id": 1,
                    "documentId": "p1",
                    "locale": "en",
                    "publishedAt": "2026-01-01T00:00:00Z",
                    "title": "Hello",
                    "cover": COVER,
                }
            ],
            "api::tag.tag": [{"id": 2, "documentId": "t1", "label": "news", "publishedAt": "2026-01-01T00:00:00Z"}],
        },
        "media": [COVER],
        "locales": [{"code": "en", "name": "English", "isDefault": True}],
    }
    (root / "data.json").write_text(json.dumps(manifest), encoding="utf-8")
    return root


def test_export_import_cycle(tmp_path: Path, schema_dir: Path, seed_dir: Path):
    runner = CliRunner()
    env_a = _env(tmp_path, "a", schema_dir)
    env_b = _env(tmp_path, "b", schema_dir)

    result = runner.invoke(cli, ["import", str(seed_dir)], env=env_a)
    assert result.exit_code == 0, result.output
    assert _summary(result)["counts"]["created"] == 2

    result = runner.invoke(cli, ["export", "--all"], env=env_a)
    assert result.exit_code == 0, result.output
    exported = _summary(result)
    assert exported["entries"]["api::post.post"] == 1
    assert exported["media"] == 1
    archive = Path(exported["archive"])
    assert archive.is_file()

    result = runner.invoke(cli, ["import", str(archive)], env=env_b)
    assert result.exit_code == 0, result.output
    counts = _summary(result)["counts"]
    assert counts["created"] == 2 and counts["failed"] == 0
    assert (tmp_path / "b-uploads" / "abc123.png").read_bytes() == b"png-bytes"

    result = runner.invoke(cli, ["import", str(archive)], env=env_b)
    assert result.exit_code == 0, result.output
    counts = _summary(result)["counts"]
    assert counts["created"] == 0 and counts["updated"] == 2


def _snapshot(root: Path) -> dict[Path, bytes]:
    return {p: p.read_bytes() for p in sorted(root.rglob("*")) if p.is_file()}


def test_import_dry_run_leaves_files_untouched(tmp_path: Path, schema_dir: Path, seed_dir: Path):
    runner = CliRunner()
    env = _env(tmp_path, "dry", schema_dir)
    result = runner.invoke(cli, ["import", str(seed_dir)], env=env)
    assert result.exit_code == 0, result.output
    before = _snapshot(tmp_path)

    result = runner.invoke(cli, ["import", str(seed_dir), "--dry-run", "--clean"], env=env)

    assert result.exit_code == 0, result.output
    summary = _summary(result)
    assert summary["dry_run"] is True
    assert any(a["action"] == "would-update" for a in summary["actions"])
    assert any(a["action"] == "would-delete" for a in summary["actions"])
    assert _snapshot(tmp_path) == before


def test_import_dry_run_requires_existing_store(tmp_path: Path, schema_dir: Path, seed_dir: Path):
    env = _env(tmp_path, "dry", schema_dir)

    result = CliRunner().invoke(cli, ["import", str(seed_dir), "--dry-run"], env=env)

    assert result.exit_code == 1
    assert "SQLite database not found" in result.output
    assert not (tmp_path / "dry.sqlite3").exists()
    assert not Path(env["UPLOADS_DIR"]).exists()


def test_export_dry_run_requires_existing_store(tmp_path: Path, schema_dir: Path):
    env = _env(tmp_path, "dry", schema_dir)

    result = CliRunner().invoke(cli, ["export", "--all", "--dry-run"], env=env)

    assert result.exit_code == 1
    assert not (tmp_path / "dry.sqlite3").exists()


def test_missing_import_source_exits_1(tmp_path: Path, schema_dir: Path):
    result = CliRunner().invoke(
        cli, ["import", str(tmp_path / "missing.tar.gz")], env=_env(tmp_path, "x", schema_dir)
    )
    assert result.exit_code == 1
    assert "Import failed" in result.output


def test_invalid_filter_exits_1(tmp_path: Path, schema_dir: Path):
    result = CliRunner().invoke(cli, ["export", "--filter-api", "("], env=_env(tmp_path, "x", schema_dir))
    assert result.exit_code == 1
    assert "Export failed" in result.output


def test_missing_schema_dir_exits_1(tmp_path: Path):
    result = CliRunner().invoke(cli, ["export", "--all"], env=_env(tmp_path, "x", tmp_path / "nope"))
    assert result.exit_code == 1


def test_nothing_to_do_exits_0(tmp_path: Path, schema_dir: Path):
    env = _env(tmp_path, "x", schema_dir)

    result = CliRunner().invoke(cli, ["export", "api::nope.nope"], env=env)

    assert result.exit_code == 0, result.output
    assert "Nothing to do" in result.output
    assert _summary(result)["types"] == []
    assert not Path(env["EXPORT_DIR"]).exists()
