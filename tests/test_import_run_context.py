"""Tests for ImporterRunContext and entry state tracking."""

import pytest

from Contentporter.importer_context import EntryRecord, EntryState, ImporterRunContext


def _done(record: EntryRecord, *, created: bool, publish: bool = False) -> None:
    record.advance(EntryState.CREATED if created else EntryState.UPDATED)
    record.advance(EntryState.LINKED)
    if publish:
        record.advance(EntryState.PUBLISHED)
    record.advance(EntryState.DONE)


def test_record_lifecycle():
    record = EntryRecord(uid="api::post.post", document_id="p1", locale="en")
    _done(record, created=True, publish=True)

    assert record.state is EntryState.DONE
    assert record.created is True
    assert record.terminal


def test_invalid_transition_raises():
    record = EntryRecord(uid="api::post.post", document_id="p1", locale="en")
    with pytest.raises(ValueError, match="pending -> linked"):
        record.advance(EntryState.LINKED)

    record.advance(EntryState.UPDATED)
    record.advance(EntryState.LINKED)
    record.advance(EntryState.DONE)
    with pytest.raises(ValueError):
        record.advance(EntryState.PUBLISHED)


def test_fail_keeps_first_cause():
    record = EntryRecord(uid="api::post.post", document_id="p1", locale="en")
    record.fail("first")
    record.fail("second")
    assert record.state is EntryState.FAILED
    assert record.error == "first"
    assert record.terminal


def test_records_are_keyed_by_document_and_locale():
    ctx = ImporterRunContext(run_id="r1")

    en = ctx.record_for("api::post.post", "p1", "en", 0)
    assert ctx.record_for("api::post.post", "p1", "en", 5) is en
    assert ctx.record_for("api::post.post", "p1", "fr", 1) is not en
    # Entries without an identifier are keyed by position
    assert ctx.record_for("api::post.post", None, "en", 2) is not ctx.record_for("api::post.post", None, "en", 3)
    assert len(ctx.records_for("api::post.post")) == 4
    assert ctx.records_for("api::tag.tag") == []


def test_summary_counts_and_dry_run_summary():
    ctx = ImporterRunContext(run_id="r1", manifest_hash="h", dry_run=True)
    _done(ctx.record_for("api::post.post", "p1", "en", 0), created=True)
    _done(ctx.record_for("api::post.post", "p2", "en", 1), created=False)
    ctx.record_for("api::post.post", "p3", "en", 2).fail("boom")
    ctx.skipped_types.append("api::ghost.ghost")
    ctx.record_action("would-create", "entry", uid="api::post.post", documentId="p1", locale="en")
    ctx.warn("something odd")

    assert ctx.summary_counts() == {
        "entries": 3,
        "created": 1,
        "updated": 1,
        "done": 2,
        "failed": 1,
        "skipped_types": 1,
        "actions": 1,
    }

    summary = ctx.to_summary()
    assert summary["run_id"] == "r1"
    assert summary["manifest_hash"] == "h"
    assert summary["failures"] == [{"uid": "api::post.post", "documentId": "p3", "locale": "en", "error": "boom"}]
    assert summary["actions"][0] == {
        "action": "would-create",
        "kind": "entry",
        "uid": "api::post.post",
        "documentId": "p1",
        "locale": "en",
    }
    assert "cleanup" not in summary


def test_live_summary_omits_actions():
    ctx = ImporterRunContext(run_id="r2")
    ctx.cleanup = {"deleted": 1, "failed": 0, "planned": 1}

    summary = ctx.to_summary()

    assert "actions" not in summary
    assert summary["cleanup"]["deleted"] == 1
