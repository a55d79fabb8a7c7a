import json
import logging
from pathlib import Path

import pytest

from keep_to_dynalist.dynalist_client import DynalistApiError, DynalistResponse
from keep_to_dynalist.exporter import (
    AttachmentNotFoundError,
    ExportSettings,
    RunSummary,
    build_note_content,
    content_preview,
    export_note,
    migrate_file,
    migrate_folder,
    normalize_labels,
    resolve_attachment,
    shorten_filename,
    synthesize_title,
)
from keep_to_dynalist.parser import Attachment, KeepNote, Label
from keep_to_dynalist.storage import StorageError


class RecordingClient:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def add_to_inbox(self, token, content, note=""):
        self.calls.append((token, content, note))
        if self.fail:
            raise DynalistApiError("dynalist API error: bad token", code="InvalidToken", attempts=3)
        return DynalistResponse(code="Ok", node_id="node-1")


class DummyUploader:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.uploaded = []

    def upload(self, path, mimetype=""):
        if path.name in self.fail_for:
            raise StorageError(f"failed to upload {path.name}")
        self.uploaded.append((path, mimetype))
        return f"https://cdn.example.com/{path.name}"


def _note(tmp_path, **overrides):
    base = dict(title="T", text_content="B", path=tmp_path / "note.json")
    base.update(overrides)
    return KeepNote(**base)


def _write_note(folder, name, data):
    path = folder / name
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def test_normalize_labels_preserves_order_and_duplicates():
    labels = [Label("Work"), Label("A B"), Label("Work")]
    assert normalize_labels(labels) == "#Work #A_B #Work"


def test_normalize_labels_every_tag_is_prefixed_and_space_free():
    names = ["to do", "x  y", "plain", "c++ stuff"]
    tags = normalize_labels(names).split(" ")
    assert len(tags) == len(names)
    assert all(tag.startswith("#") for tag in tags)
    assert tags == ["#to_do", "#x__y", "#plain", "#c++_stuff"]


def test_normalize_labels_empty():
    assert normalize_labels([]) == ""


def test_shorten_filename_strips_extension_and_timestamp():
    assert shorten_filename("/x/2019-03-05T12_34_56.789-05_00.json") == "Untitled"
    assert shorten_filename("Groceries - 2021-07-01 10:15:00.json") == "Groceries"
    assert shorten_filename("Shopping list.json") == "Shopping list"


def test_shorten_filename_truncates_long_names():
    assert shorten_filename("A very long note file name.json") == "A very long note fil..."


def test_content_preview_takes_two_non_empty_lines():
    text = "\n  first line  \n\nsecond line that is definitely longer than thirty\nthird"
    assert content_preview(text) == "first line | second line that is definitely..."


def test_synthesize_title_uses_existing_title(tmp_path):
    note = _note(tmp_path, title="Existing", text_content="Body")
    assert synthesize_title(note, "#Work") == "gkeep: Existing #Work"


def test_synthesize_title_derives_from_filename_and_body(tmp_path):
    note = _note(tmp_path, title="", text_content="Milk\nEggs\nBread", path=tmp_path / "Groceries.json")
    assert synthesize_title(note) == "gkeep: Groceries: Milk | Eggs"


def test_synthesize_title_without_body_uses_filename_only(tmp_path):
    note = _note(tmp_path, title="", text_content="", path=tmp_path / "Groceries.json")
    assert synthesize_title(note, "#x") == "gkeep: Groceries #x"


def test_synthesize_title_note_mode_keeps_hashtags_out_of_title(tmp_path):
    note = _note(tmp_path)
    assert synthesize_title(note, "#Work", hashtag_mode="note") == "gkeep: T"


def test_build_note_content_layout():
    content = build_note_content(
        "Body", ["[a.png](https://cdn/a.png)"], "#Work", hashtag_mode="note"
    )
    assert content == "Body\n\nAttachments:\n[a.png](https://cdn/a.png)\n\n#Work"


def test_build_note_content_title_mode_leaves_hashtags_out():
    assert build_note_content("Body", [], "#Work") == "Body"


def test_resolve_attachment(tmp_path):
    (tmp_path / "a.png").write_bytes(b"png")
    assert resolve_attachment(tmp_path, "a.png") == tmp_path / "a.png"
    with pytest.raises(AttachmentNotFoundError):
        resolve_attachment(tmp_path, "missing.png")


def test_export_note_round_trip_title_mode(tmp_path):
    note = _note(tmp_path, labels=(Label("Work"), Label("A B")))
    client = RecordingClient()

    result = export_note(note, tmp_path, ExportSettings(token="tok"), client=client)

    assert result.status == "delivered"
    assert result.node_id == "node-1"
    assert client.calls == [("tok", "gkeep: T #Work #A_B", "B")]
    assert result.payload["content"].endswith("#Work #A_B")


def test_export_note_round_trip_note_mode(tmp_path):
    note = _note(tmp_path, labels=(Label("Work"), Label("A B")))
    client = RecordingClient()

    export_note(note, tmp_path, ExportSettings(token="tok", hashtag_mode="note"), client=client)

    assert client.calls == [("tok", "gkeep: T", "B\n\n#Work #A_B")]


def test_export_note_skips_missing_and_failed_attachments(tmp_path):
    (tmp_path / "a.png").write_bytes(b"a")
    (tmp_path / "b.png").write_bytes(b"b")
    note = _note(
        tmp_path,
        attachments=(
            Attachment("a.png", "image/png"),
            Attachment("gone.png", "image/png"),
            Attachment("b.png", "image/png"),
        ),
    )
    client = RecordingClient()
    uploader = DummyUploader(fail_for={"b.png"})

    result = export_note(note, tmp_path, ExportSettings(token="tok"), client=client, uploader=uploader)

    assert result.status == "delivered"
    assert result.missing_attachments == ["gone.png"]
    assert result.failed_uploads == ["b.png"]
    assert uploader.uploaded == [(tmp_path / "a.png", "image/png")]
    _, _, body = client.calls[0]
    assert body == "B\n\nAttachments:\n[a.png](https://cdn.example.com/a.png)"


def test_export_note_delivery_failure_is_reported(tmp_path):
    result = export_note(_note(tmp_path), tmp_path, ExportSettings(token="tok"), client=RecordingClient(fail=True))

    assert result.status == "failed"
    assert "bad token" in result.reason


def test_export_note_dry_run_makes_no_call(tmp_path):
    client = RecordingClient()

    result = export_note(_note(tmp_path), tmp_path, ExportSettings(dry_run=True), client=client)

    assert result.status == "dry_run"
    assert result.payload == {"content": "gkeep: T", "note": "B"}
    assert client.calls == []


def test_export_note_writes_payload_to_debug_logger(tmp_path, caplog):
    debug_logger = logging.getLogger("keep_to_dynalist.debug.test")
    with caplog.at_level("INFO", logger="keep_to_dynalist.debug.test"):
        export_note(_note(tmp_path), tmp_path, ExportSettings(dry_run=True), debug_logger=debug_logger)
    assert "Payload for" in caplog.text


def test_migrate_file_skips_archived_without_network(tmp_path):
    path = _write_note(tmp_path, "a.json", {"title": "x", "textContent": "y", "isArchived": True})
    client = RecordingClient()

    result = migrate_file(path, tmp_path, ExportSettings(token="tok"), client=client)

    assert result.status == "skipped"
    assert result.reason == "archived"
    assert client.calls == []


def test_migrate_file_skips_malformed_json(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")

    result = migrate_file(path, tmp_path, ExportSettings(token="tok"), client=RecordingClient())

    assert result.status == "skipped"
    assert "failed to decode JSON" in result.reason


def test_migrate_folder_continues_past_bad_records(tmp_path):
    _write_note(tmp_path, "1.json", {"title": "one", "textContent": "a"})
    (tmp_path / "2.json").write_text("[[[", encoding="utf-8")
    _write_note(tmp_path, "3.json", {"title": "three", "textContent": "c", "isArchived": True})
    nested = tmp_path / "sub"
    nested.mkdir()
    _write_note(nested, "4.json", {"title": "four", "textContent": "d"})
    (tmp_path / "image.png").write_bytes(b"x")
    client = RecordingClient()
    seen = []

    summary = migrate_folder(
        tmp_path,
        ExportSettings(token="tok"),
        client=client,
        summary=RunSummary(total_notes=4),
        on_result=lambda result, _summary: seen.append(result.path.name),
    )

    assert seen == ["1.json", "2.json", "3.json", "4.json"]
    assert [content for _, content, _ in client.calls] == ["gkeep: one", "gkeep: four"]
    assert summary.processed_notes == 2
    assert summary.skipped_notes == 2
    assert summary.failed_notes == 0
    assert summary.handled == 4


def test_migrate_folder_counts_delivery_failures(tmp_path):
    _write_note(tmp_path, "1.json", {"title": "one", "textContent": "a"})

    summary = migrate_folder(tmp_path, ExportSettings(token="tok"), client=RecordingClient(fail=True))

    assert summary.failed_notes == 1
    assert summary.processed_notes == 0


def test_synthesized_title_is_deterministic(tmp_path):
    note = _note(tmp_path, title="", text_content="line", path=Path("x/My note.json"))
    assert synthesize_title(note, "#a") == synthesize_title(note, "#a") == "gkeep: My note: line #a"


def test_overlong_attachment_path_counts_as_missing(tmp_path):
    long_name = "a" * 300 + ".png"
    _write_note(
        tmp_path,
        "1.json",
        {"title": "one", "textContent": "a", "attachments": [{"filePath": long_name, "mimetype": "image/png"}]},
    )
    _write_note(tmp_path, "2.json", {"title": "two", "textContent": "b"})
    client = RecordingClient()
    results = []

    with pytest.raises(AttachmentNotFoundError):
        resolve_attachment(tmp_path, long_name)
    summary = migrate_folder(
        tmp_path,
        ExportSettings(token="tok"),
        client=client,
        uploader=DummyUploader(),
        on_result=lambda result, _summary: results.append(result),
    )

    assert summary.processed_notes == 2
    assert results[0].missing_attachments == [long_name]
    assert [content for _, content, _ in client.calls] == ["gkeep: one", "gkeep: two"]
