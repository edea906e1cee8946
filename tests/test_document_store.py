"""Tests for the JSON directory document store."""

from __future__ import annotations

import asyncio
import json
from datetime import date, datetime

import pytest

from lifelog_search.document_store import JsonDocumentStore, parse_document
from lifelog_search.service_interfaces import DocumentStoreUnavailableError


def _write(path, payload):
    path.write_text(json.dumps(payload), encoding="utf-8")


@pytest.fixture
def data_dir(tmp_path):
    _write(tmp_path / "single.json", {
        "id": "a", "title": "Kayak", "content": "Paddled around the lake", "createdAt": "2024-03-15T09:00:00",
    })
    _write(tmp_path / "many.json", [
        {"id": "b", "markdown": "Lunch notes", "created_at": "2024-03-14T12:30:00", "duration": 900},
        {"id": "no-time", "content": "missing timestamp"},
    ])
    nested = tmp_path / "2024" / "03"
    nested.mkdir(parents=True)
    (nested / "day.jsonl").write_text(
        "\n".join([
            json.dumps({"id": "c", "content": "Evening run", "startTime": "2024-03-13 18:00"}),
            "",
            "{not json",
            json.dumps({"id": "a", "content": "Duplicate id wins last", "createdAt": "2024-03-15T09:00:00"}),
        ]),
        encoding="utf-8",
    )
    (tmp_path / "broken.json").write_text("{", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")
    return tmp_path


def test_parse_document_accepts_export_variants():
    document = parse_document({"id": "x", "markdown": "body", "startTime": "2024-03-01T08:00:00Z", "duration": 60})

    assert document.content == "body"
    assert document.duration_seconds == 60
    assert document.created_date == date(2024, 3, 1)


def test_parse_document_requires_a_timestamp():
    with pytest.raises(ValueError):
        parse_document({"id": "x", "content": "body"})
    with pytest.raises(ValueError):
        parse_document(["not", "a", "dict"])


def test_load_all_reads_json_and_jsonl_recursively(data_dir, caplog):
    documents = asyncio.run(JsonDocumentStore(str(data_dir)).load_all())

    assert [d.id for d in documents] == ["c", "b", "a"]
    by_id = {d.id: d for d in documents}
    assert by_id["b"].content == "Lunch notes"
    assert by_id["b"].duration_seconds == 900
    assert by_id["c"].created_at == datetime(2024, 3, 13, 18, 0)
    assert "Invalid JSON" in caplog.text
    assert "Skipping invalid document" in caplog.text


def test_load_by_date_range_and_load(data_dir):
    store = JsonDocumentStore(str(data_dir))

    pairs = asyncio.run(store.load_by_date_range(date(2024, 3, 14), date(2024, 3, 15)))
    assert sorted(pairs) == [("a", date(2024, 3, 15)), ("b", date(2024, 3, 14))]

    assert asyncio.run(store.load("c", date(2024, 3, 13))).content == "Evening run"
    assert asyncio.run(store.load("c", date(2024, 3, 14))) is None


def test_missing_directory_is_unavailable(tmp_path):
    store = JsonDocumentStore(str(tmp_path / "nope"))
    with pytest.raises(DocumentStoreUnavailableError):
        asyncio.run(store.load_all())
