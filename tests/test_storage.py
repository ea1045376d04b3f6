"""Tests for omcm.storage."""

import json

from omcm.storage import append_jsonl, atomic_write_json, locked_update, read_json_file, read_jsonl


class TestJsonFiles:
    def test_missing_file_reads_none(self, tmp_path):
        assert read_json_file(tmp_path / "nope.json") is None

    def test_corrupt_file_reads_none(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        assert read_json_file(path) is None

    def test_atomic_write_leaves_no_temp_files(self, tmp_path):
        path = tmp_path / "state" / "doc.json"
        atomic_write_json(path, {"a": 1})
        assert json.loads(path.read_text()) == {"a": 1}
        assert [p.name for p in path.parent.iterdir()] == ["doc.json"]

    def test_locked_update_starts_from_default(self, tmp_path):
        path = tmp_path / "doc.json"
        with locked_update(path, lambda: {"count": 0}) as doc:
            doc["count"] += 1
        with locked_update(path, lambda: {"count": 0}) as doc:
            doc["count"] += 1
        assert read_json_file(path) == {"count": 2}

    def test_locked_update_replaces_corrupt_document(self, tmp_path):
        path = tmp_path / "doc.json"
        path.write_text("[1, 2")
        with locked_update(path, dict) as doc:
            doc["ok"] = True
        assert read_json_file(path) == {"ok": True}

    def test_locked_update_does_not_write_on_error(self, tmp_path):
        path = tmp_path / "doc.json"
        atomic_write_json(path, {"v": 1})
        try:
            with locked_update(path, dict) as doc:
                doc["v"] = 2
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert read_json_file(path) == {"v": 1}


class TestJsonl:
    def test_append_and_read_skips_bad_lines(self, tmp_path):
        path = tmp_path / "log.jsonl"
        append_jsonl(path, {"n": 1})
        with open(path, "a") as f:
            f.write("garbage\n\n")
        append_jsonl(path, {"n": 2})
        assert [e["n"] for e in read_jsonl(path)] == [1, 2]

    def test_read_missing_file(self, tmp_path):
        assert read_jsonl(tmp_path / "none.jsonl") == []
