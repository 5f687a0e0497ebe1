"""
Tests for usage log loading, normalization and merging.
"""

import json
import os
import tempfile
import time
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from ccmeter.storage.loader import (
    MalformedRecordError,
    NoReadableSourcesError,
    default_log_roots,
    load_events,
    load_source,
    parse_record,
)


def _record(timestamp="2025-01-01T10:00:00.000Z", request_id="req-1",
            session_id="session-1", model="claude-sonnet-4-20250514",
            input_tokens=1000, output_tokens=500, cost=None) -> dict:
    record = {
        "timestamp": timestamp,
        "sessionId": session_id,
        "requestId": request_id,
        "message": {
            "id": f"msg-{request_id}",
            "model": model,
            "usage": {
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cache_creation_input_tokens": 0,
                "cache_read_input_tokens": 0,
            },
        },
    }
    if cost is not None:
        record["costUSD"] = cost
    return record


class TestParseRecord:
    """Test normalization of single log records."""

    def test_full_record(self):
        """Verify every field is carried over."""
        event = parse_record(_record(cost=0.25), source="a.jsonl", project="proj")
        assert event.timestamp == datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)
        assert event.session_id == "session-1"
        assert event.request_id == "req-1"
        assert event.message_id == "msg-req-1"
        assert event.model == "claude-sonnet-4-20250514"
        assert event.tokens.input_tokens == 1000
        assert event.tokens.output_tokens == 500
        assert event.precomputed_cost_usd == 0.25
        assert event.project == "proj"

    def test_missing_token_fields_default_to_zero(self):
        data = {"timestamp": "2025-01-01T10:00:00Z", "message": {"usage": {"output_tokens": 7}}}
        event = parse_record(data, fallback_session_id="file-stem")
        assert event.tokens.input_tokens == 0
        assert event.tokens.output_tokens == 7
        assert event.session_id == "file-stem"
        assert event.model is None

    def test_record_without_usage_is_ignored(self):
        """Verify bookkeeping lines yield no event."""
        data = {"timestamp": "2025-01-01T10:00:00Z", "type": "user", "message": {"role": "user"}}
        assert parse_record(data) is None

    def test_offset_timestamp_normalized_to_utc(self):
        data = _record(timestamp="2025-01-01T19:00:00+09:00")
        assert parse_record(data).timestamp == datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)

    def test_error_flag(self):
        data = _record()
        data["isApiErrorMessage"] = True
        assert parse_record(data).is_error_event

    @pytest.mark.parametrize("data", [
        [],
        {"message": {"usage": {}}},
        {"timestamp": "yesterday", "message": {"usage": {}}},
        _record(input_tokens=-5),
        _record(input_tokens="many"),
        _record(cost=-1.0),
        _record(cost=float("nan")),
        _record(cost=float("inf")),
    ])
    def test_malformed_records_raise(self, data):
        with pytest.raises(MalformedRecordError):
            parse_record(data)


class TestLoadSource:
    """Test reading files and directories."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_log(self, lines, project="proj", filename="session-1.jsonl") -> str:
        directory = os.path.join(self.temp_dir, project)
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, filename)
        with open(path, "w", encoding="utf-8") as f:
            for line in lines:
                f.write(line if isinstance(line, str) else json.dumps(line))
                f.write("\n")
        return path

    def test_directory_source(self):
        """Verify all JSONL files under a directory are read."""
        self._write_log([_record(request_id="a")], project="alpha")
        self._write_log([_record(request_id="b")], project="beta")
        result = load_source(self.temp_dir)
        assert result.readable
        assert sorted(e.project for e in result.events) == ["alpha", "beta"]

    def test_malformed_lines_are_counted_and_skipped(self):
        """Verify bad lines never abort the load."""
        path = self._write_log([
            _record(request_id="a"),
            "{not json",
            {"timestamp": "bad", "message": {"usage": {}}},
            "",
            {"timestamp": "2025-01-01T10:00:00Z", "type": "summary"},
            _record(request_id="b"),
        ])
        result = load_source(path)
        assert result.readable
        assert len(result.events) == 2
        assert result.malformed_count == 2
        assert result.ignored_count == 1

    def test_non_finite_cost_is_malformed(self):
        """NaN and Infinity costs are counted as malformed, not loaded."""
        path = self._write_log([
            '{"timestamp": "2025-01-01T10:00:00Z", "costUSD": NaN, '
            '"message": {"usage": {"input_tokens": 1}}}',
            '{"timestamp": "2025-01-01T10:00:00Z", "costUSD": Infinity, '
            '"message": {"usage": {"input_tokens": 1}}}',
            _record(cost=0.5),
        ])
        result = load_source(path)
        assert result.malformed_count == 2
        assert [e.precomputed_cost_usd for e in result.events] == [0.5]

    def test_missing_source_is_a_failure(self):
        result = load_source(os.path.join(self.temp_dir, "nope"))
        assert not result.readable
        assert result.failures[0].reason == "not found"

    def test_empty_directory_is_readable(self):
        """An existing directory with no logs is readable but empty."""
        result = load_source(self.temp_dir)
        assert result.readable
        assert result.events == []


class TestLoadEvents:
    """Test merging multiple sources."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_file(self, name, records) -> str:
        path = os.path.join(self.temp_dir, name)
        with open(path, "w", encoding="utf-8") as f:
            for record in records:
                f.write(json.dumps(record) + "\n")
        return path

    def test_duplicates_across_sources_collapse(self):
        """Verify the same request seen twice counts once."""
        first = self._write_file("a.jsonl", [_record(request_id="r1"), _record(request_id="r2")])
        second = self._write_file("b.jsonl", [_record(request_id="r1")])
        result = load_events([first, second])
        assert len(result.events) == 2
        assert result.duplicate_count == 1
        assert result.events[0].source == first

    def test_loading_twice_is_idempotent(self):
        """Verify adding an already merged source changes nothing."""
        path = self._write_file("a.jsonl", [_record(request_id="r1"), _record(request_id="r2")])
        once = load_events([path])
        twice = load_events([path, path])
        assert once.events == twice.events

    def test_fallback_key_without_request_id(self):
        """Records without request ids are keyed by session, time and model."""
        path = self._write_file("a.jsonl", [
            _record(request_id=None),
            _record(request_id=None),
            _record(request_id=None, timestamp="2025-01-01T10:00:01Z"),
        ])
        result = load_events([path])
        assert len(result.events) == 2

    def test_events_sorted_by_timestamp(self):
        path = self._write_file("a.jsonl", [
            _record(request_id="late", timestamp="2025-01-01T12:00:00Z"),
            _record(request_id="early", timestamp="2025-01-01T09:00:00Z"),
        ])
        result = load_events([path])
        assert [e.request_id for e in result.events] == ["early", "late"]

    def test_unreadable_source_reported_alongside_data(self):
        """Verify partial results are returned with a failure entry."""
        good = self._write_file("a.jsonl", [_record()])
        missing = os.path.join(self.temp_dir, "missing")
        result = load_events([good, missing])
        assert result.ok
        assert len(result.events) == 1
        assert [f.source for f in result.failures] == [missing]

    def test_no_readable_source(self):
        """Verify the no-readable-sources condition is distinguishable."""
        result = load_events([os.path.join(self.temp_dir, "missing")])
        assert not result.ok
        with pytest.raises(NoReadableSourcesError):
            result.raise_for_status()

    def test_slow_source_times_out(self):
        """Verify a hung source becomes a failure instead of blocking."""
        path = self._write_file("a.jsonl", [_record()])

        def slow_load(source):
            time.sleep(0.5)
            return load_source(source)

        with patch("ccmeter.storage.loader.load_source", side_effect=slow_load):
            result = load_events([path], timeout=0.05)
        assert not result.ok
        assert result.failures[0].reason == "timed out"

    def test_source_exception_becomes_failure(self):
        path = self._write_file("a.jsonl", [_record()])
        with patch("ccmeter.storage.loader.load_source", side_effect=RuntimeError("boom")):
            result = load_events([path])
        assert not result.ok
        assert result.failures[0].reason == "boom"


class TestDefaultLogRoots:
    """Test discovery of log directories."""

    def test_config_dir_env(self):
        temp_dir = tempfile.mkdtemp()
        try:
            os.makedirs(os.path.join(temp_dir, "projects"))
            with patch.dict(os.environ, {"CLAUDE_CONFIG_DIR": temp_dir}):
                roots = default_log_roots()
            assert [str(r) for r in roots] == [os.path.join(temp_dir, "projects")]
        finally:
            import shutil
            shutil.rmtree(temp_dir, ignore_errors=True)
