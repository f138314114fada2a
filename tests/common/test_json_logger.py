import io
import json

import pytest

from hns_sync.common.json_logger import JsonLogger, log_event, timed_event


def _events(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


class _Recorder:
    def __init__(self):
        self.payloads = []

    def record_log_event(self, payload):
        self.payloads.append(payload)


def test_bound_logger_shares_stream_and_adds_context():
    stream = io.StringIO()
    logger = JsonLogger(run_id="run-1", stream=stream, log_file_path=None)
    child = logger.bind(user_id="u1")

    log_event(logger=child, phase="scan", message="Stage finished: ok", found=2)
    log_event(logger=logger, phase="sync", status="warn", message="paused")

    first, second = _events(stream)
    assert first["run_id"] == "run-1"
    assert first["user_id"] == "u1"
    assert first["found"] == 2
    assert "user_id" not in second
    assert second["status"] == "warn"


def test_recorder_sees_payload_and_close_stops_output():
    stream = io.StringIO()
    logger = JsonLogger(run_id="run-1", stream=stream, log_file_path=None)
    recorder = _Recorder()
    logger.attach_recorder(recorder)
    child = logger.bind(user_id="u1")

    log_event(logger=child, phase="trips", message="Trip saved", date="2026-10-16")
    logger.close()
    log_event(logger=child, phase="trips", message="after close")

    assert [payload["message"] for payload in recorder.payloads] == ["Trip saved"]
    assert len(_events(stream)) == 1
    assert child.closed


def test_log_file_receives_events(tmp_path):
    path = tmp_path / "logs" / "sync.jsonl"
    logger = JsonLogger(run_id="run-1", stream=io.StringIO(), log_file_path=str(path))

    log_event(logger=logger, phase="sync", message="Sync started")
    logger.close()

    assert json.loads(path.read_text(encoding="utf-8").strip())["message"] == "Sync started"


def test_timed_event_logs_failure_and_reraises():
    stream = io.StringIO()
    logger = JsonLogger(run_id="run-1", stream=stream, log_file_path=None)

    with pytest.raises(RuntimeError):
        with timed_event(logger=logger, phase="download", message="Order download"):
            raise RuntimeError("boom")

    (event,) = _events(stream)
    assert event["status"] == "error"
    assert event["message"] == "Order download failed: boom"
    assert event["exc_type"] == "RuntimeError"
