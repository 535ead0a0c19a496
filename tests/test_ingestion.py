import json
import re
from unittest.mock import MagicMock

import pytest

from relay.activity_log import ActivityLog
from relay.dedup import DedupMarkers
from relay.errors import Forbidden
from relay.ingestion import IngestionGate, is_candidate_response, is_job_flow, parse_event
from relay.models import InboundEvent
from relay.queue import TaskQueue
from relay.storage import StorageDirectory

CANDIDATE_PATTERN = "кандидат|отклик|откликнулся"


def _body(type_: str = "system", text: str = "", flow_id: str | None = None, chat_id: str = "42") -> dict:
    content: dict = {"text": text}
    if flow_id is not None:
        content["flow_id"] = flow_id
    return {"payload": {"type": "message", "value": {"id": "m-1", "type": type_, "chat_id": chat_id, "content": content}}}


def _gate(tmp_path, secret: str = "", enabled: bool = True, queue=None) -> tuple[IngestionGate, TaskQueue]:
    storage = StorageDirectory(tmp_path / "tasks")
    log = ActivityLog(tmp_path / "logs")
    queue = queue or TaskQueue(storage, log, MagicMock(), default_reply="Hello!")
    gate = IngestionGate(
        queue,
        log,
        DedupMarkers(storage, enabled=enabled),
        default_reply="Hello!",
        candidate_pattern=CANDIDATE_PATTERN,
        job_flow_id="job",
        webhook_secret=secret,
    )
    return gate, queue


def _tasks(tmp_path) -> list[dict]:
    return [json.loads(p.read_text(encoding="utf-8")) for p in (tmp_path / "tasks").glob("*.json")]


def _log_records(tmp_path) -> list[dict]:
    return [json.loads(line) for p in (tmp_path / "logs").glob("*.log") for line in p.read_text().splitlines()]


class TestParseEvent:
    def test_extracts_envelope_fields(self):
        event = parse_event(_body(text="Новый отклик", flow_id="job", chat_id=" 42 "))

        assert event == InboundEvent(type="system", text="Новый отклик", flow_id="job", chat_id="42", message_id="m-1")

    @pytest.mark.parametrize("body", [None, {}, {"payload": "x"}, {"payload": {"value": []}}])
    def test_malformed_bodies_give_empty_event(self, body):
        assert parse_event(body) == InboundEvent()


class TestRules:
    def test_job_flow_requires_system_chat_and_flow(self):
        assert is_job_flow(InboundEvent(type="system", flow_id="job", chat_id="1"), "job")
        assert not is_job_flow(InboundEvent(type="text", flow_id="job", chat_id="1"), "job")
        assert not is_job_flow(InboundEvent(type="system", flow_id="other", chat_id="1"), "job")
        assert not is_job_flow(InboundEvent(type="system", flow_id="job"), "job")

    def test_candidate_response_matches_pattern_case_insensitively(self):
        pattern = re.compile(CANDIDATE_PATTERN, re.IGNORECASE)

        assert is_candidate_response(InboundEvent(type="system", text="Кандидат ответил", chat_id="1"), pattern)
        assert not is_candidate_response(InboundEvent(type="system", text="Привет", chat_id="1"), pattern)
        assert not is_candidate_response(InboundEvent(type="text", text="отклик", chat_id="1"), pattern)


class TestHandle:
    def test_job_flow_bypasses_dedup(self, tmp_path):
        gate, _ = _gate(tmp_path)

        gate.handle("acc", {}, _body(flow_id="job", chat_id="42"))
        gate.handle("acc", {}, _body(flow_id="job", chat_id="42"))

        tasks = _tasks(tmp_path)
        assert len(tasks) == 2
        assert {t["chat_id"] for t in tasks} == {"42"}
        assert {t["reply_text"] for t in tasks} == {"Hello!"}

    def test_candidate_response_is_enqueued_once(self, tmp_path):
        gate, _ = _gate(tmp_path)

        first = gate.handle("acc", {}, _body(text="Новый отклик на вакансию", chat_id="42"))
        second = gate.handle("acc", {}, _body(text="Новый отклик на вакансию", chat_id="42"))

        assert first is not None and first.message_id == "m-1"
        assert second is None
        assert len(_tasks(tmp_path)) == 1

    def test_candidate_response_without_dedup_always_enqueues(self, tmp_path):
        gate, _ = _gate(tmp_path, enabled=False)

        gate.handle("acc", {}, _body(text="отклик", chat_id="42"))
        gate.handle("acc", {}, _body(text="отклик", chat_id="42"))

        assert len(_tasks(tmp_path)) == 2

    def test_job_flow_does_not_consume_dedup_marker(self, tmp_path):
        gate, _ = _gate(tmp_path)

        gate.handle("acc", {}, _body(text="отклик", flow_id="job", chat_id="42"))
        gate.handle("acc", {}, _body(text="отклик", chat_id="42"))

        assert len(_tasks(tmp_path)) == 2

    def test_unrelated_events_are_only_logged(self, tmp_path):
        gate, _ = _gate(tmp_path)

        assert gate.handle("acc", {}, _body(type_="text", text="отклик")) is None
        assert gate.handle("acc", {}, {"unexpected": True}) is None

        assert _tasks(tmp_path) == []
        assert [r["body"] for r in _log_records(tmp_path)] == [_body(type_="text", text="отклик"), {"unexpected": True}]

    def test_queue_failures_are_swallowed(self, tmp_path):
        queue = MagicMock()
        queue.create.side_effect = OSError("disk full")
        gate, _ = _gate(tmp_path, queue=queue)

        assert gate.handle("acc", {}, _body(flow_id="job")) is None
        queue.create.assert_called_once()

    def test_log_failure_does_not_block_processing(self, tmp_path):
        gate, _ = _gate(tmp_path)
        gate._log = MagicMock()
        gate._log.append.side_effect = OSError("read-only")

        assert gate.handle("acc", {}, _body(flow_id="job")) is not None


class TestSecret:
    def test_disabled_without_secret(self, tmp_path):
        gate, _ = _gate(tmp_path)

        gate.verify({}, {})

    def test_matching_header_or_body_secret_passes(self, tmp_path):
        gate, _ = _gate(tmp_path, secret="s3cret")

        gate.verify({"X-Avito-Secret": "s3cret"}, {})
        gate.verify({}, {"secret": "s3cret"})

    def test_signature_presence_passes(self, tmp_path):
        gate, _ = _gate(tmp_path, secret="s3cret")

        gate.verify({"x-avito-signature": "abc"}, {})

    def test_wrong_secret_is_forbidden_but_logged(self, tmp_path):
        gate, _ = _gate(tmp_path, secret="s3cret")

        with pytest.raises(Forbidden):
            gate.handle("acc", {"x-avito-secret": "nope"}, _body(flow_id="job"))

        assert len(_log_records(tmp_path)) == 1
        assert _tasks(tmp_path) == []
