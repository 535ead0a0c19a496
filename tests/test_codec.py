import json

import pytest

from relay.codec import decode_task, encode_task
from relay.models import Task


def test_decode_reads_records_without_lease_fields():
    raw = json.dumps(
        {
            "id": "abc",
            "account": "hr-main",
            "chat_id": 123,
            "reply_text": "Hi",
            "message_id": None,
            "created_at": "2026-03-01T12:00:00+00:00",
        }
    )

    task = decode_task(raw)

    assert task == Task(id="abc", account="hr-main", chat_id="123", reply_text="Hi", created_at="2026-03-01T12:00:00+00:00")


def test_encode_keeps_non_ascii_text():
    task = Task(id="1", account="a", chat_id="2", reply_text="Здравствуйте!", created_at="t")

    assert "Здравствуйте!" in encode_task(task)
    assert decode_task(encode_task(task)) == task


@pytest.mark.parametrize(
    "raw",
    [
        "[]",
        "{not json",
        json.dumps({"id": "1", "account": "a", "reply_text": "", "created_at": "t"}),
        json.dumps({"id": "1", "account": "a", "chat_id": " ", "reply_text": "", "created_at": "t"}),
    ],
)
def test_decode_rejects_invalid_records(raw):
    with pytest.raises(ValueError):
        decode_task(raw)
