"""Task record (de)serialization."""

from __future__ import annotations

import json

from relay.models import Task

_FIELDS = ("id", "account", "chat_id", "reply_text", "created_at")


def encode_task(task: Task) -> str:
    return json.dumps(task.to_dict(), ensure_ascii=False, indent=2)


def decode_task(raw: str) -> Task:
    """Parse a stored record.

    Raises:
        ValueError: the record is not a JSON object, misses a field or has an
            empty chat_id.
    """
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("Task record must be a JSON object")
    missing = [name for name in _FIELDS if name not in data]
    if missing:
        raise ValueError(f"Task record is missing fields: {', '.join(missing)}")
    chat_id = str(data["chat_id"] or "").strip()
    if not chat_id:
        raise ValueError("Task record has an empty chat_id")

    message_id = data.get("message_id")
    return Task(
        id=str(data["id"]),
        account=str(data["account"]),
        chat_id=chat_id,
        reply_text=str(data["reply_text"] or ""),
        created_at=str(data["created_at"]),
        message_id=str(message_id) if message_id not in (None, "") else None,
        leased_at=data.get("leased_at"),
        heartbeat_at=data.get("heartbeat_at"),
    )
