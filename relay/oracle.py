"""Outbound-reply confirmation against the recent activity log window.

The lookup only covers the tails of the newest partitions, so a reply logged
long ago (or in an older partition) is reported as unconfirmed.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterator

from relay.activity_log import ActivityLog
from relay.models import Confirmation

LOGGER = logging.getLogger(__name__)

WEBHOOK_RECORD = "webhook"


class ConfirmationOracle:
    """Looks for an outbound text message in a conversation."""

    def __init__(self, log: ActivityLog, scan_files: int, tail_bytes: int) -> None:
        self._log = log
        self._scan_files = scan_files
        self._tail_bytes = tail_bytes

    def check(self, chat_id: str, author_id: str | int | None = None) -> Confirmation:
        chat_id = str(chat_id).strip()
        wanted_author = _as_int(author_id) if author_id not in (None, "") else None
        tails = self._log.recent_tails(self._scan_files, self._tail_bytes)
        sources = [tail.name for tail in tails]
        if author_id not in (None, "") and wanted_author is None:
            return Confirmation(confirmed=False, sources=sources)

        for tail in tails:
            if chat_id not in tail.text:
                continue
            for value in _message_values(tail.text):
                if _is_outbound_text(value, chat_id, wanted_author):
                    LOGGER.info("Outbound reply for chat %s confirmed in %s", chat_id, tail.name)
                    return Confirmation(confirmed=True, sources=sources)
        return Confirmation(confirmed=False, sources=sources)


def _message_values(text: str) -> Iterator[dict[str, Any]]:
    """Yield ``payload.value`` of every webhook record in a log tail."""

    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            # The first line of a tail is usually cut in half.
            continue
        if not isinstance(record, dict) or record.get("kind") != WEBHOOK_RECORD:
            continue
        body = record.get("body")
        payload = body.get("payload") if isinstance(body, dict) else None
        value = payload.get("value") if isinstance(payload, dict) else None
        if isinstance(value, dict):
            yield value


def _is_outbound_text(value: dict[str, Any], chat_id: str, author_id: int | None) -> bool:
    if str(value.get("chat_id", "")).strip() != chat_id:
        return False
    if value.get("type") != "text":
        return False
    author = _as_int(value.get("author_id"))
    if author is None or author <= 0:
        return False
    return author_id is None or author == author_id


def _as_int(raw: object) -> int | None:
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return None
