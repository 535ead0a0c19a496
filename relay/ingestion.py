"""Webhook ingestion: log, verify, classify and enqueue.

Two independent rules turn an inbound event into a task:

* job flow: a system event tagged with the job flow id always enqueues;
* candidate response: a system event whose text looks like a candidate's
  response enqueues only for the first such event of the day per chat when
  first-only mode is on.
"""

from __future__ import annotations

import hmac
import logging
import re
from typing import Any, Mapping

from relay.activity_log import ActivityLog
from relay.dedup import DedupMarkers
from relay.errors import Forbidden
from relay.models import InboundEvent, Task
from relay.queue import TaskQueue

LOGGER = logging.getLogger(__name__)

SECRET_HEADER = "x-avito-secret"
SIGNATURE_HEADER = "x-avito-signature"


def parse_event(body: Mapping[str, Any] | None) -> InboundEvent:
    """Normalize ``payload.value`` of a webhook body."""

    payload = body.get("payload") if isinstance(body, Mapping) else None
    value = payload.get("value") if isinstance(payload, Mapping) else None
    if not isinstance(value, Mapping):
        return InboundEvent()
    content = value.get("content")
    if not isinstance(content, Mapping):
        content = {}

    message_id = value.get("id")
    return InboundEvent(
        type=str(value.get("type") or ""),
        text=str(content.get("text") or ""),
        flow_id=str(content.get("flow_id") or ""),
        chat_id=str(value.get("chat_id") or "").strip(),
        message_id=str(message_id) if message_id not in (None, "") else None,
    )


def is_job_flow(event: InboundEvent, job_flow_id: str) -> bool:
    return event.is_system and bool(event.chat_id) and event.flow_id == job_flow_id


def is_candidate_response(event: InboundEvent, pattern: re.Pattern[str]) -> bool:
    return event.is_system and bool(event.chat_id) and pattern.search(event.text) is not None


class IngestionGate:
    """Turns webhook deliveries into tasks; never fails the sender."""

    def __init__(
        self,
        queue: TaskQueue,
        log: ActivityLog,
        markers: DedupMarkers,
        *,
        default_reply: str,
        candidate_pattern: str,
        job_flow_id: str = "job",
        webhook_secret: str = "",
    ) -> None:
        self._queue = queue
        self._log = log
        self._markers = markers
        self._default_reply = default_reply
        self._candidate_pattern = re.compile(candidate_pattern, re.IGNORECASE)
        self._job_flow_id = job_flow_id
        self._webhook_secret = webhook_secret

    def handle(self, account: str, headers: Mapping[str, str], body: Any) -> Task | None:
        """Process one delivery.

        Returns the created task, if any. Only a failed secret check raises.

        Raises:
            Forbidden: a webhook secret is configured and the delivery does
                not carry it.
        """
        self.record(account, headers, body)
        self.verify(headers, body)
        try:
            return self.process(account, parse_event(body))
        except Exception:  # noqa: BLE001
            LOGGER.exception("Ingestion failed for account %s", account)
            return None

    def record(self, account: str, headers: Mapping[str, str], body: Any) -> None:
        try:
            self._log.append("webhook", account=account, headers=dict(headers), body=body)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Could not log webhook delivery for %s", account)

    def verify(self, headers: Mapping[str, str], body: Any) -> None:
        if not self._webhook_secret:
            return
        lowered = {key.lower(): str(value) for key, value in headers.items()}
        supplied = lowered.get(SECRET_HEADER, "")
        if not supplied and isinstance(body, Mapping):
            supplied = str(body.get("secret") or "")
        if supplied and hmac.compare_digest(supplied.encode(), self._webhook_secret.encode()):
            return
        # Signed deliveries are accepted on presence of the signature for now.
        if lowered.get(SIGNATURE_HEADER, "").strip():
            return
        raise Forbidden("forbidden")

    def process(self, account: str, event: InboundEvent) -> Task | None:
        if is_job_flow(event, self._job_flow_id):
            return self._enqueue(account, event)
        if is_candidate_response(event, self._candidate_pattern):
            if self._markers.first_seen(account, event.chat_id):
                return self._enqueue(account, event)
        return None

    def _enqueue(self, account: str, event: InboundEvent) -> Task:
        return self._queue.create(
            account=account,
            chat_id=event.chat_id,
            reply_text=self._default_reply,
            message_id=event.message_id,
        )
