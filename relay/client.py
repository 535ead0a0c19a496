"""Async client for workers consuming the queue API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from relay.models import Claim, Task

_LOGGER = logging.getLogger(__name__)

_MAX_RETRIES = 3
_RETRY_BACKOFF_SECONDS = [1, 3, 9]


class QueueClient:
    """Claims, heartbeats and completes tasks over HTTP."""

    def __init__(
        self,
        base_url: str,
        key: str,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._key = key
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    async def enqueue(
        self,
        chat_id: str,
        account: str | None = None,
        reply_text: str | None = None,
        message_id: str | None = None,
    ) -> Task:
        payload: dict[str, Any] = {"chat_id": chat_id}
        if account:
            payload["account"] = account
        if reply_text:
            payload["reply_text"] = reply_text
        if message_id:
            payload["message_id"] = message_id
        response = await self._post("/tasks/enqueue", payload)
        response.raise_for_status()
        return Task(**response.json()["task"])

    async def claim(self, account: str | None = None) -> Claim | None:
        response = await self._post("/tasks/claim", {"account": account} if account else {})
        response.raise_for_status()
        data = response.json()
        if not data.get("has"):
            return None
        lock = data["lockId"]
        task = Task(
            id=lock.rsplit("__", 1)[-1].split(".", 1)[0],
            account=data.get("Account", ""),
            chat_id=data["ChatId"],
            reply_text=data.get("ReplyText", ""),
            created_at="",
            message_id=data.get("MessageId") or None,
        )
        return Claim(task=task, lock=lock)

    async def heartbeat(self, lock: str) -> bool:
        """Extend a lease; False once the lease is gone."""

        response = await self._post("/tasks/heartbeat", {"lock": lock})
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return True

    async def done(self, lock: str) -> None:
        response = await self._post("/tasks/done", {"lock": lock})
        response.raise_for_status()

    async def requeue(self, lock: str) -> None:
        response = await self._post("/tasks/requeue", {"lock": lock})
        response.raise_for_status()

    async def done_safe(self, lock: str) -> bool:
        """Complete a lease once the reply is visible; False means retry later."""

        response = await self._post("/tasks/doneSafe", {"lock": lock})
        if response.status_code == 428:
            _LOGGER.info("Completion of %s not confirmed yet: %s", lock, response.json())
            return False
        response.raise_for_status()
        return True

    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        body = {**payload, "key": self._key}
        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            for attempt in range(_MAX_RETRIES + 1):
                last_attempt = attempt == _MAX_RETRIES
                try:
                    response = await client.post(path, json=body)
                except httpx.TransportError:
                    if last_attempt:
                        raise
                else:
                    if response.status_code < 500 or last_attempt:
                        return response
                wait = _RETRY_BACKOFF_SECONDS[attempt]
                _LOGGER.warning(
                    "Queue request %s failed, retrying in %ds (attempt %d/%d)",
                    path,
                    wait,
                    attempt + 1,
                    _MAX_RETRIES,
                )
                await asyncio.sleep(wait)
        raise RuntimeError(f"Queue request {path} exhausted retries")
