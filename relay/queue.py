"""File-backed task queue with rename-based leases.

A task is one JSON record in the storage directory. Its lifecycle state is
its name:

    {account}__{id}.json                 available to any claimer
    {account}__{id}.json.taking          leased; the name is the lock token
    {account}__{id}.json.taking.corrupt  undecodable, kept aside for inspection

Only a claimer quarantines, and only after the record it just leased fails to
decode twice. Requeue and reclamation hand an unreadable lease back as-is.

Claiming renames an available record to its leased name. The rename succeeds
for exactly one process; every other contender finds the source gone and
moves on. The lease clock lives inside the record (``heartbeat_at``) and is
refreshed by heartbeats; leases older than the visibility timeout plus grace
are handed back by the claim-time sweep and by the reaper.

Claim order is best-effort recency: only the newest few candidates are tried
per call, which keeps rename contention bounded when many workers poll at once.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable

from relay.activity_log import ActivityLog
from relay.codec import decode_task, encode_task
from relay.errors import InvalidArgument, NotFound, PreconditionRequired, RelayError
from relay.models import Claim, Confirmation, Reclaimed, Task
from relay.oracle import ConfirmationOracle
from relay.storage import StorageDirectory

LOGGER = logging.getLogger(__name__)

AVAILABLE_SUFFIX = ".json"
LEASED_SUFFIX = ".json.taking"
CORRUPT_SUFFIX = ".corrupt"
SEPARATOR = "__"

_UNSAFE_ACCOUNT_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_SAFE_NAME = re.compile(r"^[\w.\-]+$")
_ONE_MS = timedelta(milliseconds=1)


def sanitize_account(account: str | None, default: str) -> str:
    return _UNSAFE_ACCOUNT_CHARS.sub("_", (account or "").strip() or default)


def leased_name(available: str) -> str:
    return available[: -len(AVAILABLE_SUFFIX)] + LEASED_SUFFIX


def available_name(lock: str) -> str:
    return lock[: -len(LEASED_SUFFIX)] + AVAILABLE_SUFFIX


def validate_lock(lock: str | None) -> str:
    """Return a normalized lock token or raise InvalidArgument."""

    lock = (lock or "").strip()
    if not lock or not lock.endswith(LEASED_SUFFIX) or not _SAFE_NAME.match(lock):
        raise InvalidArgument("lock invalid")
    return lock


class TaskQueue:
    """Create, lease and complete tasks stored in a shared directory."""

    def __init__(
        self,
        storage: StorageDirectory,
        log: ActivityLog,
        oracle: ConfirmationOracle,
        *,
        default_account: str = "hr-main",
        default_reply: str = "",
        stale_after_ms: int = 240_000,
        claim_candidates: int = 3,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._storage = storage
        self._log = log
        self._oracle = oracle
        self._default_account = default_account
        self._default_reply = default_reply
        self._stale_after_ms = stale_after_ms
        self._claim_candidates = max(1, claim_candidates)
        self._clock = clock or _utc_now

    def create(
        self,
        account: str | None,
        chat_id: str | int | None,
        reply_text: str | None = None,
        message_id: str | int | None = None,
    ) -> Task:
        chat = str(chat_id).strip() if chat_id is not None else ""
        if not chat:
            raise InvalidArgument("chat_id required")

        task = Task(
            id=secrets.token_hex(16),
            account=sanitize_account(account, self._default_account),
            chat_id=chat,
            reply_text=reply_text or self._default_reply,
            message_id=str(message_id) if message_id not in (None, "") else None,
            created_at=self._clock().isoformat(),
        )
        name = f"{task.account}{SEPARATOR}{task.id}{AVAILABLE_SUFFIX}"
        self._storage.write_atomic(name, encode_task(task))
        LOGGER.info("Created task %s for chat %s", name, task.chat_id)
        return task

    def claim(self, account: str | None = None) -> Claim | None:
        """Lease the newest claimable task, or sweep stale leases and return None."""

        candidates = self._newest_first(self._storage.list(AVAILABLE_SUFFIX, self._prefix(account)))

        for name in candidates[: self._claim_candidates]:
            lock = leased_name(name)
            try:
                if not self._storage.rename(name, lock):
                    continue
            except OSError:
                LOGGER.warning("Could not lease %s", name, exc_info=True)
                continue
            task = self._stamp_lease(lock)
            if task is not None:
                return Claim(task=task, lock=lock)

        self.reclaim_stale(account=account)
        return None

    def heartbeat(self, lock: str) -> None:
        lock = validate_lock(lock)
        try:
            task = self._read_task(lock)
            stamped = replace(task, heartbeat_at=self._clock().isoformat())
            self._storage.rewrite(lock, encode_task(stamped))
        except FileNotFoundError as exc:
            raise NotFound("not found") from exc
        except ValueError as exc:
            raise RelayError("lock record unreadable") from exc

    def done(self, lock: str) -> None:
        lock = validate_lock(lock)
        if self._storage.delete(lock):
            LOGGER.info("Completed %s", lock)

    def requeue(self, lock: str) -> None:
        lock = validate_lock(lock)
        try:
            self._release(lock)
        except OSError:
            LOGGER.warning("Requeue of %s failed; leaving it to the reaper", lock, exc_info=True)

    def done_safe(self, lock: str) -> Confirmation:
        """Complete a lease only once the reply shows up in the activity log.

        Raises:
            PreconditionRequired: the lock carries no chat id, or no outbound
                reply was found in the scanned window. The lease is kept.
        """
        lock = validate_lock(lock)
        try:
            chat_id = self._read_task(lock).chat_id
        except (OSError, ValueError):
            chat_id = ""
        if not chat_id:
            raise PreconditionRequired("no chat_id in lock")

        confirmation = self._oracle.check(chat_id)
        if not confirmation.confirmed:
            raise PreconditionRequired("not confirmed in logs", sources=confirmation.sources)
        self.done(lock)
        return confirmation

    def reclaim_stale(self, account: str | None = None, source: str = "CLAIM-SWEEP") -> list[Reclaimed]:
        """Hand leases older than the visibility timeout plus grace back to the queue."""

        try:
            locks = self._storage.list(LEASED_SUFFIX, self._prefix(account))
        except OSError:
            LOGGER.exception("Could not list leases in %s", self._storage.root)
            return []

        reclaimed: list[Reclaimed] = []
        now = self._clock()
        for lock in locks:
            try:
                age_ms = (now - self._lease_started(lock)) // _ONE_MS
            except OSError:
                continue
            if age_ms <= self._stale_after_ms:
                continue
            try:
                if not self._release(lock):
                    continue
            except OSError:
                LOGGER.warning("Could not requeue stale lock %s", lock, exc_info=True)
                continue
            reclaimed.append(Reclaimed(lock=lock, age_ms=age_ms))
            self._record_reclaim(source, lock, age_ms)
        return reclaimed

    def list_records(self) -> list[str]:
        self._storage.ensure()
        return sorted(
            path.name for path in self._storage.root.iterdir() if path.is_file() and not path.name.startswith(".")
        )

    def read_record(self, name: str) -> str:
        name = (name or "").strip()
        if not name or not _SAFE_NAME.match(name):
            raise InvalidArgument("bad file")
        try:
            return self._storage.read(name)
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise NotFound("not found") from exc

    def _prefix(self, account: str | None) -> str:
        if not account or not account.strip():
            return ""
        return sanitize_account(account, self._default_account) + SEPARATOR

    def _newest_first(self, names: list[str]) -> list[str]:
        dated: list[tuple[float, str]] = []
        for name in names:
            try:
                dated.append((self._storage.mtime(name), name))
            except FileNotFoundError:
                continue
        dated.sort(reverse=True)
        return [name for _, name in dated]

    def _read_task(self, lock: str) -> Task:
        """Decode a leased record, reading it a second time before giving up."""

        try:
            return decode_task(self._storage.read(lock))
        except ValueError:
            LOGGER.debug("Decoding %s failed; reading it again", lock)
        return decode_task(self._storage.read(lock))

    def _stamp_lease(self, lock: str) -> Task | None:
        try:
            task = self._read_task(lock)
        except ValueError:
            self._quarantine(lock)
            return None
        except FileNotFoundError:
            return None
        now = self._clock().isoformat()
        task = replace(task, leased_at=now, heartbeat_at=now)
        try:
            self._storage.rewrite(lock, encode_task(task))
        except FileNotFoundError:
            return None
        return task

    def _release(self, lock: str) -> bool:
        """Clear the lease clock and move the record back to its available name.

        An unreadable record is moved back untouched; the next claimer decides
        whether it is really corrupt. Returns False when someone else moved the
        lease first.
        """
        try:
            task = self._read_task(lock)
        except FileNotFoundError:
            return False
        except ValueError:
            LOGGER.warning("Lease %s is unreadable; requeueing it unchanged", lock)
        else:
            try:
                self._storage.rewrite(lock, encode_task(replace(task, leased_at=None, heartbeat_at=None)))
            except FileNotFoundError:
                return False
        if not self._storage.rename(lock, available_name(lock)):
            return False
        LOGGER.info("Requeued %s", lock)
        return True

    def _lease_started(self, lock: str) -> datetime:
        try:
            heartbeat_at = decode_task(self._storage.read(lock)).heartbeat_at
        except ValueError:
            heartbeat_at = None
        if heartbeat_at:
            try:
                return datetime.fromisoformat(heartbeat_at)
            except ValueError:
                pass
        # Leased but not stamped yet (or unreadable): the rename is the last touch.
        return datetime.fromtimestamp(self._storage.changed_at(lock), tz=timezone.utc)

    def _quarantine(self, lock: str) -> None:
        target = lock + CORRUPT_SUFFIX
        LOGGER.error("Task record %s is unreadable; moving it to %s", lock, target)
        try:
            self._storage.rename(lock, target)
        except OSError:
            LOGGER.exception("Could not quarantine %s", lock)

    def _record_reclaim(self, source: str, lock: str, age_ms: int) -> None:
        message = f"[{source}] requeued stale lock {lock}, age={age_ms}ms"
        LOGGER.warning("%s", message)
        try:
            self._log.append("requeue", source=source, lock=lock, age_ms=age_ms, message=message)
        except OSError:
            LOGGER.exception("Could not write reclaim record for %s", lock)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
