"""HTTP surface: queue API, webhook ingress and activity-log queries."""

from __future__ import annotations

import asyncio
import hmac
import logging
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from relay.activity_log import ActivityLog
from relay.config import Settings, load_settings
from relay.dedup import DedupMarkers
from relay.errors import Forbidden, InvalidArgument, PreconditionRequired, RelayError
from relay.ingestion import IngestionGate
from relay.oracle import ConfirmationOracle
from relay.queue import TaskQueue
from relay.reaper import LockReaper
from relay.storage import StorageDirectory

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Services:
    """Wired application components."""

    settings: Settings
    storage: StorageDirectory
    log: ActivityLog
    oracle: ConfirmationOracle
    queue: TaskQueue
    markers: DedupMarkers
    gate: IngestionGate
    reaper: LockReaper


def build_services(settings: Settings) -> Services:
    storage = StorageDirectory(settings.task_dir)
    log = ActivityLog(settings.log_dir)
    oracle = ConfirmationOracle(log, scan_files=settings.log_scan_files, tail_bytes=settings.log_tail_bytes)
    queue = TaskQueue(
        storage,
        log,
        oracle,
        default_account=settings.default_account,
        default_reply=settings.default_reply,
        stale_after_ms=settings.stale_after_ms,
        claim_candidates=settings.claim_candidates,
    )
    markers = DedupMarkers(
        storage,
        enabled=settings.only_first_system,
        retention_days=settings.dedup_retention_days,
    )
    gate = IngestionGate(
        queue,
        log,
        markers,
        default_reply=settings.default_reply,
        candidate_pattern=settings.candidate_pattern,
        job_flow_id=settings.job_flow_id,
        webhook_secret=settings.webhook_secret,
    )
    reaper = LockReaper(queue, interval_seconds=settings.reaper_interval_seconds, markers=markers)
    return Services(
        settings=settings,
        storage=storage,
        log=log,
        oracle=oracle,
        queue=queue,
        markers=markers,
        gate=gate,
        reaper=reaper,
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application; the reaper runs for the lifetime of the app."""

    services = build_services(settings or load_settings())
    settings = services.settings
    queue = services.queue

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        services.storage.ensure()
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        reaper_task = asyncio.create_task(services.reaper.run_forever(), name="lock-reaper")
        try:
            yield
        finally:
            services.reaper.stop()
            reaper_task.cancel()
            with suppress(asyncio.CancelledError):
                await reaper_task
            LOGGER.info("Relay shutdown complete")

    app = FastAPI(title="webhook-relay", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        content: dict[str, Any] = {"ok": False, "error": str(exc)}
        if isinstance(exc, PreconditionRequired):
            content["files"] = exc.sources
        return JSONResponse(content, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        LOGGER.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse({"ok": False, "error": str(exc)}, status_code=500)

    def require_key(params: dict[str, Any]) -> None:
        key = str(params.get("key") or "").strip()
        if not settings.task_key or not hmac.compare_digest(key.encode(), settings.task_key.encode()):
            raise Forbidden("bad key")

    @app.get("/")
    async def health() -> dict[str, Any]:
        return {"ok": True, "up": True}

    @app.get("/tasks/debug")
    async def tasks_debug() -> dict[str, Any]:
        return {"ok": True, "files": queue.list_records()}

    @app.get("/tasks/read")
    async def tasks_read(file: str = "") -> Response:
        return Response(queue.read_record(file), media_type="application/json")

    @app.post("/tasks/enqueue")
    async def tasks_enqueue(request: Request) -> dict[str, Any]:
        params = await _params(request)
        require_key(params)
        task = queue.create(
            account=params.get("account"),
            chat_id=params.get("chat_id"),
            reply_text=params.get("reply_text"),
            message_id=params.get("message_id"),
        )
        return {"ok": True, "task": task.to_dict()}

    @app.api_route("/tasks/claim", methods=["GET", "POST"])
    async def tasks_claim(request: Request) -> dict[str, Any]:
        params = await _params(request)
        require_key(params)
        account = str(params.get("account") or "").strip() or None
        claim = queue.claim(account)
        if claim is None:
            return {"ok": True, "has": False}
        task = claim.task
        return {
            "ok": True,
            "has": True,
            "lockId": claim.lock,
            "ChatId": task.chat_id,
            "ReplyText": task.reply_text,
            "MessageId": task.message_id or "",
            "Account": task.account or "",
        }

    @app.post("/tasks/done")
    async def tasks_done(request: Request) -> dict[str, Any]:
        params = await _params(request)
        require_key(params)
        queue.done(_lock(params))
        return {"ok": True}

    @app.post("/tasks/requeue")
    async def tasks_requeue(request: Request) -> dict[str, Any]:
        params = await _params(request)
        require_key(params)
        queue.requeue(_lock(params))
        return {"ok": True}

    @app.post("/tasks/heartbeat")
    async def tasks_heartbeat(request: Request) -> dict[str, Any]:
        params = await _params(request)
        require_key(params)
        queue.heartbeat(_lock(params))
        return {"ok": True, "touched": True}

    @app.post("/tasks/doneSafe")
    async def tasks_done_safe(request: Request) -> Response:
        params = await _params(request)
        require_key(params)
        queue.done_safe(_lock(params))
        return Response(status_code=204)

    @app.post("/webhook/{account}")
    async def webhook(account: str, request: Request) -> dict[str, Any]:
        try:
            body = await request.json()
        except ValueError:
            body = {}
        services.gate.handle(account or settings.default_account, dict(request.headers), body)
        return {"ok": True}

    @app.get("/logs")
    async def logs() -> dict[str, Any]:
        files = [{"name": item.name, "mtime": item.mtime} for item in services.log.partitions()]
        return {"ok": True, "files": files}

    @app.get("/logs/read")
    async def logs_read(file: str = "", tail: str = "") -> PlainTextResponse:
        tail_bytes = settings.log_tail_bytes
        if tail.strip():
            try:
                tail_bytes = int(tail)
            except ValueError as exc:
                raise InvalidArgument("bad tail") from exc
        return PlainTextResponse(services.log.read_tail(file.strip(), tail_bytes))

    @app.get("/logs/has")
    async def logs_has(chat: str = "", author: str = "") -> dict[str, Any]:
        chat = chat.strip()
        if not chat:
            raise InvalidArgument("chat required")
        confirmation = services.oracle.check(chat, author.strip() or None)
        return {"ok": True, "exists": confirmation.confirmed, "files": confirmation.sources}

    return app


async def _params(request: Request) -> dict[str, Any]:
    """Merge JSON body and query string; the query string wins."""

    params: dict[str, Any] = {}
    try:
        body = await request.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        params.update(body)
    params.update(request.query_params)
    return params


def _lock(params: dict[str, Any]) -> str:
    return str(params.get("lock") or "").strip()
