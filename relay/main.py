"""Application entrypoint."""

from __future__ import annotations

import logging

import uvicorn

from relay.api import create_app
from relay.config import Settings, load_settings

LOGGER = logging.getLogger(__name__)


def log_startup(settings: Settings) -> None:
    """Report the effective configuration without leaking secrets."""

    LOGGER.info("LOG_DIR=%s", settings.log_dir.resolve())
    LOGGER.info("TASK_DIR=%s", settings.task_dir.resolve())
    LOGGER.info("ONLY_FIRST_SYSTEM=%s", settings.only_first_system)
    LOGGER.info("WEBHOOK_SECRET=%s", "(set)" if settings.webhook_secret else "(empty, disabled)")
    LOGGER.info("LOG_SCAN_FILES=%d, LOG_TAIL_BYTES=%d", settings.log_scan_files, settings.log_tail_bytes)
    LOGGER.info(
        "VISIBILITY_TIMEOUT_MS=%d, HEARTBEAT_GRACE_MS=%d, CLAIM_CANDIDATES=%d",
        settings.visibility_timeout_ms,
        settings.heartbeat_grace_ms,
        settings.claim_candidates,
    )


def main() -> None:
    """Load settings, provision directories and serve the app."""

    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    settings.task_dir.mkdir(parents=True, exist_ok=True)
    log_startup(settings)

    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
