"""Error taxonomy shared by the queue, the gate and the HTTP layer."""

from __future__ import annotations


class RelayError(Exception):
    """Base error; unexpected failures surface as 500."""

    status_code = 500


class InvalidArgument(RelayError):
    status_code = 400


class Forbidden(RelayError):
    status_code = 403


class NotFound(RelayError):
    status_code = 404


class PreconditionRequired(RelayError):
    """Completion could not be confirmed yet; the caller should retry later."""

    status_code = 428

    def __init__(self, message: str, sources: list[str] | None = None) -> None:
        super().__init__(message)
        self.sources = sources or []
