"""Append-only activity log split into daily partitions."""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from relay.errors import InvalidArgument, NotFound
from relay.models import LogPartition, LogTail

LOGGER = logging.getLogger(__name__)

_PARTITION_SUFFIX = ".log"
_SAFE_NAME = re.compile(r"^[\w.\-]+$")


def partition_name(moment: datetime | None = None) -> str:
    """Return the partition file name for the UTC day of ``moment``."""

    moment = moment or datetime.now(timezone.utc)
    return f"logs.{moment.astimezone(timezone.utc):%Y%m%d}{_PARTITION_SUFFIX}"


class ActivityLog:
    """JSON-lines log, one object per line, one file per UTC day."""

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def append(self, kind: str, **fields: Any) -> None:
        record = {"at": _utc_now_iso(), "kind": kind, **fields}
        line = json.dumps(record, ensure_ascii=False, default=str)
        self._directory.mkdir(parents=True, exist_ok=True)
        with (self._directory / partition_name()).open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def partitions(self) -> list[LogPartition]:
        """List partitions, most recently modified first."""

        if not self._directory.is_dir():
            return []
        found: list[LogPartition] = []
        for path in self._directory.iterdir():
            if not path.name.endswith(_PARTITION_SUFFIX):
                continue
            try:
                found.append(LogPartition(name=path.name, mtime=path.stat().st_mtime))
            except FileNotFoundError:
                continue
        found.sort(key=lambda item: item.mtime, reverse=True)
        return found

    def read_tail(self, name: str, tail_bytes: int) -> str:
        """Return at most the last ``tail_bytes`` bytes of a partition as text."""

        if not name or not _SAFE_NAME.match(name):
            raise InvalidArgument("bad file")
        path = self._directory / name
        if not path.is_file():
            raise NotFound("not found")
        with path.open("rb") as handle:
            size = handle.seek(0, 2)
            handle.seek(max(0, size - max(0, tail_bytes)))
            data = handle.read()
        return data.decode("utf-8", errors="ignore")

    def recent_tails(self, files: int, tail_bytes: int) -> list[LogTail]:
        tails: list[LogTail] = []
        for partition in self.partitions()[:files]:
            try:
                text = self.read_tail(partition.name, tail_bytes)
            except (NotFound, OSError):
                continue
            tails.append(LogTail(name=partition.name, text=text))
        return tails


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
