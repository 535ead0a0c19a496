"""Shared storage directory primitives.

Every cross-process guarantee in the queue rests on two operations provided
here: ``rename`` (exactly one caller moves a given source) and
``create_exclusive`` (exactly one caller creates a given name).

Records that are rewritten in place (lease stamps, heartbeats) are read and
written under an advisory ``flock`` so a reader never sees a half-written body.
"""

from __future__ import annotations

import fcntl
import os
import shutil
import uuid
from pathlib import Path


class StorageDirectory:
    """Small wrapper around a directory shared by every queue process."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def ensure(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)

    def path(self, name: str) -> Path:
        return self._root / name

    def list(self, suffix: str, prefix: str = "") -> list[str]:
        """Return names of plain files ending with ``suffix``."""

        self.ensure()
        names: list[str] = []
        with os.scandir(self._root) as entries:
            for entry in entries:
                if not entry.name.endswith(suffix) or not entry.name.startswith(prefix):
                    continue
                if entry.is_file(follow_symlinks=False):
                    names.append(entry.name)
        return names

    def mtime(self, name: str) -> float:
        return self.path(name).stat().st_mtime

    def changed_at(self, name: str) -> float:
        """Most recent of modification and inode change time (rename bumps the latter)."""

        stat = self.path(name).stat()
        return max(stat.st_mtime, stat.st_ctime)

    def read(self, name: str) -> str:
        with self.path(name).open(encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_SH)
            return handle.read()

    def rename(self, source: str, target: str) -> bool:
        """Atomically move ``source`` to ``target``.

        Returns False when ``source`` is already gone, i.e. another process
        moved or deleted it first.
        """
        try:
            os.rename(self.path(source), self.path(target))
        except FileNotFoundError:
            return False
        return True

    def write_atomic(self, name: str, text: str) -> None:
        """Write through a hidden temporary file so readers never see partial content."""

        self.ensure()
        tmp = self.path(f".{name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp.write_text(text, encoding="utf-8")
            os.replace(tmp, self.path(name))
        finally:
            tmp.unlink(missing_ok=True)

    def rewrite(self, name: str, text: str) -> None:
        """Overwrite an existing file in place.

        Raises FileNotFoundError instead of creating the file, so a rewrite
        racing with a rename can never leave a second copy behind. Holds an
        exclusive lock until the new body is flushed and truncated.
        """
        with self.path(name).open("r+", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            handle.write(text)
            handle.truncate()

    def create_exclusive(self, name: str, text: str = "") -> bool:
        """Create ``name``; False if it already exists."""

        target = self.path(name)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            with target.open("x", encoding="utf-8") as handle:
                handle.write(text)
        except FileExistsError:
            return False
        return True

    def delete(self, name: str) -> bool:
        try:
            self.path(name).unlink()
        except FileNotFoundError:
            return False
        return True

    def list_dirs(self, subdir: str) -> list[str]:
        parent = self.path(subdir)
        if not parent.is_dir():
            return []
        return sorted(entry.name for entry in parent.iterdir() if entry.is_dir())

    def remove_dir(self, name: str) -> None:
        shutil.rmtree(self.path(name))
