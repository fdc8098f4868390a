"""Advisory file locks and atomic writes for state shared between processes."""

import asyncio
import json
import os
from pathlib import Path
from typing import Any

import yaml

# Byte range locked on Windows, where msvcrt locks regions rather than files.
WINDOWS_LOCK_BYTES = 1


class FileLock:
    """Blocking exclusive lock on a file, released on exit.

    Every process touching the same repository uses the same lock path, so a
    read-modify-write done inside the lock cannot interleave with another one.
    """

    def __init__(self, lock_path: Path):
        self.lock_path = lock_path
        self.handle = None

    def __enter__(self) -> "FileLock":
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self.handle = open(self.lock_path, "a+")
        if os.name == "nt":
            import msvcrt

            self.handle.seek(0)
            msvcrt.locking(self.handle.fileno(), msvcrt.LK_LOCK, WINDOWS_LOCK_BYTES)
        else:
            import fcntl

            fcntl.flock(self.handle, fcntl.LOCK_EX)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self.handle:
            return
        try:
            if os.name == "nt":
                import msvcrt

                self.handle.seek(0)
                msvcrt.locking(self.handle.fileno(), msvcrt.LK_UNLCK, WINDOWS_LOCK_BYTES)
            else:
                import fcntl

                fcntl.flock(self.handle, fcntl.LOCK_UN)
        finally:
            self.handle.close()
            self.handle = None

    async def __aenter__(self) -> "FileLock":
        # Waiting for another process must not stall the event loop
        return await asyncio.to_thread(self.__enter__)

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.__exit__(exc_type, exc, tb)


def _atomic_replace(path: Path, write) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + f".{os.getpid()}.tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as handle:
            write(handle)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON via temp file + fsync + rename so readers never see a partial file."""
    _atomic_replace(path, lambda handle: json.dump(data, handle, indent=2))


def atomic_write_yaml(path: Path, data: Any) -> None:
    """YAML counterpart of :func:`atomic_write_json`."""
    _atomic_replace(
        path,
        lambda handle: yaml.safe_dump(
            data,
            handle,
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True,
        ),
    )


def read_json(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def read_yaml(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle)
