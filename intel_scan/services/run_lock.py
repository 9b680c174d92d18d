from __future__ import annotations

import fcntl
import json
import os
import socket
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator


DEFAULT_LOCK_PATH = Path("data") / "daily_scan.lock"


class RunLockError(RuntimeError):
    pass


def _holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _read_meta(meta_path: Path) -> dict[str, Any]:
    try:
        return json.loads(meta_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}


@contextmanager
def scan_lock(lock_path: Path, *, trigger: str) -> Iterator[dict[str, Any]]:
    """Single-flight guard for scans across the scheduler, the admin API and the CLI.

    The OS releases the flock when the holder exits. A ``.meta.json`` sidecar
    names the current holder.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    meta_path = lock_path.with_suffix(lock_path.suffix + ".meta.json")
    f = lock_path.open("a+", encoding="utf-8")
    try:
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            meta = _read_meta(meta_path)
            raise RunLockError(f"scan already running: {lock_path} meta={json.dumps(meta, ensure_ascii=False)}") from e

        meta = {
            "trigger": trigger,
            "holder": _holder_id(),
            "acquired_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        meta_path.write_text(json.dumps(meta, ensure_ascii=False, indent=2), encoding="utf-8")
        try:
            yield meta
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
    finally:
        f.close()
