from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import errno
import json
import os
from pathlib import Path
import re
import secrets
import time
from typing import Iterator


_WRITER_LOCK_FILENAME = "writer.lock"
_LOCKS_DIRNAME = "locks"
_LOCK_POLL_SECONDS = 0.2


class ProcessLockError(RuntimeError):
    """Raised when an exclusive lock file cannot be acquired."""


@dataclass(frozen=True)
class _LockOwner:
    pid: int | None
    command: str | None
    started_at: str | None
    token: str | None


@contextmanager
def writer_process_lock(*, base_dir: Path, command: str) -> Iterator[None]:
    """Hold the single-writer lock for the service process."""
    lock = _ExclusiveFileLock(
        lock_path=base_dir / _WRITER_LOCK_FILENAME,
        command=command,
        description="Another agentrelay service process appears active",
    )
    lock.acquire()
    try:
        yield
    finally:
        lock.release()


@contextmanager
def repository_lock(
    *, base_dir: Path, project_id: str, command: str, wait_seconds: float = 0.0
) -> Iterator[None]:
    """Hold the lock scoped to one repository's working copies.

    Waits up to ``wait_seconds`` for a holder in this or another process to release it.
    """
    lock = _ExclusiveFileLock(
        lock_path=repository_lock_path(base_dir=base_dir, project_id=project_id),
        command=command,
        description=f"Repository {project_id!r} is locked by another operation",
    )
    deadline = time.monotonic() + max(0.0, wait_seconds)
    while True:
        try:
            lock.acquire()
            break
        except ProcessLockError:
            if time.monotonic() >= deadline:
                raise
            time.sleep(_LOCK_POLL_SECONDS)
    try:
        yield
    finally:
        lock.release()


def repository_lock_path(*, base_dir: Path, project_id: str) -> Path:
    safe_id = re.sub(r"[^A-Za-z0-9._-]+", "_", project_id) or "_"
    return base_dir / _LOCKS_DIRNAME / f"{safe_id}.lock"


class _ExclusiveFileLock:
    def __init__(self, *, lock_path: Path, command: str, description: str) -> None:
        self._lock_path = lock_path
        self._command = command
        self._description = description
        self._inode: int | None = None
        self._token: str | None = None

    def acquire(self) -> None:
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        self._token = None
        for _ in range(2):
            try:
                fd = os.open(
                    self._lock_path,
                    os.O_WRONLY | os.O_CREAT | os.O_EXCL,
                    0o644,
                )
            except FileExistsError:
                if self._clear_stale_lock_if_dead_owner():
                    continue
                raise ProcessLockError(self._active_lock_error_message()) from None

            try:
                self._inode = os.fstat(fd).st_ino
                lock_token = secrets.token_hex(16)
                payload = {
                    "pid": os.getpid(),
                    "command": self._command,
                    "started_at": _utc_now_iso8601(),
                    "token": lock_token,
                }
                os.write(fd, (json.dumps(payload, sort_keys=True) + "\n").encode("utf-8"))
                os.fsync(fd)
            except Exception:
                try:
                    os.close(fd)
                finally:
                    try:
                        os.unlink(self._lock_path)
                    except FileNotFoundError:
                        pass
                self._inode = None
                self._token = None
                raise
            else:
                os.close(fd)
                self._token = lock_token
                return

        raise ProcessLockError(self._active_lock_error_message())

    def release(self) -> None:
        inode, token = self._inode, self._token
        self._inode = None
        self._token = None
        if inode is None or token is None:
            return
        try:
            current = self._lock_path.stat()
        except FileNotFoundError:
            return
        if current.st_ino != inode:
            return
        if _read_lock_owner(self._lock_path).token != token:
            return
        try:
            os.unlink(self._lock_path)
        except FileNotFoundError:
            pass

    def _clear_stale_lock_if_dead_owner(self) -> bool:
        owner = _read_lock_owner(self._lock_path)
        if owner.pid is None or owner.pid == os.getpid():
            return False
        if _pid_is_running(owner.pid):
            return False
        try:
            os.unlink(self._lock_path)
        except FileNotFoundError:
            return True
        except OSError:
            return False
        return True

    def _active_lock_error_message(self) -> str:
        owner = _read_lock_owner(self._lock_path)
        owner_parts: list[str] = []
        if owner.pid is not None:
            owner_parts.append(f"pid={owner.pid}")
        if owner.command:
            owner_parts.append(f"command={owner.command}")
        owner_detail = f" ({', '.join(owner_parts)})" if owner_parts else ""
        return (
            f"{self._description}{owner_detail}. Lock file: {self._lock_path}. "
            "If this lock is stale, stop the owning process and remove the lock file, then retry."
        )


def _read_lock_owner(lock_path: Path) -> _LockOwner:
    empty = _LockOwner(pid=None, command=None, started_at=None, token=None)
    try:
        payload_text = lock_path.read_text(encoding="utf-8").strip()
    except OSError:
        return empty
    if not payload_text:
        return empty
    try:
        payload = json.loads(payload_text)
    except json.JSONDecodeError:
        return empty
    if not isinstance(payload, dict):
        return empty
    raw_pid = payload.get("pid")
    raw_command = payload.get("command")
    raw_started_at = payload.get("started_at")
    raw_token = payload.get("token")
    return _LockOwner(
        pid=raw_pid if isinstance(raw_pid, int) else None,
        command=raw_command if isinstance(raw_command, str) else None,
        started_at=raw_started_at if isinstance(raw_started_at, str) else None,
        token=raw_token if isinstance(raw_token, str) else None,
    )


def _pid_is_running(pid: int) -> bool:
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as exc:
        if exc.errno == errno.ESRCH:
            return False
        return True
    return True


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
