"""Advisory file locks guarding instance mutations.

Locks live under the runtime directory: ``dnactl.lock`` serialises every
mutating command, ``<name>.lock`` serialises work on a single instance.
Lock files carry JSON metadata (pid, path, acquisition time) and are left on
disk after release for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import AbstractContextManager, ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "dnactl"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""

    def __init__(self, path: Path, timeout: float) -> None:
        super().__init__(f"Timed out after {timeout:.1f}s waiting for lock {path}.")
        self.path = path
        self.timeout = timeout


@dataclass(slots=True)
class LockHandle:
    """Acquired lock metadata."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """Collection of locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Total time spent waiting across all locks."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire global and per-instance advisory locks."""

    def __init__(self, runtime_dir: Path, default_timeout: float) -> None:
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = float(default_timeout)

    def global_lock(
        self, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Return a context manager holding the global mutation lock."""
        return self._acquire(self.runtime_dir / f"{GLOBAL_LOCK_NAME}.lock", timeout)

    def instance_lock(
        self, name: str, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Return a context manager holding the lock for instance *name*."""
        return self._acquire(self.runtime_dir / f"{name}.lock", timeout)

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock, then each instance lock in sorted order."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self.global_lock(timeout=timeout))]
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.instance_lock(name, timeout=timeout)))
            yield LockBundle(handles=handles)

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else float(timeout)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        start = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= limit:
                        raise LockTimeoutError(path, limit) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - start) * 1000)
            metadata = {
                "pid": os.getpid(),
                "path": str(path),
                "acquired_at": datetime.now(UTC).isoformat(),
            }
            os.ftruncate(fd, 0)
            os.write(fd, json.dumps(metadata).encode("utf-8"))
            os.fsync(fd)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
