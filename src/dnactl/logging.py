"""Structured operation logging for dnactl.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects steps (``db.create``, ``pm2.start``...), lock wait time and a final
result, then appends one JSON record to ``operations.jsonl`` and mirrors a
one-line summary to ``dnactl.log`` through the standard :mod:`logging`
module. Logging never fails a command: if the log directory cannot be
created or a write fails, the logger disables itself.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

_HANDLERS: dict[Path, logging.Handler] = {}

_LEVELS = {
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _sanitize(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _string_list(values: Sequence[str] | None) -> list[str]:
    if not values:
        return []
    return [str(value) for value in values]


@dataclass(slots=True)
class OperationStep:
    """Single step recorded within an operation."""

    name: str
    status: str
    detail: str | None = None
    at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "status": self.status, "detail": self.detail, "at": self.at}


class OperationScope:
    """Mutable record of a running operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.op_id = uuid.uuid4().hex
        self.started_at = datetime.now(UTC)
        self._started_monotonic = time.monotonic()
        self.steps: list[OperationStep] = []
        self.lock_wait_ms: int | None = None
        self.result: dict[str, object] | None = None
        self.rc: int | None = None

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a named step."""
        self.steps.append(OperationStep(name=name, status=status, detail=detail))

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the command waited for its locks."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            context=context,
        )
        self.rc = 0

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            context=context,
        )
        self.rc = 0

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            warnings=warnings,
            errors=errors if errors else [message],
            context=context,
        )
        self.rc = rc

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "warnings": _string_list(warnings),
            "errors": _string_list(errors),
            "changed": changed,
            "context": _sanitize(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written to ``operations.jsonl``."""
        duration_ms = int((time.monotonic() - self._started_monotonic) * 1000)
        return {
            "ts": self.started_at.isoformat(),
            "op_id": self.op_id,
            "pid": os.getpid(),
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "steps": [step.to_dict() for step in self.steps],
            "lock_wait_ms": self.lock_wait_ms,
            "duration_ms": duration_ms,
            "rc": self.rc,
            "result": self.result,
        }


class StructuredLogger:
    """Append operation records to the dnactl log directory."""

    def __init__(self, log_dir: Path) -> None:
        self.log_dir = Path(log_dir)
        self._operations_log_path = self.log_dir / "operations.jsonl"
        self._human_log_path = self.log_dir / "dnactl.log"
        self._enabled = True
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
        self._logger = logging.getLogger("dnactl.operations")
        self._logger.setLevel(logging.INFO)
        if self._enabled:
            self._attach_file_handler()

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(str(exc) or exc.__class__.__name__, rc=1)
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            self._write(scope)

    def _attach_file_handler(self) -> None:
        if self._human_log_path in _HANDLERS:
            return
        try:
            handler = logging.FileHandler(self._human_log_path, encoding="utf-8", delay=True)
        except OSError:
            return
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        self._logger.addHandler(handler)
        _HANDLERS[self._human_log_path] = handler

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError:
            self._enabled = False
            return
        result = scope.result or {}
        status = str(result.get("status", "success"))
        self._logger.log(
            _LEVELS.get(status, logging.INFO),
            "%s [%s] %s rc=%s",
            scope.command,
            status,
            result.get("message", ""),
            scope.rc,
        )


__all__ = ["OperationScope", "OperationStep", "StructuredLogger"]
