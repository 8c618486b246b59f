"""Structured operation logging.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects steps and a final result, then writes:

* one JSON record per operation to ``operations.jsonl``;
* one human-readable line to ``convergectl.log`` (rotated by size).

Logging must never break a command: when the logs directory cannot be created
or written, the logger disables itself and later operations become no-ops.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import threading
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from . import __version__

HUMAN_LOG_NAME = "convergectl.log"
OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOGGER_NAME = "convergectl.operations"
DEFAULT_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5


def _timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _as_list(values: Sequence[str] | None) -> list[str]:
    if not values:
        return []
    return [str(item) for item in values]


class OperationScope:
    """Mutable record for a single CLI operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Start timing the operation."""
        self.command = command
        self.op_id = secrets.token_hex(8)
        self._args = dict(args or {})
        self._target = dict(target or {})
        self._steps: list[dict[str, object]] = []
        self._result: dict[str, object] | None = None
        self._started = time.perf_counter()
        self._timestamp = _timestamp()
        self._lock = threading.Lock()

    @property
    def completed(self) -> bool:
        """Return ``True`` once a result has been recorded."""
        return self._result is not None

    @property
    def steps(self) -> list[dict[str, object]]:
        """Return a copy of the recorded steps."""
        with self._lock:
            return list(self._steps)

    def add_step(
        self,
        name: str,
        *,
        status: str = "success",
        detail: str | None = None,
        duration_ms: int | None = None,
    ) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status, "at": _timestamp()}
        if detail is not None:
            step["detail"] = detail
        if duration_ms is not None:
            step["duration_ms"] = duration_ms
        with self._lock:
            self._steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a successful result."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a result that completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        rc: int | None = None,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failed result; ``errors`` defaults to ``[message]``."""
        self._set_result(
            "error",
            message,
            rc=rc,
            errors=errors if errors else [message],
            warnings=warnings,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int | None = None,
        changed: int | None = None,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "warnings": _as_list(warnings),
            "errors": _as_list(errors),
        }
        if rc is not None:
            result["rc"] = rc
        if changed is not None:
            result["changed"] = changed
        if context:
            result["context"] = _sanitize(context)
        self._result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable operation record."""
        result = self._result or {
            "status": "success",
            "message": "Completed.",
            "warnings": [],
            "errors": [],
        }
        return {
            "timestamp": self._timestamp,
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitize(self._args),
            "target": _sanitize(self._target),
            "context": {
                "convergectl_version": __version__,
                "pid": os.getpid(),
            },
            "steps": self.steps,
            "result": result,
            "duration_ms": int((time.perf_counter() - self._started) * 1000),
        }


class StructuredLogger:
    """Write operation records and human-readable log lines."""

    def __init__(
        self,
        logs_dir: Path,
        *,
        max_bytes: int = DEFAULT_MAX_BYTES,
        backup_count: int = DEFAULT_BACKUP_COUNT,
    ) -> None:
        """Prepare log destinations under *logs_dir*."""
        self._logs_dir = Path(logs_dir)
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self._logs_dir / HUMAN_LOG_NAME
        self._max_bytes = max_bytes
        self._backup_count = backup_count
        self._write_lock = threading.Lock()
        self._human: logging.Logger | None = None
        self._handler: RotatingFileHandler | None = None
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def logs_dir(self) -> Path:
        """Return the directory receiving log files."""
        return self._logs_dir

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
        except BaseException as exc:
            if not scope.completed:
                code = getattr(exc, "exit_code", None)
                if code == 0:
                    scope.success("Completed.")
                else:
                    scope.error(str(exc) or type(exc).__name__, rc=code)
            raise
        finally:
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        line = json.dumps(record, sort_keys=False)
        with self._write_lock:
            try:
                with self._operations_log_path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError:
                self._enabled = False
                return
            human = self._human_logger()
            if human is None:
                return
            result = record["result"]
            status = result.get("status") if isinstance(result, Mapping) else None
            message = result.get("message") if isinstance(result, Mapping) else None
            level = logging.ERROR if status == "error" else logging.INFO
            if status == "warning":
                level = logging.WARNING
            human.log(level, "%s [%s] %s (op=%s)", scope.command, status, message, scope.op_id)

    def _human_logger(self) -> logging.Logger | None:
        if self._human is not None:
            return self._human
        try:
            handler = RotatingFileHandler(
                self._human_log_path,
                maxBytes=self._max_bytes,
                backupCount=self._backup_count,
                encoding="utf-8",
            )
        except OSError:
            self._enabled = False
            return None
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        # Not registered with logging.getLogger: each instance owns exactly one handler.
        logger = logging.Logger(HUMAN_LOGGER_NAME)
        logger.setLevel(logging.INFO)
        logger.propagate = False
        logger.addHandler(handler)
        self._handler = handler
        self._human = logger
        return logger

    def close(self) -> None:
        """Release the human log file handle."""
        with self._write_lock:
            if self._handler is None:
                return
            if self._human is not None:
                self._human.removeHandler(self._handler)
            self._handler.close()
            self._handler = None
            self._human = None


__all__ = ["OperationScope", "StructuredLogger"]
