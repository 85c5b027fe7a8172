"""Structured operation logging for drone-stack.

Every CLI invocation is wrapped in an *operation*. The operation collects
the steps it ran and a final result, then appends one JSON record to
``<log_dir>/operations.jsonl``. Logging must never break a deployment: when
the log directory is unset, cannot be created, or a write fails, the logger
disables itself and the operation carries on silently.
"""
from __future__ import annotations

import json
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

OPERATIONS_LOG_NAME = "operations.jsonl"


def _sanitize(value: object) -> object:
    """Return a JSON-safe copy of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass
class OperationScope:
    """Mutable record for a single logged operation."""

    logger: StructuredLogger
    operation: str
    op_id: str
    args: Mapping[str, object]
    target: Mapping[str, object]
    started: float = field(default_factory=time.monotonic)
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = detail
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        warnings: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=None,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings if warnings is not None else [message],
            errors=errors,
            context=context,
            rc=0,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        warnings: Iterable[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=None,
            warnings=warnings,
            errors=errors if errors is not None else [message],
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int | None,
        warnings: Iterable[str] | None,
        errors: Iterable[str] | None,
        context: Mapping[str, object] | None,
        rc: int,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "context": _sanitize(dict(context or {})),
            "rc": rc,
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written for this operation."""
        duration_ms = int((time.monotonic() - self.started) * 1000)
        return {
            "timestamp": datetime.now(UTC).isoformat(),
            "op_id": self.op_id,
            "operation": self.operation,
            "args": _sanitize(dict(self.args)),
            "target": _sanitize(dict(self.target)),
            "steps": list(self.steps),
            "result": self.result,
            "duration_ms": duration_ms,
        }


class StructuredLogger:
    """Append operation records to a JSON lines file."""

    def __init__(self, log_dir: Path | None) -> None:
        """Prepare *log_dir*; a ``None`` directory disables logging."""
        self._log_dir = log_dir
        self._operations_log_path = (
            log_dir / OPERATIONS_LOG_NAME if log_dir is not None else None
        )
        self._enabled = log_dir is not None
        if log_dir is not None:
            try:
                log_dir.mkdir(parents=True, exist_ok=True)
            except OSError:
                self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return True while records are being written."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Open an operation scope and write its record on exit."""
        scope = OperationScope(
            logger=self,
            operation=name,
            op_id=secrets.token_hex(8),
            args=dict(args or {}),
            target=dict(target or {}),
        )
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"Unhandled {type(exc).__name__}: {exc}")
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled or self._operations_log_path is None:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True))
                handle.write("\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
