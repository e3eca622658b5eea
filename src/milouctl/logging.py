"""Structured logging for milouctl operations.

Two sinks live under the configured logs directory:

* ``operations.jsonl`` receives one JSON record per CLI operation, written
  when the :class:`OperationScope` closes.
* ``milouctl.log`` is a plain-text handler attached to the ``milouctl``
  stdlib logger that engine components write through.

Logging must never break an operation: if the directory cannot be created or
a write fails, the logger disables its file output and keeps going.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER_NAME = "milouctl"
_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return str(os.getuid())


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _as_list(values: Sequence[str] | None) -> list[str]:
    return [str(item) for item in values] if values else []


class OperationScope:
    """Collect the outcome of a single CLI operation."""

    def __init__(self, command: str, args: Mapping[str, object], target: Mapping[str, object]):
        """Initialise the scope for *command*."""
        self.command = command
        self.args = dict(args)
        self.target = dict(target)
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started = time.perf_counter()

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=None,
            backups=backups,
            rc=0,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            backups=backups,
            rc=0,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        rc: int = 1,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=0,
            warnings=warnings,
            errors=errors if errors else [message],
            backups=backups,
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Sequence[str] | None,
        errors: Sequence[str] | None,
        backups: Sequence[str] | None,
        rc: int,
        context: Mapping[str, object] | None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "rc": rc,
            "changed": changed,
            "warnings": _as_list(warnings),
            "errors": _as_list(errors),
            "backups": _as_list(backups),
            "context": _sanitize(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable record for this scope."""
        return {
            "ts": _now_iso(),
            "user": _current_user(),
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "steps": list(self.steps),
            "duration_ms": int((time.perf_counter() - self._started) * 1000),
            "result": self.result,
        }


class StructuredLogger:
    """Write operation records and component messages under *log_dir*."""

    def __init__(self, log_dir: Path, *, name: str = LOGGER_NAME) -> None:
        """Prepare the log directory and attach the text handler."""
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / "operations.jsonl"
        self._text_log_path = self._log_dir / "milouctl.log"
        self._logger = logging.getLogger(name)
        self._logger.setLevel(logging.DEBUG)
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._attach_file_handler()

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the JSON operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args or {}, target or {})
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}", rc=1)
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            self._write_record(scope.to_record())

    # Component logging -------------------------------------------------
    def debug(self, message: str, **context: object) -> None:
        """Log a debug message."""
        self._log(logging.DEBUG, message, context)

    def info(self, message: str, **context: object) -> None:
        """Log an informational message."""
        self._log(logging.INFO, message, context)

    def warning(self, message: str, **context: object) -> None:
        """Log a warning."""
        self._log(logging.WARNING, message, context)

    def error(self, message: str, **context: object) -> None:
        """Log an error."""
        self._log(logging.ERROR, message, context)

    def critical(self, message: str, **context: object) -> None:
        """Log at the highest severity."""
        self._log(logging.CRITICAL, message, context)

    # ------------------------------------------------------------------
    def _log(self, level: int, message: str, context: Mapping[str, object]) -> None:
        if context:
            payload = json.dumps(_sanitize(dict(context)), sort_keys=True)
            message = f"{message} {payload}"
        self._logger.log(level, message)

    def _attach_file_handler(self) -> None:
        # One text log per process: the most recently configured directory wins.
        target = str(self._text_log_path.absolute())
        for existing in list(self._logger.handlers):
            if not isinstance(existing, logging.FileHandler):
                continue
            if existing.baseFilename == target:
                return
            if getattr(existing, "_milouctl_owned", False):
                self._logger.removeHandler(existing)
                existing.close()
        handler = logging.FileHandler(target, encoding="utf-8", delay=True)
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._milouctl_owned = True  # type: ignore[attr-defined]
        self._logger.addHandler(handler)

    def _write_record(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError:
            self._enabled = False


__all__ = ["LOGGER_NAME", "OperationScope", "StructuredLogger"]
