"""Flat ``KEY=VALUE`` configuration store with atomic writes.

The installation's ``.env`` file is the single source of truth for service
settings, image tags and credentials. Reads tolerate comments, blank lines,
an optional ``export`` prefix and quoted values; writes preserve the layout of
untouched lines and always go through a temporary file followed by
``os.replace`` so a crash never leaves a half-written file behind.
"""
from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class EnvFileError(RuntimeError):
    """Raised when the env file cannot be read or written."""


def parse_env_text(text: str) -> dict[str, str]:
    """Return the key/value pairs defined in *text* (last definition wins)."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        parsed = _parse_line(raw_line)
        if parsed is not None:
            key, value = parsed
            values[key] = value
    return values


def _parse_line(raw_line: str) -> tuple[str, str] | None:
    line = raw_line.strip()
    if not line or line.startswith("#") or "=" not in line:
        return None
    if line.startswith("export "):
        line = line[len("export ") :].lstrip()
    key, _, value = line.partition("=")
    key = key.strip()
    if not _KEY_PATTERN.match(key):
        return None
    return key, _unquote(value.strip())


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1]
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return re.sub(r"\\([\\\"])", r"\1", value[1:-1])
    return value


def _format_value(value: str) -> str:
    if value == "" or re.search(r"[\s#\"'$`\\]", value) is None:
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


@dataclass(slots=True)
class EnvFile:
    """Read and atomically update a flat ``KEY=VALUE`` file."""

    path: Path
    mode: int = 0o600

    def __post_init__(self) -> None:
        """Normalise the file path."""
        self.path = Path(self.path).expanduser()

    def exists(self) -> bool:
        """Return ``True`` when the file is present."""
        return self.path.is_file()

    def read(self) -> dict[str, str]:
        """Return all key/value pairs (empty when the file is missing)."""
        text = self._read_text()
        return parse_env_text(text) if text is not None else {}

    def get(self, key: str, default: str | None = None) -> str | None:
        """Return the value for *key* or *default*."""
        return self.read().get(key, default)

    def set(self, key: str, value: str) -> None:
        """Set a single *key* to *value*."""
        self.update({key: value})

    def update(self, values: Mapping[str, str]) -> None:
        """Merge *values* into the file, keeping unrelated lines intact."""
        for key in values:
            if not _KEY_PATTERN.match(key):
                raise EnvFileError(f"Invalid env key: {key!r}")
        existing_lines = (self._read_text() or "").splitlines()

        pending = dict(values)
        lines: list[str] = []
        for raw_line in existing_lines:
            parsed = _parse_line(raw_line)
            if parsed is not None and parsed[0] in pending:
                key = parsed[0]
                lines.append(f"{key}={_format_value(pending.pop(key))}")
            else:
                lines.append(raw_line)
        for key, value in pending.items():
            lines.append(f"{key}={_format_value(value)}")
        self.write_text("\n".join(lines) + "\n")

    def unset(self, key: str) -> bool:
        """Remove every definition of *key*; return ``True`` when one existed."""
        text = self._read_text()
        if text is None:
            return False
        existing_lines = text.splitlines()
        kept = [line for line in existing_lines if (_parse_line(line) or ("",))[0] != key]
        if len(kept) == len(existing_lines):
            return False
        self.write_text("\n".join(kept) + ("\n" if kept else ""))
        return True

    def replace_all(self, values: Mapping[str, str], *, header: str | None = None) -> None:
        """Rewrite the file so that it contains exactly *values*."""
        lines: list[str] = []
        if header:
            lines.extend(f"# {line}".rstrip() for line in header.splitlines())
        for key, value in values.items():
            if not _KEY_PATTERN.match(key):
                raise EnvFileError(f"Invalid env key: {key!r}")
            lines.append(f"{key}={_format_value(value)}")
        self.write_text("\n".join(lines) + "\n")

    def write_text(self, text: str) -> None:
        """Atomically replace the file contents with *text*."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise EnvFileError(f"Failed to prepare {self.path.parent}: {exc}") from exc
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.path.parent),
            prefix=f".{self.path.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(text)
            os.chmod(tmp_path, self.mode)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise EnvFileError(f"Failed to write {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def _read_text(self) -> str | None:
        """Return the file contents, or ``None`` when the file is missing."""
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as exc:
            raise EnvFileError(f"{self.path} is not valid UTF-8: {exc}") from exc
        except OSError as exc:
            raise EnvFileError(f"Failed to read {self.path}: {exc}") from exc


__all__ = ["EnvFile", "EnvFileError", "parse_env_text"]
