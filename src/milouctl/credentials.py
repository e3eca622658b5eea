"""Credential continuity across configuration regeneration.

Regenerating the env file must never silently drop a secret the running
services depend on: losing the database password, for example, locks the
application out of its own data. :class:`CredentialGuard` backs the file up,
lets the regeneration run, then verifies every critical key that was set
before is still set. On loss it restores the backup byte-for-byte and still
reports failure.
"""
from __future__ import annotations

import os
import secrets
import shutil
import string
import tempfile
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType

from .config import DEFAULT_CRITICAL_KEYS
from .envfile import EnvFile
from .logging import StructuredLogger

BACKUP_PREFIX = "credentials_"
BACKUP_SUFFIX = ".env"

# Keys produced by :func:`generate_credentials`, with the generated length.
GENERATED_SECRETS: Mapping[str, int] = MappingProxyType(
    {
        "POSTGRES_PASSWORD": 32,
        "REDIS_PASSWORD": 32,
        "RABBITMQ_PASSWORD": 32,
        "SESSION_SECRET": 64,
        "ENCRYPTION_KEY": 64,
        "JWT_SECRET": 64,
        "ADMIN_PASSWORD": 16,
        "API_KEY": 40,
    }
)
DEFAULT_IDENTITIES: Mapping[str, str] = MappingProxyType(
    {
        "POSTGRES_USER": "milou_user",
        "POSTGRES_DB": "milou_database",
        "RABBITMQ_USER": "milou_rabbit",
    }
)
MIN_SECRET_LENGTH = 16


class CredentialLossError(RuntimeError):
    """Critical credentials disappeared during regeneration.

    The previous file has been restored; the regeneration still counts as
    failed.
    """

    def __init__(self, missing: Iterable[str], backup_path: Path, message: str | None = None):
        """Record the *missing* keys and the backup used for recovery."""
        self.missing = tuple(sorted(missing))
        self.backup_path = backup_path
        super().__init__(
            message
            or (
                "Regeneration dropped critical credentials "
                f"({', '.join(self.missing)}); previous file restored from {backup_path}."
            )
        )


class UnrecoverableCredentialError(CredentialLossError):
    """Critical credentials were lost and the backup could not be restored."""

    def __init__(self, missing: Iterable[str], backup_path: Path, cause: str):
        """Record the failure; *backup_path* must be restored by hand."""
        keys = tuple(sorted(missing))
        super().__init__(
            keys,
            backup_path,
            message=(
                f"Critical credentials lost ({', '.join(keys)}) and automatic restore "
                f"failed: {cause}. Restore manually from {backup_path}."
            ),
        )


@dataclass(slots=True, frozen=True)
class CredentialSet:
    """A secret mapping together with its critical key subset."""

    values: Mapping[str, str]
    critical: frozenset[str] = frozenset(DEFAULT_CRITICAL_KEYS)

    @classmethod
    def from_env(cls, env: EnvFile, critical: Iterable[str]) -> CredentialSet:
        """Return the credentials currently stored in *env*."""
        return cls(MappingProxyType(dict(env.read())), frozenset(critical))

    @classmethod
    def from_file(cls, path: Path, critical: Iterable[str]) -> CredentialSet:
        """Return the credentials stored in the file at *path*."""
        return cls.from_env(EnvFile(path), critical)

    def present_critical(self) -> frozenset[str]:
        """Return critical keys that are present with a non-empty value."""
        return frozenset(key for key in self.critical if self.values.get(key, "").strip())

    def missing_from(self, other: CredentialSet) -> list[str]:
        """Return critical keys set here that are missing or empty in *other*."""
        return sorted(
            key for key in self.present_critical() if not other.values.get(key, "").strip()
        )

    def weak_keys(self, minimum: int = MIN_SECRET_LENGTH) -> list[str]:
        """Return critical keys whose value is shorter than *minimum*."""
        return sorted(
            key
            for key in self.present_critical()
            if len(self.values[key]) < minimum
        )


@dataclass(slots=True, frozen=True)
class CredentialReport:
    """Outcome of a guarded regeneration."""

    backup_path: Path | None
    preserved: tuple[str, ...]

    @property
    def fresh_install(self) -> bool:
        """Return ``True`` when there was no previous file to protect."""
        return self.backup_path is None


def generate_secret(length: int) -> str:
    """Return a random alphanumeric secret of *length* characters."""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_credentials(
    existing: CredentialSet | Mapping[str, str],
    *,
    rotate: Iterable[str] = (),
) -> dict[str, str]:
    """Return the standard credential keys, preserving existing values.

    Keys already set in *existing* are carried over unchanged unless listed in
    *rotate*; everything else gets a freshly generated value.
    """
    values = existing.values if isinstance(existing, CredentialSet) else existing
    rotating = set(rotate)
    result: dict[str, str] = {}
    for key, default in DEFAULT_IDENTITIES.items():
        current = values.get(key, "").strip()
        result[key] = current or default
    for key, length in GENERATED_SECRETS.items():
        current = values.get(key, "").strip()
        result[key] = current if current and key not in rotating else generate_secret(length)
    # The application reads the database password under both names.
    result["DB_PASSWORD"] = result["POSTGRES_PASSWORD"]
    return result


@dataclass(slots=True)
class CredentialGuard:
    """Back up, verify and if necessary restore the secret file."""

    env: EnvFile
    backup_dir: Path
    logger: StructuredLogger
    critical_keys: frozenset[str] = frozenset(DEFAULT_CRITICAL_KEYS)
    retention: int = 10
    now: Callable[[], datetime] = field(default=lambda: datetime.now(tz=UTC))

    def __post_init__(self) -> None:
        """Validate the critical key set."""
        self.critical_keys = frozenset(self.critical_keys)
        if not self.critical_keys:
            raise ValueError("The critical credential key set must not be empty.")
        self.backup_dir = Path(self.backup_dir).expanduser()

    def preserve_across_regeneration(self, regenerate: Callable[[], object]) -> CredentialReport:
        """Run *regenerate* without losing any critical credential."""
        backup_path = self.backup() if self.env.exists() else None
        if backup_path is None:
            self.logger.info("No existing credentials; skipping backup.", path=str(self.env.path))
            regenerate()
            return CredentialReport(backup_path=None, preserved=())

        before = CredentialSet.from_file(backup_path, self.critical_keys)
        regenerate()
        after = CredentialSet.from_env(self.env, self.critical_keys)

        missing = before.missing_from(after)
        if not missing:
            preserved = tuple(sorted(before.present_critical()))
            self.logger.info("Critical credentials preserved.", keys=list(preserved))
            return CredentialReport(backup_path=backup_path, preserved=preserved)

        self.logger.critical(
            "Critical credentials lost during regeneration.",
            missing=missing,
            backup=str(backup_path),
        )
        try:
            self.restore(backup_path)
            identical = self.env.path.read_bytes() == backup_path.read_bytes()
        except OSError as exc:
            raise UnrecoverableCredentialError(missing, backup_path, str(exc)) from exc
        if not identical:
            raise UnrecoverableCredentialError(
                missing, backup_path, "restored file does not match the backup"
            )
        self.logger.critical(
            "Previous credentials restored after loss.",
            missing=missing,
            backup=str(backup_path),
        )
        raise CredentialLossError(missing, backup_path)

    def backup(self) -> Path:
        """Copy the current secret file into the backup directory."""
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.backup_dir, 0o700)
        stamp = self.now().strftime("%Y%m%d_%H%M%S_%f")
        destination = self.backup_dir / f"{BACKUP_PREFIX}{stamp}{BACKUP_SUFFIX}"
        shutil.copyfile(self.env.path, destination)
        os.chmod(destination, 0o600)
        self.logger.info("Credentials backed up.", backup=str(destination))
        self.prune()
        return destination

    def restore(self, backup_path: Path) -> None:
        """Atomically copy *backup_path* over the secret file."""
        target = self.env.path
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "wb") as handle:
                handle.write(backup_path.read_bytes())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, target)
        finally:
            tmp_path.unlink(missing_ok=True)

    def list_backups(self) -> list[Path]:
        """Return credential backups, newest first."""
        if not self.backup_dir.is_dir():
            return []
        backups = [
            path
            for path in self.backup_dir.iterdir()
            if path.is_file()
            and path.name.startswith(BACKUP_PREFIX)
            and path.name.endswith(BACKUP_SUFFIX)
        ]
        return sorted(backups, key=lambda path: path.name, reverse=True)

    def prune(self) -> list[Path]:
        """Delete backups beyond the retention limit, oldest first."""
        removed: list[Path] = []
        for path in self.list_backups()[self.retention :]:
            try:
                path.unlink()
            except OSError as exc:
                self.logger.warning(
                    "Failed to prune credential backup.", path=str(path), error=str(exc)
                )
                continue
            removed.append(path)
        return removed

    def verify_against_latest(self) -> list[str]:
        """Return critical keys set in the newest backup but missing now."""
        backups = self.list_backups()
        if not backups:
            return []
        before = CredentialSet.from_file(backups[0], self.critical_keys)
        return before.missing_from(CredentialSet.from_env(self.env, self.critical_keys))


__all__ = [
    "CredentialGuard",
    "CredentialLossError",
    "CredentialReport",
    "CredentialSet",
    "UnrecoverableCredentialError",
    "generate_credentials",
    "generate_secret",
]
