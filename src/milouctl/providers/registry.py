"""Container registry client backed by the GitHub packages API."""
from __future__ import annotations

import http.client
import json
import re
import time
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from packaging.version import InvalidVersion, Version

from ..logging import StructuredLogger

_RELEASE_TAG = re.compile(r"^\d+\.\d+\.\d+$")
_PAGE_SIZE = 100
_MAX_PAGES = 50


class RegistryError(RuntimeError):
    """Raised when the registry cannot be queried."""


def release_tags(tags: Iterable[str]) -> list[str]:
    """Return the concrete ``X.Y.Z`` tags in *tags*, newest first, deduplicated."""
    parsed: dict[str, Version] = {}
    for tag in tags:
        candidate = tag.strip()
        if not _RELEASE_TAG.match(candidate) or candidate in parsed:
            continue
        try:
            parsed[candidate] = Version(candidate)
        except InvalidVersion:
            continue
    return sorted(parsed, key=parsed.__getitem__, reverse=True)


@dataclass(slots=True)
class RegistryClient:
    """Resolve published image versions for managed services.

    Each request is bounded by ``timeout`` and retried ``retries`` times with a
    fixed ``backoff`` between attempts.
    """

    logger: StructuredLogger
    api_base: str = "https://api.github.com"
    organization: str = "milou-sh"
    repository: str = "milou"
    token: str | None = None
    timeout: float = 10.0
    retries: int = 2
    backoff: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep)

    def package_url(self, service: str) -> str:
        """Return the versions endpoint for *service*'s container package."""
        package = urllib.parse.quote(f"{self.repository}/{service}", safe="")
        return (
            f"{self.api_base}/orgs/{self.organization}/packages/container/"
            f"{package}/versions?per_page={_PAGE_SIZE}"
        )

    def list_versions(self, service: str) -> list[str]:
        """Return every published concrete version for *service*, newest first.

        Pages are requested until one comes back short.
        """
        tags: list[str] = []
        for page in range(1, _MAX_PAGES + 1):
            payload = self._get_json(f"{self.package_url(service)}&page={page}")
            if not isinstance(payload, list):
                raise RegistryError(f"Unexpected registry payload for {service}.")
            tags.extend(_entry_tags(payload))
            if len(payload) < _PAGE_SIZE:
                break
        return release_tags(tags)

    def latest_version(self, service: str) -> str:
        """Return the newest concrete version published for *service*."""
        versions = self.list_versions(service)
        if not versions:
            raise RegistryError(f"No published versions found for {service}.")
        return versions[0]

    # ------------------------------------------------------------------
    def _get_json(self, url: str) -> object:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        request = urllib.request.Request(url, headers=headers)

        attempts = self.retries + 1
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                with urllib.request.urlopen(request, timeout=self.timeout) as resp:  # noqa: S310
                    body = resp.read().decode("utf-8")
                return json.loads(body)
            except urllib.error.HTTPError as exc:
                last_error = exc
                # Client errors other than rate limiting will not improve on retry.
                if 400 <= exc.code < 500 and exc.code not in {403, 429}:
                    break
            except (urllib.error.URLError, OSError, http.client.HTTPException) as exc:
                last_error = exc
            except UnicodeDecodeError as exc:
                raise RegistryError(
                    f"Registry returned undecodable data from {url}: {exc}"
                ) from exc
            except json.JSONDecodeError as exc:
                raise RegistryError(f"Registry returned invalid JSON from {url}: {exc}") from exc
            if attempt < attempts:
                self.logger.debug(
                    "Registry request failed; retrying.",
                    url=url,
                    attempt=attempt,
                    error=str(last_error),
                )
                self.sleep(self.backoff)
        raise RegistryError(f"Registry request to {url} failed: {last_error}") from last_error


def _entry_tags(payload: list[object]) -> list[str]:
    tags: list[str] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        metadata = entry.get("metadata")
        container = metadata.get("container") if isinstance(metadata, dict) else None
        entry_tags = container.get("tags") if isinstance(container, dict) else None
        if isinstance(entry_tags, list):
            tags.extend(str(tag) for tag in entry_tags)
    return tags


__all__ = ["RegistryClient", "RegistryError", "release_tags"]
