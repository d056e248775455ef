from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
import re
import time
from typing import Any, Callable

import httpx
import structlog

from docker_mirror.config import RepositorySpec, Settings
from docker_mirror.errors import RemoteFetchError


DOCKER_HUB = "hub.docker.com"
QUAY = "quay.io"
GCR = "gcr.io"
K8S_GCR = "k8s.gcr.io"
SUPPORTED_HOSTS = (DOCKER_HUB, QUAY, GCR, K8S_GCR)

GITHUB_TAG_SOURCE = "github"

DOCKER_HUB_LOGIN_URL = "https://hub.docker.com/v2/users/login/"
DOCKER_HUB_TAGS_URL = "https://registry.hub.docker.com/v2/repositories/{name}/tags/?page_size=2048"
QUAY_TAGS_URL = "https://quay.io/api/v1/repository/{name}/tag/"
V2_TAGS_URL = "https://{host}/v2/{name}/tags/list"
GITHUB_TAGS_URL = "https://api.github.com/repos/{owner}/{repo}/tags"

MAX_RETRIES = 5
DEFAULT_SLEEP_SECONDS = 60.0

logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class RemoteTag:
    name: str
    last_updated: datetime | None = None


def get_sleep_time(rate_limit_reset: str | None, now: datetime) -> float:
    """Seconds to wait before retrying a rate limited request."""
    try:
        reset_at = datetime.fromtimestamp(int(rate_limit_reset), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return DEFAULT_SLEEP_SECONDS
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return max(0.0, (reset_at - now).total_seconds())


_FRACTION = re.compile(r"\.(\d+)")


def _normalize_fraction(value: str) -> str:
    # fromisoformat on 3.10 only takes 3 or 6 fractional digits
    return _FRACTION.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), value, count=1)


def parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(_normalize_fraction(value.replace("Z", "+00:00")))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def sort_newest_first(tags: list[RemoteTag]) -> list[RemoteTag]:
    oldest = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(tags, key=lambda tag: tag.last_updated or oldest, reverse=True)


def create_http_client(settings: Settings) -> httpx.Client:
    return httpx.Client(timeout=settings.request_timeout_sec, trust_env=True, follow_redirects=True)


class RegistryClient:
    """Lists remote tags for a repository from one of the supported sources."""

    def __init__(
        self,
        client: httpx.Client,
        settings: Settings,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.settings = settings
        self.sleep = sleep
        self.clock = clock

    def close(self) -> None:
        self.client.close()

    def fetch_tags(self, repo: RepositorySpec, log: Any = None) -> list[RemoteTag]:
        log = log or logger.bind(repo=repo.name)
        if repo.remote_tags_source:
            if repo.remote_tags_source != GITHUB_TAG_SOURCE:
                raise RemoteFetchError(f"Unsupported remote tag source: {repo.remote_tags_source}")
            return self._github_tags(repo, log)

        host = repo.host or DOCKER_HUB
        if host == DOCKER_HUB:
            return self._docker_hub_tags(repo, log)
        if host == QUAY:
            return self._quay_tags(repo, log)
        if host in (GCR, K8S_GCR):
            return self._v2_tags(host, repo, log)
        raise RemoteFetchError(f"No tag source for host {host}")

    def _docker_hub_tags(self, repo: RepositorySpec, log: Any) -> list[RemoteTag]:
        full_name = repo.name if "/" in repo.name else f"library/{repo.name}"
        headers: dict[str, str] = {}
        if self.settings.has_dockerhub_credentials:
            log.info("Getting tags using docker hub credentials from environment")
            headers["Authorization"] = f"JWT {self._docker_hub_login()}"

        tags: list[RemoteTag] = []
        url: str | None = DOCKER_HUB_TAGS_URL.format(name=full_name)
        while url:
            payload = self._get_json(url, headers, log)
            results = payload.get("results") or []
            if not isinstance(results, list):
                raise RemoteFetchError("Invalid tag list response from Docker Hub.", url=url)
            for item in results:
                if isinstance(item, dict) and isinstance(item.get("name"), str):
                    tags.append(RemoteTag(item["name"], parse_timestamp(item.get("last_updated"))))
            next_url = payload.get("next")
            url = next_url if isinstance(next_url, str) and next_url else None
        return sort_newest_first(tags)

    def _docker_hub_login(self) -> str:
        try:
            response = self.client.post(
                DOCKER_HUB_LOGIN_URL,
                json={
                    "username": self.settings.dockerhub_user,
                    "password": self.settings.dockerhub_password,
                },
            )
        except httpx.RequestError as exc:
            raise RemoteFetchError(f"Docker Hub login failed: {exc}", url=DOCKER_HUB_LOGIN_URL) from exc

        if not response.is_success:
            raise RemoteFetchError(
                f"Docker Hub login failed with {response.status_code}",
                url=DOCKER_HUB_LOGIN_URL,
                status_code=response.status_code,
            )
        try:
            token = response.json().get("token")
        except ValueError as exc:
            raise RemoteFetchError("Invalid Docker Hub login response.", url=DOCKER_HUB_LOGIN_URL) from exc
        if not isinstance(token, str) or not token:
            raise RemoteFetchError("Docker Hub login returned no token.", url=DOCKER_HUB_LOGIN_URL)
        return token

    def _quay_tags(self, repo: RepositorySpec, log: Any) -> list[RemoteTag]:
        base_url = QUAY_TAGS_URL.format(name=repo.name)
        tags: list[RemoteTag] = []
        page = 1
        while True:
            url = str(httpx.URL(base_url, params={"page": page, "limit": 100}))
            payload = self._get_json(url, None, log)
            for item in payload.get("tags") or []:
                if isinstance(item, dict) and isinstance(item.get("name"), str):
                    tags.append(RemoteTag(item["name"], parse_timestamp(item.get("last_modified"))))
            if not payload.get("has_additional"):
                break
            page += 1
        return sort_newest_first(tags)

    def _v2_tags(self, host: str, repo: RepositorySpec, log: Any) -> list[RemoteTag]:
        url = V2_TAGS_URL.format(host=host, name=repo.name)
        payload = self._get_json(url, None, log)
        names = payload.get("tags") or []
        if not isinstance(names, list):
            raise RemoteFetchError(f"Invalid tag list response from {host}.", url=url)
        return [RemoteTag(name) for name in names if isinstance(name, str)]

    def _github_tags(self, repo: RepositorySpec, log: Any) -> list[RemoteTag]:
        config = repo.remote_tags_config
        try:
            limit = int(config.get("num_releases", ""))
        except ValueError as exc:
            raise RemoteFetchError(
                "Invalid/missing int value for remote_tags_config -> num_releases"
            ) from exc
        owner, name = config.get("owner"), config.get("repo")
        if not owner or not name:
            raise RemoteFetchError("Missing remote_tags_config -> owner/repo")

        headers = {"Accept": "application/vnd.github+json"}
        if self.settings.github_token:
            headers["Authorization"] = f"Bearer {self.settings.github_token}"
        url = str(httpx.URL(GITHUB_TAGS_URL.format(owner=owner, repo=name), params={"per_page": limit}))
        payload = self._get_json(url, headers, log, expect=list)
        return [
            RemoteTag(item["name"].removeprefix("v"))
            for item in payload
            if isinstance(item, dict) and isinstance(item.get("name"), str)
        ]

    def _get_json(
        self,
        url: str,
        headers: dict[str, str] | None,
        log: Any,
        expect: type = dict,
    ) -> Any:
        response = self._get(url, headers, log)
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteFetchError(f"Invalid JSON from {url}", url=url) from exc
        if not isinstance(payload, expect):
            raise RemoteFetchError(f"Unexpected response shape from {url}", url=url)
        return payload

    def _get(self, url: str, headers: dict[str, str] | None, log: Any) -> httpx.Response:
        last_error = RemoteFetchError(f"Get {url} was never attempted", url=url)
        retries = MAX_RETRIES
        while retries > 0:
            retries -= 1
            try:
                response = self.client.get(url, headers=headers)
            except httpx.RequestError as exc:
                log.warning("Failed to get url, retrying", url=url, error=str(exc), retries_left=retries)
                last_error = RemoteFetchError(f"Get {url} failed: {exc}", url=url)
                continue

            if response.status_code == 429:
                sleep_time = get_sleep_time(response.headers.get("X-RateLimit-Reset"), self.clock())
                log.info("Rate limited, sleeping", url=url, sleep_seconds=sleep_time)
                self.sleep(sleep_time)
                last_error = RemoteFetchError(f"Get {url} was rate limited", url=url, status_code=429)
                continue

            if not response.is_success:
                log.warning(
                    "Get url failed, retrying",
                    url=url,
                    status_code=response.status_code,
                    retries_left=retries,
                )
                last_error = RemoteFetchError(
                    f"Get {url} failed with {response.status_code}",
                    url=url,
                    status_code=response.status_code,
                )
                continue
            return response
        raise last_error
