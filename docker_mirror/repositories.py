from __future__ import annotations

import threading
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError
import structlog

from docker_mirror.config import ECR_PUBLIC_REGION, TargetConfig
from docker_mirror.errors import CacheBuildError, ConfigError, RepoEnsureError
from docker_mirror.retry import ExponentialBackoff, RetryExhausted, retry_notify


logger = structlog.get_logger(__name__)

CACHE_BUILD_BACKOFF = ExponentialBackoff(initial_interval=1.0, max_elapsed_time=10.0)


class RepositoryManager:
    """Known target repositories, created on demand.

    Shared by every worker; all access to the name set goes through ``_lock``.
    """

    label = "ECR"

    def __init__(self, client: Any) -> None:
        self.client = client
        self._repositories: set[str] = set()
        self._lock = threading.Lock()

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._repositories

    def ensure(self, name: str) -> None:
        with self._lock:
            if name in self._repositories:
                return
            self._create_locked(name)

    def create(self, name: str) -> None:
        with self._lock:
            self._create_locked(name)

    def build_cache(self) -> None:
        logger.info(f"Loading list of {self.label} repositories")
        next_token: str | None = None
        while True:
            names, next_token = self._describe_repositories(next_token)
            with self._lock:
                self._repositories.update(names)
            if not next_token:
                break
        logger.info(f"Done loading {self.label} repositories", count=len(self._repositories))

    def _create_locked(self, name: str) -> None:
        logger.info(f"Creating {self.label} repository", repository=name)
        try:
            self.client.create_repository(repositoryName=name)
        except (BotoCoreError, ClientError) as exc:
            raise RepoEnsureError(f"Failed to create {self.label} repo {name}: {exc}") from exc
        self._repositories.add(name)

    def _describe_repositories(self, next_token: str | None) -> tuple[list[str], str | None]:
        params: dict[str, str] = {}
        if next_token:
            params["nextToken"] = next_token
        response = self.client.describe_repositories(**params)
        names = [
            item["repositoryName"]
            for item in response.get("repositories") or []
            if item.get("repositoryName")
        ]
        return names, response.get("nextToken")


class PrivateEcrManager(RepositoryManager):
    label = "ECR"


class PublicEcrManager(RepositoryManager):
    label = "ECR public"


def select_repository_manager(target: TargetConfig, session: Any = None) -> RepositoryManager:
    session = session or boto3.session.Session()
    try:
        if target.is_public:
            # public repositories are only managed from us-east-1
            return PublicEcrManager(session.client("ecr-public", region_name=ECR_PUBLIC_REGION))
        return PrivateEcrManager(session.client("ecr"))
    except BotoCoreError as exc:
        raise ConfigError(f"Unable to load AWS SDK config: {exc}") from exc


def build_cache_with_backoff(
    manager: RepositoryManager,
    policy: ExponentialBackoff = CACHE_BUILD_BACKOFF,
    **retry_kwargs: Any,
) -> None:
    def notify(exc: Exception, delay: float) -> None:
        logger.error("Failed to load repositories, retrying", error=str(exc), retry_in=round(delay, 2))

    try:
        retry_notify(manager.build_cache, policy, notify, **retry_kwargs)
    except RetryExhausted as exc:
        raise CacheBuildError(f"Could not build {manager.label} cache: {exc.last_exception}") from exc
