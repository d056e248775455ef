from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import queue
import threading
import time
from typing import Any, Callable, Iterable, Iterator, Protocol

import structlog

from docker_mirror.config import MirrorConfig, RepositorySpec, Settings
from docker_mirror.credentials import DockerCredentials, get_docker_credentials
from docker_mirror.errors import MirrorError, RepoEnsureError, TagStepError, UnsupportedHostError
from docker_mirror.filters import filter_tags
from docker_mirror.registry_client import DOCKER_HUB, SUPPORTED_HOSTS, RegistryClient, RemoteTag
from docker_mirror.repositories import RepositoryManager


logger = structlog.get_logger(__name__)

DEFAULT_QUEUE_SIZE = 5


class ContainerRuntime(Protocol):
    def login(self, registry: str | None, credentials: DockerCredentials, log: Any = None) -> None: ...

    def pull(self, repository: str, tag: str, log: Any = None) -> None: ...

    def tag(self, source: str, target: str, log: Any = None) -> None: ...

    def push(self, repository: str, tag: str, log: Any = None) -> None: ...

    def remove(self, image: str, log: Any = None) -> None: ...


@dataclass(frozen=True)
class MirrorContext:
    config: MirrorConfig
    settings: Settings
    docker: ContainerRuntime
    manager: RepositoryManager
    registry: RegistryClient
    credentials_lookup: Callable[[str], DockerCredentials] = get_docker_credentials


@dataclass
class MirrorResult:
    repository: str
    target_repository: str
    mirrored: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class Mirror:
    def __init__(self, repo: RepositorySpec, context: MirrorContext) -> None:
        self.repo = repo
        self.context = context
        self.log = logger.bind(full_repo=repo.name)
        self.remote_tags: list[RemoteTag] = []

    @property
    def host(self) -> str:
        return self.repo.host or DOCKER_HUB

    def setup(self) -> None:
        self.repo = self.repo.resolve()
        tags = self.context.registry.fetch_tags(self.repo, self.log)
        self.remote_tags = filter_tags(tags, self.repo, log=self.log)
        self.log = self.log.bind(repo=self.repo.name, num_tags=len(self.remote_tags))

    def target_repository_name(self) -> str:
        prefix = self.repo.target_prefix
        if prefix is None:
            prefix = self.context.config.target.prefix
        return f"{prefix}{self.repo.name}"

    def target_repository(self) -> str:
        return f"{self.context.config.target.registry}/{self.target_repository_name()}"

    def source_registry(self) -> str | None:
        """Registry the pull goes to, ``None`` for Docker Hub itself."""
        if self.host != DOCKER_HUB:
            return self.host
        if self.repo.private_registry:
            return self.repo.private_registry.rstrip("/")
        return None

    def source_repository(self) -> str:
        registry = self.source_registry()
        return f"{registry}/{self.repo.name}" if registry else self.repo.name

    def source_image(self, tag: str) -> str:
        return f"{self.source_repository()}:{tag}"

    def target_image(self, tag: str) -> str:
        return f"{self.target_repository()}:{tag}"

    def pull_image(self, tag: str, log: Any) -> None:
        settings = self.context.settings
        if self.host == DOCKER_HUB and settings.has_dockerhub_credentials:
            log.info("Using docker hub credentials from environment")
            credentials = DockerCredentials(settings.dockerhub_user or "", settings.dockerhub_password or "")
            self.context.docker.login(self.source_registry(), credentials, log)
        with _timed(log, "docker pull"):
            self.context.docker.pull(self.source_repository(), tag, log)

    def tag_image(self, tag: str, log: Any) -> None:
        with _timed(log, "docker tag"):
            self.context.docker.tag(self.source_image(tag), self.target_image(tag), log)

    def push_image(self, tag: str, log: Any) -> None:
        target = self.context.config.target
        credentials = self.context.credentials_lookup(target.credentials_registry)
        if credentials.helper:
            log.debug("Push credentials served by credential helper", helper=credentials.helper)
        else:
            self.context.docker.login(target.credentials_registry, credentials, log)
        with _timed(log, "docker push"):
            self.context.docker.push(self.target_repository(), tag, log)

    def delete_image(self, tag: str, log: Any) -> None:
        for image in (self.source_image(tag), self.target_image(tag)):
            log.info("Cleaning image", image=image)
            self.context.docker.remove(image, log)

    def work(self) -> MirrorResult:
        target_name = self.target_repository_name()
        result = MirrorResult(repository=self.repo.name, target_repository=target_name)
        self.log.debug("Starting work")

        try:
            self.context.manager.ensure(target_name)
        except RepoEnsureError as exc:
            self.log.error("Failed to create target repository", target=target_name, error=str(exc))
            return result

        steps = [
            ("pull docker image", self.pull_image),
            ("(re)tag docker image", self.tag_image),
            ("push (re)tagged image", self.push_image),
        ]
        if self.context.config.cleanup:
            steps.append(("clean image", self.delete_image))

        for remote_tag in self.remote_tags:
            log = self.log.bind(tag=remote_tag.name)
            log.info("Start mirror tag")
            if self._run_steps(steps, remote_tag.name, log):
                log.info("Successfully pushed (re)tagged image")
                result.mirrored.append(remote_tag.name)
            else:
                result.failed.append(remote_tag.name)

        self.log.info("Repository mirror completed", mirrored=len(result.mirrored), failed=len(result.failed))
        return result

    @staticmethod
    def _run_steps(steps: list[tuple[str, Callable[[str, Any], None]]], tag: str, log: Any) -> bool:
        for description, step in steps:
            try:
                step(tag, log)
            except TagStepError as exc:
                log.error(f"Failed to {description}", error=str(exc))
                return False
        return True


@contextmanager
def _timed(log: Any, action: str) -> Iterator[None]:
    log.info(f"Starting {action}")
    started = time.monotonic()
    yield
    log.info(f"Completed {action}", elapsed_sec=round(time.monotonic() - started, 3))


def run_mirror_job(repo: RepositorySpec, context: MirrorContext) -> MirrorResult:
    host = repo.host or DOCKER_HUB
    if host not in SUPPORTED_HOSTS:
        raise UnsupportedHostError(
            f"Could not pull images from host: {host}. We support {', '.join(SUPPORTED_HOSTS)}"
        )
    mirror = Mirror(repo, context)
    mirror.setup()
    return mirror.work()


_STOP = object()


class WorkerPool:
    """Fixed set of worker threads draining a bounded FIFO of repository jobs."""

    def __init__(
        self,
        handler: Callable[[RepositorySpec], object],
        workers: int,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be positive.")
        self.handler = handler
        self.workers = workers
        self._queue: queue.Queue[object] = queue.Queue(maxsize=queue_size)
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self.acknowledged = 0

    def start(self) -> None:
        if self._threads:
            return
        for index in range(self.workers):
            thread = threading.Thread(target=self._worker, name=f"mirror-worker-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def submit(self, repo: RepositorySpec) -> None:
        self._queue.put(repo)

    def dispatch(self, repositories: Iterable[RepositorySpec], prefix: str = "") -> int:
        self.start()
        submitted = 0
        for repo in repositories:
            if prefix and not repo.name.startswith(prefix):
                continue
            self.submit(repo)
            submitted += 1
        return submitted

    def join(self) -> None:
        self._queue.join()
        for _ in self._threads:
            self._queue.put(_STOP)
        for thread in self._threads:
            thread.join()
        self._threads = []

    def _worker(self) -> None:
        logger.debug("Starting worker")
        while True:
            job = self._queue.get()
            try:
                if job is _STOP:
                    return
                self._process(job)
            finally:
                self._queue.task_done()

    def _process(self, repo: Any) -> None:
        log = logger.bind(full_repo=repo.name)
        try:
            self.handler(repo)
        except MirrorError as exc:
            log.error("Failed to mirror repository", error_type=type(exc).__name__, error=str(exc))
        except Exception:
            log.exception("Unexpected error while mirroring repository")
        finally:
            with self._lock:
                self.acknowledged += 1
