from __future__ import annotations

import sys

import structlog

from docker_mirror.config import MirrorConfig, Settings, load_config, load_settings, resolve_workers
from docker_mirror.docker_cli import DockerCli
from docker_mirror.errors import CacheBuildError, ConfigError, DockerError
from docker_mirror.logging_config import setup_logging
from docker_mirror.registry_client import RegistryClient, create_http_client
from docker_mirror.repositories import build_cache_with_backoff, select_repository_manager
from docker_mirror.sync_jobs import MirrorContext, WorkerPool, run_mirror_job


logger = structlog.get_logger(__name__)


def run(config: MirrorConfig, settings: Settings, docker: DockerCli) -> int:
    logger.info("Creating AWS client", target=config.target.registry, public=config.target.is_public)
    manager = select_repository_manager(config.target)
    build_cache_with_backoff(manager)

    registry = RegistryClient(create_http_client(settings), settings)
    context = MirrorContext(
        config=config,
        settings=settings,
        docker=docker,
        manager=manager,
        registry=registry,
    )
    pool = WorkerPool(lambda repo: run_mirror_job(repo, context), resolve_workers(config, settings))
    try:
        submitted = pool.dispatch(config.repositories, settings.prefix)
        logger.info("Queued repositories", count=submitted, workers=pool.workers, prefix=settings.prefix or None)
        pool.join()
    finally:
        registry.close()
    return submitted


def main() -> int:
    try:
        settings = load_settings()
    except ConfigError as exc:
        setup_logging()
        logger.error("Invalid environment", error=str(exc))
        return 1

    try:
        setup_logging(settings.log_level, settings.log_format)
    except ValueError as exc:
        setup_logging()
        logger.error("Invalid LOG_LEVEL", error=str(exc))
        return 1

    try:
        config = load_config(settings.config_file)
        logger.info("Creating Docker client")
        docker = DockerCli(inactivity_timeout_sec=settings.inactivity_timeout_sec)
        logger.info("Connected to Docker daemon", daemon=docker.info())
        run(config, settings, docker)
    except (ConfigError, CacheBuildError, DockerError) as exc:
        logger.error("Aborting mirror run", error_type=type(exc).__name__, error=str(exc))
        return 1

    logger.info("Done")
    return 0


if __name__ == "__main__":
    sys.exit(main())
