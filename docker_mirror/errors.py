from __future__ import annotations

from dataclasses import dataclass


@dataclass
class MirrorError(Exception):
    message: str

    def __str__(self) -> str:
        return self.message


class ConfigError(MirrorError):
    pass


class CacheBuildError(MirrorError):
    pass


class UnsupportedHostError(MirrorError):
    pass


@dataclass
class RemoteFetchError(MirrorError):
    url: str | None = None
    status_code: int | None = None


class RepoEnsureError(MirrorError):
    pass


class TagStepError(MirrorError):
    pass


@dataclass
class DockerError(TagStepError):
    return_code: int | None = None


class CredentialError(TagStepError):
    pass
