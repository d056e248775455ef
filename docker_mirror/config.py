from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import os
from pathlib import Path
import re

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
import yaml

from docker_mirror.errors import ConfigError


ECR_PUBLIC_REGISTRY_PREFIX = "public.ecr.aws"
ECR_PUBLIC_REGION = "us-east-1"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d|w)")
_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}


def parse_duration(raw: str | int | float | timedelta) -> timedelta:
    """Parse durations such as ``4w``, ``36h`` or ``1w2d12h``.

    Bare numbers are seconds.
    """
    if isinstance(raw, timedelta):
        return raw
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return timedelta(seconds=raw)

    value = str(raw).strip().lower()
    if not value:
        raise ValueError("duration cannot be empty.")

    total = timedelta()
    position = 0
    for match in _DURATION_PART.finditer(value):
        if match.start() != position:
            raise ValueError(f"invalid duration {raw!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(value):
        raise ValueError(f"invalid duration {raw!r}")
    return total


class RepositorySpec(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., min_length=1)
    host: str = ""
    private_registry: str | None = None
    match_tags: tuple[str, ...] = Field(default=(), alias="match_tag")
    drop_tags: tuple[str, ...] = Field(default=(), alias="ignore_tag")
    max_tags: int = Field(default=0, ge=0)
    max_tag_age: timedelta | None = None
    remote_tags_source: str | None = None
    remote_tags_config: dict[str, str] = Field(default_factory=dict)
    target_prefix: str | None = None

    @field_validator("match_tags", "drop_tags", mode="before")
    @classmethod
    def _coerce_patterns(cls, value: object) -> object:
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        return value

    @field_validator("max_tag_age", mode="before")
    @classmethod
    def _parse_max_tag_age(cls, value: object) -> object:
        if value is None or value == "":
            return None
        return parse_duration(value)

    @field_validator("remote_tags_config", mode="before")
    @classmethod
    def _stringify_remote_config(cls, value: object) -> object:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(key): str(item) for key, item in value.items()}
        return value

    def resolve(self) -> RepositorySpec:
        """Return a copy with an embedded ``name:tag`` split into name and match pattern."""
        if ":" not in self.name:
            return self
        name, tag = self.name.split(":", 1)
        return self.model_copy(update={"name": name, "match_tags": (tag,)})


class TargetConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    registry: str = ""
    prefix: str = ""

    @field_validator("registry", "prefix", mode="before")
    @classmethod
    def _none_as_empty(cls, value: object) -> object:
        return "" if value is None else value

    @property
    def is_public(self) -> bool:
        return self.registry.startswith(ECR_PUBLIC_REGISTRY_PREFIX)

    @property
    def credentials_registry(self) -> str:
        if self.is_public:
            return ECR_PUBLIC_REGISTRY_PREFIX
        return self.registry


class MirrorConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    target: TargetConfig = Field(default_factory=TargetConfig)
    cleanup: bool = False
    workers: int = Field(default=0, ge=0)
    repositories: tuple[RepositorySpec, ...] = ()

    @field_validator("repositories", mode="before")
    @classmethod
    def _none_as_empty(cls, value: object) -> object:
        return () if value is None else value


@dataclass(frozen=True)
class Settings:
    config_file: str
    log_level: str
    log_format: str
    prefix: str
    num_workers: int | None
    inactivity_timeout_sec: float
    request_timeout_sec: float
    dockerhub_user: str | None
    dockerhub_password: str | None
    github_token: str | None

    @property
    def has_dockerhub_credentials(self) -> bool:
        return bool(self.dockerhub_user and self.dockerhub_password)


def _env_number(environ: dict[str, str], key: str, default: str, kind: type) -> int | float:
    raw = (environ.get(key) or default).strip()
    try:
        return kind(raw)
    except ValueError as exc:
        raise ConfigError(f"Could not parse {key} env: {raw!r}") from exc


def load_settings(environ: dict[str, str] | None = None) -> Settings:
    env = dict(os.environ if environ is None else environ)

    num_workers: int | None = None
    if env.get("NUM_WORKERS", "").strip():
        num_workers = int(_env_number(env, "NUM_WORKERS", "0", int))
        if num_workers < 1:
            raise ConfigError(f"NUM_WORKERS must be positive, got {num_workers}")

    log_format = (env.get("LOG_FORMAT") or "console").strip().lower()
    if log_format not in {"console", "json"}:
        raise ConfigError(f"LOG_FORMAT must be console or json, got {log_format!r}")

    inactivity_minutes = _env_number(env, "INACTIVITY_TIMEOUT_MINUTES", "1", float)
    request_timeout_sec = _env_number(env, "REQUEST_TIMEOUT_SEC", "10", float)
    return Settings(
        config_file=(env.get("CONFIG_FILE") or "config.yaml").strip(),
        log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
        log_format=log_format,
        prefix=env.get("PREFIX", ""),
        num_workers=num_workers,
        inactivity_timeout_sec=float(inactivity_minutes) * 60,
        request_timeout_sec=float(request_timeout_sec),
        dockerhub_user=env.get("DOCKERHUB_USER") or None,
        dockerhub_password=env.get("DOCKERHUB_PASSWORD") or None,
        github_token=env.get("GITHUB_TOKEN") or None,
    )


def parse_config(raw: str) -> MirrorConfig:
    try:
        payload = yaml.safe_load(raw) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Could not parse config file: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError("Could not parse config file: top level must be a mapping")

    try:
        config = MirrorConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config file: {exc}") from exc

    if not config.target.registry.strip():
        raise ConfigError("Missing `target -> registry` yaml config")
    return config


def load_config(path: str | Path) -> MirrorConfig:
    try:
        content = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Could not read config file: {exc}") from exc
    return parse_config(content)


def resolve_workers(config: MirrorConfig, settings: Settings) -> int:
    if settings.num_workers:
        return settings.num_workers
    if config.workers:
        return config.workers
    return os.cpu_count() or 1
