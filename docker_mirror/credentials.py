from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
import json
import os
from pathlib import Path
import subprocess

from docker_mirror.errors import CredentialError


@dataclass(frozen=True)
class DockerCredentials:
    username: str
    password: str
    # set when served by a docker credential helper
    helper: str | None = None

    def __repr__(self) -> str:
        return f"DockerCredentials(username={self.username!r}, password='***', helper={self.helper!r})"


def docker_config_path() -> Path:
    base = os.getenv("DOCKER_CONFIG")
    if base:
        return Path(base) / "config.json"
    return Path.home() / ".docker" / "config.json"


def _load_docker_config(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise CredentialError(f"Could not read docker config {path}: {exc}") from exc
    return payload if isinstance(payload, dict) else {}


def _from_helper(helper: str, registry: str) -> DockerCredentials:
    command = [f"docker-credential-{helper}", "get"]
    try:
        result = subprocess.run(
            command,
            input=registry,
            check=False,
            capture_output=True,
            text=True,
            timeout=60,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise CredentialError(f"Credential helper {helper} failed for {registry}: {exc}") from exc
    if result.returncode != 0:
        detail = (result.stdout or result.stderr).strip()
        raise CredentialError(f"Credential helper {helper} failed for {registry}: {detail}")
    try:
        payload = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise CredentialError(f"Credential helper {helper} returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise CredentialError(f"Credential helper {helper} returned unexpected payload for {registry}")
    return DockerCredentials(
        username=str(payload.get("Username", "")),
        password=str(payload.get("Secret", "")),
        helper=helper,
    )


def _from_auth_entry(entry: dict[str, object], registry: str) -> DockerCredentials:
    encoded = entry.get("auth")
    if isinstance(encoded, str) and encoded:
        try:
            decoded = base64.b64decode(encoded).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise CredentialError(f"Invalid auth entry for {registry}") from exc
        username, sep, password = decoded.partition(":")
        if not sep:
            raise CredentialError(f"Invalid auth entry for {registry}")
        return DockerCredentials(username=username, password=password)

    username, password = entry.get("username"), entry.get("password")
    if isinstance(username, str) and isinstance(password, str):
        return DockerCredentials(username=username, password=password)
    raise CredentialError(f"No auth found for {registry}")


def _find_auth_entry(auths: dict[str, object], registry: str) -> dict[str, object] | None:
    for key in (registry, f"https://{registry}", f"http://{registry}"):
        entry = auths.get(key)
        if isinstance(entry, dict):
            return entry
    return None


def get_docker_credentials(registry: str, config_path: Path | None = None) -> DockerCredentials:
    config = _load_docker_config(config_path or docker_config_path())

    helpers = config.get("credHelpers")
    if isinstance(helpers, dict) and isinstance(helpers.get(registry), str):
        return _from_helper(helpers[registry], registry)

    auths = config.get("auths")
    entry = _find_auth_entry(auths, registry) if isinstance(auths, dict) else None
    if entry:
        return _from_auth_entry(entry, registry)

    store = config.get("credsStore")
    if isinstance(store, str) and store:
        return _from_helper(store, registry)

    raise CredentialError(f"No auth found for {registry}")
