from __future__ import annotations

from datetime import datetime, timezone

import pytest

from docker_mirror.config import load_settings


FIXED_NOW = datetime(2021, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def settings():
    return load_settings({})


@pytest.fixture
def aws_credentials(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
