from __future__ import annotations

from datetime import timedelta

import pytest

from docker_mirror.config import RepositorySpec
from docker_mirror.filters import filter_tags, glob_match
from docker_mirror.registry_client import RemoteTag

from tests.conftest import FIXED_NOW


def names(tags):
    return [tag.name for tag in tags]


@pytest.mark.parametrize(
    ("pattern", "value", "expected"),
    [
        ("6.*", "6.1", True),
        ("6.*", "5.9", False),
        ("*-alpine", "6.1-alpine", True),
        ("*-alpine", "6.1", False),
        ("latest", "latest", True),
        ("latest", "latest-rc", False),
        ("*alpine*", "3.2-alpine3.9", True),
        ("*", "", True),
        ("v[0-9]", "v1", False),
        ("v?", "v?", True),
    ],
)
def test_glob_match(pattern, value, expected):
    assert glob_match(pattern, value) is expected


def test_match_and_ignore_patterns():
    repo = RepositorySpec(name="elasticsearch", match_tag=["6.*"], ignore_tag=["*-alpine"])
    tags = [RemoteTag("6.1"), RemoteTag("6.1-alpine"), RemoteTag("5.9"), RemoteTag("6.2")]

    assert names(filter_tags(tags, repo, now=FIXED_NOW)) == ["6.1", "6.2"]


def test_match_patterns_are_or_combined():
    repo = RepositorySpec(name="redis", match_tag=["3*", "4*", "latest"])
    tags = [RemoteTag(name) for name in ["latest", "5.0", "4.0.1", "3.2", "alpine"]]

    assert names(filter_tags(tags, repo, now=FIXED_NOW)) == ["latest", "4.0.1", "3.2"]


def test_no_patterns_keeps_everything():
    repo = RepositorySpec(name="redis")
    tags = [RemoteTag("a"), RemoteTag("b")]

    assert names(filter_tags(tags, repo, now=FIXED_NOW)) == ["a", "b"]


def test_ignore_applies_after_match():
    repo = RepositorySpec(name="redis", match_tag=["*"], ignore_tag=["*32bit*", "*nanoserver*"])
    tags = [RemoteTag(name) for name in ["4.0", "4.0-32bit", "4.0-nanoserver", "4.1"]]

    assert names(filter_tags(tags, repo, now=FIXED_NOW)) == ["4.0", "4.1"]


def test_max_tag_age():
    repo = RepositorySpec(name="redis", max_tag_age="1w")
    tags = [
        RemoteTag("fresh", FIXED_NOW - timedelta(days=1)),
        RemoteTag("boundary", FIXED_NOW - timedelta(weeks=1)),
        RemoteTag("stale", FIXED_NOW - timedelta(weeks=1, seconds=1)),
        RemoteTag("undated"),
    ]

    assert names(filter_tags(tags, repo, now=FIXED_NOW)) == ["fresh", "boundary", "undated"]


def test_max_tags_keeps_newest_in_order():
    repo = RepositorySpec(name="jippi/hashi-ui", max_tags=2)
    tags = [RemoteTag("v3"), RemoteTag("v2"), RemoteTag("v1")]

    assert names(filter_tags(tags, repo, now=FIXED_NOW)) == ["v3", "v2"]


def test_max_tags_applies_after_other_filters():
    repo = RepositorySpec(name="x", max_tags=2, ignore_tag=["*-rc"])
    tags = [RemoteTag(name) for name in ["v4-rc", "v3", "v2-rc", "v2", "v1"]]

    assert names(filter_tags(tags, repo, now=FIXED_NOW)) == ["v3", "v2"]


def test_max_tags_not_exceeded_is_noop():
    repo = RepositorySpec(name="x", max_tags=5)
    tags = [RemoteTag("b"), RemoteTag("a")]

    assert names(filter_tags(tags, repo, now=FIXED_NOW)) == ["b", "a"]
