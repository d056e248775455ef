from __future__ import annotations

from datetime import datetime
from functools import lru_cache
import re
from typing import Any, Iterable

import structlog

from docker_mirror.config import RepositorySpec
from docker_mirror.registry_client import RemoteTag, utc_now


logger = structlog.get_logger(__name__)


@lru_cache(maxsize=512)
def _compile_glob(pattern: str) -> re.Pattern[str]:
    body = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile(f"^{body}$", re.DOTALL)


def glob_match(pattern: str, value: str) -> bool:
    """``*`` matches any run of characters; everything else is literal."""
    return _compile_glob(pattern).match(value) is not None


def matches_any(patterns: Iterable[str], value: str) -> str | None:
    for pattern in patterns:
        if glob_match(pattern, value):
            return pattern
    return None


def filter_tags(
    tags: Iterable[RemoteTag],
    repo: RepositorySpec,
    now: datetime | None = None,
    log: Any = None,
) -> list[RemoteTag]:
    """Apply match, ignore, age and count rules, in that order."""
    log = log or logger.bind(repo=repo.name)
    now = now or utc_now()
    cutoff = now - repo.max_tag_age if repo.max_tag_age is not None else None

    kept: list[RemoteTag] = []
    for tag in tags:
        if repo.match_tags and matches_any(repo.match_tags, tag.name) is None:
            log.debug("Dropping tag, it matches no glob pattern", tag=tag.name)
            continue

        if repo.drop_tags:
            pattern = matches_any(repo.drop_tags, tag.name)
            if pattern is not None:
                log.debug("Dropping tag, it is ignored by glob", tag=tag.name, pattern=pattern)
                continue

        # tags without a timestamp cannot be aged out
        if cutoff is not None and tag.last_updated is not None and tag.last_updated < cutoff:
            log.debug("Dropping tag, it is too old", tag=tag.name, max_tag_age=str(repo.max_tag_age))
            continue

        kept.append(tag)

    if repo.max_tags and len(kept) > repo.max_tags:
        log.debug("Dropping tags over max_tags", dropped=len(kept) - repo.max_tags, max_tags=repo.max_tags)
        kept = kept[: repo.max_tags]
    return kept
