"""Metricpipe — Dashboard Cache.

In-process TTL cache whose entries carry tags, so the pipeline can drop
every cached dashboard read for an organization or team at once.
"""

import time
from typing import Any, Dict, Iterable, Optional, Set, Tuple

from app.config import settings
from app.core.logging import get_logger

logger = get_logger("cache")


def org_tag(organization_id: str) -> str:
    return f"dashboard_org_{organization_id}"


def team_tag(team_id: str) -> str:
    return f"dashboard_team_{team_id}"


def dashboard_tags(organization_id: str, team_id: Optional[str] = None) -> list:
    tags = [org_tag(organization_id)]
    if team_id:
        tags.append(team_tag(team_id))
    return tags


class TaggedTTLCache:
    """TTL cache with tag-based invalidation."""

    def __init__(self, ttl_s: int = 60):
        self.ttl_s = ttl_s
        self._store: Dict[str, Tuple[float, Any]] = {}
        self._tags: Dict[str, Set[str]] = {}
        self._key_tags: Dict[str, Set[str]] = {}

    def get(self, key: str) -> Optional[Any]:
        v = self._store.get(key)
        if not v:
            return None
        ts, obj = v
        if time.time() - ts > self.ttl_s:
            self._forget(key)
            return None
        return obj

    def set(self, key: str, value: Any, tags: Iterable[str] = ()) -> None:
        self._forget(key)
        self._store[key] = (time.time(), value)
        self._key_tags[key] = set(tags)
        for tag in self._key_tags[key]:
            self._tags.setdefault(tag, set()).add(key)

    def _forget(self, key: str) -> None:
        """Drop a key and its tag memberships; empty tag sets go too."""
        self._store.pop(key, None)
        for tag in self._key_tags.pop(key, set()):
            keys = self._tags.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._tags[tag]

    def invalidate_tags(self, tags: Iterable[str]) -> int:
        removed = 0
        for tag in tags:
            for key in list(self._tags.get(tag, ())):
                if key in self._store:
                    removed += 1
                self._forget(key)
        return removed

    def clear(self) -> None:
        self._store.clear()
        self._tags.clear()
        self._key_tags.clear()


dashboard_cache = TaggedTTLCache(ttl_s=settings.dashboard_cache_ttl_seconds)


def invalidate_cache_by_tags(tags: Iterable[str]) -> int:
    tags = list(tags)
    removed = dashboard_cache.invalidate_tags(tags)
    logger.info(f"Invalidated {removed} cached entries for tags {tags}")
    return removed
