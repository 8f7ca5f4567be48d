# Copyright (c) 2026 Epiplane Contributors. All Rights Reserved.

"""
Cache Invalidator — Drops cached rendered pages by tag or by path.

Layout in Redis (see kernel.namespace):
  epi:{journal}:page:{path}               cached page entry
  epi:{journal}:tag:{tag}                 SET of paths tagged with {tag}
  epi:{journal}:revalidated:{kind}:{x}    epoch ms of the last revalidation
  epi:{journal}:revalidate                Pub/Sub channel for renderers

Revalidations without a journal apply to every known journal and to the
"global" namespace.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Iterable, List, Optional

import redis.asyncio as aioredis

from epiplane.kernel.namespace import (
    get_channel,
    get_page_key,
    get_revalidated_key,
    get_tag_key,
)

logger = logging.getLogger("epi.cache")

GLOBAL_SCOPE = "global"

# Site sections a page can be tagged with; the section follows the language
PAGE_TAGS = [
    "about",
    "articles",
    "news",
    "members",
    "volumes",
    "sections",
    "credits",
    "for-authors",
]


def page_tags(path: str) -> List[str]:
    """Tags of a page path, e.g. /fr/articles/12 -> ['articles']."""
    parts = [p for p in path.split("/") if p]
    if len(parts) >= 2 and parts[1] in PAGE_TAGS:
        return [parts[1]]
    return []


class CacheInvalidator:
    """Tag/path invalidation over a Redis-backed page cache."""

    def __init__(self, redis: aioredis.Redis, journals: Iterable[str] = ()) -> None:
        self._redis = redis
        self._journals = sorted(set(journals))

    def _scopes(self, journal: Optional[str]) -> List[str]:
        if journal:
            return [journal]
        return self._journals + [GLOBAL_SCOPE]

    async def get_page(self, journal: str, path: str) -> Optional[str]:
        return await self._redis.get(get_page_key(journal, path))

    async def register_page(
        self,
        journal: str,
        path: str,
        body: str,
        tags: Iterable[str] = (),
        ttl: Optional[int] = None,
    ) -> None:
        """Store a rendered page and index it under its tags."""
        page_key = get_page_key(journal, path)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(page_key, body, ex=ttl)
            for tag in tags:
                pipe.sadd(get_tag_key(journal, tag), path)
            await pipe.execute()

    async def revalidate_tag(self, tag: str, journal: Optional[str] = None) -> int:
        """Drop every page tagged `tag`; returns the number of pages removed."""
        removed = 0
        for scope in self._scopes(journal):
            tag_key = get_tag_key(scope, tag)
            paths = await self._redis.smembers(tag_key)

            dropped = 0
            if paths:
                dropped = await self._redis.delete(*(get_page_key(scope, p) for p in paths))
            await self._redis.delete(tag_key)
            await self._mark(scope, "tag", tag)

            logger.info("Revalidated tag %r (%d pages)", tag, dropped, extra={"tenant_id": scope})
            removed += dropped
        return removed

    async def revalidate_path(self, path: str, journal: Optional[str] = None) -> int:
        """Drop the cached page at `path`; returns the number of entries removed."""
        removed = 0
        for scope in self._scopes(journal):
            removed += await self._redis.delete(get_page_key(scope, path))
            await self._mark(scope, "path", path)
            logger.info("Revalidated path %r", path, extra={"tenant_id": scope})
        return removed

    async def last_revalidated(self, kind: str, target: str, journal: Optional[str] = None) -> Optional[int]:
        raw = await self._redis.get(get_revalidated_key(journal or GLOBAL_SCOPE, kind, target))
        return int(raw) if raw is not None else None

    async def _mark(self, scope: str, kind: str, target: str) -> None:
        now_ms = int(time.time() * 1000)
        await self._redis.set(get_revalidated_key(scope, kind, target), now_ms)
        await self._redis.publish(
            get_channel(scope),
            json.dumps({"kind": kind, "target": target, "at": now_ms}),
        )
