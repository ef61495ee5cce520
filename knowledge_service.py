"""
Knowledge Service - read-through caching in front of the TDX client.

RESPONSIBILITY:
    Build cache keys, serve hits, call TDX on misses and store the results.
    Routes in main.py validate input and shape HTTP responses; this layer
    only knows about articles, searches and the cache.

The cache stores plain dicts (Article/SearchResult .model_dump()) so the
in-memory and Redis backends behave the same.
"""

import asyncio
import logging
from typing import Optional, Protocol

import metrics
from exceptions import GatewayError
from tdx_client import TDXClient

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 20


class Cache(Protocol):
    async def get(self, key: str) -> tuple[Optional[dict], bool]: ...
    async def set(self, key: str, value: dict, ttl_seconds: Optional[int] = None) -> None: ...
    async def delete(self, key: str) -> bool: ...
    async def clear(self, prefix: str = "") -> int: ...
    async def stats(self) -> dict: ...


def article_cache_key(article_id: int) -> str:
    return f"article:{article_id}"


def search_cache_key(query: str, category: Optional[str], limit: int, offset: int) -> str:
    # Empty category segment: all categories
    return f"search:{query}:{category or ''}:{limit}:{offset}"


class KnowledgeService:
    """
    Service layer for article lookups and searches.

    Dependencies are injected so tests can pass a fake client or cache.
    """

    def __init__(self, cache: Cache, tdx_client: TDXClient):
        self.cache = cache
        self.tdx_client = tdx_client

    async def get_article(self, article_id: int) -> tuple[Optional[dict], bool]:
        """
        Fetch one article, cache-first.

        Returns:
            (article, cached) - article is None when TDX has no such id.
            TDX failures propagate (TDXServiceError / AuthError).
        """
        key = article_cache_key(article_id)

        cached_article, is_hit = await self.cache.get(key)
        metrics.record_cache_lookup("article", is_hit)
        if is_hit:
            logger.info(f"Article cache hit | article_id={article_id}")
            return cached_article, True

        article = await self.tdx_client.get_article(article_id)
        if article is None:
            return None, False

        data = article.model_dump()
        await self.cache.set(key, data)
        logger.info(f"Article retrieved | article_id={article_id} title={article.title!r}")
        return data, False

    async def get_articles(self, article_ids: list[int]) -> list[dict]:
        """
        Fetch several articles concurrently.

        Ids that are not found or whose lookup fails are dropped; the
        caller only sees the subset that resolved. Each returned article
        carries its own "cached" flag.
        """
        if len(article_ids) > MAX_BATCH_SIZE:
            raise ValueError(f"Maximum {MAX_BATCH_SIZE} articles can be requested at once")

        logger.info(f"Fetching {len(article_ids)} TDX articles | ids={article_ids}")

        async def lookup(article_id: int) -> Optional[dict]:
            try:
                article, cached = await self.get_article(article_id)
            except GatewayError as e:
                logger.warning(f"Failed to fetch article {article_id}: {e}")
                return None
            if article is None:
                return None
            return {**article, "cached": cached}

        results = await asyncio.gather(*(lookup(article_id) for article_id in article_ids))
        found = [article for article in results if article is not None]

        logger.info(f"Multiple articles retrieved | requested={len(article_ids)} found={len(found)}")
        return found

    async def search(
        self,
        query: str,
        category: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[dict, bool]:
        """
        Search the knowledge base, cache-first.

        Returns:
            (search_result, cached)
        """
        key = search_cache_key(query, category, limit, offset)

        cached_result, is_hit = await self.cache.get(key)
        metrics.record_cache_lookup("search", is_hit)
        if is_hit:
            logger.info(f"Search cache hit | key={key}")
            return cached_result, True

        result = await self.tdx_client.search_articles(query, category=category, limit=limit, offset=offset)
        data = result.model_dump()
        await self.cache.set(key, data)

        logger.info(f"Search completed | query={query!r} results={len(result.articles)} total={result.total_count}")
        return data, False

    async def invalidate(self, kind: Optional[str] = None) -> int:
        """Drop cached articles, searches, or everything when kind is None."""
        prefix = f"{kind}:" if kind else ""
        return await self.cache.clear(prefix)

    async def invalidate_article(self, article_id: int) -> bool:
        """Drop one cached article. Returns True if it was cached."""
        deleted = await self.cache.delete(article_cache_key(article_id))
        logger.info(f"Article cache invalidated | article_id={article_id} deleted={deleted}")
        return deleted

    async def cache_stats(self) -> dict:
        return await self.cache.stats()
