"""
Query layer: the read path over the synchronized documentation.

- Hosted-first search with fallback to the local backend
- Process-lifetime response cache keyed by normalized query, limit and filters
- Freshness decoration applied to every response, cached or not
- Staleness-aware document lookup from the content cache
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import DEFAULT_SEARCH_LIMIT, DEFAULT_STALENESS_THRESHOLD_SECONDS, MAX_SEARCH_LIMIT
from .error_tracker import ConfigurationError, SearchBackendError
from .freshness import DataFreshness, build_data_freshness
from .logging_manager import LoggingManager
from .metadata_store import MetadataStore
from .resilience import CircuitBreaker, RetryPolicy, with_retry
from .search_backend import SearchBackend, SearchResult
from .state import SourceMetadata, utc_now

logger = LoggingManager.get_logger(__name__)

HOSTED_CIRCUIT_KEY = "hosted-search"
MIN_QUERY_LENGTH = 2


@dataclass
class SearchResponse:
    query: str
    results: List[SearchResult]
    total_results: int
    backend: str  # "hosted" or "local"
    cache_hit: bool
    data_freshness: DataFreshness
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'query': self.query,
            'results': [r.to_dict() for r in self.results],
            'total_results': self.total_results,
            'backend': self.backend,
            'cache_hit': self.cache_hit,
            'data_freshness': self.data_freshness.to_dict(),
            'warnings': list(self.warnings),
        }


@dataclass
class DocumentLookup:
    source_id: str
    content: Optional[str]
    metadata: Optional[SourceMetadata]
    is_stale: bool
    age_seconds: Optional[float]


def cache_key(query: str, limit: int, filters: Optional[Dict[str, Any]] = None) -> str:
    """Normalized, order-independent key for a search request."""
    return json.dumps({
        'query': query.strip().lower(),
        'limit': limit,
        'filters': {k: v for k, v in (filters or {}).items() if v is not None},
    }, sort_keys=True, default=str)


class QueryService:
    """
    Serves searches and document reads with explicit staleness signaling.

    Hosted failures are logged and answered from the local backend; a
    failure of the local backend propagates to the caller.
    """

    def __init__(self, store: MetadataStore,
                 local_backend: Optional[SearchBackend] = None,
                 hosted_backend: Optional[SearchBackend] = None,
                 staleness_threshold_seconds: float = DEFAULT_STALENESS_THRESHOLD_SECONDS,
                 circuit_breaker: Optional[CircuitBreaker] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.local_backend = local_backend
        self.hosted_backend = hosted_backend
        self.staleness_threshold_seconds = staleness_threshold_seconds
        self.circuit_breaker = circuit_breaker or CircuitBreaker(failure_threshold=3, reset_timeout_seconds=60.0)
        self._clock = clock
        self._cache: Dict[str, Tuple[List[SearchResult], str]] = {}
        self._hits = 0
        self._misses = 0

    def freshness(self) -> DataFreshness:
        return build_data_freshness(self.store, self.staleness_threshold_seconds, now=self._clock())

    async def search(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT,
                     filters: Optional[Dict[str, Any]] = None, refresh: bool = False) -> SearchResponse:
        """
        Search the documentation.

        Args:
            query: Search text, at least two characters after stripping
            limit: Maximum number of results, clamped to 1..MAX_SEARCH_LIMIT
            filters: Backend-specific filter fields
            refresh: Bypass the cache and replace the cached entry

        Returns:
            SearchResponse decorated with the current data freshness
        """
        query = (query or "").strip()
        if len(query) < MIN_QUERY_LENGTH:
            raise ValueError(f"Query must be at least {MIN_QUERY_LENGTH} characters")
        limit = max(1, min(int(limit), MAX_SEARCH_LIMIT))

        key = cache_key(query, limit, filters)
        cached = None if refresh else self._cache.get(key)
        if cached is not None:
            self._hits += 1
            results, backend = cached
            logger.debug(f"Cache hit for '{query}'")
            return self._respond(query, results, backend, cache_hit=True)

        self._misses += 1
        results, backend = await self._run_search(query, limit, filters)
        results = list(results)[:limit]
        self._cache[key] = (results, backend)
        return self._respond(query, results, backend, cache_hit=False)

    async def _run_search(self, query: str, limit: int,
                          filters: Optional[Dict[str, Any]]) -> Tuple[List[SearchResult], str]:
        if self.hosted_backend is not None:
            if self.circuit_breaker.is_open(HOSTED_CIRCUIT_KEY):
                logger.info("Hosted search circuit open, using local search")
            else:
                try:
                    results = await with_retry(
                        lambda: self.hosted_backend.search(query, limit, filters),
                        policy=RetryPolicy(max_attempts=1),
                        circuit_breaker=self.circuit_breaker,
                        circuit_key=HOSTED_CIRCUIT_KEY,
                    )
                    return results, "hosted"
                except Exception as e:
                    logger.warning(f"Hosted search failed, falling back to local search: {e}",
                                   extra={'details': {'query': query, 'exception': type(e).__name__}})

        if self.local_backend is None:
            raise SearchBackendError("No search backend available",
                                     recovery_suggestion="Configure a hosted search URL or a local search backend")
        return await self.local_backend.search(query, limit, filters), "local"

    def _respond(self, query: str, results: List[SearchResult], backend: str, cache_hit: bool) -> SearchResponse:
        freshness = self.freshness()
        return SearchResponse(
            query=query,
            results=list(results),
            total_results=len(results),
            backend=backend,
            cache_hit=cache_hit,
            data_freshness=freshness,
            warnings=[freshness.warning] if freshness.warning else [],
        )

    async def read_document(self, source_id: str) -> DocumentLookup:
        """Read a source's cached content along with how stale it is."""
        if source_id not in self.store.registry:
            raise ConfigurationError(f"Unknown source: {source_id}", source_id=source_id)

        metadata = self.store.get_source(source_id)
        raw = await self.store.read_content(source_id)
        content = raw.decode('utf-8', errors='replace') if raw is not None else None

        if metadata is None:
            return DocumentLookup(source_id=source_id, content=content, metadata=None,
                                  is_stale=True, age_seconds=None)

        age = (self._clock() - metadata.last_fetched).total_seconds()
        return DocumentLookup(
            source_id=source_id,
            content=content,
            metadata=metadata,
            is_stale=age > self.staleness_threshold_seconds,
            age_seconds=age,
        )

    def cache_stats(self) -> Dict[str, Any]:
        return {
            'entries': len(self._cache),
            'hits': self._hits,
            'misses': self._misses,
            'circuit': self.circuit_breaker.get_state_snapshot(),
        }

    def clear_cache(self) -> None:
        self._cache.clear()
        self._hits = 0
        self._misses = 0
