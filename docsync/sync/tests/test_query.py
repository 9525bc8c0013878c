"""
Tests for the query layer: hosted-first fallback, response caching and
freshness decoration.
"""

from datetime import timedelta

import pytest

from ..error_tracker import ConfigurationError, SearchBackendError
from ..freshness import format_relative_time
from ..metadata_store import MetadataStore
from ..query import QueryService, cache_key
from ..resilience import CircuitBreaker
from ..storage import MemoryBlobStorage
from .fakes import FakeClock, StaticSearchBackend, make_config


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    config = make_config("intro")
    store = MetadataStore(MemoryBlobStorage(), config.sources, clock=clock)
    store.record_fetch("intro", "fp-intro")
    return store


@pytest.fixture
def hosted():
    return StaticSearchBackend("hosted")


@pytest.fixture
def local():
    return StaticSearchBackend("local")


@pytest.fixture
def service(store, hosted, local, clock):
    return QueryService(store, local_backend=local, hosted_backend=hosted, clock=clock)


class TestSearchFallback:
    """Hosted search first, local search on any hosted failure."""

    @pytest.mark.asyncio
    async def test_hosted_success(self, service, hosted, local):
        response = await service.search("ledger state")

        assert response.backend == "hosted"
        assert response.results[0].id == "hosted-1"
        assert response.total_results == 1
        assert not response.cache_hit
        assert local.calls == []

    @pytest.mark.asyncio
    async def test_hosted_failure_falls_back_to_local(self, store, local, clock):
        hosted = StaticSearchBackend("hosted", error=SearchBackendError("Server error", status=500))
        service = QueryService(store, local_backend=local, hosted_backend=hosted, clock=clock)

        response = await service.search("ledger state")

        assert response.backend == "local"
        assert response.results[0].id == "local-1"
        assert len(hosted.calls) == 1

    @pytest.mark.asyncio
    async def test_local_failure_propagates(self, store, clock):
        local = StaticSearchBackend("local", error=SearchBackendError("index missing"))
        service = QueryService(store, local_backend=local, clock=clock)

        with pytest.raises(SearchBackendError):
            await service.search("ledger state")

    @pytest.mark.asyncio
    async def test_no_backend_configured(self, store):
        service = QueryService(store)

        with pytest.raises(SearchBackendError):
            await service.search("ledger state")

    @pytest.mark.asyncio
    async def test_open_circuit_skips_hosted(self, store, local, clock):
        hosted = StaticSearchBackend("hosted", error=TimeoutError("timed out"))
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout_seconds=60)
        service = QueryService(store, local_backend=local, hosted_backend=hosted,
                               circuit_breaker=breaker, clock=clock)

        await service.search("first query")
        response = await service.search("second query")

        assert response.backend == "local"
        assert len(hosted.calls) == 1
        assert len(local.calls) == 2


class TestSearchValidation:

    @pytest.mark.asyncio
    async def test_short_query_rejected(self, service):
        with pytest.raises(ValueError):
            await service.search(" a ")

    @pytest.mark.asyncio
    async def test_limit_clamped(self, service, hosted):
        await service.search("ledger", limit=500)
        await service.search("ledger", limit=0)

        assert [call[1] for call in hosted.calls] == [50, 1]


class TestResponseCache:
    """Responses are cached by a normalized key for the process lifetime."""

    def test_cache_key_is_order_independent(self):
        first = cache_key("Ledger State ", 10, {"category": "compact", "language": "ts"})
        second = cache_key("ledger state", 10, {"language": "ts", "category": "compact"})

        assert first == second
        assert cache_key("ledger state", 5) != first

    @pytest.mark.asyncio
    async def test_identical_queries_hit_cache(self, service, hosted):
        await service.search("Ledger", filters={"a": 1, "b": 2})
        response = await service.search("ledger ", filters={"b": 2, "a": 1})

        assert response.cache_hit
        assert response.backend == "hosted"
        assert len(hosted.calls) == 1
        assert service.cache_stats()["hits"] == 1
        assert service.cache_stats()["entries"] == 1

    @pytest.mark.asyncio
    async def test_refresh_bypasses_cache(self, service, hosted):
        await service.search("ledger")
        response = await service.search("ledger", refresh=True)

        assert not response.cache_hit
        assert len(hosted.calls) == 2
        assert service.cache_stats()["entries"] == 1

    @pytest.mark.asyncio
    async def test_clear_cache(self, service, hosted):
        await service.search("ledger")
        service.clear_cache()
        await service.search("ledger")

        assert len(hosted.calls) == 2

    @pytest.mark.asyncio
    async def test_cached_response_gets_current_freshness(self, service, clock):
        first = await service.search("ledger")
        clock.advance(5 * 60)
        second = await service.search("ledger")

        assert second.cache_hit
        assert first.data_freshness.last_indexed_relative == "just now"
        assert second.data_freshness.last_indexed_relative == "5 minutes ago"


class TestFreshness:
    """Every response carries freshness and, when stale, a warning."""

    @pytest.mark.asyncio
    async def test_fresh_data_has_no_warning(self, service):
        response = await service.search("ledger")

        assert response.data_freshness.warning is None
        assert response.warnings == []
        assert response.data_freshness.last_indexed is not None

    @pytest.mark.asyncio
    async def test_stale_data_warns(self, service, clock):
        clock.advance(13 * 60 * 60)

        response = await service.search("ledger")

        assert "intro" in response.data_freshness.warning
        assert response.warnings == [response.data_freshness.warning]
        assert response.data_freshness.last_indexed_relative == "13 hours ago"

    @pytest.mark.asyncio
    async def test_never_indexed_warns(self, clock, local):
        config = make_config("intro")
        store = MetadataStore(MemoryBlobStorage(), config.sources, clock=clock)
        service = QueryService(store, local_backend=local, clock=clock)

        response = await service.search("ledger")

        assert response.data_freshness.last_indexed is None
        assert response.data_freshness.last_indexed_relative == "never"
        assert response.data_freshness.warning is not None

    @pytest.mark.asyncio
    async def test_warning_names_first_three_stale_sources(self, clock, local):
        config = make_config("s1", "s2", "s3", "s4", "s5", "fresh")
        store = MetadataStore(MemoryBlobStorage(), config.sources, clock=clock)
        store.record_fetch("fresh", "fp")
        service = QueryService(store, local_backend=local, clock=clock)

        response = await service.search("ledger")

        assert "s1, s2, s3 and 2 more" in response.data_freshness.warning

    def test_format_relative_time(self, clock):
        now = clock()
        assert format_relative_time(now, now) == "just now"
        assert format_relative_time(now - timedelta(seconds=59), now) == "just now"
        assert format_relative_time(now - timedelta(minutes=1), now) == "1 minute ago"
        assert format_relative_time(now - timedelta(hours=2), now) == "2 hours ago"
        assert format_relative_time(now - timedelta(days=1, hours=3), now) == "1 day ago"
        assert format_relative_time(now - timedelta(days=3), now) == "3 days ago"


class TestReadDocument:

    @pytest.mark.asyncio
    async def test_read_cached_content(self, service, store, clock):
        await store.write_content("intro", "# Intro")
        clock.advance(60)

        lookup = await service.read_document("intro")

        assert lookup.content == "# Intro"
        assert lookup.metadata.fingerprint == "fp-intro"
        assert lookup.age_seconds == 60
        assert not lookup.is_stale

    @pytest.mark.asyncio
    async def test_read_stale_document(self, service, clock):
        clock.advance(24 * 60 * 60)

        lookup = await service.read_document("intro")

        assert lookup.is_stale
        assert lookup.content is None

    @pytest.mark.asyncio
    async def test_read_untracked_document(self, clock):
        config = make_config("intro")
        store = MetadataStore(MemoryBlobStorage(), config.sources, clock=clock)
        service = QueryService(store, clock=clock)

        lookup = await service.read_document("intro")

        assert lookup.metadata is None
        assert lookup.is_stale
        assert lookup.age_seconds is None

    @pytest.mark.asyncio
    async def test_read_unknown_document(self, service):
        with pytest.raises(ConfigurationError):
            await service.read_document("nope")
