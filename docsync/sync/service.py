"""
Documentation Sync Service

Wires the sync components into a single object owned by the host process:
- Metadata store over durable blob storage
- Listener bus and sync engine
- Periodic scheduler
- Query layer with hosted-first search

The service holds no global state; a host creates one instance at startup
and passes it to whatever needs it.
"""

import asyncio
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError

from ..config import DocsyncSettings
from .config import SchedulerConfig, SourceCategory, SyncConfig
from .engine import BatchResult, ContentFetcher, SourceOutcome, SyncEngine
from .error_tracker import ConfigurationError
from .listeners import ListenerBus
from .logging_manager import LoggingManager
from .metadata_store import MetadataStore
from .query import DocumentLookup, QueryService, SearchResponse
from .scheduler import SchedulerCallbacks, SyncScheduler
from .search_backend import HostedSearchBackend, SearchBackend
from .state import ChangeType, UpdateRecord
from .storage import BlobStorage, FileBlobStorage

logger = LoggingManager.get_logger(__name__)


class DocsSyncService:
    """
    Facade over the documentation sync system.

    This class manages the complete lifecycle:
    1. Load persisted metadata
    2. Run on-demand or scheduled syncs
    3. Serve status, history, staleness and search queries
    4. Shut down without racing in-flight writes
    """

    def __init__(self, config: SyncConfig, fetcher: ContentFetcher,
                 storage: Optional[BlobStorage] = None,
                 hosted_backend: Optional[SearchBackend] = None,
                 local_backend: Optional[SearchBackend] = None,
                 settings: Optional[DocsyncSettings] = None):
        """
        Initialize the service.

        Args:
            config: Sync configuration (registry, storage, scheduler)
            fetcher: Content fetcher for upstream documents
            storage: Durable storage; defaults to files under `config.state_directory`
            hosted_backend: Hosted search backend; defaults to the configured hosted URL
            local_backend: Local search backend used as fallback
            settings: Environment overrides; read from the environment when omitted
        """
        self.settings = settings or DocsyncSettings.from_environment()
        self.config = config = self._apply_settings(config, self.settings)
        self.logging_manager = LoggingManager(log_level=config.log_level, log_file=config.log_file)

        self.storage = storage or FileBlobStorage(config.state_directory)
        self.store = MetadataStore(
            self.storage,
            config.sources,
            metadata_path=config.metadata_filename,
            max_history_entries=config.max_history_entries,
            schema_version=config.schema_version,
        )
        self.bus = ListenerBus()
        self.engine = SyncEngine(config, self.store, fetcher, bus=self.bus,
                                 persist=config.scheduler.persist_metadata)
        self.scheduler = SyncScheduler(self.engine, self.store, config=config.scheduler)
        self.query = QueryService(
            self.store,
            local_backend=local_backend,
            hosted_backend=hosted_backend or self._default_hosted_backend(),
            staleness_threshold_seconds=config.staleness_threshold_seconds,
        )
        self._initialized = False

    @staticmethod
    def _apply_settings(config: SyncConfig, settings: DocsyncSettings) -> SyncConfig:
        overrides = {
            key: value for key, value in (
                ('state_directory', settings.state_directory),
                ('log_level', settings.log_level),
                ('log_file', settings.log_file),
            ) if value
        }
        if not overrides:
            return config
        logger.debug("Applying environment overrides", extra={'details': overrides})
        return config.model_copy(update=overrides)

    def _default_hosted_backend(self) -> Optional[SearchBackend]:
        if self.settings.local_only:
            return None
        url = self.config.hosted_search_url or self.settings.hosted_api_url
        if not url:
            return None
        return HostedSearchBackend(url, timeout=self.config.hosted_search_timeout)

    # --- Lifecycle ---

    async def initialize(self) -> None:
        """Load persisted state; start the scheduler when configured to."""
        if self._initialized:
            return
        await self.store.load()
        self._initialized = True
        logger.info(f"Docs sync service initialized with {len(self.config.sources)} sources",
                    extra={'details': {'config_name': self.config.name}})
        if self.config.scheduler.auto_start:
            self.start_scheduler()

    async def shutdown(self) -> None:
        """Stop the scheduler, wait for in-flight work and listener hooks."""
        await self.scheduler.destroy()
        await self.bus.drain()
        self.bus.unregister_all()
        logger.info("Docs sync service shut down")

    # --- Sync control ---

    async def trigger_sync(self, force: bool = False,
                           categories: Optional[List[Union[SourceCategory, str]]] = None) -> BatchResult:
        return await self.engine.sync_all(force=force, categories=categories)

    async def sync_source(self, source_id: str) -> SourceOutcome:
        return await self.engine.sync_one(source_id)

    def start_scheduler(self, callbacks: Optional[SchedulerCallbacks] = None,
                        config: Optional[SchedulerConfig] = None) -> bool:
        return self.scheduler.start(config=config, callbacks=callbacks)

    async def stop_scheduler(self) -> None:
        await self.scheduler.stop()

    def add_listener(self, listener: Any) -> Callable[[], None]:
        return self.bus.register(listener)

    # --- Queries ---

    def status(self) -> Dict[str, Any]:
        status = self.store.status().to_dict()
        status['scheduler'] = self.scheduler.get_state().to_dict()
        status['time_until_next_check'] = self.scheduler.time_until_next_check()
        return status

    def history(self, source_id: Optional[str] = None, change_type: Optional[Union[ChangeType, str]] = None,
                since=None, limit: Optional[int] = None, offset: int = 0) -> List[UpdateRecord]:
        return self.store.history(source_id=source_id, change_type=change_type,
                                  since=since, limit=limit, offset=offset)

    def stale_sources(self, max_age_seconds: Optional[float] = None) -> List[str]:
        if max_age_seconds is None:
            max_age_seconds = self.config.staleness_threshold_seconds
        return self.store.stale_sources(max_age_seconds)

    async def search(self, query: str, limit: int = 10, filters: Optional[Dict[str, Any]] = None,
                     refresh: bool = False) -> SearchResponse:
        return await self.query.search(query, limit=limit, filters=filters, refresh=refresh)

    async def read_document(self, source_id: str) -> DocumentLookup:
        return await self.query.read_document(source_id)

    # --- Backup / restore ---

    def export_state(self) -> Dict[str, Any]:
        return self.store.export_state()

    async def import_state(self, data: Dict[str, Any]) -> None:
        """Replace the state with a snapshot and persist it."""
        await self.store.import_state(data)
        await self.store.save()


async def run_sync_once(config_path: Union[str, Path], fetcher: ContentFetcher,
                        force: bool = False, storage: Optional[BlobStorage] = None) -> BatchResult:
    """
    Convenience function to run a single batch sync from a configuration file.

    Args:
        config_path: Path to the YAML sync configuration
        fetcher: Content fetcher for upstream documents
        force: Fetch every source even when upstream looks unchanged
        storage: Durable storage override

    Returns:
        BatchResult of the sync
    """
    try:
        config = SyncConfig.from_yaml(config_path)
    except (ValidationError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load sync configuration from {config_path}: {e}") from e

    logger.info(f"Loaded sync configuration: {config.name}")
    service = DocsSyncService(config, fetcher, storage=storage)
    try:
        await service.initialize()
        return await service.trigger_sync(force=force)
    finally:
        await service.shutdown()


def run_sync_once_blocking(config_path: Union[str, Path], fetcher: ContentFetcher,
                           force: bool = False, storage: Optional[BlobStorage] = None) -> BatchResult:
    """
    Synchronous version of run_sync_once.
    """
    return asyncio.run(run_sync_once(config_path, fetcher, force=force, storage=storage))
