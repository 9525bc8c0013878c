"""
Sync module keeping a local documentation cache in step with its upstream.

This module provides the sync engine, its persisted metadata and update
history, the periodic scheduler, the listener bus, and the staleness-aware
query layer used by search and read tools.
"""

from .config import (
    SyncConfig, SourceConfig, SchedulerConfig, SourceCategory, DocType,
    DEFAULT_SOURCES, create_default_config
)

from .state import (
    ChangeType, UpdateRecord, SourceMetadata, GlobalSyncState, UpdateHistory
)

from .storage import (
    BlobStorage, BlobNotFound, FileBlobStorage, MemoryBlobStorage
)

from .error_tracker import (
    ErrorTracker, ErrorSeverity, SyncException, ConfigurationError,
    SourceFetchError, SourceNotFoundError, StorageError, SchemaVersionError,
    SearchBackendError
)

from .metadata_store import MetadataStore, SyncStatus
from .listeners import ListenerBus, SyncEvent, SyncListener
from .engine import SyncEngine, ContentFetcher, FetchResult, SourceOutcome, BatchResult
from .scheduler import SyncScheduler, SchedulerCallbacks, SchedulerState
from .freshness import DataFreshness, format_relative_time
from .search_backend import SearchBackend, SearchResult, HostedSearchBackend
from .query import QueryService, SearchResponse, DocumentLookup
from .service import DocsSyncService, run_sync_once, run_sync_once_blocking

__all__ = [
    # Configuration
    'SyncConfig',
    'SourceConfig',
    'SchedulerConfig',
    'SourceCategory',
    'DocType',
    'DEFAULT_SOURCES',
    'create_default_config',

    # State
    'ChangeType',
    'UpdateRecord',
    'SourceMetadata',
    'GlobalSyncState',
    'UpdateHistory',
    'MetadataStore',
    'SyncStatus',

    # Storage
    'BlobStorage',
    'BlobNotFound',
    'FileBlobStorage',
    'MemoryBlobStorage',

    # Errors
    'ErrorTracker',
    'ErrorSeverity',
    'SyncException',
    'ConfigurationError',
    'SourceFetchError',
    'SourceNotFoundError',
    'StorageError',
    'SchemaVersionError',
    'SearchBackendError',

    # Sync
    'ListenerBus',
    'SyncEvent',
    'SyncListener',
    'SyncEngine',
    'ContentFetcher',
    'FetchResult',
    'SourceOutcome',
    'BatchResult',
    'SyncScheduler',
    'SchedulerCallbacks',
    'SchedulerState',

    # Query
    'DataFreshness',
    'format_relative_time',
    'SearchBackend',
    'SearchResult',
    'HostedSearchBackend',
    'QueryService',
    'SearchResponse',
    'DocumentLookup',

    # Service
    'DocsSyncService',
    'run_sync_once',
    'run_sync_once_blocking',
]
