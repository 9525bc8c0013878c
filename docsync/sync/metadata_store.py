"""
Metadata Store: the system of record for the documentation sync system.

This module provides:
1. Per-source metadata (fingerprint, size, timestamps, update count)
2. A bounded, most-recent-first update history
3. Global check/update timestamps and the top-level upstream fingerprint
4. Load/save against durable storage with schema-version gating
5. A content cache of the last fetched body of each source
6. Query helpers (history, staleness, status) and export/import for backup
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from ..config import DEFAULT_METADATA_FILENAME, MAX_HISTORY_ENTRIES, METADATA_SCHEMA_VERSION
from .config import SourceConfig
from .error_tracker import ConfigurationError, SchemaVersionError, StorageError
from .logging_manager import get_logger
from .state import ChangeType, GlobalSyncState, SourceMetadata, UpdateHistory, UpdateRecord, utc_now
from .storage import BlobNotFound, BlobStorage

logger = get_logger(__name__)

CONTENT_PREFIX = "content"


@dataclass
class SyncStatus:
    """Snapshot of the global sync status."""
    last_check: Optional[datetime]
    last_update: Optional[datetime]
    upstream_fingerprint: str
    total_sources: int
    tracked_sources: int
    total_updates: int

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['last_check'] = self.last_check.isoformat() if self.last_check else None
        data['last_update'] = self.last_update.isoformat() if self.last_update else None
        return data


class MetadataStore:
    """
    Owns the in-process `GlobalSyncState` and persists it through a
    `BlobStorage`.

    Record-keeping methods are synchronous and never suspend, so each one
    runs atomically on the event loop. `load`, `save`, `import_state` and
    content writes are serialized by a single lock.
    """

    def __init__(self, storage: BlobStorage, sources: Iterable[SourceConfig],
                 metadata_path: str = DEFAULT_METADATA_FILENAME,
                 max_history_entries: int = MAX_HISTORY_ENTRIES,
                 schema_version: int = METADATA_SCHEMA_VERSION,
                 clock: Callable[[], datetime] = utc_now):
        self.storage = storage
        self.registry: Dict[str, SourceConfig] = {s.id: s for s in sources}
        self.metadata_path = metadata_path
        self.max_history_entries = max_history_entries
        self.schema_version = schema_version
        self._clock = clock
        self._lock = asyncio.Lock()
        self._state = self._fresh_state()
        self._history = UpdateHistory(max_history_entries)

    def _fresh_state(self) -> GlobalSyncState:
        return GlobalSyncState(schema_version=self.schema_version)

    def _apply(self, state: GlobalSyncState) -> None:
        self._state = state.model_copy(update={'update_history': []}, deep=True)
        self._history = UpdateHistory(self.max_history_entries, state.update_history)

    def clear(self) -> None:
        """Reset to a fresh empty state (in memory only)."""
        self._state = self._fresh_state()
        self._history = UpdateHistory(self.max_history_entries)

    def snapshot(self) -> GlobalSyncState:
        """Deep copy of the current state, history included."""
        state = self._state.model_copy(deep=True)
        state.update_history = self._history.to_list()
        return state

    # --- Persistence ---

    async def load(self) -> GlobalSyncState:
        """
        Load state from durable storage.

        Missing, unreadable, corrupt or version-mismatched data degrades to a
        fresh empty state; none of these conditions raise.
        """
        async with self._lock:
            try:
                raw = await self.storage.read_blob(self.metadata_path)
            except BlobNotFound:
                logger.info(f"No persisted metadata at {self.metadata_path}, starting fresh")
                self.clear()
                return self.snapshot()
            except Exception as e:
                logger.warning(f"Failed to read metadata, starting fresh: {e}",
                               extra={'details': {'path': self.metadata_path, 'exception': str(e)}})
                self.clear()
                return self.snapshot()

            try:
                data = json.loads(raw)
            except (ValueError, UnicodeDecodeError) as e:
                logger.warning(f"Corrupt metadata, starting fresh: {e}", extra={'details': {'path': self.metadata_path}})
                self.clear()
                return self.snapshot()

            version = data.get('schema_version') if isinstance(data, dict) else None
            if version != self.schema_version:
                logger.warning("Metadata version mismatch, resetting metadata",
                               extra={'details': {'expected': self.schema_version, 'found': version}})
                self.clear()
                return self.snapshot()

            try:
                state = GlobalSyncState.model_validate(data)
            except ValidationError as e:
                logger.warning(f"Invalid metadata layout, starting fresh: {e.error_count()} errors",
                               extra={'details': {'path': self.metadata_path}})
                self.clear()
                return self.snapshot()

            self._apply(state)
            logger.info(f"Loaded metadata for {len(self._state.sources)} sources "
                        f"({len(self._history)} history entries)")
            return self.snapshot()

    async def save(self) -> None:
        """
        Write the full state. Last writer wins; write failures propagate as
        StorageError.
        """
        async with self._lock:
            payload = json.dumps(self.snapshot().model_dump(mode='json'), indent=2, ensure_ascii=False)
            try:
                await self.storage.write_blob(self.metadata_path, payload.encode('utf-8'))
            except Exception as e:
                logger.error(f"Failed to save metadata: {e}", extra={'details': {'path': self.metadata_path}})
                raise StorageError(f"Failed to save metadata to {self.metadata_path}: {e}",
                                   recovery_suggestion="Check that the state directory is writable") from e

    # --- Content cache ---

    @staticmethod
    def content_path(source_id: str) -> str:
        return f"{CONTENT_PREFIX}/{source_id}"

    async def write_content(self, source_id: str, content: Union[str, bytes]) -> None:
        data = content.encode('utf-8') if isinstance(content, str) else bytes(content)
        async with self._lock:
            try:
                await self.storage.write_blob(self.content_path(source_id), data)
            except Exception as e:
                raise StorageError(f"Failed to cache content: {e}", source_id=source_id) from e

    async def read_content(self, source_id: str) -> Optional[bytes]:
        try:
            return await self.storage.read_blob(self.content_path(source_id))
        except BlobNotFound:
            return None

    # --- Update tracking ---

    def _require_config(self, source_id: str) -> SourceConfig:
        config = self.registry.get(source_id)
        if config is None:
            raise ConfigurationError(f"Unknown source: {source_id}", source_id=source_id)
        return config

    def record_change(self, source_id: str, previous_fingerprint: str, new_fingerprint: str,
                      change_type: Union[ChangeType, str], size: int = 0,
                      etag: Optional[str] = None) -> UpdateRecord:
        """
        Append an UpdateRecord to the front of the history and apply it to the
        source metadata. `created` starts the update count at zero, `updated`
        increments it and `deleted` drops the source.
        """
        change_type = ChangeType(change_type)
        now = self._clock()

        if change_type != ChangeType.DELETED:
            config = self._require_config(source_id)

        record = UpdateRecord(
            timestamp=now,
            source_id=source_id,
            previous_fingerprint=previous_fingerprint or "",
            new_fingerprint=new_fingerprint or "",
            type=change_type,
        )
        self._history.add(record)

        existing = self._state.sources.get(source_id)
        if change_type == ChangeType.DELETED:
            self._state.sources.pop(source_id, None)
        elif change_type == ChangeType.CREATED or existing is None:
            self._state.sources[source_id] = SourceMetadata(
                id=source_id,
                path=config.path,
                fingerprint=new_fingerprint,
                size=size,
                etag=etag,
                last_fetched=now,
                first_seen=existing.first_seen if existing else now,
                update_count=0 if change_type == ChangeType.CREATED else 1,
            )
        else:
            existing.fingerprint = new_fingerprint
            existing.size = size
            existing.etag = etag
            existing.last_fetched = now
            existing.update_count += 1

        self._state.last_update = now
        return record

    def record_fetch(self, source_id: str, fingerprint: str, size: int = 0,
                     etag: Optional[str] = None) -> Optional[UpdateRecord]:
        """
        Apply a successful fetch: classify it against the stored fingerprint
        and return the resulting record, or None when nothing changed.
        """
        existing = self._state.sources.get(source_id)
        if existing is None:
            return self.record_change(source_id, "", fingerprint, ChangeType.CREATED, size=size, etag=etag)
        if existing.fingerprint != fingerprint:
            return self.record_change(source_id, existing.fingerprint, fingerprint, ChangeType.UPDATED,
                                      size=size, etag=etag)

        existing.last_fetched = self._clock()
        existing.size = size
        if etag is not None:
            existing.etag = etag
        return None

    def mark_fetched(self, source_id: str) -> bool:
        """Refresh `last_fetched` of a tracked source that upstream reported as not modified."""
        existing = self._state.sources.get(source_id)
        if existing is None:
            return False
        existing.last_fetched = self._clock()
        return True

    def reconcile_deletions(self, current_source_ids: Iterable[str]) -> List[UpdateRecord]:
        """Emit `deleted` records for tracked sources absent from the latest full sync."""
        current = set(current_source_ids)
        records = []
        for source_id in list(self._state.sources):
            if source_id not in current:
                previous = self._state.sources[source_id].fingerprint
                records.append(self.record_change(source_id, previous, "", ChangeType.DELETED))
                logger.info(f"Source {source_id} removed from tracking")
        return records

    def mark_checked(self, upstream_fingerprint: Optional[str] = None) -> None:
        self._state.last_check = self._clock()
        if upstream_fingerprint:
            self._state.upstream_fingerprint = upstream_fingerprint

    def forget_upstream(self) -> None:
        """Drop the stored upstream fingerprint so the next sync fetches every source."""
        self._state.upstream_fingerprint = ""

    # --- Query interface ---

    @property
    def upstream_fingerprint(self) -> str:
        return self._state.upstream_fingerprint

    @property
    def last_check(self) -> Optional[datetime]:
        return self._state.last_check

    @property
    def last_update(self) -> Optional[datetime]:
        return self._state.last_update

    def get_source(self, source_id: str) -> Optional[SourceMetadata]:
        source = self._state.sources.get(source_id)
        return source.model_copy() if source else None

    def list_sources(self) -> List[SourceMetadata]:
        return [source.model_copy() for source in self._state.sources.values()]

    def history(self, source_id: Optional[str] = None, change_type: Optional[Union[ChangeType, str]] = None,
                since: Optional[datetime] = None, limit: Optional[int] = None,
                offset: int = 0) -> List[UpdateRecord]:
        """
        Get update history, most recent first. All filters are AND-combined;
        `offset`/`limit` paginate the filtered result.
        """
        wanted_type = ChangeType(change_type) if change_type else None
        records = [
            r for r in self._history
            if (source_id is None or r.source_id == source_id)
            and (wanted_type is None or r.type == wanted_type)
            and (since is None or r.timestamp >= since)
        ]
        if offset:
            records = records[offset:]
        if limit is not None:
            records = records[:limit]
        return records

    def stale_sources(self, max_age_seconds: float = 60 * 60) -> List[str]:
        """Registered sources never fetched or last fetched more than `max_age_seconds` ago."""
        now = self._clock()
        max_age = timedelta(seconds=max_age_seconds)
        stale = []
        for source_id in self.registry:
            source = self._state.sources.get(source_id)
            if source is None or now - source.last_fetched > max_age:
                stale.append(source_id)
        return stale

    def most_recent_fetch(self) -> Optional[datetime]:
        times = [s.last_fetched for s in self._state.sources.values()]
        return max(times) if times else None

    def status(self) -> SyncStatus:
        return SyncStatus(
            last_check=self._state.last_check,
            last_update=self._state.last_update,
            upstream_fingerprint=self._state.upstream_fingerprint,
            total_sources=len(self.registry),
            tracked_sources=len(self._state.sources),
            total_updates=len(self._history),
        )

    # --- Backup / restore ---

    def export_state(self) -> Dict[str, Any]:
        """Full-state snapshot as JSON-compatible data."""
        return self.snapshot().model_dump(mode='json')

    async def import_state(self, data: Dict[str, Any]) -> None:
        """
        Replace the state with an exported snapshot. A schema version mismatch
        raises SchemaVersionError and an invalid payload raises StorageError;
        in both cases the current state is left untouched.
        """
        version = data.get('schema_version') if isinstance(data, dict) else None
        if version != self.schema_version:
            raise SchemaVersionError(self.schema_version, version)
        try:
            state = GlobalSyncState.model_validate(data)
        except ValidationError as e:
            raise StorageError(f"Invalid metadata snapshot: {e.error_count()} validation errors") from e
        async with self._lock:
            self._apply(state)
        logger.info(f"Imported metadata for {len(self._state.sources)} sources")
