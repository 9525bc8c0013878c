"""
Sync Engine for the documentation sync system.

This module provides the logic that keeps the metadata store in step with
upstream:
- Per-source sync: fetch through the content fetcher, diff the fingerprint
  and classify the outcome (unchanged / created / updated)
- Batch sync over the whole registry or a category subset, with per-source
  failure isolation and optional bounded-parallel fetching
- A cheap upstream pre-check that skips per-source fetches when nothing
  changed upstream
- At most one in-flight sync per source, process-wide
"""

import asyncio
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Protocol, Union

from .config import SourceCategory, SourceConfig, SyncConfig
from .error_tracker import ConfigurationError, ErrorSeverity, ErrorTracker, SourceNotFoundError
from .listeners import ListenerBus, SyncEvent
from .logging_manager import LoggingManager
from .metadata_store import MetadataStore
from .resilience import RetryPolicy, with_retry
from .state import ChangeType, UpdateRecord

logger = LoggingManager.get_logger(__name__)


@dataclass
class FetchResult:
    """What the content fetcher returned for one source."""
    content: Optional[Union[str, bytes]] = None
    fingerprint: str = ""
    size: int = 0
    etag: Optional[str] = None
    not_modified: bool = False  # upstream confirmed the stored etag is current


class ContentFetcher(Protocol):
    """
    External collaborator that fetches one source. Must be safe to retry.
    Raise SourceNotFoundError when the source no longer exists upstream.
    """

    async def fetch(self, source: SourceConfig, etag: Optional[str] = None) -> FetchResult:
        ...


class UpstreamProbe(Protocol):
    """Optional fetcher capability: a top-level fingerprint of the whole upstream."""

    async def probe_upstream(self) -> Optional[str]:
        ...


@dataclass
class SourceOutcome:
    """Result of syncing a single source."""
    source_id: str
    changed: bool = False
    fingerprint: str = ""
    size: int = 0
    etag: Optional[str] = None
    change_type: Optional[ChangeType] = None
    record: Optional[UpdateRecord] = None
    error: Optional[str] = None
    not_found: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchResult:
    """Aggregated result of one batch sync."""
    updated: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    records: List[UpdateRecord] = field(default_factory=list)
    duration: float = 0.0
    forced: bool = False
    skipped_fetch: bool = False
    error_report: Optional[Dict[str, Any]] = None

    @property
    def has_changes(self) -> bool:
        return bool(self.records)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'updated': list(self.updated),
            'unchanged': list(self.unchanged),
            'failed': list(self.failed),
            'deleted': list(self.deleted),
            'errors': dict(self.errors),
            'records': [r.model_dump(mode='json') for r in self.records],
            'duration': self.duration,
            'forced': self.forced,
            'skipped_fetch': self.skipped_fetch,
        }


def _content_size(content: Optional[Union[str, bytes]]) -> int:
    if content is None:
        return 0
    if isinstance(content, str):
        return len(content.encode('utf-8'))
    return len(content)


class SyncEngine:
    """
    Drives the content fetcher and applies its results to the metadata store.

    Concurrent requests for the same source are coalesced: the second caller
    awaits the task already in flight instead of issuing a second fetch.
    """

    def __init__(self, config: SyncConfig, store: MetadataStore, fetcher: ContentFetcher,
                 bus: Optional[ListenerBus] = None, retry_policy: Optional[RetryPolicy] = None,
                 persist: bool = True):
        self.config = config
        self.store = store
        self.fetcher = fetcher
        self.bus = bus
        self.persist = persist
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=config.fetch_retry_attempts,
            base_delay_seconds=1.0,
            max_delay_seconds=30.0,
        )
        self._in_flight: Dict[str, asyncio.Task] = {}

    def _emit(self, event: SyncEvent, *args: Any) -> None:
        if self.bus is not None:
            self.bus.emit(event, *args)

    def is_in_flight(self, source_id: str) -> bool:
        return source_id in self._in_flight

    async def _persist(self) -> None:
        if self.persist:
            await self.store.save()

    # --- Single source ---

    async def sync_one(self, source_id: str) -> SourceOutcome:
        """
        Sync a single source and persist the store.

        Fetch failures come back as an error outcome; only an unknown source
        id or a storage failure raise.
        """
        source = self.config.get_source_by_id(source_id)
        if source is None:
            raise ConfigurationError(f"Unknown source: {source_id}", source_id=source_id,
                                     recovery_suggestion="Check the source id against the registry")

        outcome = await self._sync_guarded(source)
        if outcome.ok:
            await self._persist()
        if outcome.record is not None:
            self._emit(SyncEvent.UPDATE, [outcome.record])
        return outcome

    async def _sync_guarded(self, source: SourceConfig) -> SourceOutcome:
        """
        Run or join the sync for `source`. Only the caller that started the
        task gets the UpdateRecord, so a change is announced once.
        """
        task = self._in_flight.get(source.id)
        started = task is None
        if started:
            task = asyncio.ensure_future(self._sync_source(source))
            self._in_flight[source.id] = task

            def _release(done: asyncio.Task, source_id: str = source.id) -> None:
                if self._in_flight.get(source_id) is done:
                    del self._in_flight[source_id]

            task.add_done_callback(_release)
        else:
            logger.debug(f"Joining in-flight sync for {source.id}")
        # the task is shared; cancelling one caller leaves it running for the others
        outcome = await asyncio.shield(task)
        if started or outcome.record is None:
            return outcome
        return replace(outcome, record=None)

    async def _sync_source(self, source: SourceConfig) -> SourceOutcome:
        stored = self.store.get_source(source.id)
        etag = stored.etag if stored else None

        try:
            result = await with_retry(
                lambda: self.fetcher.fetch(source, etag=etag),
                policy=self.retry_policy,
                no_retry_on=(SourceNotFoundError,),
            )
        except SourceNotFoundError as e:
            logger.warning(f"Source {source.id} not found upstream: {e.message}")
            return SourceOutcome(source_id=source.id, error=e.message, not_found=True)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.warning(f"Failed to fetch {source.id}: {message}",
                           extra={'details': {'source_id': source.id, 'path': source.path,
                                              'exception': type(e).__name__}})
            return SourceOutcome(source_id=source.id, error=message)

        if result.not_modified:
            if stored is None:
                return SourceOutcome(source_id=source.id,
                                     error="Upstream reported not modified for an untracked source")
            self.store.mark_fetched(source.id)
            return SourceOutcome(source_id=source.id, fingerprint=stored.fingerprint,
                                 size=stored.size, etag=stored.etag)

        if not result.fingerprint:
            return SourceOutcome(source_id=source.id, error="Fetcher returned an empty fingerprint")

        size = result.size or _content_size(result.content)
        changed = stored is None or stored.fingerprint != result.fingerprint
        # content first, so a failed write never leaves a fingerprint without its body
        if changed and result.content is not None:
            await self.store.write_content(source.id, result.content)

        record = self.store.record_fetch(source.id, result.fingerprint, size=size, etag=result.etag)
        if record is not None:
            logger.info(f"{record.type.value.capitalize()} {source.id} ({result.fingerprint[:12]})")

        return SourceOutcome(
            source_id=source.id,
            changed=record is not None,
            fingerprint=result.fingerprint,
            size=size,
            etag=result.etag,
            change_type=record.type if record else None,
            record=record,
        )

    # --- Batch ---

    async def _probe_upstream(self) -> Optional[str]:
        probe = getattr(self.fetcher, 'probe_upstream', None)
        if probe is None:
            return None
        try:
            return await probe()
        except Exception as e:
            logger.warning(f"Upstream probe failed, falling back to full fetch: {e}")
            return None

    def _can_skip_fetch(self, probe: Optional[str]) -> bool:
        if not probe or probe != self.store.upstream_fingerprint:
            return False
        return not self.store.stale_sources(self.config.cache_ttl_seconds)

    async def sync_all(self, force: bool = False,
                       categories: Optional[List[Union[SourceCategory, str]]] = None) -> BatchResult:
        """
        Sync all registered sources, or only those in `categories`.

        Per-source failures are collected in the result; the batch raises only
        when persisting the store fails.
        """
        start_time = time.monotonic()
        selected = self.config.get_sources_by_category(categories)
        full_sync = not categories
        self._emit(SyncEvent.SYNC_START)

        try:
            probe = await self._probe_upstream()
            if not force and self._can_skip_fetch(probe):
                logger.info("Upstream unchanged, skipping per-source fetches")
                self.store.mark_checked()
                await self._persist()
                result = BatchResult(
                    unchanged=[s.id for s in selected],
                    duration=time.monotonic() - start_time,
                    skipped_fetch=True,
                )
                self._emit(SyncEvent.SYNC_COMPLETE, result)
                return result

            outcomes = await self._run_batch(selected)
            result = self._collect(outcomes, full_sync)
            result.forced = force

            if result.failed:
                # failed sources have to be fetched again by the next sync
                self.store.forget_upstream()
            clean = full_sync and not result.failed
            self.store.mark_checked(upstream_fingerprint=probe if clean else None)
            await self._persist()
            result.duration = time.monotonic() - start_time
        except Exception as e:
            logger.error(f"Batch sync failed: {e}", extra={'details': {'exception': type(e).__name__}})
            self._emit(SyncEvent.ERROR, e)
            raise

        logger.info(
            f"Sync complete: {len(result.updated)} updated, {len(result.unchanged)} unchanged, "
            f"{len(result.failed)} failed, {len(result.deleted)} deleted in {result.duration:.2f}s",
            extra={'details': result.to_dict()},
        )
        if result.records:
            self._emit(SyncEvent.UPDATE, list(result.records))
        self._emit(SyncEvent.SYNC_COMPLETE, result)
        return result

    async def _run_batch(self, sources: List[SourceConfig]) -> List[SourceOutcome]:
        semaphore = asyncio.Semaphore(self.config.max_concurrent_fetches)

        async def run(source: SourceConfig) -> SourceOutcome:
            async with semaphore:
                return await self._sync_guarded(source)

        # gather keeps registry order regardless of completion order
        return list(await asyncio.gather(*(run(s) for s in sources)))

    def _collect(self, outcomes: List[SourceOutcome], full_sync: bool) -> BatchResult:
        result = BatchResult()
        tracker = ErrorTracker()
        missing = set()

        for outcome in outcomes:
            if outcome.not_found:
                missing.add(outcome.source_id)
            elif not outcome.ok:
                result.failed.append(outcome.source_id)
                tracker.report(outcome.error, source_id=outcome.source_id, severity=ErrorSeverity.ERROR)
            elif outcome.changed:
                result.updated.append(outcome.source_id)
                if outcome.record is not None:
                    result.records.append(outcome.record)
            else:
                result.unchanged.append(outcome.source_id)

        if full_sync:
            current = [sid for sid in self.config.source_ids() if sid not in missing]
            deletions = self.store.reconcile_deletions(current)
            result.deleted = [r.source_id for r in deletions]
            result.records.extend(deletions)

        # missing sources that were never tracked, or seen in a filtered batch
        for outcome in outcomes:
            if outcome.not_found and outcome.source_id not in result.deleted:
                result.failed.append(outcome.source_id)
                tracker.report(outcome.error, source_id=outcome.source_id, severity=ErrorSeverity.WARNING,
                               recovery_suggestion="Remove the source from the registry")

        result.errors = tracker.errors_by_source()
        result.error_report = tracker.generate_report()
        return result
