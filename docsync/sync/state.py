"""
Persisted state of the documentation sync system.

`GlobalSyncState` is the unit of persistence: per-source metadata, the
bounded update history and the global check/update timestamps. It is loaded
once at startup and saved after every mutating sync.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Deque, Dict, Iterable, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..config import MAX_HISTORY_ENTRIES, METADATA_SCHEMA_VERSION


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChangeType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class UpdateRecord(BaseModel):
    """Append-only fact describing one fingerprint change of one source."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(..., description="When the change was recorded")
    source_id: str = Field(..., description="Source identifier")
    previous_fingerprint: str = Field(default="", description="Fingerprint before the change (empty when created)")
    new_fingerprint: str = Field(default="", description="Fingerprint after the change (empty when deleted)")
    type: ChangeType = Field(..., description="Kind of change")


class SourceMetadata(BaseModel):
    """Tracked state of one source, created on its first successful sync."""
    id: str = Field(..., description="Source identifier")
    path: str = Field(..., description="Logical location within upstream")
    fingerprint: str = Field(..., description="Opaque content hash")
    size: int = Field(default=0, description="Content size in bytes")
    etag: Optional[str] = Field(None, description="Upstream ETag, when provided")
    last_fetched: datetime = Field(..., description="Last successful fetch")
    first_seen: datetime = Field(..., description="First successful fetch")
    update_count: int = Field(default=0, description="Number of fingerprint changes since creation")


class GlobalSyncState(BaseModel):
    """Aggregate persisted as a single blob."""
    schema_version: int = Field(default=METADATA_SCHEMA_VERSION, description="Schema version of the persisted layout")
    last_check: Optional[datetime] = Field(None, description="Last check, whether or not it found changes")
    last_update: Optional[datetime] = Field(None, description="Last check that produced at least one change")
    upstream_fingerprint: str = Field(default="", description="Top-level upstream fingerprint from the last full sync")
    sources: Dict[str, SourceMetadata] = Field(default_factory=dict, description="Tracked sources by id")
    update_history: List[UpdateRecord] = Field(default_factory=list, description="Update history, most recent first")


class UpdateHistory:
    """Fixed-capacity, most-recent-first log of update records.

    Inserting into a full history evicts the oldest record.
    """

    def __init__(self, capacity: int = MAX_HISTORY_ENTRIES, records: Iterable[UpdateRecord] = ()):
        if capacity < 1:
            raise ValueError("History capacity must be at least 1")
        self.capacity = capacity
        # deque(maxlen) drops from the right when appending on the left
        self._records: Deque[UpdateRecord] = deque(maxlen=capacity)
        for record in records:
            if len(self._records) >= capacity:
                break
            self._records.append(record)

    def add(self, record: UpdateRecord) -> None:
        self._records.appendleft(record)

    def clear(self) -> None:
        self._records.clear()

    def to_list(self) -> List[UpdateRecord]:
        return list(self._records)

    def __iter__(self) -> Iterator[UpdateRecord]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)
