"""
Source Registry and Configuration Schema for the Documentation Sync System.

This module defines the unified configuration format for the documentation
sources that are tracked, the scheduler that drives periodic checks, and the
global settings of the sync engine and its metadata store.
"""

import yaml
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..config import (
    DEFAULT_CACHE_TTL_SECONDS,
    DEFAULT_CHECK_INTERVAL_SECONDS,
    DEFAULT_FORCE_INTERVAL_SECONDS,
    DEFAULT_HOSTED_TIMEOUT_SECONDS,
    DEFAULT_MAX_BACKOFF_SECONDS,
    DEFAULT_METADATA_FILENAME,
    DEFAULT_STALENESS_THRESHOLD_SECONDS,
    DEFAULT_STATE_DIRECTORY,
    MAX_HISTORY_ENTRIES,
    METADATA_SCHEMA_VERSION,
)


class SourceCategory(str, Enum):
    """Categories used to filter batch syncs."""
    COMPACT = "compact"
    SDK = "sdk"
    NETWORK = "network"
    TUTORIAL = "tutorial"
    API = "api"
    GENERAL = "general"


class DocType(str, Enum):
    """Format of the upstream document."""
    MDX = "mdx"
    MD = "md"
    JSON = "json"
    TXT = "txt"


class SourceConfig(BaseModel):
    """Configuration for a single documentation source. Immutable once defined."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique source identifier")
    path: str = Field(..., description="Logical location of the document within upstream")
    category: SourceCategory = Field(..., description="Source category")
    description: str = Field(default="", description="Human-readable description")
    doc_type: DocType = Field(default=DocType.MD, description="Document format")
    priority: int = Field(default=0, description="Informational priority (registry order governs processing)")

    @field_validator('id', 'path')
    @classmethod
    def validate_not_blank(cls, v):
        """Reject empty identifiers and paths."""
        if not v or not v.strip():
            raise ValueError('Must not be blank')
        return v


class SchedulerConfig(BaseModel):
    """Configuration for the periodic sync scheduler."""
    check_interval_seconds: float = Field(default=DEFAULT_CHECK_INTERVAL_SECONDS, description="Interval between checks")
    force_interval_seconds: float = Field(default=DEFAULT_FORCE_INTERVAL_SECONDS, description="Interval between forced re-checks")
    auto_start: bool = Field(default=False, description="Start the scheduler when the service initializes")
    persist_metadata: bool = Field(default=True, description="Persist metadata after each check")
    max_consecutive_failures: Optional[int] = Field(None, description="Stop after this many consecutive failures (None = never)")
    failure_backoff_multiplier: float = Field(default=2.0, description="Backoff multiplier applied per consecutive failure")
    max_backoff_seconds: float = Field(default=DEFAULT_MAX_BACKOFF_SECONDS, description="Upper bound for failure backoff")

    @field_validator('check_interval_seconds', 'force_interval_seconds', 'max_backoff_seconds')
    @classmethod
    def validate_positive(cls, v):
        """Intervals must be strictly positive."""
        if v <= 0:
            raise ValueError('Interval must be greater than zero')
        return v

    @field_validator('failure_backoff_multiplier')
    @classmethod
    def validate_multiplier(cls, v):
        if v < 1:
            raise ValueError('Backoff multiplier must be at least 1')
        return v


class SyncConfig(BaseModel):
    """Main configuration for the documentation sync system."""
    name: str = Field(default="docs", description="Configuration name")
    description: Optional[str] = Field(None, description="Configuration description")
    schema_version: int = Field(default=METADATA_SCHEMA_VERSION, description="Metadata schema version")

    # Source registry (processing order is list order)
    sources: List[SourceConfig] = Field(default_factory=list, description="Registered documentation sources")

    # Storage configuration
    state_directory: str = Field(default=DEFAULT_STATE_DIRECTORY, description="Directory for persisted state")
    metadata_filename: str = Field(default=DEFAULT_METADATA_FILENAME, description="Metadata blob path within storage")
    max_history_entries: int = Field(default=MAX_HISTORY_ENTRIES, description="Capacity of the update history")

    # Sync configuration
    cache_ttl_seconds: float = Field(default=DEFAULT_CACHE_TTL_SECONDS, description="Age after which a source bypasses the upstream pre-check")
    max_concurrent_fetches: int = Field(default=1, description="Maximum concurrent fetches within one batch")
    fetch_retry_attempts: int = Field(default=1, description="Attempts per source fetch")

    # Query configuration
    staleness_threshold_seconds: float = Field(default=DEFAULT_STALENESS_THRESHOLD_SECONDS, description="Age after which query results carry a staleness warning")
    hosted_search_url: Optional[str] = Field(None, description="Base URL of the hosted search API")
    hosted_search_timeout: float = Field(default=DEFAULT_HOSTED_TIMEOUT_SECONDS, description="Hosted search timeout in seconds")

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig, description="Scheduler configuration")

    # Logging configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[str] = Field(None, description="Log file path")

    @field_validator('max_history_entries', 'max_concurrent_fetches', 'fetch_retry_attempts')
    @classmethod
    def validate_at_least_one(cls, v):
        if v < 1:
            raise ValueError('Must be at least 1')
        return v

    @model_validator(mode='after')
    def validate_unique_source_ids(self):
        """Source ids must be unique across the registry."""
        seen = set()
        duplicates = []
        for source in self.sources:
            if source.id in seen:
                duplicates.append(source.id)
            seen.add(source.id)
        if duplicates:
            raise ValueError(f"Duplicate source ids: {', '.join(duplicates)}")
        return self

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'SyncConfig':
        """Load configuration from YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Convert to dict with enum values as strings
        data = self.model_dump(mode='json')

        with open(path, 'w', encoding='utf-8') as f:
            yaml.dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)

    def get_source_by_id(self, source_id: str) -> Optional[SourceConfig]:
        """Get source configuration by ID."""
        for source in self.sources:
            if source.id == source_id:
                return source
        return None

    def get_sources_by_category(self, categories: Optional[List[SourceCategory]] = None) -> List[SourceConfig]:
        """Get sources in registry order, optionally restricted to some categories."""
        if not categories:
            return list(self.sources)
        wanted = {SourceCategory(c) for c in categories}
        return [source for source in self.sources if source.category in wanted]

    def source_ids(self) -> List[str]:
        return [source.id for source in self.sources]


DEFAULT_SOURCES: List[SourceConfig] = [
    # Compact language reference
    SourceConfig(id="compact-lang-ref", path="compact/lang-ref.mdx", doc_type=DocType.MDX,
                 category=SourceCategory.COMPACT, priority=100,
                 description="Compact Language Reference - Complete language specification"),
    SourceConfig(id="compact-index", path="compact/index.mdx", doc_type=DocType.MDX,
                 category=SourceCategory.COMPACT, priority=95,
                 description="Compact Language Overview"),
    SourceConfig(id="compact-std-library-exports", path="compact/compact-std-library/exports.md",
                 doc_type=DocType.MD, category=SourceCategory.COMPACT, priority=90,
                 description="Compact Standard Library Exports"),
    SourceConfig(id="compact-writing", path="compact/writing.mdx", doc_type=DocType.MDX,
                 category=SourceCategory.COMPACT, priority=85,
                 description="Writing Compact Contracts"),
    SourceConfig(id="compact-ledger-adt", path="compact/ledger-adt.mdx", doc_type=DocType.MDX,
                 category=SourceCategory.COMPACT, priority=80,
                 description="Ledger Abstract Data Types"),
    SourceConfig(id="compact-explicit-disclosure", path="compact/explicit_disclosure.mdx",
                 doc_type=DocType.MDX, category=SourceCategory.COMPACT, priority=75,
                 description="Explicit Disclosure in Compact"),
    SourceConfig(id="compact-opaque-data", path="compact/opaque_data.mdx", doc_type=DocType.MDX,
                 category=SourceCategory.COMPACT, priority=70,
                 description="Opaque Data Types"),
    SourceConfig(id="compact-grammar", path="compact/compact-grammar.mdx", doc_type=DocType.MDX,
                 category=SourceCategory.COMPACT, priority=65,
                 description="Compact Grammar Reference"),

    # SDK reference
    SourceConfig(id="sdk-overview", path="docs/develop/reference/midnight-api.mdx",
                 doc_type=DocType.MDX, category=SourceCategory.SDK, priority=100,
                 description="SDK API Overview"),

    # Network documentation
    SourceConfig(id="network-overview", path="docs/learn/what-is-midnight.mdx",
                 doc_type=DocType.MDX, category=SourceCategory.NETWORK, priority=100,
                 description="Network Overview"),
    SourceConfig(id="network-architecture", path="docs/learn/understanding-midnight.mdx",
                 doc_type=DocType.MDX, category=SourceCategory.NETWORK, priority=90,
                 description="Network Architecture"),

    # Tutorials
    SourceConfig(id="tutorial-getting-started", path="docs/develop/getting-started/index.mdx",
                 doc_type=DocType.MDX, category=SourceCategory.TUTORIAL, priority=100,
                 description="Getting Started Guide"),
    SourceConfig(id="tutorial-create-project", path="docs/develop/getting-started/create-mn-project.mdx",
                 doc_type=DocType.MDX, category=SourceCategory.TUTORIAL, priority=95,
                 description="Creating a Project"),

    # General
    SourceConfig(id="llms-overview", path="llms.txt", doc_type=DocType.TXT,
                 category=SourceCategory.GENERAL, priority=110,
                 description="LLM-optimized documentation overview"),
    SourceConfig(id="doc-metadata", path=".docmeta.json", doc_type=DocType.JSON,
                 category=SourceCategory.GENERAL, priority=120,
                 description="Documentation metadata and versioning"),
]


def create_default_config() -> SyncConfig:
    """Create the default configuration with the built-in documentation registry."""
    return SyncConfig(
        name="Documentation Sync",
        description="Default documentation registry",
        sources=list(DEFAULT_SOURCES),
    )


if __name__ == "__main__":
    # Create and save example configuration
    config = create_default_config()
    config.to_yaml("example_docsync_config.yaml")
