"""
Freshness reporting for query results.

Derives how current the local cache is from the metadata store and renders
the advisory staleness warning attached to search responses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .metadata_store import MetadataStore
from .state import utc_now

STALE_NAMES_SHOWN = 3


def format_relative_time(when: datetime, now: Optional[datetime] = None) -> str:
    """Format a timestamp relative to now, e.g. "5 minutes ago" or "2 days ago"."""
    now = now or utc_now()
    seconds = max(0.0, (now - when).total_seconds())

    days = int(seconds // 86400)
    hours = int(seconds // 3600)
    minutes = int(seconds // 60)

    if days > 0:
        return f"{days} day{'s' if days > 1 else ''} ago"
    if hours > 0:
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    if minutes > 0:
        return f"{minutes} minute{'s' if minutes > 1 else ''} ago"
    return "just now"


@dataclass
class DataFreshness:
    """Freshness annotation carried by every query response."""
    last_indexed: Optional[datetime]
    last_indexed_relative: str
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'last_indexed': self.last_indexed.isoformat() if self.last_indexed else None,
            'last_indexed_relative': self.last_indexed_relative,
            'warning': self.warning,
        }


@dataclass
class FreshnessReport:
    generated_at: datetime
    total_sources: int
    last_indexed: Optional[datetime]
    stale_sources: List[str] = field(default_factory=list)

    @property
    def overall_status(self) -> str:
        if not self.stale_sources:
            return "fresh"
        if len(self.stale_sources) >= self.total_sources:
            return "stale"
        return "partially-stale"


def build_freshness_report(store: MetadataStore, threshold_seconds: float,
                           now: Optional[datetime] = None) -> FreshnessReport:
    return FreshnessReport(
        generated_at=now or utc_now(),
        total_sources=len(store.registry),
        last_indexed=store.most_recent_fetch(),
        stale_sources=store.stale_sources(threshold_seconds),
    )


def staleness_warning(report: FreshnessReport) -> Optional[str]:
    """
    Render the warning for a report, or None when every source is fresh.

    Names the first few stale sources and counts the rest.
    """
    if report.last_indexed is None:
        return "Documentation has not been indexed yet; results may be incomplete"
    if report.overall_status == "fresh":
        return None

    shown = report.stale_sources[:STALE_NAMES_SHOWN]
    others = len(report.stale_sources) - len(shown)
    other_text = f" and {others} more" if others > 0 else ""
    return (f"Data may be outdated for: {', '.join(shown)}{other_text}. "
            f"Last full index: {report.last_indexed.isoformat()}")


def build_data_freshness(store: MetadataStore, threshold_seconds: float,
                         now: Optional[datetime] = None) -> DataFreshness:
    now = now or utc_now()
    report = build_freshness_report(store, threshold_seconds, now=now)
    relative = format_relative_time(report.last_indexed, now) if report.last_indexed else "never"
    return DataFreshness(
        last_indexed=report.last_indexed,
        last_indexed_relative=relative,
        warning=staleness_warning(report),
    )
