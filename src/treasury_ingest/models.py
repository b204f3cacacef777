"""Domain models for the treasury ingestion pipeline."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional

# Filing type labels produced by the classifier.
ACQUISITION = "acquisition"
DISPOSAL = "disposal"
UPDATE = "update"
DISCLOSURE = "disclosure"
FILING_TYPES = (ACQUISITION, DISPOSAL, UPDATE, DISCLOSURE)

# Provenance tags for holdings snapshots.
SOURCE_MANUAL = "manual"
SOURCE_FILING = "filing"
SOURCE_AUTO = "auto"
DATA_SOURCES = (SOURCE_MANUAL, SOURCE_FILING, SOURCE_AUTO)

# Job run outcomes.
STATUS_SUCCEEDED = "succeeded"
STATUS_LOCK_DENIED = "lock-denied"
STATUS_FAILED = "failed"


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, as stored in the database."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(slots=True)
class Entity:
    """A tracked issuer."""

    id: int
    legal_name: str
    ticker: str
    listing_venue: str
    region: str
    btc_holdings: Optional[float] = None
    hq: Optional[str] = None


@dataclass(slots=True)
class HoldingsSnapshot:
    """One point-in-time disclosed holdings figure."""

    entity_id: int
    btc: float
    last_disclosed: date
    source_url: str
    cost_basis_usd: Optional[float] = None
    data_source: str = SOURCE_MANUAL


@dataclass(slots=True)
class DocumentRef:
    """A document listed by a filing source."""

    title: str
    date: datetime
    url: str
    issuer_code: Optional[str] = None
    form: Optional[str] = None


@dataclass(slots=True)
class AmountInfo:
    """Bitcoin amounts extracted from disclosure text."""

    delta: Optional[float] = None
    total: Optional[float] = None
    is_disposal: bool = False


@dataclass(slots=True)
class MarketData:
    """Normalized quote and profile data for one ticker."""

    ticker: str
    price: float
    market_cap: float
    shares_outstanding: float
    source: str
    last_updated: datetime


@dataclass(slots=True)
class ScraperJobConfig:
    """Declarative description of one ingestion job and its rolling stats."""

    id: str
    name: str
    type: str
    enabled: bool
    schedule: str  # cron expression
    endpoint: str
    status: str = "idle"  # "active", "idle", "error" or "disabled"
    error_count: int = 0
    consecutive_errors: int = 0
    success_rate: float = 100.0
    avg_run_time: float = 0.0  # seconds
    last_run: Optional[datetime] = None
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_run"] = self.last_run.isoformat() if self.last_run else None
        return data


@dataclass(slots=True)
class ScraperResult:
    """Outcome of one orchestrated job invocation."""

    scraper_id: str
    timestamp: datetime
    status: str
    duration: float
    records_processed: int = 0
    new_records: int = 0
    errors: list[str] = field(default_factory=list)
    summary: str = ""

    @property
    def success(self) -> bool:
        return self.status == STATUS_SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["success"] = self.success
        return data


@dataclass(slots=True)
class JobResult:
    """Outcome of one scraper job run, as reported over HTTP."""

    job: str
    status: str
    scanned: int = 0
    found: int = 0
    new_records: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)
    message: str = ""
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["success"] = self.status == STATUS_SUCCEEDED
        return data


__all__ = [
    "utcnow",
    "ACQUISITION",
    "DISPOSAL",
    "UPDATE",
    "DISCLOSURE",
    "FILING_TYPES",
    "SOURCE_MANUAL",
    "SOURCE_FILING",
    "SOURCE_AUTO",
    "DATA_SOURCES",
    "STATUS_SUCCEEDED",
    "STATUS_LOCK_DENIED",
    "STATUS_FAILED",
    "Entity",
    "HoldingsSnapshot",
    "DocumentRef",
    "AmountInfo",
    "MarketData",
    "ScraperJobConfig",
    "ScraperResult",
    "JobResult",
]
