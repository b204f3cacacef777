"""Database integration utilities."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Iterable, Iterator, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    insert,
    select,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine

from .models import Entity, ScraperResult, utcnow


metadata = MetaData()

LOGGER = logging.getLogger(__name__)

entities = Table(
    "entities",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("legal_name", String(255), nullable=False),
    Column("ticker", String(64), nullable=False, unique=True),
    Column("listing_venue", String(32), nullable=False),
    Column("region", String(32), nullable=False),
    Column("hq", String(128), nullable=True),
    Column("btc_holdings", Float, nullable=True),
    Column("price", Float, nullable=True),
    Column("market_cap", Float, nullable=True),
    Column("shares_outstanding", Float, nullable=True),
    Column("market_data_source", String(32), nullable=True),
    Column("market_data_updated_at", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False, default=utcnow),
    Column("updated_at", DateTime, nullable=False, default=utcnow, onupdate=utcnow),
)

holdings_snapshots = Table(
    "holdings_snapshots",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("entity_id", ForeignKey("entities.id"), nullable=False),
    Column("btc", Float, nullable=False),
    Column("cost_basis_usd", Float, nullable=True),
    Column("last_disclosed", Date, nullable=False),
    Column("source_url", String(1024), nullable=False),
    Column("data_source", String(16), nullable=False, default="manual"),
    Column("created_at", DateTime, nullable=False, default=utcnow),
)

raw_filings = Table(
    "raw_filings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("entity_id", ForeignKey("entities.id"), nullable=False),
    Column("btc", Float, nullable=True),
    Column("total_holdings", Float, nullable=True),
    Column("disclosed_at", DateTime, nullable=False),
    Column("pdf_url", String(1024), nullable=False),
    Column("source", String(16), nullable=False),
    Column("title", Text, nullable=True),
    Column("filing_type", String(16), nullable=False, default="disclosure"),
    Column("document_type", String(32), nullable=True),
    Column("extracted_text", Text, nullable=True),
    Column("confidence", Integer, nullable=False, default=0),
    Column("verified", Boolean, nullable=False, default=False),
    Column("bitcoin_related", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False, default=utcnow),
    Column("updated_at", DateTime, nullable=False, default=utcnow, onupdate=utcnow),
    UniqueConstraint("entity_id", "pdf_url", name="uq_raw_filings_entity_url"),
)

scraper_run_logs = Table(
    "scraper_run_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("scraper_id", String(64), nullable=False, index=True),
    Column("timestamp", DateTime, nullable=False),
    Column("status", String(16), nullable=False),
    Column("success", Boolean, nullable=False),
    Column("duration", Float, nullable=False),
    Column("records_processed", Integer, nullable=False, default=0),
    Column("new_records", Integer, nullable=False, default=0),
    Column("errors", JSON, nullable=False, default=list),
    Column("summary", Text, nullable=True),
)

audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("action", String(64), nullable=False),
    Column("entity_id", Integer, nullable=True),
    Column("user_id", String(64), nullable=True),
    Column("details", JSON, nullable=False, default=dict),
    Column("timestamp", DateTime, nullable=False, default=utcnow),
)

advisory_locks = Table(
    "advisory_locks",
    metadata,
    Column("name", String(128), primary_key=True),
    Column("holder", String(64), nullable=False),
    Column("acquired_at", DateTime, nullable=False),
    Column("expires_at", DateTime, nullable=False),
)

DEFAULT_LOCK_TTL = 60 * 60


def create_db_engine(database_url: str) -> Engine:
    """Create a SQLAlchemy engine."""

    LOGGER.debug("Creating database engine")
    return create_engine(database_url, future=True, pool_pre_ping=True)


@contextmanager
def session(engine: Engine) -> Iterator[Connection]:
    """Provide a transactional scope around a series of operations."""

    with engine.begin() as conn:
        yield conn


def ensure_schema(engine: Engine) -> None:
    """Create tables if they do not exist."""

    LOGGER.debug("Ensuring database schema is present")
    metadata.create_all(engine)


def dialect_insert(conn: Connection, table: Table):
    """Return an INSERT construct supporting ``on_conflict_*`` for this dialect."""

    name = conn.dialect.name
    if name == "postgresql":
        return pg_insert(table)
    if name == "sqlite":
        return sqlite_insert(table)
    raise NotImplementedError(f"Conflict-aware inserts are not supported on {name}")


def try_advisory_lock(
    engine: Engine, name: str, holder: str, ttl: float = DEFAULT_LOCK_TTL
) -> bool:
    """Take the named lock if nobody holds it; stale locks past expiry are reaped."""

    now = utcnow()
    with session(engine) as conn:
        conn.execute(
            delete(advisory_locks).where(
                advisory_locks.c.name == name, advisory_locks.c.expires_at < now
            )
        )
        stmt = dialect_insert(conn, advisory_locks).values(
            name=name,
            holder=holder,
            acquired_at=now,
            expires_at=now + timedelta(seconds=ttl),
        )
        stmt = stmt.on_conflict_do_nothing().returning(advisory_locks.c.holder)
        acquired = conn.execute(stmt).scalar_one_or_none()
    return acquired is not None


def release_advisory_lock(engine: Engine, name: str, holder: Optional[str] = None) -> bool:
    """Drop the named lock, only if ``holder`` owns it when given."""

    with session(engine) as conn:
        stmt = delete(advisory_locks).where(advisory_locks.c.name == name)
        if holder is not None:
            stmt = stmt.where(advisory_locks.c.holder == holder)
        result = conn.execute(stmt)
    return result.rowcount > 0


def is_locked(engine: Engine, name: str) -> bool:
    with engine.connect() as conn:
        row = conn.execute(
            select(advisory_locks.c.expires_at).where(advisory_locks.c.name == name)
        ).first()
    return row is not None and row.expires_at >= utcnow()


def row_to_entity(row: Any) -> Entity:
    data = row._mapping
    return Entity(
        id=data["id"],
        legal_name=data["legal_name"],
        ticker=data["ticker"],
        listing_venue=data["listing_venue"],
        region=data["region"],
        btc_holdings=data["btc_holdings"],
        hq=data["hq"],
    )


def list_entities(
    engine: Engine,
    venues: Optional[Iterable[str]] = None,
    regions: Optional[Iterable[str]] = None,
) -> list[Entity]:
    """Return tracked entities, optionally narrowed by listing venue and region."""

    stmt = select(entities).order_by(entities.c.id)
    if venues is not None:
        stmt = stmt.where(entities.c.listing_venue.in_(list(venues)))
    if regions is not None:
        stmt = stmt.where(entities.c.region.in_(list(regions)))
    with engine.connect() as conn:
        rows = conn.execute(stmt).all()
    return [row_to_entity(row) for row in rows]


def get_entity(engine: Engine, entity_id: int) -> Optional[Entity]:
    with engine.connect() as conn:
        row = conn.execute(select(entities).where(entities.c.id == entity_id)).first()
    return row_to_entity(row) if row is not None else None


def latest_disclosure(engine: Engine, entity_id: int, source: str) -> Optional[datetime]:
    """Return the newest ``disclosed_at`` stored for an entity from ``source``."""

    stmt = select(func.max(raw_filings.c.disclosed_at)).where(
        raw_filings.c.entity_id == entity_id, raw_filings.c.source == source
    )
    with engine.connect() as conn:
        return conn.execute(stmt).scalar_one_or_none()


def append_run_log(engine: Engine, result: ScraperResult) -> None:
    """Persist one orchestrated job run; the table is append-only."""

    with session(engine) as conn:
        conn.execute(
            insert(scraper_run_logs).values(
                scraper_id=result.scraper_id,
                timestamp=result.timestamp,
                status=result.status,
                success=result.success,
                duration=result.duration,
                records_processed=result.records_processed,
                new_records=result.new_records,
                errors=list(result.errors),
                summary=result.summary,
            )
        )


def fetch_run_logs(engine: Engine, scraper_id: str, limit: int = 50) -> list[ScraperResult]:
    stmt = (
        select(scraper_run_logs)
        .where(scraper_run_logs.c.scraper_id == scraper_id)
        .order_by(scraper_run_logs.c.timestamp.desc(), scraper_run_logs.c.id.desc())
        .limit(limit)
    )
    with engine.connect() as conn:
        rows = conn.execute(stmt).all()
    return [
        ScraperResult(
            scraper_id=row.scraper_id,
            timestamp=row.timestamp,
            status=row.status,
            duration=row.duration,
            records_processed=row.records_processed,
            new_records=row.new_records,
            errors=list(row.errors or []),
            summary=row.summary or "",
        )
        for row in rows
    ]


__all__ = [
    "metadata",
    "entities",
    "holdings_snapshots",
    "raw_filings",
    "scraper_run_logs",
    "audit_logs",
    "advisory_locks",
    "create_db_engine",
    "session",
    "ensure_schema",
    "dialect_insert",
    "try_advisory_lock",
    "release_advisory_lock",
    "is_locked",
    "row_to_entity",
    "list_entities",
    "get_entity",
    "latest_disclosure",
    "append_run_log",
    "fetch_run_logs",
]
