"""Manual holdings entry and human review of scraped filings."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, Engine

from . import db
from .helpers import VALIDATION_SCHEMAS, DatabaseHelpers, ValidationError, validate_input
from .models import SOURCE_FILING, SOURCE_MANUAL, HoldingsSnapshot, utcnow
from .sources.utils import parse_date

LOGGER = logging.getLogger(__name__)


class FilingNotFound(LookupError):
    """No raw filing has the requested id."""


@dataclass(slots=True)
class ManualEntryResult:
    entity_id: int
    snapshot_id: int
    created_entity: bool
    is_current: bool


def determine_venue(ticker: str) -> str:
    ticker = ticker.upper()
    if ticker.endswith(".HK"):
        return "HKEX"
    if ticker.endswith(".SZ"):
        return "SZSE"
    if ticker.endswith(".SH"):
        return "SSE"
    return "NASDAQ"


def determine_region(ticker: str) -> str:
    return "HK" if ticker.upper().endswith(".HK") else "China"


def _amount_text(value: Union[float, int, str, Decimal]) -> str:
    if isinstance(value, str):
        return value
    try:
        return format(Decimal(str(value)), "f")
    except InvalidOperation:
        return str(value)


def _as_date(value: Union[date, datetime, str], field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = parse_date(value) if isinstance(value, str) else None
    if parsed is None:
        raise ValidationError(field_name, value)
    return parsed.date()


def _snapshot_from_row(row: Any) -> HoldingsSnapshot:
    return HoldingsSnapshot(
        entity_id=row.entity_id,
        btc=row.btc,
        last_disclosed=row.last_disclosed,
        source_url=row.source_url,
        cost_basis_usd=row.cost_basis_usd,
        data_source=row.data_source,
    )


def _latest_snapshot_row(conn: Connection, entity_id: int) -> Any:
    table = db.holdings_snapshots
    return conn.execute(
        select(table)
        .where(table.c.entity_id == entity_id)
        .order_by(table.c.last_disclosed.desc(), table.c.id.desc())
        .limit(1)
    ).first()


def _append_snapshot(conn: Connection, snapshot: HoldingsSnapshot) -> tuple[int, bool]:
    """Insert ``snapshot`` and refresh the entity aggregate when it is the newest."""

    result = conn.execute(
        insert(db.holdings_snapshots).values(
            entity_id=snapshot.entity_id,
            btc=snapshot.btc,
            cost_basis_usd=snapshot.cost_basis_usd,
            last_disclosed=snapshot.last_disclosed,
            source_url=snapshot.source_url,
            data_source=snapshot.data_source,
            created_at=utcnow(),
        )
    )
    snapshot_id = result.inserted_primary_key[0]
    latest = _latest_snapshot_row(conn, snapshot.entity_id)
    is_current = latest is not None and latest.id == snapshot_id
    if is_current:
        conn.execute(
            update(db.entities)
            .where(db.entities.c.id == snapshot.entity_id)
            .values(btc_holdings=snapshot.btc, updated_at=utcnow())
        )
    return snapshot_id, is_current


def current_holdings(engine: Engine, entity_id: int) -> Optional[HoldingsSnapshot]:
    """Return the snapshot with the latest disclosure date for ``entity_id``."""

    with engine.connect() as conn:
        row = _latest_snapshot_row(conn, entity_id)
    return _snapshot_from_row(row) if row is not None else None


def add_or_update_entity(
    helpers: DatabaseHelpers,
    ticker: str,
    legal_name: str,
    btc: Union[float, int, str, Decimal],
    source_url: str,
    last_disclosed: Union[date, datetime, str],
    cost_basis_usd: Optional[float] = None,
    *,
    user_id: Optional[str] = None,
) -> ManualEntryResult:
    """Record a manually entered holdings figure.

    The input is validated first; nothing is written when any field is
    invalid. The entity is resolved by ticker and name (creating it when
    needed), a ``manual`` snapshot is appended, and the entity's aggregate
    holdings follow it when it is the newest disclosure.
    """

    fields = {
        "ticker": ticker,
        "entity_name": legal_name,
        "btc_amount": None if btc is None else _amount_text(btc),
        "url": source_url,
    }
    for name, value in fields.items():
        if value is None or not str(value).strip():
            raise ValidationError(name, value)
    validated = validate_input(fields, VALIDATION_SCHEMAS)
    disclosed = _as_date(last_disclosed, "last_disclosed")
    if cost_basis_usd is not None and cost_basis_usd < 0:
        raise ValidationError("cost_basis_usd", cost_basis_usd)

    ticker = validated["ticker"]
    entity, created = helpers.find_or_create_entity(
        validated["entity_name"],
        ticker,
        determine_venue(ticker),
        determine_region(ticker),
        hq="TBD",
    )
    snapshot = HoldingsSnapshot(
        entity_id=entity.id,
        btc=float(validated["btc_amount"]),
        last_disclosed=disclosed,
        source_url=validated["url"],
        cost_basis_usd=cost_basis_usd,
        data_source=SOURCE_MANUAL,
    )
    with db.session(helpers.engine) as conn:
        snapshot_id, is_current = _append_snapshot(conn, snapshot)

    LOGGER.info(
        "Recorded %s BTC for %s as of %s (snapshot %s)", snapshot.btc, entity.ticker, disclosed, snapshot_id
    )
    helpers.create_audit_log(
        "holdings_snapshot_added",
        entity_id=entity.id,
        user_id=user_id,
        details={
            "snapshot_id": snapshot_id,
            "btc": snapshot.btc,
            "last_disclosed": disclosed.isoformat(),
            "source_url": snapshot.source_url,
            "data_source": SOURCE_MANUAL,
        },
    )
    return ManualEntryResult(
        entity_id=entity.id, snapshot_id=snapshot_id, created_entity=created, is_current=is_current
    )


def verify_filing(
    helpers: DatabaseHelpers, filing_id: int, user_id: Optional[str] = None
) -> dict[str, Any]:
    """Mark a scraped filing as reviewed.

    The first verification of a filing that carries a total holdings figure
    also records a ``filing`` snapshot. Verifying twice is a no-op. A filing
    whose entity no longer exists raises :class:`FilingNotFound`.
    """

    table = db.raw_filings
    with db.session(helpers.engine) as conn:
        row = conn.execute(select(table).where(table.c.id == filing_id)).first()
        if row is None:
            raise FilingNotFound(f"No raw filing with id {filing_id}")
        if row.verified:
            return {"filing_id": filing_id, "verified": True, "snapshot_id": None, "changed": False}
        if not helpers.entity_exists(row.entity_id):
            raise FilingNotFound(f"Raw filing {filing_id} references missing entity {row.entity_id}")

        conn.execute(
            update(table).where(table.c.id == filing_id).values(verified=True, updated_at=utcnow())
        )
        snapshot_id = None
        if row.total_holdings is not None:
            snapshot_id, _ = _append_snapshot(
                conn,
                HoldingsSnapshot(
                    entity_id=row.entity_id,
                    btc=row.total_holdings,
                    last_disclosed=row.disclosed_at.date(),
                    source_url=row.pdf_url,
                    data_source=SOURCE_FILING,
                ),
            )

    LOGGER.info("Filing %s verified by %s", filing_id, user_id or "unknown")
    helpers.create_audit_log(
        "filing_verified",
        entity_id=row.entity_id,
        user_id=user_id,
        details={"filing_id": filing_id, "snapshot_id": snapshot_id, "pdf_url": row.pdf_url},
    )
    return {"filing_id": filing_id, "verified": True, "snapshot_id": snapshot_id, "changed": True}


__all__ = [
    "FilingNotFound",
    "ManualEntryResult",
    "determine_venue",
    "determine_region",
    "current_holdings",
    "add_or_update_entity",
    "verify_filing",
]
