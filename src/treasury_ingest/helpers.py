"""Persistence-facing helpers shared by the scraper jobs and manual entry paths."""
from __future__ import annotations

import logging
import os
import re
import socket
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional, Pattern, Sequence, TypeVar

from bs4 import BeautifulSoup
from sqlalchemy import Table, func, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from . import db
from .models import Entity, utcnow
from .retry import with_retry

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

FUZZY_MATCH_THRESHOLD = 0.8
LOCK_POLL_INTERVAL = 0.1
DEFAULT_LOCK_TIMEOUT = 5.0


class ValidationError(ValueError):
    """Input failed a field validator."""

    def __init__(self, field_name: str, value: Any) -> None:
        super().__init__(f"Invalid {field_name}: {value}")
        self.field = field_name
        self.value = value


VALIDATION_SCHEMAS: dict[str, Pattern[str]] = {
    "ticker": re.compile(r"^[A-Z0-9]+(\.[A-Z]+)?$"),
    "url": re.compile(r"^https://.+$"),
    "btc_amount": re.compile(r"^\d+(\.\d{1,8})?$"),
    "entity_name": re.compile(r"^[\w\s\-&.,()]+$"),
}


def validate_input(data: Mapping[str, Any], schema: Mapping[str, Pattern[str]]) -> dict[str, str]:
    """Check ``data`` against ``schema`` and return the trimmed, validated values.

    Fields absent from ``data`` (or set to ``None``) are skipped, not
    defaulted. The first invalid field raises :class:`ValidationError`.
    """

    validated: dict[str, str] = {}
    for key, pattern in schema.items():
        raw = data.get(key)
        if raw is None:
            continue
        value = str(raw).strip()
        if not pattern.match(value):
            raise ValidationError(key, value)
        validated[key] = value
    return validated


def sanitize_text(text: Optional[str]) -> str:
    """Drop every tag from ``text``, keeping only its character data."""

    if not text:
        return ""
    soup = BeautifulSoup(text, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return soup.get_text().strip()


def levenshtein(left: str, right: str) -> int:
    if left == right:
        return 0
    if not left:
        return len(right)
    if not right:
        return len(left)
    previous = list(range(len(right) + 1))
    for i, lchar in enumerate(left, start=1):
        current = [i]
        for j, rchar in enumerate(right, start=1):
            cost = 0 if lchar == rchar else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def _normalize_name(name: str) -> str:
    return " ".join(name.lower().split())


def name_similarity(left: str, right: str) -> float:
    """Return ``1 - distance / longer length`` over normalized names."""

    a, b = _normalize_name(left), _normalize_name(right)
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest


@dataclass(slots=True)
class UpsertResult:
    operation: str  # "insert" or "update"
    row: dict[str, Any]


@dataclass(slots=True)
class BatchFailure:
    item: Any
    error: BaseException


@dataclass(slots=True)
class BatchResult:
    successful: list[Any] = field(default_factory=list)
    failed: list[BatchFailure] = field(default_factory=list)
    aborted: bool = False


def new_lock_holder() -> str:
    """Token identifying one lock holder: host, process and a random suffix."""

    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class DatabaseHelpers:
    """Validation, idempotent upserts, entity resolution, locks and audit logging."""

    def __init__(
        self,
        engine: Engine,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Upserts
    # ------------------------------------------------------------------
    def upsert_with_conflict_resolution(
        self,
        table: Table,
        data: Mapping[str, Any],
        unique_keys: Sequence[str],
        strategy: str = "merge",
        *,
        preserve: Iterable[str] = (),
    ) -> UpsertResult:
        """Insert ``data`` or update the row matching its ``unique_keys``.

        ``merge`` keeps existing column values that ``data`` does not mention;
        ``replace`` resets every other nullable column to NULL. Columns named
        in ``preserve`` are never overwritten on update. A concurrent insert of
        the same key is retried and lands as an update.
        """

        if strategy not in ("merge", "replace"):
            raise ValueError(f"Unknown upsert strategy {strategy!r}")
        missing = [key for key in unique_keys if key not in data]
        if missing:
            raise ValueError(f"Upsert into {table.name} is missing key fields: {', '.join(missing)}")

        def attempt() -> UpsertResult:
            return self._upsert_once(table, data, unique_keys, strategy, frozenset(preserve))

        try:
            return with_retry(
                attempt,
                max_retries=3,
                delay=0.1,
                retry_on=(IntegrityError, OperationalError),
                sleep=self._sleep,
            )
        except SQLAlchemyError:
            LOGGER.error("Upsert failed for %s", table.name)
            raise

    def _upsert_once(
        self,
        table: Table,
        data: Mapping[str, Any],
        unique_keys: Sequence[str],
        strategy: str,
        preserve: frozenset[str],
    ) -> UpsertResult:
        incoming = {key: value for key, value in data.items() if key in table.c}
        primary_key = list(table.primary_key.columns)
        with db.session(self.engine) as conn:
            criteria = [table.c[key] == incoming[key] for key in unique_keys]
            existing = conn.execute(select(table).where(*criteria)).mappings().first()

            if existing is None:
                result = conn.execute(insert(table).values(**incoming))
                key_values = result.inserted_primary_key
                operation = "insert"
            else:
                protected = {col.name for col in primary_key} | {"created_at"} | set(unique_keys)
                if strategy == "merge":
                    values = {**existing, **incoming}
                else:
                    values = {
                        col.name: None
                        for col in table.c
                        if col.nullable and col.name not in protected
                    }
                    values.update(incoming)
                for name in protected | preserve:
                    values.pop(name, None)
                if "updated_at" in table.c:
                    values["updated_at"] = utcnow()
                key_values = [existing[col.name] for col in primary_key]
                conn.execute(
                    update(table)
                    .where(*[col == value for col, value in zip(primary_key, key_values)])
                    .values(**values)
                )
                operation = "update"

            row = conn.execute(
                select(table).where(*[col == value for col, value in zip(primary_key, key_values)])
            ).mappings().one()
        return UpsertResult(operation=operation, row=dict(row))

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------
    def batch_operation(
        self,
        items: Sequence[T],
        operation: Callable[[T], Any],
        *,
        batch_size: int = 10,
        continue_on_error: bool = True,
        delay: float = 0.1,
    ) -> BatchResult:
        """Run ``operation`` over ``items`` in concurrent chunks of ``batch_size``.

        Results and ``(item, error)`` failures are collected separately. With
        ``continue_on_error`` off, the first failing chunk stops the batch and
        the result is marked ``aborted``.
        """

        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        outcome = BatchResult()
        if not items:
            return outcome

        with ThreadPoolExecutor(max_workers=batch_size, thread_name_prefix="batch") as pool:
            for start in range(0, len(items), batch_size):
                chunk = items[start : start + batch_size]
                futures = [(item, pool.submit(operation, item)) for item in chunk]
                for item, future in futures:
                    try:
                        outcome.successful.append(future.result())
                    except Exception as exc:
                        outcome.failed.append(BatchFailure(item=item, error=exc))
                if outcome.failed and not continue_on_error:
                    outcome.aborted = True
                    break
                if start + batch_size < len(items) and delay > 0:
                    self._sleep(delay)
        return outcome

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------
    def entity_exists(self, entity_id: int) -> bool:
        with self.engine.connect() as conn:
            found = conn.execute(
                select(db.entities.c.id).where(db.entities.c.id == entity_id)
            ).first()
        return found is not None

    def resolve_entity(self, legal_name: Optional[str], ticker: Optional[str]) -> Optional[Entity]:
        """Find the entity matching ``ticker`` or, failing that, ``legal_name``.

        Tries an exact ticker match, then a case-insensitive name match, then
        the most similar name scoring at least ``FUZZY_MATCH_THRESHOLD``.
        """

        table = db.entities
        with self.engine.connect() as conn:
            if ticker:
                row = conn.execute(select(table).where(table.c.ticker == ticker)).first()
                if row is not None:
                    return db.row_to_entity(row)
            if not legal_name:
                return None
            row = conn.execute(
                select(table).where(func.lower(table.c.legal_name) == legal_name.strip().lower())
            ).first()
            if row is not None:
                return db.row_to_entity(row)
            candidates = conn.execute(select(table)).all()

        best, best_score = None, 0.0
        for candidate in candidates:
            score = name_similarity(legal_name, candidate.legal_name)
            if score > best_score:
                best, best_score = candidate, score
        if best is not None and best_score >= FUZZY_MATCH_THRESHOLD:
            LOGGER.warning(
                "Probable duplicate: %r (%s) matched existing entity %r (%s) with similarity %.2f",
                legal_name,
                ticker,
                best.legal_name,
                best.ticker,
                best_score,
            )
            return db.row_to_entity(best)
        return None

    def find_or_create_entity(
        self,
        legal_name: str,
        ticker: str,
        listing_venue: str,
        region: str,
        *,
        hq: Optional[str] = None,
        fuzzy: bool = True,
    ) -> tuple[Entity, bool]:
        """Return the matching entity, creating it when none resolves.

        The second element is ``True`` when a new row was inserted. With
        ``fuzzy`` off only the ticker is matched.
        """

        existing = (
            self.resolve_entity(legal_name, ticker) if fuzzy else self.resolve_entity(None, ticker)
        )
        if existing is not None:
            return existing, False

        table = db.entities
        now = utcnow()
        with db.session(self.engine) as conn:
            stmt = db.dialect_insert(conn, table).values(
                legal_name=legal_name,
                ticker=ticker,
                listing_venue=listing_venue,
                region=region,
                hq=hq,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_nothing(index_elements=[table.c.ticker]).returning(table.c.id)
            new_id = conn.execute(stmt).scalar_one_or_none()
            if new_id is None:
                row = conn.execute(select(table).where(table.c.ticker == ticker)).one()
                return db.row_to_entity(row), False
            row = conn.execute(select(table).where(table.c.id == new_id)).one()

        entity = db.row_to_entity(row)
        LOGGER.info("Created entity %s (%s) on %s", entity.legal_name, entity.ticker, listing_venue)
        self.create_audit_log(
            "entity_created",
            entity_id=entity.id,
            details={"ticker": ticker, "legal_name": legal_name, "listing_venue": listing_venue},
        )
        return entity, True

    # ------------------------------------------------------------------
    # Advisory locks
    # ------------------------------------------------------------------
    def acquire_advisory_lock(
        self,
        name: str,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        *,
        holder: Optional[str] = None,
        ttl: float = db.DEFAULT_LOCK_TTL,
    ) -> Optional[str]:
        """Poll for the named lock; return the holder token, or ``None`` on timeout.

        ``None`` means another holder kept the lock. When the last attempt
        failed in the store itself, its ``OperationalError`` is raised instead.
        """

        token = holder or new_lock_holder()
        start = self._clock()
        while True:
            error: Optional[OperationalError] = None
            try:
                if db.try_advisory_lock(self.engine, name, token, ttl=ttl):
                    LOGGER.debug("Acquired advisory lock %s as %s", name, token)
                    return token
            except OperationalError as exc:
                LOGGER.debug("Lock attempt for %s hit %s", name, exc)
                error = exc
            if self._clock() - start >= timeout:
                if error is not None:
                    raise error
                return None
            self._sleep(LOCK_POLL_INTERVAL)

    def release_advisory_lock(self, name: str, holder: Optional[str] = None) -> bool:
        try:
            released = db.release_advisory_lock(self.engine, name, holder)
        except SQLAlchemyError:
            LOGGER.exception("Error releasing advisory lock %s", name)
            raise
        if not released:
            LOGGER.warning("Advisory lock %s was not held by %s", name, holder)
        return released

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------
    def create_audit_log(
        self,
        action: str,
        *,
        entity_id: Optional[int] = None,
        user_id: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Append an audit entry. Failures are logged, never raised."""

        try:
            with db.session(self.engine) as conn:
                conn.execute(
                    insert(db.audit_logs).values(
                        action=action,
                        entity_id=entity_id,
                        user_id=user_id,
                        details=dict(details or {}),
                        timestamp=utcnow(),
                    )
                )
        except SQLAlchemyError:
            LOGGER.exception("Failed to create audit log for %s", action)


__all__ = [
    "ValidationError",
    "VALIDATION_SCHEMAS",
    "FUZZY_MATCH_THRESHOLD",
    "validate_input",
    "sanitize_text",
    "levenshtein",
    "name_similarity",
    "UpsertResult",
    "BatchFailure",
    "BatchResult",
    "DatabaseHelpers",
    "new_lock_holder",
]
