"""Advisory-lock guarded scraper job skeleton."""
from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .. import db
from ..extraction import (
    classify_title,
    determine_filing_type,
    extract_amount_info,
    extraction_confidence,
    is_bitcoin_related,
)
from ..helpers import BatchResult, DatabaseHelpers, UpsertResult, new_lock_holder, sanitize_text
from ..models import (
    DISCLOSURE,
    STATUS_FAILED,
    STATUS_LOCK_DENIED,
    STATUS_SUCCEEDED,
    DocumentRef,
    Entity,
    JobResult,
)

LOGGER = logging.getLogger(__name__)

# Lock state machine.
IDLE = "idle"
ACQUIRING_LOCK = "acquiring-lock"
RUNNING = "running"
LOCK_DENIED = "lock-denied"
RELEASING_LOCK = "releasing-lock"
ERROR = "error"

MAX_STORED_TEXT = 2000


class JobCancelled(RuntimeError):
    """The caller asked the run to stop."""


class ScraperJob(ABC):
    """One ingestion procedure that only ever runs once at a time.

    :meth:`run` takes the job's advisory lock, hands over to
    :meth:`execute`, and always releases the lock afterwards, error or not.
    A held lock yields a ``lock-denied`` result instead of an error.
    """

    #: Job identifier, also the advisory lock name unless ``lock_name`` is set.
    name: str = ""
    lock_name: str = ""

    def __init__(
        self,
        engine: Engine,
        helpers: Optional[DatabaseHelpers] = None,
        *,
        lock_timeout: float = 0.0,
        lock_ttl: float = db.DEFAULT_LOCK_TTL,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.engine = engine
        self.helpers = helpers or DatabaseHelpers(engine)
        self.lock_timeout = lock_timeout
        self.lock_ttl = lock_ttl
        self.sleep = sleep
        self.state = IDLE

    def default_config(self) -> dict[str, Any]:
        return {}

    @abstractmethod
    def execute(self, result: JobResult, config: Mapping[str, Any], cancel: threading.Event) -> None:
        """Do the work, recording counts and itemized failures on ``result``."""

    def run(
        self,
        config: Optional[Mapping[str, Any]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> JobResult:
        settings = {**self.default_config(), **(config or {})}
        lock_name = self.lock_name or self.name

        self.state = ACQUIRING_LOCK
        holder = new_lock_holder()
        try:
            acquired = self.helpers.acquire_advisory_lock(
                lock_name, timeout=self.lock_timeout, holder=holder, ttl=self.lock_ttl
            )
        except SQLAlchemyError as exc:
            LOGGER.exception("Could not acquire lock %s", lock_name)
            # The store may have recorded our row before failing.
            try:
                self.helpers.release_advisory_lock(lock_name, holder)
            except SQLAlchemyError:
                LOGGER.warning("Could not release lock %s after store failure", lock_name)
            self.state = ERROR
            return JobResult(
                job=self.name,
                status=STATUS_FAILED,
                message=f"failed: could not acquire lock {lock_name}: {exc}",
            )

        if acquired is None:
            self.state = LOCK_DENIED
            LOGGER.info("%s is already running, skipping", self.name)
            return JobResult(
                job=self.name,
                status=STATUS_LOCK_DENIED,
                message=f"{self.name} scan already in progress",
            )

        LOGGER.info("Acquired lock %s", lock_name)
        self.state = RUNNING
        result = JobResult(job=self.name, status=STATUS_SUCCEEDED)
        error: Optional[BaseException] = None
        try:
            self.execute(result, settings, cancel or threading.Event())
        except JobCancelled as exc:
            LOGGER.warning("%s cancelled: %s", self.name, exc)
            error = exc
        except Exception as exc:
            LOGGER.exception("%s failed", self.name)
            error = exc
        finally:
            self.state = RELEASING_LOCK
            try:
                self.helpers.release_advisory_lock(lock_name, holder)
                LOGGER.info("Released lock %s", lock_name)
            except SQLAlchemyError as exc:
                error = error or exc

        if error is not None:
            self.state = ERROR
            result.status = STATUS_FAILED
            result.message = f"failed: {error}"
            return result

        self.state = IDLE
        result.message = (
            f"succeeded with {result.found} found / {result.new_records} new"
            + (f", {len(result.failures)} failed" if result.failures else "")
        )
        LOGGER.info("%s %s (scanned %d)", self.name, result.message, result.scanned)
        return result

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------
    @staticmethod
    def check_cancelled(cancel: threading.Event) -> None:
        if cancel.is_set():
            raise JobCancelled("cancellation requested")

    def store_filing(
        self, entity: Entity, document: DocumentRef, text: str, source: str
    ) -> UpsertResult:
        """Extract from ``text`` and upsert the filing keyed by entity and URL.

        Re-discovery updates the row in place and never resets ``verified``.
        """

        info = extract_amount_info(text)
        related = is_bitcoin_related(document.title, text)
        filing_type = determine_filing_type(info.delta, info.total, info.is_disposal)
        if filing_type == DISCLOSURE:
            filing_type = classify_title(document.title)
        data = {
            "entity_id": entity.id,
            "pdf_url": document.url,
            "btc": info.delta if info.delta is not None else info.total,
            "total_holdings": info.total,
            "disclosed_at": document.date,
            "source": source,
            "title": sanitize_text(document.title)[:1000],
            "filing_type": filing_type,
            "document_type": document.form,
            "extracted_text": sanitize_text(text)[:MAX_STORED_TEXT],
            "confidence": extraction_confidence(text, info, related),
            "bitcoin_related": bool(related),
            "verified": False,
        }
        return self.helpers.upsert_with_conflict_resolution(
            db.raw_filings, data, ("entity_id", "pdf_url"), "merge", preserve=("verified",)
        )

    @staticmethod
    def record(result: JobResult, entity: Entity, document: DocumentRef, upsert: UpsertResult, origin: str) -> None:
        row = upsert.row
        result.found += 1
        if upsert.operation == "insert":
            result.new_records += 1
        result.results.append(
            {
                "entity": entity.ticker,
                "filing": document.title,
                "url": document.url,
                "btc": row.get("btc"),
                "type": row.get("filing_type"),
                "date": document.date.isoformat(),
                "bitcoin_related": row.get("bitcoin_related"),
                "operation": upsert.operation,
                "source": origin,
            }
        )

    def process_documents(
        self,
        result: JobResult,
        entity: Entity,
        documents: list[DocumentRef],
        handler: Callable[[DocumentRef], Optional[UpsertResult]],
        cancel: threading.Event,
        *,
        concurrency: int,
        origin: str = "known_entity",
    ) -> None:
        """Run ``handler`` over ``documents`` as a bounded concurrent batch."""

        def guarded(document: DocumentRef) -> tuple[DocumentRef, Optional[UpsertResult]]:
            if cancel.is_set():
                return document, None
            return document, handler(document)

        batch = self.helpers.batch_operation(
            documents, guarded, batch_size=max(1, int(concurrency)), delay=0
        )
        for document, upsert in batch.successful:
            if upsert is not None:
                self.record(result, entity, document, upsert, origin)
        self.record_failures(result, entity, batch)
        self.check_cancelled(cancel)

    @staticmethod
    def record_failures(result: JobResult, entity: Entity, batch: BatchResult) -> None:
        for failure in batch.failed:
            document: DocumentRef = failure.item
            LOGGER.error(
                "Error processing %s for %s: %s", document.url, entity.ticker, failure.error
            )
            result.failures.append(
                {"entity": entity.ticker, "url": document.url, "error": str(failure.error)}
            )


__all__ = [
    "ScraperJob",
    "JobCancelled",
    "IDLE",
    "ACQUIRING_LOCK",
    "RUNNING",
    "LOCK_DENIED",
    "RELEASING_LOCK",
    "ERROR",
]
