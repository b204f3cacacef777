"""SEC EDGAR filing scan."""
from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.engine import Engine

from .. import db
from ..extraction import extract_amount_info
from ..helpers import DatabaseHelpers, UpsertResult
from ..models import DocumentRef, Entity, JobResult, utcnow
from ..sources.sec import SecSource
from .base import ScraperJob

LOGGER = logging.getLogger(__name__)


def placeholder_ticker(cik: str) -> str:
    return f"SEC-{cik}"


def keyword_query(keywords: list[str]) -> str:
    """Join keywords into an EDGAR full-text ``OR`` query, quoting phrases."""

    return " OR ".join(f'"{word}"' if " " in word else word for word in keywords)


class SecFilingScan(ScraperJob):
    """Scan EDGAR for every tracked US-listed issuer, then search for new ones."""

    name = "scan-sec-filings"

    def __init__(
        self,
        engine: Engine,
        source: SecSource,
        helpers: Optional[DatabaseHelpers] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(engine, helpers, **kwargs)
        self.source = source

    def default_config(self) -> dict[str, Any]:
        return {
            "venues": ["NASDAQ", "NYSE"],
            "keywords": ["bitcoin", "btc", "digital asset", "cryptocurrency"],
            "query": None,
            "lookback_days": 180,
            "broad_lookback_days": 30,
            "document_delay": 1.0,
            "entity_delay": 2.0,
            "broad_delay": 1.5,
            "document_concurrency": 2,
        }

    def execute(self, result: JobResult, config: Mapping[str, Any], cancel: threading.Event) -> None:
        entities = db.list_entities(self.engine, venues=config["venues"])
        since = utcnow().date() - timedelta(days=int(config["lookback_days"]))
        known_ciks = self.source.known_ciks()

        for entity in entities:
            self.check_cancelled(cancel)
            cik = self.source.resolve_cik(entity.ticker)
            if cik is None:
                LOGGER.info("No CIK found for %s, skipping", entity.ticker)
                continue
            known_ciks.add(cik)
            result.scanned += 1
            LOGGER.info("Scanning all filings for %s (CIK: %s)", entity.ticker, cik)
            try:
                documents = self.source.list_issuer_documents(cik, since)
            except Exception as exc:
                LOGGER.error("Error scanning %s: %s", entity.ticker, exc)
                result.failures.append({"entity": entity.ticker, "error": str(exc)})
            else:
                self.process_documents(
                    result,
                    entity,
                    documents,
                    self._document_handler(entity, float(config["document_delay"])),
                    cancel,
                    concurrency=config["document_concurrency"],
                )
            self.sleep(float(config["entity_delay"]))

        self.check_cancelled(cancel)
        self._broad_search(result, config, cancel, known_ciks)

    def _document_handler(self, entity: Entity, delay: float) -> Callable[[DocumentRef], UpsertResult]:
        def handle(document: DocumentRef) -> UpsertResult:
            try:
                body = self.source.fetch_text(document)
                return self.store_filing(entity, document, f"{document.title}\n{body}", self.source.name)
            finally:
                self.sleep(delay)

        return handle

    def _broad_search(
        self,
        result: JobResult,
        config: Mapping[str, Any],
        cancel: threading.Event,
        known_ciks: set[str],
    ) -> None:
        since = utcnow().date() - timedelta(days=int(config["broad_lookback_days"]))
        query = config.get("query") or keyword_query(list(config["keywords"]))
        LOGGER.info("Starting broad EDGAR search for %r since %s", query, since)
        try:
            documents = self.source.search_documents(query, since)
        except Exception as exc:
            LOGGER.error("Broad EDGAR search failed: %s", exc)
            result.failures.append({"query": query, "error": str(exc)})
            return

        for document in documents:
            self.check_cancelled(cancel)
            cik = document.issuer_code
            if not cik or cik in known_ciks:
                continue
            try:
                self._register_unknown(result, document, cik)
            except Exception as exc:
                LOGGER.error("Error processing broad search filing %s: %s", document.url, exc)
                result.failures.append({"url": document.url, "error": str(exc)})
            finally:
                self.sleep(float(config["broad_delay"]))

    def _register_unknown(self, result: JobResult, document: DocumentRef, cik: str) -> None:
        body = self.source.fetch_text(document)
        text = f"{document.title}\n{body}"
        info = extract_amount_info(text)
        amount = info.total if info.total is not None else info.delta
        if amount is None or amount <= 0:
            return

        entity, created = self.helpers.find_or_create_entity(
            f"Unknown Company (CIK: {cik})",
            placeholder_ticker(cik),
            "NASDAQ",
            "US",
            hq="TBD",
            fuzzy=False,
        )
        if created:
            LOGGER.info("Registered placeholder entity %s from %s", entity.ticker, document.url)
        upsert = self.store_filing(entity, document, text, self.source.name)
        self.record(result, entity, document, upsert, "broad_search_new_entity")


__all__ = ["SecFilingScan", "keyword_query", "placeholder_ticker"]
