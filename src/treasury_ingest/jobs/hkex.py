"""HKEX announcement scan."""
from __future__ import annotations

import logging
import threading
from datetime import date, timedelta
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.engine import Engine

from .. import db
from ..extraction import extract_amount_info, extraction_confidence, is_bitcoin_related
from ..helpers import DatabaseHelpers, UpsertResult
from ..models import DocumentRef, Entity, JobResult, utcnow
from ..sources.hkex import HkexSource, merge_documents
from .base import ScraperJob

LOGGER = logging.getLogger(__name__)

DEFAULT_START = date(2020, 1, 1)


def ticker_candidates(stock_code: str) -> list[str]:
    """Tickers a tracked HKEX issuer with ``stock_code`` may be stored under."""

    code = stock_code.strip().lstrip("0") or "0"
    return list(dict.fromkeys([f"{code}.HK", code, f"{code.zfill(4)}.HK", f"{code.zfill(5)}.HK"]))


class HkexFilingScan(ScraperJob):
    """Scan HKEXnews for every tracked HKEX issuer, then search for new ones."""

    name = "scan-hkex-filings"

    def __init__(
        self,
        engine: Engine,
        source: HkexSource,
        helpers: Optional[DatabaseHelpers] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(engine, helpers, **kwargs)
        self.source = source

    def default_config(self) -> dict[str, Any]:
        return {
            "keywords": ["bitcoin", "btc", "比特币"],
            "confidence_threshold": 70,
            "fetch_documents": True,
            "overlap_days": 7,
            "broad_lookback_days": 7,
            "entity_delay": 2.0,
            "keyword_delay": 1.0,
            "document_concurrency": 4,
        }

    def since_for(self, entity: Entity, overlap_days: int) -> date:
        """Resume a week before the newest stored disclosure, else from 2020."""

        latest = db.latest_disclosure(self.engine, entity.id, self.source.name)
        if latest is None:
            return DEFAULT_START
        return (latest - timedelta(days=overlap_days)).date()

    def execute(self, result: JobResult, config: Mapping[str, Any], cancel: threading.Event) -> None:
        entities = db.list_entities(self.engine, venues=["HKEX"])
        LOGGER.info("Scanning all announcements for %d HKEX entities", len(entities))

        for entity in entities:
            self.check_cancelled(cancel)
            result.scanned += 1
            try:
                since = self.since_for(entity, int(config["overlap_days"]))
                documents = self.source.list_issuer_documents(entity.ticker, since)
            except Exception as exc:
                LOGGER.error("Error scanning %s: %s", entity.ticker, exc)
                result.failures.append({"entity": entity.ticker, "error": str(exc)})
            else:
                self.process_documents(
                    result,
                    entity,
                    documents,
                    self._known_document_handler(entity, config),
                    cancel,
                    concurrency=config["document_concurrency"],
                )
            self.sleep(float(config["entity_delay"]))

        self.check_cancelled(cancel)
        self._broad_search(result, config, cancel)

    def _known_document_handler(
        self, entity: Entity, config: Mapping[str, Any]
    ) -> Callable[[DocumentRef], UpsertResult]:
        def handle(document: DocumentRef) -> UpsertResult:
            text = document.title
            if config["fetch_documents"] and is_bitcoin_related(document.title):
                body = self.source.fetch_text(document)
                text = f"{document.title}\n{body}"
            return self.store_filing(entity, document, text, self.source.name)

        return handle

    def _broad_search(self, result: JobResult, config: Mapping[str, Any], cancel: threading.Event) -> None:
        since = utcnow().date() - timedelta(days=int(config["broad_lookback_days"]))
        LOGGER.info("Starting broad HKEX search for Bitcoin-related filings since %s", since)
        batches = []
        for keyword in config["keywords"]:
            self.check_cancelled(cancel)
            try:
                batches.append(self.source.search_documents(keyword, since))
            except Exception as exc:
                LOGGER.error("Broad HKEX search for %r failed: %s", keyword, exc)
                result.failures.append({"keyword": keyword, "error": str(exc)})
            self.sleep(float(config["keyword_delay"]))

        threshold = float(config["confidence_threshold"])
        for document in merge_documents(batches):
            self.check_cancelled(cancel)
            if not document.issuer_code:
                continue
            try:
                self._register_unknown(result, document, threshold)
            except Exception as exc:
                LOGGER.error("Error processing broad search filing %s: %s", document.url, exc)
                result.failures.append({"url": document.url, "error": str(exc)})

    def _register_unknown(self, result: JobResult, document: DocumentRef, threshold: float) -> None:
        candidates = ticker_candidates(document.issuer_code or "")
        if any(self.helpers.resolve_entity(None, ticker) for ticker in candidates):
            return

        info = extract_amount_info(document.title)
        amount = info.total if info.total is not None else info.delta
        related = is_bitcoin_related(document.title)
        if amount is None or amount <= 0:
            return
        if extraction_confidence(document.title, info, related) < threshold:
            LOGGER.debug("Skipping low confidence broad match %s", document.url)
            return

        code = candidates[0].removesuffix(".HK")
        entity, created = self.helpers.find_or_create_entity(
            f"Unknown Entity {code}", f"{code}.HK", "HKEX", "HK", hq="TBD", fuzzy=False
        )
        if created:
            LOGGER.info("Registered placeholder entity %s from %s", entity.ticker, document.url)
        upsert = self.store_filing(entity, document, document.title, self.source.name)
        self.record(result, entity, document, upsert, "broad_search_new_entity")


__all__ = ["HkexFilingScan", "ticker_candidates"]
