"""Refresh entity market data from the vendor chain."""
from __future__ import annotations

import logging
import threading
from typing import Any, Mapping, Optional

from sqlalchemy import update
from sqlalchemy.engine import Engine

from .. import db
from ..market_data import MarketDataFetcher
from ..models import JobResult, utcnow
from .base import ScraperJob

LOGGER = logging.getLogger(__name__)


class MarketDataUpdate(ScraperJob):
    """Fetch price, market cap and share count for every tracked ticker."""

    name = "update-market-data"

    def __init__(
        self,
        engine: Engine,
        fetcher: MarketDataFetcher,
        helpers=None,
        **kwargs: Any,
    ) -> None:
        super().__init__(engine, helpers, **kwargs)
        self.fetcher = fetcher

    def default_config(self) -> dict[str, Any]:
        return {"chunk_size": 3, "chunk_delay": 2.0, "tickers": None}

    def execute(self, result: JobResult, config: Mapping[str, Any], cancel: threading.Event) -> None:
        wanted: Optional[set[str]] = set(config["tickers"]) if config.get("tickers") else None
        entities = [
            entity
            for entity in db.list_entities(self.engine)
            if entity.ticker
            and not entity.ticker.startswith("SEC-")
            and (wanted is None or entity.ticker in wanted)
        ]
        self.check_cancelled(cancel)
        tickers = [entity.ticker for entity in entities]
        result.scanned = len(tickers)
        LOGGER.info("Updating market data for %d tickers", len(tickers))

        quotes = self.fetcher.batch_fetch_market_data(
            tickers, chunk_size=int(config["chunk_size"]), delay=float(config["chunk_delay"])
        )
        for entity in entities:
            data = quotes.get(entity.ticker)
            if data is None:
                result.failures.append({"entity": entity.ticker, "error": "market data unavailable"})
                continue
            with db.session(self.engine) as conn:
                conn.execute(
                    update(db.entities)
                    .where(db.entities.c.id == entity.id)
                    .values(
                        price=data.price,
                        market_cap=data.market_cap,
                        shares_outstanding=data.shares_outstanding,
                        market_data_source=data.source,
                        market_data_updated_at=data.last_updated,
                        updated_at=utcnow(),
                    )
                )
            result.found += 1
            result.results.append(
                {
                    "entity": entity.ticker,
                    "price": data.price,
                    "market_cap": data.market_cap,
                    "shares_outstanding": data.shares_outstanding,
                    "source": data.source,
                }
            )


__all__ = ["MarketDataUpdate"]
