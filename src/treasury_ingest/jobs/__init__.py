"""Job factory for the lock-guarded ingestion jobs."""
from __future__ import annotations

import logging
from typing import Any, Optional

import requests
from sqlalchemy.engine import Engine

from ..config import Settings
from ..helpers import DatabaseHelpers
from ..market_data import MarketDataCache, MarketDataFetcher
from ..sources import create_source
from .base import JobCancelled, ScraperJob
from .hkex import HkexFilingScan
from .market_data import MarketDataUpdate
from .sec import SecFilingScan

LOGGER = logging.getLogger(__name__)

JOB_NAMES = (HkexFilingScan.name, SecFilingScan.name, MarketDataUpdate.name)


def create_job(
    name: str,
    settings: Settings,
    engine: Engine,
    *,
    session: Optional[requests.Session] = None,
    fetcher: Optional[MarketDataFetcher] = None,
    **kwargs: Any,
) -> ScraperJob:
    """Instantiate the job registered under ``name``."""

    helpers = DatabaseHelpers(engine)
    if name == HkexFilingScan.name:
        return HkexFilingScan(engine, create_source("hkex", settings, session), helpers, **kwargs)
    if name == SecFilingScan.name:
        return SecFilingScan(engine, create_source("sec", settings, session), helpers, **kwargs)
    if name == MarketDataUpdate.name:
        if fetcher is None:
            fetcher = MarketDataFetcher(
                settings.api_keys,
                session=session,
                cache=MarketDataCache(settings.market_data_ttl),
                timeout=settings.request_timeout,
            )
        return MarketDataUpdate(engine, fetcher, helpers, **kwargs)
    raise ValueError(f"Unknown job: {name}")


__all__ = [
    "create_job",
    "JOB_NAMES",
    "ScraperJob",
    "JobCancelled",
    "HkexFilingScan",
    "SecFilingScan",
    "MarketDataUpdate",
]
