"""FastAPI application exposing job triggers, manual entry and job controls."""
from __future__ import annotations

import hmac
import logging
from typing import Any, Optional, Union

import requests
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .db import create_db_engine, ensure_schema
from .helpers import DatabaseHelpers, ValidationError
from .jobs import JOB_NAMES, create_job
from .logging_utils import configure_logging
from .market_data import MarketDataCache, MarketDataFetcher
from .models import STATUS_LOCK_DENIED, STATUS_SUCCEEDED
from .orchestrator import (
    ScraperDisabled,
    ScraperNotFound,
    ScraperOrchestrator,
    ScraperRunError,
)
from .treasury import FilingNotFound, add_or_update_entity, verify_filing

LOGGER = logging.getLogger(__name__)


class ManualEntry(BaseModel):
    ticker: str
    legal_name: str
    btc: Union[float, str]
    source_url: str
    last_disclosed: str
    cost_basis_usd: Optional[float] = None
    user_id: Optional[str] = None


class ScraperUpdate(BaseModel):
    name: Optional[str] = None
    enabled: Optional[bool] = None
    schedule: Optional[str] = None
    endpoint: Optional[str] = None
    config: Optional[dict[str, Any]] = None


def _status_code_for(job_status: str) -> int:
    if job_status == STATUS_SUCCEEDED:
        return status.HTTP_200_OK
    if job_status == STATUS_LOCK_DENIED:
        return status.HTTP_409_CONFLICT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(settings: Optional[Settings] = None, engine: Optional[Engine] = None) -> FastAPI:
    """Build the application around one engine and one shared market-data cache.

    Serve with ``uvicorn treasury_ingest.app:create_app --factory``.
    """

    configure_logging()
    settings = settings or Settings.load()
    engine = engine or create_db_engine(settings.database_url)
    ensure_schema(engine)

    session = requests.Session()
    fetcher = MarketDataFetcher(
        settings.api_keys,
        session=session,
        cache=MarketDataCache(settings.market_data_ttl),
        timeout=settings.request_timeout,
    )
    helpers = DatabaseHelpers(engine)
    orchestrator = ScraperOrchestrator.from_settings(settings, engine)

    def require_secret(request: Request) -> None:
        if not settings.cron_secret:
            return
        expected = f"Bearer {settings.cron_secret}"
        supplied = request.headers.get("Authorization", "")
        if not hmac.compare_digest(supplied.encode(), expected.encode()):
            LOGGER.warning("Rejected unauthorized request to %s", request.url.path)
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    app = FastAPI(title="Bitcoin Treasury Ingestion")
    app.state.settings = settings
    app.state.engine = engine
    app.state.orchestrator = orchestrator
    app.state.fetcher = fetcher

    async def _job_config(request: Request) -> dict[str, Any]:
        body = await request.body()
        if not body:
            return {}
        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
        config = payload.get("config") if isinstance(payload, dict) else None
        return config if isinstance(config, dict) else {}

    def _register_job(job_name: str) -> None:
        def run_job(config: dict[str, Any] = Depends(_job_config)) -> JSONResponse:
            LOGGER.info("Job %s triggered over HTTP", job_name)
            job = create_job(job_name, settings, engine, session=session, fetcher=fetcher)
            result = job.run(config)
            return JSONResponse(content=jsonable_encoder(result.to_dict()), status_code=_status_code_for(result.status))

        app.add_api_route(
            f"/jobs/{job_name}",
            run_job,
            methods=["POST"],
            dependencies=[Depends(require_secret)],
            name=job_name,
        )

    for job_name in JOB_NAMES:
        _register_job(job_name)

    @app.post("/admin/entities", status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_secret)])
    def create_manual_entry(entry: ManualEntry) -> dict[str, Any]:
        try:
            outcome = add_or_update_entity(
                helpers,
                entry.ticker,
                entry.legal_name,
                entry.btc,
                entry.source_url,
                entry.last_disclosed,
                entry.cost_basis_usd,
                user_id=entry.user_id,
            )
        except ValidationError as exc:
            LOGGER.warning("Rejected manual entry: %s", exc)
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        return {
            "entity_id": outcome.entity_id,
            "snapshot_id": outcome.snapshot_id,
            "created_entity": outcome.created_entity,
            "is_current": outcome.is_current,
        }

    @app.post("/admin/filings/{filing_id}/verify", dependencies=[Depends(require_secret)])
    def verify(filing_id: int, user_id: Optional[str] = None) -> dict[str, Any]:
        try:
            return verify_filing(helpers, filing_id, user_id)
        except FilingNotFound as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))

    @app.get("/admin/scrapers", dependencies=[Depends(require_secret)])
    def list_scrapers() -> list[dict[str, Any]]:
        return [config.to_dict() for config in orchestrator.get_scraper_status()]

    @app.post("/admin/scrapers/run-all", dependencies=[Depends(require_secret)])
    def run_all() -> list[dict[str, Any]]:
        return [result.to_dict() for result in orchestrator.run_all_active_scrapers()]

    @app.patch("/admin/scrapers/{scraper_id}", dependencies=[Depends(require_secret)])
    def update_scraper(scraper_id: str, update: ScraperUpdate) -> dict[str, Any]:
        try:
            config = orchestrator.update_scraper_config(scraper_id, **update.model_dump(exclude_unset=True))
        except ScraperNotFound:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Scraper {scraper_id} not found")
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        return config.to_dict()

    @app.post("/admin/scrapers/{scraper_id}/run", dependencies=[Depends(require_secret)])
    def run_scraper(scraper_id: str) -> JSONResponse:
        try:
            result = orchestrator.run_scraper(scraper_id)
        except ScraperNotFound:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Scraper {scraper_id} not found")
        except ScraperDisabled as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
        except ScraperRunError as exc:
            return JSONResponse(content=exc.result.to_dict(), status_code=status.HTTP_502_BAD_GATEWAY)
        return JSONResponse(content=result.to_dict())

    @app.get("/admin/scrapers/{scraper_id}/logs", dependencies=[Depends(require_secret)])
    def scraper_logs(scraper_id: str, limit: int = 50) -> list[dict[str, Any]]:
        try:
            logs = orchestrator.get_scraper_logs(scraper_id, min(max(limit, 1), 500))
        except ScraperNotFound:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Scraper {scraper_id} not found")
        return [entry.to_dict() for entry in logs]

    @app.get("/admin/recommendations", dependencies=[Depends(require_secret)])
    def recommendations() -> dict[str, Any]:
        return {"recommendations": orchestrator.get_recommendations()}

    @app.get("/health")
    def health() -> JSONResponse:
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            LOGGER.exception("Health check could not reach the database")
            return JSONResponse(
                content={"status": "error", "database": "unreachable"},
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            )
        return JSONResponse(content={"status": "ok", "database": "ok", **orchestrator.get_system_health()})

    LOGGER.info("Application configured with jobs: %s", ", ".join(JOB_NAMES))
    return app


__all__ = ["create_app", "ManualEntry", "ScraperUpdate"]
