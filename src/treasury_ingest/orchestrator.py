"""Declarative job registry that triggers jobs over HTTP and tracks their health."""
from __future__ import annotations

import copy
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

import requests
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from . import db
from .config import Settings
from .models import (
    STATUS_FAILED,
    STATUS_LOCK_DENIED,
    STATUS_SUCCEEDED,
    ScraperJobConfig,
    ScraperResult,
    utcnow,
)

LOGGER = logging.getLogger(__name__)

# Weight of the newest run in the rolling statistics.
SUCCESS_RATE_WEIGHT = 0.1
RUN_TIME_WEIGHT = 0.2

LOW_SUCCESS_RATE = 90.0
SLOW_RUN_TIME = 120.0
HIGH_ERROR_COUNT = 10

UPDATABLE_FIELDS = frozenset({"name", "enabled", "schedule", "endpoint", "config"})

DEFAULT_SCRAPERS: tuple[ScraperJobConfig, ...] = (
    ScraperJobConfig(
        id="hkex-filings",
        name="HKEX Filing Scanner",
        type="hkex",
        enabled=True,
        schedule="0 */4 * * *",
        endpoint="/jobs/scan-hkex-filings",
        status="active",
        success_rate=98.5,
        avg_run_time=45.0,
        config={"keywords": ["bitcoin", "btc", "digital asset", "比特币"], "confidence_threshold": 70},
    ),
    ScraperJobConfig(
        id="sec-filings",
        name="SEC EDGAR Scanner",
        type="sec",
        enabled=True,
        schedule="0 */6 * * *",
        endpoint="/jobs/scan-sec-filings",
        status="active",
        success_rate=94.2,
        avg_run_time=60.0,
        config={"keywords": ["bitcoin", "cryptocurrency", "digital asset"], "lookback_days": 180},
    ),
    ScraperJobConfig(
        id="market-data",
        name="Market Data Updater",
        type="market-data",
        enabled=True,
        schedule="*/30 * * * *",
        endpoint="/jobs/update-market-data",
        status="active",
        success_rate=99.1,
        avg_run_time=15.0,
        config={"chunk_size": 3},
    ),
)


class ScraperNotFound(KeyError):
    """No job is registered under the requested id."""


class ScraperDisabled(RuntimeError):
    """The requested job is switched off."""


class ScraperRunError(RuntimeError):
    """A job invocation failed; ``result`` holds the logged outcome."""

    def __init__(self, result: ScraperResult) -> None:
        super().__init__(result.summary)
        self.result = result


def next_run_time(schedule: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Return the next UTC fire time of a five-field cron ``schedule``."""

    trigger = CronTrigger.from_crontab(schedule, timezone=timezone.utc)
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return trigger.get_next_fire_time(None, current)


def _nudge(value: float, target: float, weight: float) -> float:
    return value + (target - value) * weight


def _error_message(response: requests.Response) -> str:
    """The job's own ``message`` when its error body has one, else the status line."""

    try:
        message = response.json().get("message")
    except (ValueError, AttributeError):
        message = None
    return message or f"HTTP {response.status_code}: {response.reason}"


class ScraperOrchestrator:
    """Hold job configurations, invoke job endpoints and keep rolling stats.

    Statistics live in process memory; every invocation is also appended to
    the ``scraper_run_logs`` table.
    """

    def __init__(
        self,
        engine: Engine,
        base_url: str,
        cron_secret: Optional[str] = None,
        *,
        session: Optional[requests.Session] = None,
        scrapers: Optional[Iterable[ScraperJobConfig]] = None,
        timeout: float = 15 * 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.base_url = base_url.rstrip("/")
        self.cron_secret = cron_secret
        self.session = session or requests.Session()
        self.timeout = timeout
        self._clock = clock
        self._lock = threading.Lock()
        self.scrapers: dict[str, ScraperJobConfig] = {
            config.id: copy.deepcopy(config) for config in (scrapers or DEFAULT_SCRAPERS)
        }

    @classmethod
    def from_settings(
        cls, settings: Settings, engine: Engine, session: Optional[requests.Session] = None
    ) -> "ScraperOrchestrator":
        return cls(engine, settings.job_base_url, settings.cron_secret, session=session)

    def _get(self, scraper_id: str) -> ScraperJobConfig:
        try:
            return self.scrapers[scraper_id]
        except KeyError:
            raise ScraperNotFound(f"Scraper {scraper_id} not found") from None

    def get_scraper_status(self) -> list[ScraperJobConfig]:
        with self._lock:
            return [copy.deepcopy(config) for config in self.scrapers.values()]

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------
    def run_scraper(self, scraper_id: str) -> ScraperResult:
        """Invoke one job endpoint and fold the outcome into its statistics.

        Raises :class:`ScraperNotFound` or :class:`ScraperDisabled` before
        doing anything, and :class:`ScraperRunError` when the run failed. A
        409 from the endpoint is a ``lock-denied`` result and leaves the
        statistics untouched.
        """

        with self._lock:
            config = self._get(scraper_id)
            if not config.enabled:
                raise ScraperDisabled(f"Scraper {scraper_id} is disabled")
            config.status = "active"
            config.last_run = utcnow()
            payload = {"manual": True, "config": copy.deepcopy(config.config)}
            endpoint = config.endpoint

        LOGGER.info("Starting scraper %s", scraper_id)
        headers = {"Content-Type": "application/json"}
        if self.cron_secret:
            headers["Authorization"] = f"Bearer {self.cron_secret}"
        started = self._clock()
        timestamp = utcnow()
        try:
            response = self.session.post(
                f"{self.base_url}{endpoint}", json=payload, headers=headers, timeout=self.timeout
            )
            duration = self._clock() - started
            if response.status_code == 409:
                return self._lock_denied(config, timestamp, duration, response)
            if not response.ok:
                raise RuntimeError(_error_message(response))
            data = response.json()
        except (requests.RequestException, RuntimeError, ValueError) as exc:
            raise ScraperRunError(self._failed(config, timestamp, self._clock() - started, str(exc))) from exc

        if data.get("status", STATUS_SUCCEEDED) != STATUS_SUCCEEDED:
            raise ScraperRunError(
                self._failed(config, timestamp, duration, data.get("message") or "job reported failure")
            )

        failures = data.get("failures") or []
        result = ScraperResult(
            scraper_id=scraper_id,
            timestamp=timestamp,
            status=STATUS_SUCCEEDED,
            duration=duration,
            records_processed=int(data.get("found", 0)),
            new_records=int(data.get("new_records", 0)),
            errors=[str(item.get("error", item)) if isinstance(item, dict) else str(item) for item in failures],
            summary=data.get("message") or f"Processed {data.get('found', 0)} records",
        )
        with self._lock:
            config.status = "idle"
            config.consecutive_errors = 0
            config.avg_run_time = _nudge(config.avg_run_time, duration, RUN_TIME_WEIGHT)
            config.success_rate = _nudge(config.success_rate, 100.0, SUCCESS_RATE_WEIGHT)
        LOGGER.info(
            "Scraper %s completed in %.1fs: %d records, %d new",
            scraper_id,
            duration,
            result.records_processed,
            result.new_records,
        )
        self._log_run(result)
        return result

    def _lock_denied(
        self, config: ScraperJobConfig, timestamp: datetime, duration: float, response: requests.Response
    ) -> ScraperResult:
        try:
            message = response.json().get("message")
        except ValueError:
            message = None
        result = ScraperResult(
            scraper_id=config.id,
            timestamp=timestamp,
            status=STATUS_LOCK_DENIED,
            duration=duration,
            summary=message or "Scan already in progress",
        )
        with self._lock:
            config.status = "idle"
        LOGGER.info("Scraper %s skipped: %s", config.id, result.summary)
        self._log_run(result)
        return result

    def _failed(self, config: ScraperJobConfig, timestamp: datetime, duration: float, message: str) -> ScraperResult:
        result = ScraperResult(
            scraper_id=config.id,
            timestamp=timestamp,
            status=STATUS_FAILED,
            duration=duration,
            errors=[message],
            summary=f"Failed: {message}",
        )
        with self._lock:
            config.status = "error"
            config.error_count += 1
            config.consecutive_errors += 1
            config.success_rate = _nudge(config.success_rate, 0.0, SUCCESS_RATE_WEIGHT)
        LOGGER.error("Scraper %s failed after %.1fs: %s", config.id, duration, message)
        self._log_run(result)
        return result

    def _log_run(self, result: ScraperResult) -> None:
        try:
            db.append_run_log(self.engine, result)
        except SQLAlchemyError:
            LOGGER.exception("Failed to log scraper run for %s", result.scraper_id)

    def run_all_active_scrapers(self) -> list[ScraperResult]:
        """Run every enabled job one after another, collecting each outcome."""

        results: list[ScraperResult] = []
        with self._lock:
            active = [config.id for config in self.scrapers.values() if config.enabled]
        for scraper_id in active:
            try:
                results.append(self.run_scraper(scraper_id))
            except ScraperRunError as exc:
                results.append(exc.result)
            except ScraperDisabled as exc:
                LOGGER.info("%s", exc)
        return results

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def update_scraper_config(self, scraper_id: str, **updates: Any) -> ScraperJobConfig:
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update {', '.join(sorted(unknown))}")
        if "schedule" in updates:
            CronTrigger.from_crontab(updates["schedule"])
        with self._lock:
            config = self._get(scraper_id)
            for key, value in updates.items():
                setattr(config, key, copy.deepcopy(value))
            if "enabled" in updates:
                if not config.enabled:
                    config.status = "disabled"
                elif config.status == "disabled":
                    config.status = "idle"
            LOGGER.info("Updated scraper config %s: %s", scraper_id, sorted(updates))
            return copy.deepcopy(config)

    def get_scraper_logs(self, scraper_id: str, limit: int = 50) -> list[ScraperResult]:
        self._get(scraper_id)
        return db.fetch_run_logs(self.engine, scraper_id, limit)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    def get_system_health(self, now: Optional[datetime] = None) -> dict[str, Any]:
        scrapers = self.get_scraper_status()
        upcoming = []
        for config in scrapers:
            if not config.enabled:
                continue
            try:
                fire_time = next_run_time(config.schedule, now)
            except ValueError as exc:
                LOGGER.warning("Invalid schedule for %s: %s", config.id, exc)
                continue
            if fire_time is not None:
                upcoming.append({"scraper_id": config.id, "next_run": fire_time.isoformat()})
        upcoming.sort(key=lambda item: item["next_run"])
        return {
            "total_scrapers": len(scrapers),
            "active_scrapers": sum(1 for c in scrapers if c.enabled and c.status != "error"),
            "error_count": sum(c.error_count for c in scrapers),
            "avg_success_rate": (
                sum(c.success_rate for c in scrapers) / len(scrapers) if scrapers else 0.0
            ),
            "last_run_times": {
                c.id: c.last_run.isoformat() if c.last_run else "Never" for c in scrapers
            },
            "upcoming_runs": upcoming,
        }

    def get_recommendations(self) -> list[str]:
        return recommendations_for(self.get_scraper_status())


def recommendations_for(scrapers: Iterable[ScraperJobConfig]) -> list[str]:
    """Advisory warnings about the given job configurations."""

    scrapers = list(scrapers)
    recommendations: list[str] = []
    checks = (
        (
            [s for s in scrapers if s.success_rate < LOW_SUCCESS_RATE],
            "have low success rates - consider reviewing configuration",
        ),
        (
            [s for s in scrapers if s.avg_run_time > SLOW_RUN_TIME],
            "are running slowly - consider optimization",
        ),
        (
            [s for s in scrapers if s.error_count > HIGH_ERROR_COUNT],
            "have high error counts - investigate and fix issues",
        ),
        (
            [s for s in scrapers if not s.enabled],
            "are disabled - enable if needed for better coverage",
        ),
    )
    for matched, text in checks:
        if matched:
            names = ", ".join(s.id for s in matched)
            recommendations.append(f"{len(matched)} scraper(s) {text} ({names})")
    return recommendations


__all__ = [
    "DEFAULT_SCRAPERS",
    "ScraperOrchestrator",
    "ScraperNotFound",
    "ScraperDisabled",
    "ScraperRunError",
    "next_run_time",
    "recommendations_for",
]
