"""SEC EDGAR full-text search source."""
from __future__ import annotations

import logging
import threading
from datetime import date
from typing import Any, Mapping, Optional

import requests

from ..models import DocumentRef, utcnow
from ..rate_limiter import RateLimiter, get_limiter
from ..transport import DEFAULT_TIMEOUT, get_json
from .base import FilingSource
from .utils import parse_date

LOGGER = logging.getLogger(__name__)

EDGAR_SEARCH_URL = "https://efts.sec.gov/LATEST/search-index"
EDGAR_ARCHIVES_URL = "https://www.sec.gov/Archives/edgar/data"
COMPANY_TICKERS_URL = "https://www.sec.gov/files/company_tickers.json"

ISSUER_FORMS = ("8-K", "10-Q", "10-K", "20-F", "6-K", "S-1", "S-3", "DEF 14A")
SEARCH_FORMS = ("8-K", "10-Q", "10-K", "20-F", "6-K")

# Issuers whose tickers are not always present in company_tickers.json.
CIK_MAP: Mapping[str, str] = {
    "NCTY": "0001104657",  # The9 Limited
    "CAN": "0001780652",  # Canaan Inc
    "BTDR": "0001917249",  # Bitdeer Technologies
    "NA": "0001937240",  # Nano Labs Ltd.
    "BTCM": "0001763912",  # BIT Mining Ltd.
    "EBON": "0001799290",  # Ebang International
    "BTBT": "0001717081",  # Bit Digital Inc
    "RIOT": "0001167419",  # Riot Platforms Inc
    "MARA": "0001507605",  # Marathon Digital Holdings
    "MSTR": "0001050446",  # MicroStrategy Inc
    "TSLA": "0001318605",  # Tesla Inc
    "SQ": "0001512673",  # Block Inc
    "COIN": "0001679788",  # Coinbase Global Inc
    "HUT": "0001892492",  # Hut 8 Mining Corp
}


def normalize_cik(value: Any) -> Optional[str]:
    """Zero-pad a CIK to EDGAR's ten digit form."""

    if value is None:
        return None
    digits = str(value).strip().lstrip("0")
    if not digits.isdigit():
        return None
    return digits.zfill(10)


def archive_url(cik: str, accession: str, file_name: Optional[str]) -> str:
    folder = accession.replace("-", "")
    return f"{EDGAR_ARCHIVES_URL}/{int(cik)}/{folder}/{file_name or f'{accession}.txt'}"


def parse_search_hits(payload: Any) -> list[DocumentRef]:
    """Turn an EDGAR full-text search response into document references."""

    documents: list[DocumentRef] = []
    seen: set[str] = set()
    hits = (payload or {}).get("hits", {}).get("hits", []) if isinstance(payload, Mapping) else []
    for hit in hits:
        source = hit.get("_source") or {}
        hit_id = hit.get("_id") or ""
        accession = source.get("adsh") or source.get("accession_number") or hit_id.split(":")[0]
        ciks = source.get("ciks") or [source.get("cik")]
        cik = normalize_cik(ciks[0] if ciks else None)
        if not accession or not cik:
            continue
        file_name = source.get("file_name") or (hit_id.split(":", 1)[1] if ":" in hit_id else None)
        url = archive_url(cik, accession, file_name)
        if url in seen:
            continue
        seen.add(url)

        form = source.get("form") or source.get("file_type") or "Unknown"
        names = source.get("display_names") or []
        title = " ".join(names) if names else f"{form} Filing"
        filed = parse_date(source.get("file_date") or source.get("period_ending"), dayfirst=False)
        documents.append(
            DocumentRef(title=title, date=filed or utcnow(), url=url, issuer_code=cik, form=form)
        )
    return documents


class SecSource(FilingSource):
    """Client for EDGAR full-text search and filing archives."""

    name = "SEC"

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        limiter: Optional[RateLimiter] = None,
        *,
        user_agent: str,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        super().__init__(session, limiter or get_limiter("sec"), timeout=timeout)
        self.user_agent = user_agent
        self._ticker_map: Optional[dict[str, str]] = None
        self._ticker_lock = threading.Lock()

    @property
    def request_headers(self) -> Mapping[str, str]:
        # EDGAR rejects requests without a contact in the User-Agent.
        return {"User-Agent": self.user_agent, "Accept": "application/json,text/html,*/*"}

    def _search(self, params: Mapping[str, Any]) -> list[DocumentRef]:
        payload = get_json(
            self.session,
            EDGAR_SEARCH_URL,
            self.limiter,
            timeout=self.timeout,
            headers=self.request_headers,
            params=params,
        )
        return parse_search_hits(payload)

    def list_issuer_documents(self, issuer_code: str, since: date) -> list[DocumentRef]:
        cik = normalize_cik(issuer_code)
        if cik is None:
            raise ValueError(f"Not a CIK: {issuer_code!r}")
        documents = self._search(
            {
                "ciks": cik,
                "forms": ",".join(ISSUER_FORMS),
                "dateRange": "custom",
                "startdt": since.isoformat(),
                "enddt": utcnow().date().isoformat(),
                "from": 0,
                "size": 100,
            }
        )
        LOGGER.info("EDGAR listed %d filings for CIK %s since %s", len(documents), cik, since)
        return documents

    def search_documents(self, keyword: str, since: date) -> list[DocumentRef]:
        documents = self._search(
            {
                "q": keyword,
                "forms": ",".join(SEARCH_FORMS),
                "dateRange": "custom",
                "startdt": since.isoformat(),
                "enddt": utcnow().date().isoformat(),
                "from": 0,
                "size": 50,
            }
        )
        LOGGER.info("EDGAR query %r matched %d filings since %s", keyword, len(documents), since)
        return documents

    def _load_ticker_map(self) -> dict[str, str]:
        with self._ticker_lock:
            if self._ticker_map is None:
                payload = get_json(
                    self.session,
                    COMPANY_TICKERS_URL,
                    self.limiter,
                    timeout=self.timeout,
                    headers=self.request_headers,
                )
                mapping: dict[str, str] = {}
                for entry in (payload or {}).values():
                    ticker = str(entry.get("ticker", "")).upper()
                    cik = normalize_cik(entry.get("cik_str"))
                    if ticker and cik:
                        mapping[ticker] = cik
                LOGGER.info("Loaded %d ticker to CIK mappings from EDGAR", len(mapping))
                self._ticker_map = mapping
            return self._ticker_map

    def resolve_cik(self, ticker: str) -> Optional[str]:
        """Look ``ticker`` up in the static map, then EDGAR's ticker file."""

        symbol = ticker.upper()
        if symbol in CIK_MAP:
            return CIK_MAP[symbol]
        try:
            return self._load_ticker_map().get(symbol)
        except (requests.RequestException, RuntimeError) as exc:
            LOGGER.warning("Could not load EDGAR ticker map: %s", exc)
            return None

    def known_ciks(self) -> set[str]:
        return set(CIK_MAP.values())


__all__ = [
    "SecSource",
    "CIK_MAP",
    "ISSUER_FORMS",
    "SEARCH_FORMS",
    "normalize_cik",
    "archive_url",
    "parse_search_hits",
]
