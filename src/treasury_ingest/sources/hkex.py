"""HKEXnews announcement search source."""
from __future__ import annotations

import logging
from datetime import date
from typing import Iterable, Mapping, Optional

import requests
from bs4 import BeautifulSoup

from ..models import DocumentRef, utcnow
from ..rate_limiter import RateLimiter, get_limiter
from ..transport import DEFAULT_TIMEOUT, rate_limited_request
from .base import FilingSource
from .utils import absolute_url, parse_date

LOGGER = logging.getLogger(__name__)

BASE_URL = "https://www1.hkexnews.hk"
SEARCH_URL = f"{BASE_URL}/listedco/listconews/advancedsearch/search_active_main.aspx"
USER_AGENT = "Mozilla/5.0 (compatible; BTCTreasuriesBot/1.0)"


def stock_code_from_ticker(ticker: str) -> str:
    """``0434.HK`` becomes ``0434``."""

    return ticker.upper().removesuffix(".HK")


def parse_search_results(html: str, *, require_stock_code: bool = False) -> list[DocumentRef]:
    """Parse an HKEXnews search result page into document references.

    Every ``.news-item`` block or table row with a title and a document link
    yields one reference. The first date-like cell is the release date and the
    second cell, when present, the filer's stock code.
    """

    soup = BeautifulSoup(html, "html.parser")
    documents: list[DocumentRef] = []
    seen: set[str] = set()
    for element in soup.select(".news-item, tr"):
        title_element = element.select_one(".news-title, a[href*='.pdf']")
        if title_element is None:
            continue
        title = title_element.get_text(" ", strip=True)
        if not title:
            continue

        link_element = element.select_one("a[href*='.pdf']")
        link = (link_element.get("href") if link_element else None) or title_element.get("href")
        if not link:
            continue
        url = absolute_url(link, BASE_URL)
        if url in seen:
            continue

        cells = element.select(".news-date, td")
        date_text = cells[0].get_text(" ", strip=True) if cells else ""
        code_cell = element.select_one(".stock-code")
        if code_cell is None and len(cells) > 1:
            code_cell = cells[1]
        stock_code = code_cell.get_text(strip=True) if code_cell is not None else None
        if require_stock_code and not stock_code:
            continue

        seen.add(url)
        documents.append(
            DocumentRef(
                title=title,
                date=parse_date(date_text) or utcnow(),
                url=url,
                issuer_code=stock_code or None,
            )
        )
    return documents


class HkexSource(FilingSource):
    """Client for the HKEXnews advanced announcement search."""

    name = "HKEX"

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        limiter: Optional[RateLimiter] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        super().__init__(session, limiter or get_limiter("hkex"), timeout=timeout)

    @property
    def request_headers(self) -> Mapping[str, str]:
        return {"User-Agent": USER_AGENT}

    def _search(self, stock_code: str, since: date, search_text: str = "") -> str:
        form = {
            "lang": "en",
            "stock_code": stock_code,
            "date_from": since.isoformat(),
            "date_to": utcnow().date().isoformat(),
            "stock_name": "",
            "news_type": "",
        }
        if search_text:
            form["search_text"] = search_text
        LOGGER.debug("Searching HKEXnews stock_code=%r text=%r from %s", stock_code, search_text, since)
        response = rate_limited_request(
            self.session,
            "POST",
            SEARCH_URL,
            self.limiter,
            timeout=self.timeout,
            headers=self.request_headers,
            data=form,
        )
        return response.text

    def list_issuer_documents(self, issuer_code: str, since: date) -> list[DocumentRef]:
        stock_code = stock_code_from_ticker(issuer_code)
        documents = parse_search_results(self._search(stock_code, since))
        for document in documents:
            document.issuer_code = document.issuer_code or stock_code
        LOGGER.info("HKEXnews listed %d documents for %s since %s", len(documents), stock_code, since)
        return documents

    def search_documents(self, keyword: str, since: date) -> list[DocumentRef]:
        documents = parse_search_results(self._search("", since, keyword), require_stock_code=True)
        LOGGER.info("HKEXnews keyword %r matched %d documents since %s", keyword, len(documents), since)
        return documents


def merge_documents(batches: Iterable[Iterable[DocumentRef]]) -> list[DocumentRef]:
    """Concatenate result lists, keeping the first reference to each URL."""

    merged: dict[str, DocumentRef] = {}
    for batch in batches:
        for document in batch:
            merged.setdefault(document.url, document)
    return list(merged.values())


__all__ = ["HkexSource", "parse_search_results", "stock_code_from_ticker", "merge_documents"]
