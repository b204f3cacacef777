"""Market data from an ordered chain of vendor APIs, behind a TTL cache.

Each vendor has one adapter function that owns its endpoint and field mapping
and returns a :class:`~treasury_ingest.models.MarketData` record. The fetcher
walks the adapters in priority order and keeps the first result carrying a
positive market capitalization.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence

import requests

from .models import MarketData, utcnow
from .rate_limiter import get_limiter
from .transport import DEFAULT_TIMEOUT, get_json

LOGGER = logging.getLogger(__name__)

DEFAULT_TTL = 30 * 60
DEFAULT_CHUNK_SIZE = 3
DEFAULT_CHUNK_DELAY = 2.0


class ProviderError(RuntimeError):
    """A vendor answered but the answer was unusable."""


def _number(value: Any) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return 0.0
    return parsed if parsed == parsed else 0.0  # NaN


def _dig(data: Any, *path: Any) -> Any:
    for key in path:
        if isinstance(data, Mapping):
            data = data.get(key)
        elif isinstance(data, list) and isinstance(key, int) and -len(data) <= key < len(data):
            data = data[key]
        else:
            return None
    return data


def _record(ticker: str, source: str, price: float, market_cap: float, shares: float) -> MarketData:
    return MarketData(
        ticker=ticker,
        price=price,
        market_cap=market_cap,
        shares_outstanding=shares,
        source=source,
        last_updated=utcnow(),
    )


# ----------------------------------------------------------------------
# Provider adapters
# ----------------------------------------------------------------------
def _finnhub(session: requests.Session, ticker: str, api_key: Optional[str], *, timeout: float) -> MarketData:
    limiter = get_limiter("finnhub")
    base = "https://finnhub.io/api/v1"
    params = {"symbol": ticker, "token": api_key}
    quote = get_json(session, f"{base}/quote", limiter, params=params, timeout=timeout)
    profile = get_json(session, f"{base}/stock/profile2", limiter, params=params, timeout=timeout)
    # Finnhub reports capitalization and share count in millions.
    return _record(
        ticker,
        "finnhub",
        price=_number(_dig(quote, "c")),
        market_cap=_number(_dig(profile, "marketCapitalization")) * 1_000_000,
        shares=_number(_dig(profile, "shareOutstanding")) * 1_000_000,
    )


def _polygon(session: requests.Session, ticker: str, api_key: Optional[str], *, timeout: float) -> MarketData:
    limiter = get_limiter("polygon")
    params = {"apiKey": api_key}
    snapshot = get_json(
        session,
        f"https://api.polygon.io/v2/snapshot/locale/us/markets/stocks/tickers/{ticker}",
        limiter,
        params=params,
        timeout=timeout,
    )
    details = get_json(
        session,
        f"https://api.polygon.io/v3/reference/tickers/{ticker}",
        limiter,
        params=params,
        timeout=timeout,
    )
    price = _number(_dig(snapshot, "ticker", "day", "c")) or _number(
        _dig(snapshot, "ticker", "prevDay", "c")
    )
    shares = _number(_dig(details, "results", "share_class_shares_outstanding"))
    market_cap = _number(_dig(details, "results", "market_cap")) or price * shares
    return _record(ticker, "polygon", price=price, market_cap=market_cap, shares=shares)


def twelve_data_symbol(ticker: str) -> str:
    """Rewrite exchange suffixes into Twelve Data's ``SYMBOL:EXCHANGE`` form."""

    if ticker.endswith(".HK"):
        return ticker[: -len(".HK")] + ":HKEX"
    if ticker.endswith(".SZ"):
        return ticker[: -len(".SZ")] + ":SZSE"
    return ticker


def _twelve_data(session: requests.Session, ticker: str, api_key: Optional[str], *, timeout: float) -> MarketData:
    limiter = get_limiter("twelve_data")
    params = {"symbol": twelve_data_symbol(ticker), "apikey": api_key}
    quote = get_json(session, "https://api.twelvedata.com/quote", limiter, params=params, timeout=timeout)
    if _dig(quote, "status") == "error":
        raise ProviderError(f"TwelveData error for {ticker}: {_dig(quote, 'message') or 'unknown'}")
    price = _number(_dig(quote, "close"))

    market_cap = shares = 0.0
    try:
        stats = get_json(
            session, "https://api.twelvedata.com/statistics", limiter, params=params, timeout=timeout
        )
    except (requests.RequestException, RuntimeError) as exc:
        LOGGER.warning("Could not fetch TwelveData statistics for %s, using price only: %s", ticker, exc)
    else:
        statistics = _dig(stats, "statistics")
        if statistics and _dig(stats, "status") in (None, "ok"):
            market_cap = _number(
                _dig(statistics, "market_capitalization")
                or _dig(statistics, "valuations_metrics", "market_capitalization")
            )
            shares = _number(
                _dig(statistics, "shares_outstanding")
                or _dig(statistics, "stock_statistics", "shares_outstanding")
            )
    return _record(
        ticker, "twelve_data", price=price, market_cap=market_cap or price * shares, shares=shares
    )


def _alpha_vantage(session: requests.Session, ticker: str, api_key: Optional[str], *, timeout: float) -> MarketData:
    limiter = get_limiter("alpha_vantage")
    url = "https://www.alphavantage.co/query"
    overview = get_json(
        session, url, limiter, params={"function": "OVERVIEW", "symbol": ticker, "apikey": api_key}, timeout=timeout
    )
    quote = get_json(
        session, url, limiter, params={"function": "GLOBAL_QUOTE", "symbol": ticker, "apikey": api_key}, timeout=timeout
    )
    return _record(
        ticker,
        "alpha_vantage",
        price=_number(_dig(quote, "Global Quote", "05. price")),
        market_cap=_number(_dig(overview, "MarketCapitalization")),
        shares=_number(_dig(overview, "SharesOutstanding")),
    )


def _yahoo(session: requests.Session, ticker: str, api_key: Optional[str], *, timeout: float) -> MarketData:
    limiter = get_limiter("yahoo")
    try:
        summary = get_json(
            session,
            f"https://query2.finance.yahoo.com/v10/finance/quoteSummary/{ticker}",
            limiter,
            params={"modules": "price,summaryDetail"},
            timeout=timeout,
        )
    except (requests.RequestException, RuntimeError) as exc:
        LOGGER.warning("Yahoo quoteSummary failed for %s: %s", ticker, exc)
    else:
        result = _dig(summary, "quoteSummary", "result", 0)
        if result:
            return _record(
                ticker,
                "yahoo",
                price=_number(_dig(result, "price", "regularMarketPrice", "raw")),
                market_cap=_number(_dig(result, "summaryDetail", "marketCap", "raw")),
                shares=_number(_dig(result, "summaryDetail", "sharesOutstanding", "raw")),
            )

    chart = get_json(
        session, f"https://query1.finance.yahoo.com/v8/finance/chart/{ticker}", limiter, timeout=timeout
    )
    meta = _dig(chart, "chart", "result", 0, "meta")
    if not meta:
        raise ProviderError(f"All Yahoo endpoints failed for {ticker}")
    return _record(
        ticker,
        "yahoo",
        price=_number(meta.get("regularMarketPrice")),
        market_cap=_number(meta.get("marketCap")),
        shares=_number(meta.get("sharesOutstanding")),
    )


ProviderFetch = Callable[..., Optional[MarketData]]


@dataclass(frozen=True)
class Provider:
    name: str
    fetch: ProviderFetch
    requires_key: bool = True


DEFAULT_PROVIDERS: tuple[Provider, ...] = (
    Provider("finnhub", _finnhub),
    Provider("polygon", _polygon),
    Provider("twelve_data", _twelve_data),
    Provider("alpha_vantage", _alpha_vantage),
    Provider("yahoo", _yahoo, requires_key=False),
)


class MarketDataCache:
    """Ticker keyed cache whose entries expire ``ttl`` seconds after being stored.

    Expired entries are dropped when read; there is no background sweep.
    """

    def __init__(self, ttl: float = DEFAULT_TTL, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, tuple[float, MarketData]] = {}
        self._lock = threading.Lock()

    def get(self, ticker: str) -> Optional[MarketData]:
        with self._lock:
            entry = self._entries.get(ticker)
            if entry is None:
                return None
            stored_at, data = entry
            if self._clock() - stored_at >= self.ttl:
                del self._entries[ticker]
                return None
            return data

    def set(self, ticker: str, data: MarketData) -> None:
        with self._lock:
            self._entries[ticker] = (self._clock(), data)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class MarketDataFetcher:
    """Resolve quote and profile data for tickers across vendor APIs."""

    def __init__(
        self,
        api_keys: Mapping[str, str],
        session: Optional[requests.Session] = None,
        cache: Optional[MarketDataCache] = None,
        providers: Optional[Sequence[Provider]] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_keys = dict(api_keys)
        self.session = session or requests.Session()
        self.cache = cache if cache is not None else MarketDataCache()
        self.providers = tuple(providers if providers is not None else DEFAULT_PROVIDERS)
        self.timeout = timeout
        self._sleep = sleep

    def fetch_market_data(self, ticker: str) -> Optional[MarketData]:
        """Return market data for ``ticker`` or ``None`` when no provider delivers.

        ``None`` means temporarily unavailable; callers keep whatever values
        they already have.
        """

        cached = self.cache.get(ticker)
        if cached is not None:
            LOGGER.debug("Market data cache hit for %s", ticker)
            return cached

        for provider in self.providers:
            api_key = self.api_keys.get(provider.name)
            if provider.requires_key and not api_key:
                continue
            try:
                data = provider.fetch(self.session, ticker, api_key, timeout=self.timeout)
            except Exception as exc:
                LOGGER.warning("%s failed for %s: %s", provider.name, ticker, exc)
                continue
            if data is not None and data.market_cap > 0:
                LOGGER.info(
                    "Fetched market data for %s from %s: market cap %.0f",
                    ticker,
                    provider.name,
                    data.market_cap,
                )
                self.cache.set(ticker, data)
                return data
            LOGGER.debug("%s returned no market cap for %s", provider.name, ticker)

        LOGGER.warning("All market data providers failed for %s", ticker)
        return None

    def batch_fetch_market_data(
        self,
        tickers: Iterable[str],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        delay: float = DEFAULT_CHUNK_DELAY,
    ) -> Dict[str, Optional[MarketData]]:
        """Fetch ``tickers`` in concurrent chunks of ``chunk_size`` with ``delay`` between chunks."""

        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        unique = list(dict.fromkeys(tickers))
        results: Dict[str, Optional[MarketData]] = {}
        with ThreadPoolExecutor(max_workers=chunk_size, thread_name_prefix="market-data") as pool:
            for start in range(0, len(unique), chunk_size):
                chunk = unique[start : start + chunk_size]
                for ticker, data in zip(chunk, pool.map(self.fetch_market_data, chunk)):
                    results[ticker] = data
                if start + chunk_size < len(unique) and delay > 0:
                    self._sleep(delay)
        return results

    def clear_cache(self) -> None:
        self.cache.clear()


__all__ = [
    "ProviderError",
    "Provider",
    "DEFAULT_PROVIDERS",
    "MarketDataCache",
    "MarketDataFetcher",
    "twelve_data_symbol",
]
