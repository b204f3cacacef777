"""Tests for ``treasury_ingest.market_data``."""
from __future__ import annotations

import threading

import pytest

from treasury_ingest.market_data import (
    DEFAULT_PROVIDERS,
    MarketDataCache,
    MarketDataFetcher,
    Provider,
    ProviderError,
    twelve_data_symbol,
)
from treasury_ingest.models import MarketData, utcnow


def quote(ticker: str, source: str, market_cap: float = 1_000_000.0) -> MarketData:
    return MarketData(
        ticker=ticker,
        price=10.0,
        market_cap=market_cap,
        shares_outstanding=market_cap / 10.0,
        source=source,
        last_updated=utcnow(),
    )


class ScriptedProvider:
    """Provider fetch function returning canned answers and counting calls."""

    def __init__(self, name: str, answer):
        self.name = name
        self.answer = answer
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, session, ticker, api_key, *, timeout):
        with self._lock:
            self.calls.append(ticker)
        if isinstance(self.answer, Exception):
            raise self.answer
        if callable(self.answer):
            return self.answer(ticker)
        return self.answer


def fetcher_for(*providers: ScriptedProvider, keys=None, cache=None, sleep=None) -> MarketDataFetcher:
    return MarketDataFetcher(
        keys if keys is not None else {p.name: "key" for p in providers},
        session=object(),
        cache=cache,
        providers=[Provider(p.name, p) for p in providers],
        sleep=sleep or (lambda _s: None),
    )


class TestFallbackChain:
    def test_first_usable_provider_wins(self):
        first = ScriptedProvider("a", ProviderError("quota exhausted"))
        second = ScriptedProvider("b", lambda t: quote(t, "b"))
        third = ScriptedProvider("c", lambda t: quote(t, "c"))
        data = fetcher_for(first, second, third).fetch_market_data("MSTR")
        assert data.source == "b"
        assert third.calls == []

    def test_zero_market_cap_falls_through(self):
        first = ScriptedProvider("a", lambda t: quote(t, "a", market_cap=0.0))
        second = ScriptedProvider("b", lambda t: quote(t, "b"))
        assert fetcher_for(first, second).fetch_market_data("MSTR").source == "b"

    def test_provider_without_key_is_skipped(self):
        keyed = ScriptedProvider("a", lambda t: quote(t, "a"))
        keyless = ScriptedProvider("b", lambda t: quote(t, "b"))
        fetcher = fetcher_for(keyed, keyless, keys={"b": "key"})
        assert fetcher.fetch_market_data("MSTR").source == "b"
        assert keyed.calls == []

    def test_exhaustion_returns_none(self):
        failing = ScriptedProvider("a", RuntimeError("down"))
        assert fetcher_for(failing).fetch_market_data("MSTR") is None

    def test_yahoo_needs_no_key(self):
        assert [p.name for p in DEFAULT_PROVIDERS] == [
            "finnhub",
            "polygon",
            "twelve_data",
            "alpha_vantage",
            "yahoo",
        ]
        assert [p.requires_key for p in DEFAULT_PROVIDERS][-1] is False


class TestCache:
    def test_hit_within_ttl(self):
        provider = ScriptedProvider("a", lambda t: quote(t, "a"))
        fetcher = fetcher_for(provider)
        fetcher.fetch_market_data("MSTR")
        fetcher.fetch_market_data("MSTR")
        assert provider.calls == ["MSTR"]

    def test_entries_expire(self):
        now = {"t": 0.0}
        cache = MarketDataCache(ttl=60, clock=lambda: now["t"])
        cache.set("MSTR", quote("MSTR", "a"))
        now["t"] = 59.0
        assert cache.get("MSTR") is not None
        now["t"] = 60.0
        assert cache.get("MSTR") is None
        assert len(cache) == 0

    def test_clear_cache(self):
        provider = ScriptedProvider("a", lambda t: quote(t, "a"))
        fetcher = fetcher_for(provider)
        fetcher.fetch_market_data("MSTR")
        fetcher.clear_cache()
        fetcher.fetch_market_data("MSTR")
        assert provider.calls == ["MSTR", "MSTR"]


class TestBatch:
    def test_chunks_with_delay_and_dedupe(self):
        sleeps: list[float] = []
        provider = ScriptedProvider("a", lambda t: None if t == "BAD" else quote(t, "a"))
        fetcher = fetcher_for(provider, sleep=sleeps.append)
        results = fetcher.batch_fetch_market_data(
            ["A", "B", "A", "C", "BAD", "D"], chunk_size=2, delay=2.0
        )
        assert list(results) == ["A", "B", "C", "BAD", "D"]
        assert results["BAD"] is None
        assert results["D"].source == "a"
        assert sleeps == [2.0, 2.0]

    def test_invalid_chunk_size(self):
        with pytest.raises(ValueError):
            fetcher_for(ScriptedProvider("a", None)).batch_fetch_market_data(["A"], chunk_size=0)


class TestAdapters:
    def test_twelve_data_symbol(self):
        assert twelve_data_symbol("1611.HK") == "1611:HKEX"
        assert twelve_data_symbol("300059.SZ") == "300059:SZSE"
        assert twelve_data_symbol("MSTR") == "MSTR"

    def test_finnhub_mapping(self, fake_session, response):
        fake_session.add("GET", "finnhub.io/api/v1/quote", response(200, {"c": 1500.5}))
        fake_session.add(
            "GET",
            "finnhub.io/api/v1/stock/profile2",
            response(200, {"marketCapitalization": 25000, "shareOutstanding": 16.5}),
        )
        fetcher = MarketDataFetcher({"finnhub": "token"}, session=fake_session)
        data = fetcher.fetch_market_data("MSTR")
        assert data.source == "finnhub"
        assert data.price == 1500.5
        assert data.market_cap == 25_000_000_000
        assert data.shares_outstanding == 16_500_000
        assert fake_session.calls[0]["params"]["token"] == "token"

    def test_twelve_data_without_statistics_uses_price(self, fake_session, response):
        fake_session.add("GET", "api.twelvedata.com/quote", response(200, {"close": "2.5"}))
        fake_session.add(
            "GET",
            "api.twelvedata.com/statistics",
            response(200, {"statistics": {"stock_statistics": {"shares_outstanding": 1000}}}),
        )
        fetcher = MarketDataFetcher(
            {"twelve_data": "key"},
            session=fake_session,
            providers=[p for p in DEFAULT_PROVIDERS if p.name == "twelve_data"],
        )
        data = fetcher.fetch_market_data("1611.HK")
        assert data.market_cap == 2500.0
        assert fake_session.calls[0]["params"]["symbol"] == "1611:HKEX"

    def test_yahoo_falls_back_to_chart(self, fake_session, response):
        fake_session.add("GET", "v10/finance/quoteSummary", response(200, {"quoteSummary": {"result": []}}))
        fake_session.add(
            "GET",
            "v8/finance/chart",
            response(
                200,
                {"chart": {"result": [{"meta": {"regularMarketPrice": 3.0, "marketCap": 300.0, "sharesOutstanding": 100}}]}},
            ),
        )
        fetcher = MarketDataFetcher({}, session=fake_session)
        data = fetcher.fetch_market_data("1611.HK")
        assert data.source == "yahoo"
        assert data.market_cap == 300.0
