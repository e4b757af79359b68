from __future__ import annotations

import logging
import ssl
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import certifi
import httpx
import truststore

from coinledger.errors import OracleUnavailable, StalePrice


logger = logging.getLogger(__name__)

BINANCE_BASE = "https://api.binance.com"


@dataclass
class PriceQuote:
    symbol: str
    last_price: Decimal
    high_24h: Decimal = Decimal("0")
    low_24h: Decimal = Decimal("0")
    volume_24h: Decimal = Decimal("0")
    change_percent_24h: Decimal = Decimal("0")
    ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class IPriceOracle(ABC):
    """Source of current market prices.

    Implementations raise OracleUnavailable when no usable quote exists.
    A quote with a zero price is still returned; callers decide whether
    the price is valid for execution.
    """

    @abstractmethod
    def get_price(self, symbol: str) -> PriceQuote:
        """Get the current quote for a market symbol (e.g., "BTCUSDT")."""
        ...


def _normalize_symbol(s: str) -> str:
    s = s.replace("/", "").replace("-", "").replace(" ", "")
    return s.upper()


def _dec(value: Any) -> Decimal:
    try:
        return Decimal(str(value)) if value not in (None, "") else Decimal("0")
    except InvalidOperation:
        return Decimal("0")


def _make_ssl_context() -> ssl.SSLContext:
    try:
        return truststore.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    except (OSError, RuntimeError) as e:
        logger.warning(f"System trust store unavailable ({e}); using certifi bundle")
        return ssl.create_default_context(cafile=certifi.where())


class BinanceRestOracle(IPriceOracle):
    def __init__(self, base_url: str = BINANCE_BASE, timeout_s: float = 5.0) -> None:
        self._client = httpx.Client(
            base_url=base_url, timeout=timeout_s, verify=_make_ssl_context()
        )

    def get_price(self, symbol: str) -> PriceQuote:
        sym = _normalize_symbol(symbol)
        try:
            r = self._client.get("/api/v3/ticker/24hr", params={"symbol": sym})
            r.raise_for_status()
            item = r.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (418, 429):
                logger.warning(f"Rate limited by Binance while fetching {sym} ({status})")
            raise OracleUnavailable(f"Ticker request for {sym} failed with HTTP {status}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise OracleUnavailable(f"Ticker request for {sym} failed: {e}") from e

        if not isinstance(item, dict):
            raise OracleUnavailable(f"Unexpected ticker payload for {sym}")
        last = _dec(item.get("lastPrice") or item.get("prevClosePrice"))
        return PriceQuote(
            symbol=sym,
            last_price=last,
            high_24h=_dec(item.get("highPrice")),
            low_24h=_dec(item.get("lowPrice")),
            volume_24h=_dec(item.get("volume")),
            change_percent_24h=_dec(item.get("priceChangePercent")),
        )

    def close(self) -> None:
        self._client.close()


class CachedPriceOracle(IPriceOracle):
    """Oracle backed by a price cache fed from a streaming source.

    ``update_price`` is called whenever a tick arrives. Quotes older than
    ``max_age_s`` are reported as stale rather than returned.
    """

    def __init__(self, max_age_s: Optional[float] = 60.0, clock=time.monotonic) -> None:
        self._max_age_s = max_age_s
        self._clock = clock
        self._quotes: Dict[str, tuple[PriceQuote, float]] = {}
        self._lock = threading.Lock()

    def update_price(self, symbol: str, price: Decimal | float | str, **extra: Any) -> None:
        """Store the latest price for a symbol.

        Args:
            symbol: Market symbol
            price: Last traded price
            **extra: Optional PriceQuote fields (high_24h, low_24h, ...)
        """
        sym = _normalize_symbol(symbol)
        fields = {k: _dec(v) for k, v in extra.items()}
        quote = PriceQuote(symbol=sym, last_price=_dec(price), **fields)
        with self._lock:
            self._quotes[sym] = (quote, self._clock())

    def get_price(self, symbol: str) -> PriceQuote:
        sym = _normalize_symbol(symbol)
        with self._lock:
            entry = self._quotes.get(sym)
        if entry is None:
            raise OracleUnavailable(f"No cached price for {sym}")
        quote, received_at = entry
        if self._max_age_s is not None:
            age = self._clock() - received_at
            if age > self._max_age_s:
                raise StalePrice(f"Price for {sym} is {age:.1f}s old")
        return quote

    def get_prices_snapshot(self) -> dict[str, Decimal]:
        """Get the last price of every cached symbol."""
        with self._lock:
            return {sym: q.last_price for sym, (q, _) in self._quotes.items()}
