"""Spot price lookup across public providers with ordered fallback.

Crypto symbols walk CoinGecko, CoinPaprika, DIA, Binance and (for BTC only)
CoinDesk; forex pairs walk Yahoo Finance then open.er-api.com.  Each provider
gets a single short-timeout attempt.  The first positive price wins and later
providers are not called.  When every provider fails the price is
*unresolved* and ``None`` is returned; network errors never escape.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import requests

from fallback import Decision, FallbackExhausted, try_in_order
from log_utils import setup_logger
from observability import record_metric
from signal_schema import Market, to_float

logger = setup_logger(__name__)

DEFAULT_HEADERS = {"User-Agent": "Mozilla/5.0"}

FetchFn = Callable[[requests.Session, str, float], Any]


class PriceUnavailable(ValueError):
    """Provider answered but did not carry a usable price."""


def _split(symbol: str) -> Tuple[str, str]:
    base, _, quote = symbol.upper().partition("/")
    return base, quote or "USD"


def _get_json(session: requests.Session, url: str, timeout: float) -> Any:
    response = session.get(url, headers=DEFAULT_HEADERS, timeout=timeout)
    response.raise_for_status()
    return response.json()


def _positive(value: Any, source: str) -> float:
    price = to_float(value, 0.0)
    if price <= 0:
        raise PriceUnavailable(f"{source} returned no positive price")
    return price


# ---------------------------------------------------------------------------
# Crypto providers
# ---------------------------------------------------------------------------
def fetch_coingecko(session: requests.Session, symbol: str, timeout: float) -> float:
    coin = _split(symbol)[0].lower()
    data = _get_json(
        session,
        f"https://api.coingecko.com/api/v3/simple/price?ids={coin}&vs_currencies=usd",
        timeout,
    )
    return _positive((data.get(coin) or {}).get("usd"), "CoinGecko")


def fetch_coinpaprika(session: requests.Session, symbol: str, timeout: float) -> float:
    coin = _split(symbol)[0].lower()
    ticker = f"{coin}-{'bitcoin' if coin == 'btc' else coin}"
    data = _get_json(session, f"https://api.coinpaprika.com/v1/tickers/{ticker}", timeout)
    quotes = (data.get("quotes") or {}).get("USD") or {}
    return _positive(quotes.get("price"), "CoinPaprika")


def fetch_dia(session: requests.Session, symbol: str, timeout: float) -> float:
    base = _split(symbol)[0]
    data = _get_json(session, f"https://api.diadata.org/v1/quotation/{base}", timeout)
    return _positive(data.get("Price"), "DIA")


def fetch_binance(session: requests.Session, symbol: str, timeout: float) -> float:
    pair = "".join(_split(symbol))
    data = _get_json(session, f"https://api.binance.com/api/v3/ticker/price?symbol={pair}", timeout)
    return _positive(data.get("price"), "Binance")


def fetch_coindesk(session: requests.Session, symbol: str, timeout: float) -> float:
    if _split(symbol)[0] != "BTC":
        raise PriceUnavailable("CoinDesk only quotes BTC")
    data = _get_json(session, "https://api.coindesk.com/v1/bpi/currentprice/BTC.json", timeout)
    rate = ((data.get("bpi") or {}).get("USD") or {}).get("rate_float")
    return _positive(rate, "CoinDesk")


# ---------------------------------------------------------------------------
# Forex providers
# ---------------------------------------------------------------------------
def fetch_yahoo(session: requests.Session, symbol: str, timeout: float) -> float:
    pair = "".join(_split(symbol))
    data = _get_json(
        session,
        f"https://query1.finance.yahoo.com/v8/finance/chart/{pair}=X?interval=1m&range=1d",
        timeout,
    )
    try:
        meta = data["chart"]["result"][0]["meta"]
    except (KeyError, IndexError, TypeError) as exc:
        raise PriceUnavailable("Yahoo chart payload missing meta") from exc
    return _positive(meta.get("regularMarketPrice"), "Yahoo")


def fetch_exchange_rate(session: requests.Session, symbol: str, timeout: float) -> float:
    base, quote = _split(symbol)
    data = _get_json(session, f"https://open.er-api.com/v6/latest/{base}", timeout)
    return _positive((data.get("rates") or {}).get(quote), "ExchangeRate-API")


@dataclass(frozen=True)
class PriceProvider:
    name: str
    fetch: FetchFn


CRYPTO_PROVIDERS: Tuple[PriceProvider, ...] = (
    PriceProvider("coingecko", fetch_coingecko),
    PriceProvider("coinpaprika", fetch_coinpaprika),
    PriceProvider("dia", fetch_dia),
    PriceProvider("binance", fetch_binance),
    PriceProvider("coindesk", fetch_coindesk),
)

FOREX_PROVIDERS: Tuple[PriceProvider, ...] = (
    PriceProvider("yahoo", fetch_yahoo),
    PriceProvider("exchangerate", fetch_exchange_rate),
)


class PriceResolver:
    """Resolve a spot price for a symbol of either market."""

    def __init__(
        self,
        *,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
        providers: Optional[Mapping[Market, Sequence[PriceProvider]]] = None,
    ) -> None:
        self.timeout = float(timeout)
        self.session = session or requests.Session()
        self.providers: Dict[Market, List[PriceProvider]] = {
            Market.CRYPTO: list(CRYPTO_PROVIDERS),
            Market.FOREX: list(FOREX_PROVIDERS),
        }
        if providers:
            for market, chain in providers.items():
                self.providers[Market(market)] = list(chain)

    def resolve_price(self, symbol: str, market: Market | str) -> Optional[float]:
        """Return the first positive price for ``symbol`` or ``None``."""

        chain = self.providers.get(Market(getattr(market, "value", market)), [])

        def _attempt(provider: PriceProvider) -> float:
            started = time.perf_counter()
            price = provider.fetch(self.session, symbol, self.timeout)
            record_metric(
                "price_provider_latency",
                time.perf_counter() - started,
                labels={"provider": provider.name},
            )
            return price

        def _classify(exc: BaseException, attempt: int) -> Decision:
            logger.info("Price lookup for %s failed (%s): %s", symbol, _failure_kind(exc), exc)
            return Decision.NEXT

        try:
            provider, price = try_in_order(
                chain,
                _attempt,
                attempts=1,
                classify=_classify,
                label=f"price[{symbol}]",
            )
        except FallbackExhausted as exc:
            logger.warning("Price for %s unresolved: %s", symbol, exc.last_error)
            record_metric("price_unresolved", 1, labels={"symbol": symbol})
            return None
        logger.info("%s price for %s: %s", provider.name, symbol, price)
        record_metric("price_provider_hit", 1, labels={"provider": provider.name})
        return price

    def price_context(self, symbol: str, market: Market | str) -> Tuple[Optional[float], str]:
        """Return ``(price, prompt_line)``; the line is empty when unresolved."""

        price = self.resolve_price(symbol, market)
        if price is None:
            return None, ""
        suffix = " USD" if Market(getattr(market, "value", market)) == Market.CRYPTO else ""
        return price, f"CURRENT REAL-TIME PRICE: {price}{suffix}. "


def _failure_kind(exc: BaseException) -> str:
    if isinstance(exc, requests.Timeout):
        return "timeout"
    if isinstance(exc, requests.RequestException):
        return "network"
    return "provider"


__all__ = [
    "CRYPTO_PROVIDERS",
    "FOREX_PROVIDERS",
    "PriceProvider",
    "PriceResolver",
    "PriceUnavailable",
]
