from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

import observability
import oracle_client
from config import WorkerSettings
from signal_schema import Market
from signal_storage import JsonSignalStore

# Wednesday, inside forex trading hours.
WEEKDAY_NOON = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _isolate_side_effects(tmp_path, monkeypatch):
    observability.set_metrics_path(str(tmp_path / "metrics.csv"))
    oracle_client.reset_auth_state()
    yield
    oracle_client.reset_auth_state()


@pytest.fixture
def settings(tmp_path) -> WorkerSettings:
    return WorkerSettings(
        oracle_api_key="test-key",
        data_dir=str(tmp_path / "data"),
        monitored_crypto=("BTC/USDT", "ETH/USDT", "SOL/USDT"),
        monitored_forex=("EUR/USD", "GBP/USD"),
        candidate_delay=0.0,
    )


@pytest.fixture
def store(settings) -> JsonSignalStore:
    return JsonSignalStore(settings.signals_file, settings.bindings_file, settings.trades_file)


class FakePrices:
    def __init__(self, prices: Optional[Dict[str, Optional[float]]] = None, default: Optional[float] = 100.0):
        self.prices = dict(prices or {})
        self.default = default
        self.calls: List[str] = []

    def resolve_price(self, symbol: str, market: Market | str) -> Optional[float]:
        self.calls.append(symbol)
        value = self.prices.get(symbol, self.default)
        if isinstance(value, Exception):
            raise value
        return value

    def price_context(self, symbol: str, market: Market | str):
        price = self.resolve_price(symbol, market)
        if price is None:
            return None, ""
        return price, f"CURRENT REAL-TIME PRICE: {price}. "


class FakeOracle:
    """Answers from ``replies`` keyed by symbol (matched in the user prompt)."""

    def __init__(self, replies: Optional[Dict[str, Optional[str]]] = None, default: Optional[str] = None):
        self.replies = dict(replies or {})
        self.default = default
        self.calls: List[tuple] = []

    def ask(self, system_prompt: str, user_prompt: str, max_tokens: Optional[int] = None) -> Optional[str]:
        self.calls.append((system_prompt, user_prompt, max_tokens))
        for symbol, reply in self.replies.items():
            if symbol in user_prompt:
                return reply
        return self.default


class FakePublisher:
    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent: List[tuple] = []

    def send(self, chat_id: Any, text: str, topic_id: Any = None) -> bool:
        self.sent.append((chat_id, text, topic_id))
        return self.succeed


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def raise_for_status(self) -> None:
        import requests

        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}", response=self)


class ScriptedSession:
    """Route ``get``/``post`` calls through a handler ``(method, url, kwargs) -> response``."""

    def __init__(self, handler: Callable[[str, str, dict], Any]):
        self.handler = handler
        self.calls: List[tuple] = []

    def _dispatch(self, method: str, url: str, kwargs: dict) -> Any:
        self.calls.append((method, url, kwargs))
        result = self.handler(method, url, kwargs)
        if isinstance(result, Exception):
            raise result
        return result

    def get(self, url: str, **kwargs: Any) -> Any:
        return self._dispatch("GET", url, kwargs)

    def post(self, url: str, **kwargs: Any) -> Any:
        return self._dispatch("POST", url, kwargs)


@pytest.fixture
def fake_prices() -> FakePrices:
    return FakePrices()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()
