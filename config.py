"""Central configuration loader for environment variables."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Tuple

from dotenv import load_dotenv

# Load environment variables once when this module is imported.
load_dotenv()

import os


def _clean_path(value: str | None) -> str:
    """Return ``value`` without inline comments or surrounding whitespace."""

    if not value:
        return ""
    return value.split("#", 1)[0].strip()


# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------
def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _env_float(name: str, default: float, *, minimum: float | None = None, maximum: float | None = None) -> float:
    raw = os.getenv(name)
    value = float(default)
    if raw is not None:
        try:
            value = float(raw)
        except (TypeError, ValueError):
            value = float(default)
    if minimum is not None:
        value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return int(default)


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    items = tuple(part.strip().upper() for part in raw.split(",") if part.strip())
    return items or default


# ---------------------------------------------------------------------------
# Monitored universe
# ---------------------------------------------------------------------------

# Top crypto majors by volume, quoted against USDT.
DEFAULT_MONITORED_CRYPTO: Tuple[str, ...] = (
    "BTC/USDT", "ETH/USDT", "SOL/USDT", "BNB/USDT", "XRP/USDT",
    "ADA/USDT", "DOGE/USDT", "AVAX/USDT", "DOT/USDT", "TRX/USDT",
    "LINK/USDT", "MATIC/USDT", "SHIB/USDT", "LTC/USDT", "BCH/USDT",
    "UNI/USDT", "NEAR/USDT", "ATOM/USDT", "XMR/USDT", "ETC/USDT",
    "ALGO/USDT", "VET/USDT", "ICP/USDT", "FIL/USDT", "HBAR/USDT",
)

DEFAULT_MONITORED_FOREX: Tuple[str, ...] = (
    "EUR/USD", "GBP/USD", "USD/JPY", "USD/CHF", "AUD/USD",
    "USD/CAD", "NZD/USD", "EUR/GBP", "EUR/JPY", "GBP/JPY",
)

DEFAULT_SIGNAL_MODEL = "google/gemini-2.0-flash-001"
DEFAULT_OPENROUTER_URL = "https://openrouter.ai/api/v1"
DEFAULT_OPENAI_URL = "https://api.openai.com/v1"
DEFAULT_SOLANA_RPC = "https://api.mainnet-beta.solana.com"
DEFAULT_DATA_DIR = "data"


def _resolve_oracle_credentials() -> tuple[str | None, str]:
    """Return ``(api_key, base_url)`` for the signal oracle.

    OpenRouter takes precedence; otherwise the OpenAI-compatible integration
    key and base URL are used.
    """

    openrouter_key = (os.getenv("OPENROUTER_API_KEY") or "").strip()
    if openrouter_key:
        base_url = (os.getenv("OPENROUTER_BASE_URL") or "").strip() or DEFAULT_OPENROUTER_URL
        return openrouter_key, base_url.rstrip("/")
    for name in ("AI_INTEGRATIONS_OPENAI_API_KEY", "OPENAI_API_KEY"):
        key = (os.getenv(name) or "").strip()
        if key:
            base_url = (os.getenv("AI_INTEGRATIONS_OPENAI_BASE_URL") or "").strip() or DEFAULT_OPENAI_URL
            return key, base_url.rstrip("/")
    return None, DEFAULT_OPENAI_URL


def _resolve_data_dir() -> str:
    candidate = _clean_path(os.getenv("DATA_DIR")) or DEFAULT_DATA_DIR
    return os.path.expanduser(os.path.expandvars(candidate))


@dataclass(frozen=True)
class WorkerSettings:
    """Runtime configuration knobs for the signal worker."""

    oracle_api_key: str | None = None
    oracle_base_url: str = DEFAULT_OPENAI_URL
    oracle_model: str = DEFAULT_SIGNAL_MODEL
    oracle_timeout: float = 30.0
    scan_max_tokens: int = 1024
    update_max_tokens: int = 512
    solana_rpc_url: str = DEFAULT_SOLANA_RPC
    telegram_bot_token: str | None = None
    monitored_crypto: Tuple[str, ...] = DEFAULT_MONITORED_CRYPTO
    monitored_forex: Tuple[str, ...] = DEFAULT_MONITORED_FOREX
    scan_interval: float = 600.0
    monitor_interval: float = 900.0
    cooldown: float = 900.0
    recheck_interval: float = 1800.0
    candidate_delay: float = 1.0
    startup_kicks: bool = True
    initial_scan_delay: float = 10.0
    forex_scan_offset: float = 30.0
    monitor_offset: float = 60.0
    forex_close_weekday: int = 4
    forex_close_hour: int = 22
    forex_open_weekday: int = 6
    forex_open_hour: int = 22
    event_move_pct: float = 0.5
    price_timeout: float = 5.0
    quote_timeout: float = 25.0
    proxy_timeout: float = 15.0
    swap_timeout: float = 15.0
    data_dir: str = DEFAULT_DATA_DIR
    database_url: str | None = None
    extra_headers: dict = field(default_factory=dict)

    @property
    def signals_file(self) -> str:
        return os.path.join(self.data_dir, "signals.json")

    @property
    def bindings_file(self) -> str:
        return os.path.join(self.data_dir, "bindings.json")

    @property
    def trades_file(self) -> str:
        return os.path.join(self.data_dir, "trades.json")

    def monitored_symbols(self, market: str) -> Tuple[str, ...]:
        return self.monitored_forex if str(market) == "forex" else self.monitored_crypto


def load_worker_settings() -> WorkerSettings:
    """Load worker settings from environment variables."""

    api_key, base_url = _resolve_oracle_credentials()
    model = (os.getenv("SIGNAL_LLM_MODEL") or "").strip() or DEFAULT_SIGNAL_MODEL
    return WorkerSettings(
        oracle_api_key=api_key,
        oracle_base_url=base_url,
        oracle_model=model,
        oracle_timeout=_env_float("ORACLE_HTTP_TIMEOUT", 30.0, minimum=1.0, maximum=120.0),
        scan_max_tokens=max(64, _env_int("SCAN_MAX_TOKENS", 1024)),
        update_max_tokens=max(32, _env_int("UPDATE_MAX_TOKENS", 512)),
        solana_rpc_url=(os.getenv("SOLANA_RPC_URL") or "").strip() or DEFAULT_SOLANA_RPC,
        telegram_bot_token=(os.getenv("TELEGRAM_BOT_TOKEN") or "").strip() or None,
        monitored_crypto=_env_list("MONITORED_CRYPTO", DEFAULT_MONITORED_CRYPTO),
        monitored_forex=_env_list("MONITORED_FOREX", DEFAULT_MONITORED_FOREX),
        scan_interval=_env_float("SCAN_INTERVAL_SECONDS", 600.0, minimum=30.0),
        monitor_interval=_env_float("MONITOR_INTERVAL_SECONDS", 900.0, minimum=30.0),
        cooldown=_env_float("SCAN_COOLDOWN_SECONDS", 900.0, minimum=0.0),
        recheck_interval=_env_float("SIGNAL_RECHECK_SECONDS", 1800.0, minimum=60.0),
        candidate_delay=_env_float("CANDIDATE_DELAY_SECONDS", 1.0, minimum=0.0),
        startup_kicks=_env_bool("RUN_STARTUP_SCAN", True),
        event_move_pct=_env_float("EVENT_MOVE_PCT", 0.5, minimum=0.01),
        price_timeout=_env_float("PRICE_HTTP_TIMEOUT", 5.0, minimum=1.0, maximum=30.0),
        quote_timeout=_env_float("QUOTE_HTTP_TIMEOUT", 25.0, minimum=1.0, maximum=60.0),
        data_dir=_resolve_data_dir(),
        database_url=(os.getenv("DATABASE_URL") or "").strip() or None,
        extra_headers={
            "HTTP-Referer": os.getenv("ORACLE_REFERER", "https://replit.com"),
            "X-Title": os.getenv("ORACLE_TITLE", "Solana SMC Bot"),
        },
    )


__all__ = [
    "load_worker_settings",
    "WorkerSettings",
    "DEFAULT_MONITORED_CRYPTO",
    "DEFAULT_MONITORED_FOREX",
]
