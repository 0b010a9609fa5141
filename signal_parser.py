"""Parsing helpers for oracle narratives and user supplied pair names."""

from __future__ import annotations

import re
from typing import Dict, Optional

from signal_schema import Market

_NUMBER = r"\$?\s*([0-9][0-9,]*(?:\.[0-9]+)?|\.[0-9]+)"

# Primary labels first, looser spellings after.
_LEVEL_PATTERNS = {
    "entry_price": (r"Signal Entry:", r"\bEntry(?: Price)?:"),
    "stop_loss": (r"Stop Loss:", r"\bSL:"),
    "take_profit1": (r"TP 1:", r"\bTP1:"),
    "take_profit2": (r"TP 2:", r"\bTP2:"),
    "take_profit3": (r"TP 3:", r"\bTP3:"),
}

_FOUR_LETTER_QUOTES = ("USDT", "USDC", "BUSD", "TUSD", "USDP")
_CRYPTO_QUOTES = set(_FOUR_LETTER_QUOTES) | {"PAX", "DAI", "BTC", "ETH"}
_FIAT_CODES = {
    "USD", "EUR", "GBP", "JPY", "CHF", "AUD", "CAD", "NZD", "SEK", "NOK",
    "DKK", "SGD", "HKD", "ZAR", "MXN", "TRY", "PLN", "CNH", "CNY",
}


def _match_level(text: str, labels) -> Optional[float]:
    for label in labels:
        match = re.search(label + r"\s*" + _NUMBER, text, re.IGNORECASE)
        if match:
            try:
                return float(match.group(1).replace(",", ""))
            except ValueError:
                continue
    return None


def parse_levels(text: str, fallback_entry: float = 0.0) -> Dict[str, float]:
    """Extract entry, stop and take-profit levels from ``text``.

    Missing entry falls back to ``fallback_entry`` (the resolved spot price);
    missing stop/targets are ``0.0`` which downstream checks ignore.
    """

    text = text or ""
    levels: Dict[str, float] = {}
    for field, labels in _LEVEL_PATTERNS.items():
        value = _match_level(text, labels)
        if value is None:
            value = float(fallback_entry or 0.0) if field == "entry_price" else 0.0
        levels[field] = value
    return levels


def normalize_pair(raw: str) -> str:
    """Return ``BASE/QUOTE`` for inputs like ``btcusdt``, ``BTC-USDT`` or ``EUR/USD``."""

    cleaned = re.sub(r"[\s\-_:]", "/", (raw or "").strip().upper())
    if "/" in cleaned:
        base, _, quote = cleaned.partition("/")
        return f"{base.strip('/')}/{quote.strip('/')}"
    for quote in _FOUR_LETTER_QUOTES:
        if cleaned.endswith(quote) and len(cleaned) > len(quote):
            return f"{cleaned[:-len(quote)]}/{quote}"
    if cleaned.endswith("PAX") and len(cleaned) > 3:
        return f"{cleaned[:-3]}/PAX"
    if len(cleaned) > 3:
        return f"{cleaned[:-3]}/{cleaned[-3:]}"
    return cleaned


def infer_market(pair: str) -> Market:
    """Guess the lane for ``pair``: two ISO currency codes mean forex."""

    base, _, quote = normalize_pair(pair).partition("/")
    if quote in _CRYPTO_QUOTES:
        return Market.CRYPTO
    if base in _FIAT_CODES and quote in _FIAT_CODES:
        return Market.FOREX
    return Market.CRYPTO


__all__ = ["infer_market", "normalize_pair", "parse_levels"]
