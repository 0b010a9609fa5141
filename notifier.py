"""Chat delivery for signals and monitoring updates.

Messages go out through the Telegram Bot API ``sendMessage`` endpoint in
HTML parse mode.  Delivery is best effort: a failed post is logged and
reported as ``False`` but never interrupts the scanner or monitor.
"""

from __future__ import annotations

import os
from html import escape
from typing import Any, Iterable, Optional

import requests

from log_utils import setup_logger
from signal_schema import Binding, Market, ScanMode, Signal

__all__ = [
    "TelegramPublisher",
    "format_forced_analysis",
    "format_monitor_update",
    "format_signal_post",
    "format_failed_analysis",
    "format_market_closed",
    "format_metric",
    "publish_to_bindings",
    "status_badge",
]

logger = setup_logger(__name__)

TELEGRAM_API_URL = os.getenv("TELEGRAM_API_URL", "https://api.telegram.org")

# Bot API limit on the text of one message.
MAX_MESSAGE_LENGTH = 4096


def _coerce_number(value: Any) -> Optional[float]:
    """Best-effort conversion of a value to ``float``."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(",", ""))
        except ValueError:
            return None
    return None


def _format_number(value: Any) -> str:
    number = _coerce_number(value)
    if number is None:
        return "N/A"
    if abs(number) >= 100:
        formatted = f"{number:,.2f}"
    elif abs(number) >= 1:
        formatted = f"{number:,.4f}"
    else:
        formatted = f"{number:,.6f}"
    return formatted.rstrip("0").rstrip(".") if "." in formatted else formatted


def _format_signed(value: float, decimals: int) -> str:
    sign = "+" if value > 0 else ""
    return f"{sign}{value:.{decimals}f}"


def format_metric(market: Market, pnl: float) -> str:
    """Return the running P&L line: pips for forex, percent for crypto."""

    if market == Market.FOREX:
        return f"Running Pips: <b>{_format_signed(pnl, 1)} Pips</b>"
    return f"Running PnL: <b>{_format_signed(pnl, 2)}%</b>"


def _clip_escaped(text: str, budget: int) -> str:
    """HTML-escape ``text`` and cut it so the escaped form fits ``budget`` characters."""

    escaped = escape(text)
    while len(escaped) > budget and text:
        overflow = len(escaped) - budget
        text = text[: max(0, len(text) - overflow - 1)]
        escaped = escape(text) + "…"
    return escaped


def _with_body(head: str, body: str) -> str:
    budget = MAX_MESSAGE_LENGTH - len(head)
    return head + _clip_escaped(body, budget)


def format_signal_post(signal: Signal, mode: Optional[ScanMode] = None) -> str:
    market = signal.market.value.upper()
    if mode == ScanMode.SETUP:
        header = f"🧭 <b>Institutional {market} Setup</b>"
    else:
        header = f"🔔 <b>Institutional {market} Analysis</b>"
    return _with_body(f"{header}\n\nAsset: {escape(signal.symbol)}\n\n", signal.narrative)


def format_forced_analysis(symbol: str, analysis: Optional[str], mode: Optional[ScanMode] = None) -> str:
    if mode == ScanMode.SETUP:
        header = f"🧭 <b>Setup Result: {escape(symbol)}</b>"
    else:
        header = f"🔍 <b>Analysis Result: {escape(symbol)}</b>"
    if not analysis:
        return f"{header}\n\nNo analysis returned."
    return _with_body(f"{header}\n\n", analysis)


def format_failed_analysis(market: Market | str, symbol: Optional[str]) -> str:
    market_name = str(getattr(market, "value", market)).lower()
    target = escape(symbol) if symbol else f"the {escape(market_name)} watchlist"
    return f"❌ <b>Analysis failed</b>\n\nNo analysis could be produced for {target}. Please try again shortly."


def format_market_closed(market: Market | str) -> str:
    market_name = str(getattr(market, "value", market)).upper()
    return (
        f"🌙 <b>{escape(market_name)} market closed</b>\n\n"
        "The market is closed for the weekend (Friday 22:00 to Sunday 22:00 UTC). "
        "Request a specific pair or try again after the reopen."
    )


def format_monitor_update(
    signal: Signal,
    current_price: float,
    pnl: float,
    *,
    event: Optional[str] = None,
    status: Optional[str] = None,
    insight: Optional[str] = None,
) -> str:
    """Render the periodic monitoring post for ``signal``."""

    lines = [
        f"📊 <b>Signal Monitoring: {escape(signal.symbol)}</b>",
        "",
        f"Current Price: <b>{_format_number(current_price)}</b>",
        format_metric(signal.market, pnl),
        f"Trend: <b>{signal.bias.value.upper()}</b>",
        "",
    ]
    if event == "pullback":
        lines.append("⚠️ <b>Pullback Detected</b>")
    elif event == "momentum":
        lines.append("🚀 <b>Strong Momentum</b>")
    if status:
        lines.append(f"📢 <b>Status: {status_badge(status)}</b>")
        lines.append("")
    if insight:
        head = "\n".join(lines) + "\n🧠 <b>AI Insight:</b>\n<i>"
        budget = MAX_MESSAGE_LENGTH - len(head) - len("</i>")
        lines.append(f"🧠 <b>AI Insight:</b>\n<i>{_clip_escaped(insight, budget)}</i>")
    return "\n".join(lines).rstrip()


_STATUS_BADGES = {
    "SL HIT": "SL HIT 🔴",
    "TP3 HIT": "TP3 HIT 🟢🟢🟢",
    "TP2 HIT": "TP2 HIT 🟢🟢",
    "TP1 HIT": "TP1 HIT 🟢",
}


def status_badge(status: str) -> str:
    return _STATUS_BADGES.get(status, status)


class TelegramPublisher:
    """Minimal Bot API client for outbound posts."""

    def __init__(self, token: Optional[str], *, timeout: float = 10.0, session: Optional[requests.Session] = None) -> None:
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()
        if not token:
            logger.warning("TELEGRAM_BOT_TOKEN missing; chat delivery disabled")

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    def send(self, chat_id: Any, text: str, topic_id: Any = None) -> bool:
        """Post ``text`` to ``chat_id`` (and forum topic) and report success."""

        if not self.token:
            return False
        payload = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        if topic_id not in (None, ""):
            try:
                payload["message_thread_id"] = int(topic_id)
            except (TypeError, ValueError):
                logger.warning("Ignoring non-numeric topic id %r for chat %s", topic_id, chat_id)
        try:
            response = self.session.post(
                f"{TELEGRAM_API_URL}/bot{self.token}/sendMessage",
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Failed to post to chat %s: %s", chat_id, exc)
            return False
        logger.info("Posted message to chat %s", chat_id)
        return True


def publish_to_bindings(
    publisher: TelegramPublisher,
    bindings: Iterable[Binding],
    text: str,
    market: Optional[Market] = None,
) -> int:
    """Send ``text`` to every binding that accepts ``market``; return the count delivered."""

    delivered = 0
    for binding in bindings:
        if market is not None and not binding.accepts(market):
            continue
        if publisher.send(binding.group_id, text, binding.topic_id):
            delivered += 1
    return delivered
