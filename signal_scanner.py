"""Scan a market's watchlist and persist the first directional call.

A scan passes through three read-only gates before anything is written:

1. the market's active signals can be read,
2. forex is not in its weekend window (unless a specific pair was forced),
3. the market's most recent signal is older than the cooldown (unless forced).

An unforced scan then removes the stale active signal and walks the
shuffled candidates, asking the oracle about each until one returns a
non-neutral bias.  A forced scan keeps the current signal until it actually
has a replacement.  Every insert is preceded by removing the market's
remaining active rows, so at most one signal per market is ever active.
"""

from __future__ import annotations

import random
import time
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

from log_utils import setup_logger
from market_hours import is_forex_weekend
from notifier import (
    format_failed_analysis,
    format_forced_analysis,
    format_market_closed,
    format_signal_post,
    publish_to_bindings,
)
from observability import log_event, record_metric
from oracle_client import extract_bias
from prompts import scan_instruction, system_prompt
from signal_parser import normalize_pair, parse_levels
from signal_schema import Bias, Market, ScanMode, Signal, utcnow
from signal_storage import StorageError

logger = setup_logger(__name__)


class _Reply:
    """Replies to the chat that requested a scan and remembers whether one went out."""

    def __init__(self, publisher, channel: Optional[str], topic: Optional[str]) -> None:
        self.publisher = publisher
        self.channel = channel
        self.topic = topic
        self.sent = False

    def send(self, text: str) -> None:
        if not self.channel:
            return
        self.sent = True
        self.publisher.send(self.channel, text, self.topic)


class SignalScanner:
    def __init__(
        self,
        store,
        prices,
        oracle,
        publisher,
        settings,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Any] = time.sleep,
        shuffle: Callable[[List[str]], Any] = random.shuffle,
    ) -> None:
        self.store = store
        self.prices = prices
        self.oracle = oracle
        self.publisher = publisher
        self.settings = settings
        self.clock = clock
        self.sleep = sleep
        self.shuffle = shuffle

    def run_scan(
        self,
        market: Market | str,
        forced: bool = False,
        destination_channel: Optional[str] = None,
        destination_topic: Optional[str] = None,
        forced_symbol: Optional[str] = None,
        mode: ScanMode | str | None = None,
    ) -> Optional[Signal]:
        """Run one scan and return the created signal, if any.

        Never raises; failures are logged and reported as ``None``.  A forced
        scan with a destination always leaves at least one reply there: the
        analysis itself, a market-closed notice or a failure message.
        """

        reply = _Reply(self.publisher, destination_channel, destination_topic)
        try:
            return self._scan(
                Market(getattr(market, "value", market)),
                forced,
                reply,
                forced_symbol,
                ScanMode(getattr(mode, "value", mode)) if mode else None,
            )
        except Exception:
            logger.exception("%s scan failed", market)
            if forced and not reply.sent:
                reply.send(format_failed_analysis(market, forced_symbol))
            return None

    # ------------------------------------------------------------------
    def _skip(self, market: Market, reason: str, **fields: Any) -> None:
        log_event(logger, "scan_skipped", market=market.value, reason=reason, **fields)
        record_metric("scan_skipped", 1, labels={"market": market.value, "reason": reason})

    def _in_cooldown(self, market: Market, now: datetime) -> bool:
        latest = self.store.latest_signal(market)
        if latest is None:
            return False
        elapsed = (now - latest.created_at).total_seconds()
        if elapsed < self.settings.cooldown:
            logger.info(
                "Cooldown active for %s. Time since last: %dm. Skipping.", market.value, int(elapsed // 60)
            )
            return True
        return False

    def _clear_active(self, market: Market) -> None:
        for stale in self.store.get_active_signals(market):
            logger.info("Resetting active %s signal %s (%s)", market.value, stale.id, stale.symbol)
            self.store.delete_signal(stale.id)

    def _scan(
        self,
        market: Market,
        forced: bool,
        reply: _Reply,
        forced_symbol: Optional[str],
        mode: Optional[ScanMode],
    ) -> Optional[Signal]:
        now = self.clock()
        settings = self.settings

        try:
            active = self.store.get_active_signals(market)
        except StorageError as exc:
            logger.error("Active signal lookup failed for %s: %s", market.value, exc)
            self._skip(market, "storage_error")
            if forced:
                reply.send(format_failed_analysis(market, forced_symbol))
            return None

        if market == Market.FOREX and not forced_symbol and is_forex_weekend(
            now,
            close_weekday=settings.forex_close_weekday,
            close_hour=settings.forex_close_hour,
            open_weekday=settings.forex_open_weekday,
            open_hour=settings.forex_open_hour,
        ):
            logger.info("Forex market is closed for the weekend. Skipping scan.")
            self._skip(market, "weekend")
            if forced:
                reply.send(format_market_closed(market))
            return None

        if not forced:
            try:
                if self._in_cooldown(market, now):
                    self._skip(market, "cooldown")
                    return None
            except StorageError as exc:
                logger.error("Cooldown check failed for %s: %s", market.value, exc)
                self._skip(market, "storage_error")
                return None
            if active:
                try:
                    self._clear_active(market)
                except StorageError as exc:
                    logger.error("Resetting %s signals failed: %s", market.value, exc)
                    self._skip(market, "storage_error")
                    return None

        if forced_symbol:
            candidates = [normalize_pair(forced_symbol)]
        else:
            candidates = list(settings.monitored_symbols(market.value))
        self.shuffle(candidates)
        logger.info(
            "%s %s analysis over %d candidate(s)",
            "Forced" if forced else "Institutional",
            market.value,
            len(candidates),
        )

        best = None
        analysed = 0
        for symbol in candidates:
            self.sleep(settings.candidate_delay)
            try:
                price, context = self.prices.price_context(symbol, market)
                text = self.oracle.ask(
                    system_prompt(mode),
                    scan_instruction(symbol, price, context, mode),
                    max_tokens=settings.scan_max_tokens,
                )
                if text is None:
                    continue
                analysed += 1
                bias = extract_bias(text)
                reply.send(format_forced_analysis(symbol, text, mode))
                if bias != Bias.NEUTRAL:
                    best = (symbol, text, bias, price)
                    break
            except Exception:
                logger.exception("Error analysing %s", symbol)

        if best is None:
            if forced and not reply.sent:
                reply.send(format_failed_analysis(market, forced_symbol))
            self._skip(market, "no_signal", analysed=analysed)
            return None

        symbol, text, bias, price = best
        levels = parse_levels(text, price or 0.0)
        self._clear_active(market)
        signal = Signal(
            symbol=symbol,
            market=market,
            bias=bias,
            narrative=text,
            created_at=now,
            next_check_at=now + timedelta(seconds=settings.recheck_interval),
            chat_id=str(reply.channel) if reply.channel else None,
            topic_id=str(reply.topic) if reply.topic else None,
            **levels,
        )
        stored = self.store.create_signal(signal)
        log_event(
            logger,
            "signal_created",
            id=stored.id,
            symbol=symbol,
            market=market.value,
            bias=bias.value,
            entry=stored.entry_price,
            forced=forced,
        )
        record_metric("signal_created", 1, labels={"market": market.value, "bias": bias.value})

        delivered = publish_to_bindings(
            self.publisher,
            self.store.get_bindings(market),
            format_signal_post(stored, mode),
            market,
        )
        logger.info("Published %s signal %s to %d binding(s)", market.value, stored.id, delivered)
        return stored


__all__ = ["SignalScanner"]
