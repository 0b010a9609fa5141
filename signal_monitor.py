"""Track active signals against live prices until a TP/SL level fires.

Each pass looks at every active signal whose ``next_check_at`` has elapsed,
resolves a fresh price and computes three things:

* running P&L against the entry (pips for forex, percent for crypto),
* a *move event* against the previously checked price (momentum/pullback),
* a *threshold status* (SL, TP3, TP2, TP1 in that order of precedence).

Any threshold hit completes the signal.  Otherwise the last price is stored
and the next check is scheduled.  The store update happens before the post so
a signal deleted mid-pass (for instance by a concurrent reset) is a silent
no-op rather than a stale update.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from log_utils import setup_logger
from notifier import format_monitor_update, publish_to_bindings
from observability import log_event, record_metric
from prompts import update_instruction, update_system_prompt
from signal_schema import Bias, Market, Signal, SignalStatus, utcnow
from signal_storage import StorageError

logger = setup_logger(__name__)

PIP_FACTOR = 10_000


def compute_pnl(signal: Signal, price: float) -> float:
    """Return running P&L: pips for forex, percent for crypto; 0 without an entry."""

    entry = signal.entry_price
    if entry <= 0:
        return 0.0
    direction = 1.0 if signal.bias == Bias.BULLISH else -1.0
    if signal.market == Market.FOREX:
        return direction * (price - entry) * PIP_FACTOR
    return direction * (price - entry) / entry * 100.0


def classify_event(bias: Bias, last: float, current: float, threshold_pct: float = 0.5) -> Optional[str]:
    """Return ``"momentum"``, ``"pullback"`` or ``None`` for a move from ``last``."""

    if last <= 0:
        return None
    move_pct = abs(current - last) / last * 100.0
    if move_pct < threshold_pct:
        return None
    against = (bias == Bias.BULLISH and current < last) or (bias == Bias.BEARISH and current > last)
    return "pullback" if against else "momentum"


def threshold_status(
    bias: Bias,
    price: float,
    stop_loss: float,
    tp1: float,
    tp2: float,
    tp3: float,
) -> Optional[str]:
    """Return the TP/SL label hit at ``price``; unset (zero) levels never fire."""

    if bias == Bias.BEARISH:
        def reached(level: float) -> bool:
            return level > 0 and price <= level

        stopped = stop_loss > 0 and price >= stop_loss
    else:
        def reached(level: float) -> bool:
            return level > 0 and price >= level

        stopped = stop_loss > 0 and price <= stop_loss

    if stopped:
        return "SL HIT"
    if reached(tp3):
        return "TP3 HIT"
    if reached(tp2):
        return "TP2 HIT"
    if reached(tp1):
        return "TP1 HIT"
    return None


@dataclass
class MonitorOutcome:
    signal_id: Optional[int]
    symbol: str
    action: str
    price: Optional[float] = None
    pnl: Optional[float] = None
    event: Optional[str] = None
    status: Optional[str] = None


class SignalMonitor:
    def __init__(
        self,
        store,
        prices,
        oracle,
        publisher,
        settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.prices = prices
        self.oracle = oracle
        self.publisher = publisher
        self.settings = settings
        self.clock = clock

    def run_pass(self, now: Optional[datetime] = None) -> List[MonitorOutcome]:
        """Check every due active signal once; errors only skip the signal."""

        now = now or self.clock()
        try:
            active = self.store.get_active_signals()
        except StorageError as exc:
            logger.error("Monitoring pass aborted, active signals unavailable: %s", exc)
            return []
        if not active:
            return []
        logger.info("Running monitoring pass over %d active signal(s)", len(active))

        outcomes: List[MonitorOutcome] = []
        for signal in active:
            try:
                outcome = self._check(signal, now)
            except Exception:
                logger.exception("Monitoring error for %s", signal.symbol)
                self._defer(signal, now)
                continue
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    def _defer(self, signal: Signal, now: datetime) -> None:
        """Push a failing signal to its next slot so it is not retried every pass."""

        try:
            self.store.update_signal(
                signal.id,
                last_checked_at=now,
                next_check_at=now + timedelta(seconds=self.settings.recheck_interval),
            )
        except StorageError as exc:
            logger.error("Could not reschedule %s after a monitoring error: %s", signal.symbol, exc)

    def _check(self, signal: Signal, now: datetime) -> Optional[MonitorOutcome]:
        if signal.next_check_at is not None and now < signal.next_check_at:
            return None

        next_at = now + timedelta(seconds=self.settings.recheck_interval)
        price = self.prices.resolve_price(signal.symbol, signal.market)
        if price is None:
            updated = self.store.update_signal(signal.id, last_checked_at=now, next_check_at=next_at)
            action = "deferred" if updated is not None else "missing"
            return MonitorOutcome(signal.id, signal.symbol, action)

        pnl = compute_pnl(signal, price)
        reference = signal.last_price or signal.entry_price
        event = classify_event(signal.bias, reference, price, self.settings.event_move_pct)
        status = threshold_status(
            signal.bias,
            price,
            signal.stop_loss,
            signal.take_profit1,
            signal.take_profit2,
            signal.take_profit3,
        )

        state = dict(signal.tracking_state)
        state["last_price"] = price
        if status:
            state["outcome"] = status
            updated = self.store.update_signal(
                signal.id,
                status=SignalStatus.COMPLETED,
                last_checked_at=now,
                tracking_state=state,
            )
        else:
            updated = self.store.update_signal(
                signal.id,
                last_checked_at=now,
                next_check_at=next_at,
                tracking_state=state,
            )
        if updated is None:
            logger.info("Signal %s disappeared during monitoring; skipping", signal.id)
            return MonitorOutcome(signal.id, signal.symbol, "missing")

        insight = self._insight(signal, price, pnl, event)
        text = format_monitor_update(signal, price, pnl, event=event, status=status, insight=insight)
        publish_to_bindings(
            self.publisher,
            self.store.get_bindings(signal.market),
            text,
            signal.market,
        )

        action = "completed" if status else "updated"
        log_event(
            logger,
            "signal_closed" if status else "signal_checked",
            id=signal.id,
            symbol=signal.symbol,
            price=price,
            pnl=round(pnl, 4),
            event=event,
            status=status,
        )
        if status:
            record_metric("signal_closed", 1, labels={"market": signal.market.value, "status": status})
        return MonitorOutcome(signal.id, signal.symbol, action, price, pnl, event, status)

    def _insight(self, signal: Signal, price: float, pnl: float, event: Optional[str]) -> Optional[str]:
        if signal.market == Market.FOREX:
            metric = f"Pips: {pnl:.1f}"
        else:
            metric = f"PnL: {pnl:.2f}%"
        event_label = {"pullback": "Pullback Detected", "momentum": "Strong Momentum"}.get(event or "")
        return self.oracle.ask(
            update_system_prompt(signal.market),
            update_instruction(signal.symbol, signal.bias.value, signal.entry_price, price, metric, event_label),
            max_tokens=self.settings.update_max_tokens,
        )


__all__ = [
    "MonitorOutcome",
    "SignalMonitor",
    "classify_event",
    "compute_pnl",
    "threshold_status",
]
