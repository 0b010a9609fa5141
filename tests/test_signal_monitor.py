from datetime import timedelta

import pytest

from conftest import WEEKDAY_NOON, FakeOracle, FakePrices, FakePublisher
from signal_monitor import SignalMonitor, classify_event, compute_pnl, threshold_status
from signal_schema import Bias, Binding, Market, Signal, SignalStatus


def _signal(market=Market.CRYPTO, bias=Bias.BULLISH, **kwargs):
    defaults = dict(
        symbol="BTC/USDT" if market == Market.CRYPTO else "EUR/USD",
        market=market,
        bias=bias,
        narrative="call",
        entry_price=100.0,
        stop_loss=95.0,
        take_profit1=105.0,
        take_profit2=110.0,
        take_profit3=120.0,
        created_at=WEEKDAY_NOON - timedelta(hours=2),
        next_check_at=WEEKDAY_NOON - timedelta(minutes=1),
    )
    defaults.update(kwargs)
    return Signal(**defaults)


def _monitor(store, settings, prices, publisher=None, oracle=None):
    return SignalMonitor(
        store,
        prices,
        oracle or FakeOracle(),
        publisher or FakePublisher(),
        settings,
        clock=lambda: WEEKDAY_NOON,
    )


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------
@pytest.mark.parametrize(
    "price, expected",
    [
        (94.0, "SL HIT"),
        (95.0, "SL HIT"),
        (104.9, None),
        (105.0, "TP1 HIT"),
        (111.0, "TP2 HIT"),
        (130.0, "TP3 HIT"),
    ],
)
def test_bullish_threshold_precedence(price, expected):
    assert threshold_status(Bias.BULLISH, price, 95.0, 105.0, 110.0, 120.0) == expected


@pytest.mark.parametrize(
    "price, expected",
    [
        (1.1050, "SL HIT"),
        (1.0950, None),
        (1.0900, "TP1 HIT"),
        (1.0850, "TP2 HIT"),
        (1.0700, "TP3 HIT"),
    ],
)
def test_bearish_thresholds_are_mirrored(price, expected):
    assert threshold_status(Bias.BEARISH, price, 1.1000, 1.0900, 1.0850, 1.0800) == expected


def test_zero_levels_never_fire():
    assert threshold_status(Bias.BULLISH, 50.0, 0.0, 0.0, 0.0, 0.0) is None
    assert threshold_status(Bias.BEARISH, 50.0, 0.0, 0.0, 0.0, 0.0) is None
    assert threshold_status(Bias.BULLISH, 150.0, 0.0, 120.0, 0.0, 0.0) == "TP1 HIT"


def test_stop_loss_checked_before_targets():
    # Malformed levels where SL sits above TP3 for a long still report SL.
    assert threshold_status(Bias.BULLISH, 130.0, 140.0, 105.0, 110.0, 120.0) == "SL HIT"


def test_compute_pnl_crypto_percent_and_forex_pips():
    assert compute_pnl(_signal(), 110.0) == pytest.approx(10.0)
    assert compute_pnl(_signal(bias=Bias.BEARISH), 110.0) == pytest.approx(-10.0)
    fx = _signal(Market.FOREX, entry_price=1.0850)
    assert compute_pnl(fx, 1.0875) == pytest.approx(25.0)
    fx_short = _signal(Market.FOREX, bias=Bias.BEARISH, entry_price=1.0850)
    assert compute_pnl(fx_short, 1.0875) == pytest.approx(-25.0)
    assert compute_pnl(_signal(entry_price=0.0), 110.0) == 0.0


def test_classify_event():
    assert classify_event(Bias.BULLISH, 100.0, 100.4) is None
    assert classify_event(Bias.BULLISH, 100.0, 100.5) == "momentum"
    assert classify_event(Bias.BULLISH, 100.0, 99.0) == "pullback"
    assert classify_event(Bias.BEARISH, 100.0, 99.0) == "momentum"
    assert classify_event(Bias.BEARISH, 100.0, 101.0) == "pullback"
    assert classify_event(Bias.BULLISH, 0.0, 101.0) is None
    assert classify_event(Bias.BULLISH, 100.0, 102.0, threshold_pct=5.0) is None


# ---------------------------------------------------------------------------
# Monitoring pass
# ---------------------------------------------------------------------------
def test_take_profit_completes_signal_and_posts_update(store, settings):
    store.upsert_binding(Binding(group_id="-1", lane="crypto"))
    store.upsert_binding(Binding(group_id="-2", lane="forex"))
    signal = store.create_signal(_signal())
    publisher = FakePublisher()
    oracle = FakeOracle(default="Trend intact. Targets remain valid.")

    (outcome,) = _monitor(store, settings, FakePrices(default=112.0), publisher, oracle).run_pass()

    assert outcome.action == "completed"
    assert outcome.status == "TP2 HIT"
    stored = store.get_signal(signal.id)
    assert stored.status == SignalStatus.COMPLETED
    assert stored.tracking_state["outcome"] == "TP2 HIT"
    assert store.get_active_signals() == []
    assert [chat for chat, _text, _topic in publisher.sent] == ["-1"]
    text = publisher.sent[0][1]
    assert "TP2 HIT 🟢🟢" in text
    assert "Running PnL: <b>+12.00%</b>" in text
    assert "Strong Momentum" in text
    assert "Trend intact" in text
    assert oracle.calls[0][2] == settings.update_max_tokens


def test_routine_update_stores_last_price_and_reschedules(store, settings):
    signal = store.create_signal(_signal())

    (outcome,) = _monitor(store, settings, FakePrices(default=101.0)).run_pass()

    assert outcome.action == "updated"
    assert outcome.event == "momentum"
    stored = store.get_signal(signal.id)
    assert stored.status == SignalStatus.ACTIVE
    assert stored.last_price == 101.0
    assert stored.last_checked_at == WEEKDAY_NOON
    assert stored.next_check_at == WEEKDAY_NOON + timedelta(seconds=settings.recheck_interval)


def test_event_compares_against_last_checked_price(store, settings):
    store.create_signal(_signal(tracking_state={"last_price": 103.0}))

    (outcome,) = _monitor(store, settings, FakePrices(default=102.0)).run_pass()

    # Still up 2% from entry, but down ~1% since the previous check.
    assert outcome.event == "pullback"
    assert outcome.pnl == pytest.approx(2.0)


def test_unresolved_price_only_advances_schedule(store, settings):
    signal = store.create_signal(_signal())
    publisher = FakePublisher()

    (outcome,) = _monitor(store, settings, FakePrices(default=None), publisher).run_pass()

    assert outcome.action == "deferred"
    stored = store.get_signal(signal.id)
    assert stored.status == SignalStatus.ACTIVE
    assert stored.last_price is None
    assert stored.next_check_at == WEEKDAY_NOON + timedelta(seconds=settings.recheck_interval)
    assert publisher.sent == []


def test_signals_not_yet_due_are_skipped(store, settings):
    store.create_signal(_signal(next_check_at=WEEKDAY_NOON + timedelta(minutes=5)))
    prices = FakePrices(default=130.0)

    assert _monitor(store, settings, prices).run_pass() == []
    assert prices.calls == []


def test_recheck_in_same_instant_is_idempotent(store, settings):
    store.upsert_binding(Binding(group_id="-1", lane="crypto"))
    store.create_signal(_signal())
    publisher = FakePublisher()
    monitor = _monitor(store, settings, FakePrices(default=101.0), publisher)

    first = monitor.run_pass()
    second = monitor.run_pass()

    assert len(first) == 1
    assert second == []
    assert len(publisher.sent) == 1


def test_forex_update_reports_pips(store, settings):
    store.upsert_binding(Binding(group_id="-9", lane="forex"))
    store.create_signal(
        _signal(
            Market.FOREX,
            entry_price=1.0850,
            stop_loss=1.0800,
            take_profit1=1.0950,
            take_profit2=1.1000,
            take_profit3=1.1100,
        )
    )
    publisher = FakePublisher()

    _monitor(store, settings, FakePrices(default=1.0875), publisher).run_pass()

    assert "Running Pips: <b>+25.0 Pips</b>" in publisher.sent[0][1]


def test_signal_deleted_mid_pass_is_a_silent_noop(store, settings, monkeypatch):
    signal = store.create_signal(_signal())
    publisher = FakePublisher()
    monkeypatch.setattr(store, "update_signal", lambda *_a, **_k: None)

    (outcome,) = _monitor(store, settings, FakePrices(default=130.0), publisher).run_pass()

    assert outcome.action == "missing"
    assert outcome.signal_id == signal.id
    assert publisher.sent == []


def test_error_on_one_signal_does_not_stop_pass(store, settings):
    store.create_signal(_signal(symbol="BAD/USDT"))
    good = store.create_signal(_signal(symbol="ETH/USDT"))
    prices = FakePrices({"BAD/USDT": RuntimeError("provider crash")}, default=101.0)

    outcomes = _monitor(store, settings, prices).run_pass()

    assert [o.signal_id for o in outcomes] == [good.id]


def test_failing_signal_is_rescheduled_and_not_rechecked_next_pass(store, settings):
    bad = store.create_signal(_signal(symbol="BAD/USDT"))
    prices = FakePrices({"BAD/USDT": RuntimeError("provider crash")})
    monitor = _monitor(store, settings, prices)

    assert monitor.run_pass() == []
    stored = store.get_signal(bad.id)
    assert stored.status == SignalStatus.ACTIVE
    assert stored.last_checked_at == WEEKDAY_NOON
    assert stored.next_check_at == WEEKDAY_NOON + timedelta(seconds=settings.recheck_interval)

    calls = len(prices.calls)
    assert monitor.run_pass() == []
    assert len(prices.calls) == calls
