import pytest

from fallback import Decision, FallbackExhausted, try_in_order


def test_first_success_wins_and_later_items_untouched():
    seen = []

    def attempt(item):
        seen.append(item)
        return None if item == "a" else item.upper()

    item, result = try_in_order(["a", "b", "c"], attempt)

    assert (item, result) == ("b", "B")
    assert seen == ["a", "b"]


def test_retry_uses_backoff_between_attempts():
    sleeps = []
    calls = {"n": 0}

    def attempt(item):
        calls["n"] += 1
        if calls["n"] < 3:
            raise ConnectionError("flaky")
        return "ok"

    item, result = try_in_order(
        ["only"],
        attempt,
        attempts=3,
        backoff=lambda i: float(i + 1),
        sleep=sleeps.append,
    )

    assert result == "ok"
    assert sleeps == [1.0, 2.0]


def test_next_decision_abandons_item_immediately():
    calls = []

    def attempt(item):
        calls.append(item)
        if item == "bad":
            raise PermissionError("denied")
        return item

    item, _ = try_in_order(
        ["bad", "good"],
        attempt,
        attempts=3,
        classify=lambda exc, i: Decision.NEXT,
    )

    assert item == "good"
    assert calls == ["bad", "good"]


def test_raise_decision_propagates():
    def attempt(item):
        raise ValueError("fatal")

    with pytest.raises(ValueError):
        try_in_order(["x", "y"], attempt, classify=lambda exc, i: Decision.RAISE)


def test_exhaustion_reports_last_error():
    def attempt(item):
        raise TimeoutError(f"{item} timed out")

    with pytest.raises(FallbackExhausted) as excinfo:
        try_in_order(["p1", "p2"], attempt, attempts=2, label="price")

    assert excinfo.value.label == "price"
    assert "p2 timed out" in str(excinfo.value.last_error)
