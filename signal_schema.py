"""Canonical record types shared by the scanner, monitor and storage.

Every component reads and writes signals through the dataclasses defined
here so field names, enum spellings and timestamp encoding cannot drift
between the JSON file backend, the PostgreSQL backend and the chat layer.
``to_dict``/``from_dict`` are deliberately tolerant: rows written by older
deployments may carry prices as strings (``"0"``), missing timestamps or
legacy keys (``sl``, ``tp1``, ``type``, ``reasoning``, ``data``), and these
are mapped onto the canonical names.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class Market(str, Enum):
    CRYPTO = "crypto"
    FOREX = "forex"


class Bias(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class SignalStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class ScanMode(str, Enum):
    SIGNAL = "signal"
    SETUP = "setup"
    ANALYZE = "analyze"


# Legacy column names from the original table layout.
_LEGACY_SIGNAL_KEYS = {
    "type": "market",
    "reasoning": "narrative",
    "sl": "stop_loss",
    "tp1": "take_profit1",
    "tp2": "take_profit2",
    "tp3": "take_profit3",
    "data": "tracking_state",
    "last_update_at": "last_checked_at",
    "next_update_at": "next_check_at",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_float(value: Any, default: float = 0.0) -> float:
    """Best-effort conversion of stored prices to ``float``."""

    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).replace(",", "").strip())
    except ValueError:
        return default


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Coerce ISO strings, epoch seconds and datetimes into aware UTC datetimes."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(float(value), tz=timezone.utc)
    else:
        text = str(value).strip()
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class Signal:
    """A directional call tracked from creation until TP/SL or reset."""

    symbol: str
    market: Market
    bias: Bias
    narrative: str = ""
    status: SignalStatus = SignalStatus.ACTIVE
    timeframe: str = "1H"
    entry_price: float = 0.0
    stop_loss: float = 0.0
    take_profit1: float = 0.0
    take_profit2: float = 0.0
    take_profit3: float = 0.0
    created_at: datetime = field(default_factory=utcnow)
    last_checked_at: Optional[datetime] = None
    next_check_at: Optional[datetime] = None
    tracking_state: Dict[str, Any] = field(default_factory=dict)
    message_id: Optional[str] = None
    chat_id: Optional[str] = None
    topic_id: Optional[str] = None
    id: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.status == SignalStatus.ACTIVE

    @property
    def last_price(self) -> Optional[float]:
        price = to_float(self.tracking_state.get("last_price"), 0.0)
        return price if price > 0 else None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["market"] = self.market.value
        payload["bias"] = self.bias.value
        payload["status"] = self.status.value
        for key in ("created_at", "last_checked_at", "next_check_at"):
            payload[key] = format_timestamp(getattr(self, key))
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Signal":
        data: Dict[str, Any] = {}
        for key, value in raw.items():
            data[_LEGACY_SIGNAL_KEYS.get(key, key)] = value
        state = data.get("tracking_state") or {}
        if not isinstance(state, Mapping):
            state = {}
        state = dict(state)
        if "lastPrice" in state and "last_price" not in state:
            state["last_price"] = state.pop("lastPrice")
        raw_id = data.get("id")
        return cls(
            id=int(raw_id) if raw_id not in (None, "") else None,
            symbol=str(data.get("symbol", "")).upper(),
            market=Market(str(data.get("market", "crypto")).lower()),
            bias=Bias(str(data.get("bias", "neutral")).lower()),
            narrative=str(data.get("narrative") or ""),
            status=SignalStatus(str(data.get("status") or "active").lower()),
            timeframe=str(data.get("timeframe") or "1H"),
            entry_price=to_float(data.get("entry_price")),
            stop_loss=to_float(data.get("stop_loss")),
            take_profit1=to_float(data.get("take_profit1")),
            take_profit2=to_float(data.get("take_profit2")),
            take_profit3=to_float(data.get("take_profit3")),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
            last_checked_at=parse_timestamp(data.get("last_checked_at")),
            next_check_at=parse_timestamp(data.get("next_check_at")),
            tracking_state=state,
            message_id=_optional_str(data.get("message_id")),
            chat_id=_optional_str(data.get("chat_id")),
            topic_id=_optional_str(data.get("topic_id")),
        )


@dataclass
class Binding:
    """Destination channel (and optional topic) that receives published signals."""

    group_id: str
    lane: str
    topic_id: Optional[str] = None
    market: Optional[str] = None
    purpose: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> tuple:
        return (str(self.group_id), str(self.topic_id or ""))

    def accepts(self, market: Market | str) -> bool:
        """Return ``True`` when a signal for ``market`` should be posted here."""

        target = str(getattr(market, "value", market)).lower()
        if self.market:
            return self.market.lower() == target
        lane = (self.lane or "").lower()
        if lane in {m.value for m in Market}:
            return lane == target
        return True

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = format_timestamp(self.created_at)
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Binding":
        market = raw.get("market")
        return cls(
            group_id=str(raw.get("group_id") or raw.get("groupId") or ""),
            lane=str(raw.get("lane") or ""),
            topic_id=_optional_str(raw.get("topic_id", raw.get("topicId"))),
            market=str(market).lower() if market else None,
            purpose=_optional_str(raw.get("purpose")),
            created_at=parse_timestamp(raw.get("created_at")) or utcnow(),
        )


@dataclass
class TradeRecord:
    """Ledger entry for an executed (or failed) auto-buy swap."""

    user_id: str
    mint: str
    amount_in: str
    status: str = "pending"
    wallet: Optional[str] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = format_timestamp(self.created_at)
        return payload

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "TradeRecord":
        raw_id = raw.get("id")
        return cls(
            id=int(raw_id) if raw_id not in (None, "") else None,
            user_id=str(raw.get("user_id", "")),
            mint=str(raw.get("mint", "")),
            amount_in=str(raw.get("amount_in", "0")),
            status=str(raw.get("status") or "pending"),
            wallet=_optional_str(raw.get("wallet")),
            tx_hash=_optional_str(raw.get("tx_hash")),
            error=_optional_str(raw.get("error")),
            created_at=parse_timestamp(raw.get("created_at")) or utcnow(),
        )


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


__all__ = [
    "Bias",
    "Binding",
    "Market",
    "ScanMode",
    "Signal",
    "SignalStatus",
    "TradeRecord",
    "format_timestamp",
    "parse_timestamp",
    "to_float",
    "utcnow",
]
