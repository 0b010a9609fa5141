"""
Durable storage for signals, lane bindings and the auto-buy trade ledger.

Two backends share one interface:

* **JSON files** (default) – ``signals.json``, ``bindings.json`` and
  ``trades.json`` under ``DATA_DIR``.  Writes go through a temporary file and
  ``os.replace`` so a crash never leaves a half-written document behind.
* **PostgreSQL** – enabled when ``DATABASE_URL`` is set.  Each table keeps
  the full record in a ``JSONB`` column next to the few columns used in
  predicates (market, status, created_at, user/mint).

Every backend failure is raised as :class:`StorageError`; callers decide
whether that aborts a scan or only skips one signal.  The store never
decides policy (cooldowns, resets) itself, it only answers the predicate
lookups the scanner and monitor ask for.
"""

from __future__ import annotations

import json
import os
import threading
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import pandas as pd

from log_utils import setup_logger
from signal_schema import (
    Binding,
    Market,
    Signal,
    SignalStatus,
    TradeRecord,
)

logger = setup_logger(__name__)

# Columns exposed to the listing/history view, in display order.
SIGNAL_HISTORY_COLUMNS = [
    "id",
    "created_at",
    "symbol",
    "market",
    "bias",
    "status",
    "entry_price",
    "stop_loss",
    "take_profit1",
    "take_profit2",
    "take_profit3",
    "last_checked_at",
    "next_check_at",
    "last_price",
    "outcome",
]


class StorageError(RuntimeError):
    """Raised when the storage backend cannot complete an operation."""


def _market_value(market: Market | str | None) -> Optional[str]:
    if market is None:
        return None
    return str(getattr(market, "value", market)).lower()


def _sort_newest_first(signals: Iterable[Signal]) -> List[Signal]:
    return sorted(signals, key=lambda s: (s.created_at, s.id or 0), reverse=True)


def _filter_bindings(
    bindings: List[Binding], market: Market | str | None, lane: Optional[str]
) -> List[Binding]:
    if market is not None:
        bindings = [b for b in bindings if b.accepts(market)]
    if lane is not None:
        bindings = [b for b in bindings if (b.lane or "").lower() == lane.lower()]
    return bindings


def _raw_id(row: Mapping[str, Any]) -> int:
    try:
        return int(row.get("id") or 0)
    except (TypeError, ValueError):
        return 0


def _apply_fields(signal: Signal, fields: Mapping[str, Any]) -> Signal:
    unknown = [key for key in fields if not hasattr(signal, key)]
    if unknown:
        raise StorageError(f"Unknown signal fields: {', '.join(sorted(unknown))}")
    return replace(signal, **dict(fields))


class BaseSignalStore:
    """Shared read helpers built on top of the backend primitives."""

    def get_signals(self) -> List[Signal]:  # pragma: no cover - interface
        raise NotImplementedError

    def get_active_signals(self, market: Market | str | None = None) -> List[Signal]:
        target = _market_value(market)
        return [
            signal
            for signal in self.get_signals()
            if signal.status == SignalStatus.ACTIVE
            and (target is None or signal.market.value == target)
        ]

    def latest_signal(self, market: Market | str) -> Optional[Signal]:
        """Return the most recently created signal for ``market`` (any status)."""

        target = _market_value(market)
        for signal in self.get_signals():
            if signal.market.value == target:
                return signal
        return None

    def get_signal(self, signal_id: int) -> Optional[Signal]:
        for signal in self.get_signals():
            if signal.id == signal_id:
                return signal
        return None

    def load_signal_history_df(self) -> pd.DataFrame:
        """Return every stored signal as a DataFrame, newest first."""

        rows = []
        for signal in self.get_signals():
            rows.append(
                {
                    "id": signal.id,
                    "created_at": signal.created_at,
                    "symbol": signal.symbol,
                    "market": signal.market.value,
                    "bias": signal.bias.value,
                    "status": signal.status.value,
                    "entry_price": signal.entry_price,
                    "stop_loss": signal.stop_loss,
                    "take_profit1": signal.take_profit1,
                    "take_profit2": signal.take_profit2,
                    "take_profit3": signal.take_profit3,
                    "last_checked_at": signal.last_checked_at,
                    "next_check_at": signal.next_check_at,
                    "last_price": signal.last_price,
                    "outcome": signal.tracking_state.get("outcome"),
                }
            )
        df = pd.DataFrame(rows, columns=SIGNAL_HISTORY_COLUMNS)
        if df.empty:
            return df
        for column in ("created_at", "last_checked_at", "next_check_at"):
            df[column] = pd.to_datetime(df[column], utc=True, errors="coerce")
        return df.reset_index(drop=True)

    def summarise_outcomes(self) -> Dict[str, Dict[str, int]]:
        """Count signals per market by status and by recorded TP/SL outcome."""

        df = self.load_signal_history_df()
        summary: Dict[str, Dict[str, int]] = {}
        if df.empty:
            return summary
        for market, group in df.groupby("market"):
            counts: Dict[str, int] = {
                "total": int(len(group)),
                "active": int((group["status"] == SignalStatus.ACTIVE.value).sum()),
                "completed": int((group["status"] == SignalStatus.COMPLETED.value).sum()),
            }
            outcomes = group["outcome"].dropna()
            for outcome, count in outcomes.value_counts().items():
                counts[str(outcome)] = int(count)
            summary[str(market)] = counts
        return summary


class JsonSignalStore(BaseSignalStore):
    """File-backed store used by default and in tests."""

    def __init__(self, signals_file: str, bindings_file: str, trades_file: str) -> None:
        self.signals_file = signals_file
        self.bindings_file = bindings_file
        self.trades_file = trades_file
        self._lock = threading.RLock()

    # -- file primitives -------------------------------------------------
    def _read(self, path: str) -> List[Dict[str, Any]]:
        if not os.path.exists(path):
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                content = f.read().strip()
        except OSError as exc:
            raise StorageError(f"Failed to read {path}: {exc}") from exc
        if not content:
            logger.warning("Storage file %s is empty; treating as no rows", path)
            return []
        try:
            rows = json.loads(content)
        except json.JSONDecodeError as exc:
            raise StorageError(f"{path} contains invalid JSON: {exc}") from exc
        if not isinstance(rows, list):
            raise StorageError(f"{path} does not contain a JSON list")
        return [row for row in rows if isinstance(row, dict)]

    def _write(self, path: str, rows: List[Dict[str, Any]]) -> None:
        directory = os.path.dirname(path)
        tmp_path = f"{path}.tmp"
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(rows, f, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StorageError(f"Failed to write {path}: {exc}") from exc

    def _load_rows(self) -> Tuple[List[Signal], List[Dict[str, Any]]]:
        """Return parsed signals plus the raw rows that could not be parsed.

        Unreadable rows are written back unchanged on every rewrite so the
        file never loses history.
        """

        signals: List[Signal] = []
        opaque: List[Dict[str, Any]] = []
        for row in self._read(self.signals_file):
            try:
                signals.append(Signal.from_dict(row))
            except (ValueError, TypeError) as exc:
                logger.warning("Keeping unreadable signal row %s as-is: %s", row.get("id"), exc)
                opaque.append(row)
        return signals, opaque

    def _load_signals(self) -> List[Signal]:
        return self._load_rows()[0]

    def _save_signals(self, signals: List[Signal], opaque: List[Dict[str, Any]]) -> None:
        self._write(self.signals_file, [s.to_dict() for s in signals] + list(opaque))

    # -- signals ---------------------------------------------------------
    def get_signals(self) -> List[Signal]:
        with self._lock:
            return _sort_newest_first(self._load_signals())

    def create_signal(self, signal: Signal) -> Signal:
        with self._lock:
            signals, opaque = self._load_rows()
            ids = [s.id or 0 for s in signals] + [_raw_id(row) for row in opaque]
            stored = replace(signal, id=max(ids, default=0) + 1)
            signals.append(stored)
            self._save_signals(signals, opaque)
            return stored

    def update_signal(self, signal_id: int, **fields: Any) -> Optional[Signal]:
        """Apply ``fields`` to the signal; ``None`` when the row no longer exists."""

        with self._lock:
            signals, opaque = self._load_rows()
            for index, signal in enumerate(signals):
                if signal.id == signal_id:
                    updated = _apply_fields(signal, fields)
                    signals[index] = updated
                    self._save_signals(signals, opaque)
                    return updated
            return None

    def delete_signal(self, signal_id: int) -> bool:
        with self._lock:
            signals, opaque = self._load_rows()
            remaining = [s for s in signals if s.id != signal_id]
            if len(remaining) == len(signals):
                return False
            self._save_signals(remaining, opaque)
            return True

    # -- bindings --------------------------------------------------------
    def get_bindings(
        self, market: Market | str | None = None, lane: Optional[str] = None
    ) -> List[Binding]:
        with self._lock:
            bindings = [Binding.from_dict(row) for row in self._read(self.bindings_file)]
        return _filter_bindings(bindings, market, lane)

    def upsert_binding(self, binding: Binding) -> Binding:
        with self._lock:
            bindings = [Binding.from_dict(row) for row in self._read(self.bindings_file)]
            for index, existing in enumerate(bindings):
                if existing.key == binding.key:
                    merged = replace(
                        existing,
                        lane=binding.lane,
                        market=binding.market,
                        purpose=binding.purpose or existing.purpose,
                    )
                    bindings[index] = merged
                    self._write(self.bindings_file, [b.to_dict() for b in bindings])
                    return merged
            bindings.append(binding)
            self._write(self.bindings_file, [b.to_dict() for b in bindings])
            return binding

    # -- trades ----------------------------------------------------------
    def get_trades(self, user_id: str) -> List[TradeRecord]:
        with self._lock:
            trades = [TradeRecord.from_dict(row) for row in self._read(self.trades_file)]
        return sorted(
            (t for t in trades if t.user_id == str(user_id)),
            key=lambda t: t.created_at,
            reverse=True,
        )

    def has_trade(self, user_id: str, mint: str) -> bool:
        """Return ``True`` when a non-failed trade exists for ``(user_id, mint)``."""

        return any(t.mint == mint and t.status != "failed" for t in self.get_trades(user_id))

    def create_trade(self, record: TradeRecord) -> TradeRecord:
        with self._lock:
            rows = self._read(self.trades_file)
            next_id = max((int(r.get("id") or 0) for r in rows), default=0) + 1
            stored = replace(record, id=next_id)
            rows.append(stored.to_dict())
            self._write(self.trades_file, rows)
            return stored


class PostgresSignalStore(BaseSignalStore):
    """PostgreSQL-backed store; each row keeps the full record as JSONB."""

    def __init__(self, database_url: str) -> None:
        try:
            import psycopg2
            from psycopg2.extras import Json
        except ImportError as exc:
            raise StorageError("psycopg2 is required when DATABASE_URL is set") from exc
        self._psycopg2 = psycopg2
        self._json = Json
        self._lock = threading.RLock()
        try:
            self._conn = psycopg2.connect(database_url)
            self._conn.autocommit = True
            with self._conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS signals (
                        id         SERIAL PRIMARY KEY,
                        market     TEXT NOT NULL,
                        status     TEXT NOT NULL,
                        created_at TIMESTAMPTZ NOT NULL,
                        data       JSONB NOT NULL
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS group_bindings (
                        group_id TEXT NOT NULL,
                        topic_id TEXT NOT NULL DEFAULT '',
                        data     JSONB NOT NULL,
                        PRIMARY KEY (group_id, topic_id)
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS trades (
                        id      SERIAL PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        mint    TEXT NOT NULL,
                        data    JSONB NOT NULL
                    )
                    """
                )
        except psycopg2.Error as exc:
            raise StorageError(f"Database initialisation failed: {exc}") from exc
        logger.info("Connected to PostgreSQL for signal storage.")

    def _execute(self, sql: str, params: tuple = ()) -> List[tuple]:
        with self._lock:
            try:
                with self._conn.cursor() as cur:
                    cur.execute(sql, params)
                    if cur.description is None:
                        return []
                    return list(cur.fetchall())
            except self._psycopg2.Error as exc:
                raise StorageError(f"Database query failed: {exc}") from exc

    @staticmethod
    def _row_to_signal(row: tuple) -> Signal:
        signal_id, data = row
        payload = dict(data)
        payload["id"] = signal_id
        return Signal.from_dict(payload)

    def get_signals(self) -> List[Signal]:
        rows = self._execute("SELECT id, data FROM signals ORDER BY created_at DESC, id DESC")
        return [self._row_to_signal(row) for row in rows]

    def get_active_signals(self, market: Market | str | None = None) -> List[Signal]:
        target = _market_value(market)
        if target is None:
            rows = self._execute(
                "SELECT id, data FROM signals WHERE status = %s ORDER BY created_at DESC",
                (SignalStatus.ACTIVE.value,),
            )
        else:
            rows = self._execute(
                "SELECT id, data FROM signals WHERE status = %s AND market = %s ORDER BY created_at DESC",
                (SignalStatus.ACTIVE.value, target),
            )
        return [self._row_to_signal(row) for row in rows]

    def latest_signal(self, market: Market | str) -> Optional[Signal]:
        rows = self._execute(
            "SELECT id, data FROM signals WHERE market = %s ORDER BY created_at DESC LIMIT 1",
            (_market_value(market),),
        )
        return self._row_to_signal(rows[0]) if rows else None

    def get_signal(self, signal_id: int) -> Optional[Signal]:
        rows = self._execute("SELECT id, data FROM signals WHERE id = %s", (signal_id,))
        return self._row_to_signal(rows[0]) if rows else None

    def create_signal(self, signal: Signal) -> Signal:
        payload = signal.to_dict()
        payload.pop("id", None)
        rows = self._execute(
            "INSERT INTO signals (market, status, created_at, data) VALUES (%s, %s, %s, %s) RETURNING id",
            (signal.market.value, signal.status.value, signal.created_at, self._json(payload)),
        )
        return replace(signal, id=int(rows[0][0]))

    def update_signal(self, signal_id: int, **fields: Any) -> Optional[Signal]:
        with self._lock:
            current = self.get_signal(signal_id)
            if current is None:
                return None
            updated = _apply_fields(current, fields)
            payload = updated.to_dict()
            payload.pop("id", None)
            rows = self._execute(
                "UPDATE signals SET status = %s, data = %s WHERE id = %s RETURNING id",
                (updated.status.value, self._json(payload), signal_id),
            )
            return updated if rows else None

    def delete_signal(self, signal_id: int) -> bool:
        rows = self._execute("DELETE FROM signals WHERE id = %s RETURNING id", (signal_id,))
        return bool(rows)

    def get_bindings(
        self, market: Market | str | None = None, lane: Optional[str] = None
    ) -> List[Binding]:
        rows = self._execute("SELECT data FROM group_bindings")
        return _filter_bindings([Binding.from_dict(row[0]) for row in rows], market, lane)

    def upsert_binding(self, binding: Binding) -> Binding:
        self._execute(
            """
            INSERT INTO group_bindings (group_id, topic_id, data) VALUES (%s, %s, %s)
            ON CONFLICT (group_id, topic_id) DO UPDATE SET data = EXCLUDED.data
            """,
            (binding.group_id, binding.topic_id or "", self._json(binding.to_dict())),
        )
        return binding

    def get_trades(self, user_id: str) -> List[TradeRecord]:
        rows = self._execute(
            "SELECT id, data FROM trades WHERE user_id = %s ORDER BY id DESC", (str(user_id),)
        )
        return [TradeRecord.from_dict({**row[1], "id": row[0]}) for row in rows]

    def has_trade(self, user_id: str, mint: str) -> bool:
        rows = self._execute(
            "SELECT 1 FROM trades WHERE user_id = %s AND mint = %s AND data->>'status' <> 'failed' LIMIT 1",
            (str(user_id), mint),
        )
        return bool(rows)

    def create_trade(self, record: TradeRecord) -> TradeRecord:
        payload = record.to_dict()
        payload.pop("id", None)
        rows = self._execute(
            "INSERT INTO trades (user_id, mint, data) VALUES (%s, %s, %s) RETURNING id",
            (record.user_id, record.mint, self._json(payload)),
        )
        return replace(record, id=int(rows[0][0]))


def open_store(settings) -> BaseSignalStore:
    """Return the configured backend, falling back to JSON files."""

    if settings.database_url:
        try:
            return PostgresSignalStore(settings.database_url)
        except StorageError as exc:
            logger.exception("%s. Falling back to file storage.", exc)
    return JsonSignalStore(settings.signals_file, settings.bindings_file, settings.trades_file)


__all__ = [
    "BaseSignalStore",
    "JsonSignalStore",
    "PostgresSignalStore",
    "SIGNAL_HISTORY_COLUMNS",
    "StorageError",
    "open_store",
]
