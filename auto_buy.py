"""Auto-buy executor: wrapped SOL into a target mint with retries."""

from __future__ import annotations

import math
import time
from typing import Any, Callable, Optional

import requests

from log_utils import setup_logger
from observability import log_event
from signal_schema import TradeRecord
from swap_router import LAMPORTS_PER_SOL, WRAPPED_SOL_MINT, SwapError, SwapRouter, SwapUnconfirmedError, load_keypair

logger = setup_logger(__name__)

# Lamports kept aside for the network fee of the swap itself.
FEE_RESERVE_LAMPORTS = 5000


class AutoBuyer:
    """Execute one buy per (user, mint) and record it in the trade ledger."""

    def __init__(self, router: SwapRouter, store, *, sleep: Callable[[float], Any] = time.sleep) -> None:
        self.router = router
        self.store = store
        self.sleep = sleep

    def execute_buy(
        self,
        user_id: str,
        mint: str,
        amount_sol: str | float,
        secret: Any,
        *,
        slippage_bps: int = 1500,
        priority_fee: str | float = "0.0015",
        duplicate_protection: bool = True,
        max_attempts: int = 3,
        mev_protection: bool = True,
    ) -> TradeRecord:
        """Buy ``amount_sol`` worth of ``mint`` for ``user_id``.

        Returns the trade record.  Persisted statuses are ``completed`` (with
        the signature), ``unconfirmed`` (submitted but never confirmed, with
        the signature; it is not retried and blocks repeats) and ``failed``
        (with the last swap error).  ``skipped_duplicate``,
        ``insufficient_balance`` and a ``failed`` wallet or balance check are
        returned without being persisted.  Swap failures never raise.
        """

        user_id = str(user_id)
        amount = str(amount_sol)
        if duplicate_protection and self.store.has_trade(user_id, mint):
            logger.info("Skipping auto-buy for user %s - already traded %s", user_id, mint)
            return TradeRecord(user_id=user_id, mint=mint, amount_in=amount, status="skipped_duplicate")

        try:
            keypair = load_keypair(secret)
        except (TypeError, ValueError) as exc:
            logger.warning("Auto-buy for %s aborted: unreadable wallet secret (%s)", user_id, type(exc).__name__)
            return TradeRecord(user_id=user_id, mint=mint, amount_in=amount, status="failed", error="Invalid wallet secret.")
        wallet = str(keypair.pubkey())
        lamports = int(math.floor(float(amount_sol) * LAMPORTS_PER_SOL))
        try:
            balance = self.router.get_balance(wallet)
        except (SwapError, requests.RequestException) as exc:
            logger.warning("Auto-buy for %s aborted: balance lookup failed: %s", user_id, exc)
            return TradeRecord(
                user_id=user_id,
                mint=mint,
                amount_in=amount,
                wallet=wallet,
                status="failed",
                error=f"Balance check failed: {exc}",
            )
        if balance < lamports + FEE_RESERVE_LAMPORTS:
            logger.warning(
                "Auto-buy skipped for %s: balance %d < %d lamports", user_id, balance, lamports + FEE_RESERVE_LAMPORTS
            )
            return TradeRecord(
                user_id=user_id,
                mint=mint,
                amount_in=amount,
                wallet=wallet,
                status="insufficient_balance",
                error="Insufficient balance.",
            )

        signature: Optional[str] = None
        unconfirmed: Optional[SwapUnconfirmedError] = None
        last_error: Optional[Exception] = None
        for attempt in range(1, max_attempts + 1):
            try:
                quote = self.router.get_quote(WRAPPED_SOL_MINT, mint, lamports, slippage_bps)
                signature = self.router.swap(keypair, quote, priority_fee, mev_protection=mev_protection)
                break
            except SwapUnconfirmedError as exc:
                # Already submitted; another attempt could buy twice.
                unconfirmed = exc
                logger.warning("Swap for user %s submitted but unconfirmed: %s", user_id, exc)
                break
            except (SwapError, requests.RequestException) as exc:
                last_error = exc
                logger.warning("Swap attempt %d failed for user %s: %s", attempt, user_id, exc)
                if attempt < max_attempts:
                    self.sleep(1.0 * attempt)

        if unconfirmed is not None:
            record = TradeRecord(
                user_id=user_id,
                mint=mint,
                amount_in=amount,
                wallet=wallet,
                status="unconfirmed",
                tx_hash=unconfirmed.signature,
                error=str(unconfirmed),
            )
        elif signature is None:
            record = TradeRecord(
                user_id=user_id,
                mint=mint,
                amount_in=amount,
                wallet=wallet,
                status="failed",
                error=str(last_error) if last_error else "unknown error",
            )
        else:
            record = TradeRecord(
                user_id=user_id,
                mint=mint,
                amount_in=amount,
                wallet=wallet,
                status="completed",
                tx_hash=signature,
            )
        stored = self.store.create_trade(record)
        log_event(logger, "auto_buy", user_id=user_id, mint=mint, status=stored.status, tx_hash=stored.tx_hash)
        return stored


__all__ = ["AutoBuyer", "FEE_RESERVE_LAMPORTS"]
