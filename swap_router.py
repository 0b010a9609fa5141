"""Jupiter quote/swap access with mirror failover and a proxy last resort.

Quotes walk eight Jupiter mirrors (three attempts each, status-aware
backoff) and then a chain of public forwarding proxies.  Swaps walk the same
mirrors once each, sign the returned versioned transaction locally with
``solders`` and submit it through the configured Solana JSON-RPC node.
"""

from __future__ import annotations

import base64
import json
import math
import time
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import quote as urlquote, urlencode

import requests
from solders.errors import BincodeError, SignerError
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

from fallback import Decision, FallbackExhausted, try_in_order
from log_utils import setup_logger
from observability import record_metric

logger = setup_logger(__name__)

WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"
LAMPORTS_PER_SOL = 1_000_000_000

JUPITER_ENDPOINTS: tuple = (
    "https://quote-api.jup.ag/v6",
    "https://jupiter-quote-api.jup.ag/v6",
    "https://quote.jup.ag/v6",
    "https://jup.nodes.bitflow.live/v6",
    "https://api.jup.ag/swap/v6",
    "https://public.jupiterapi.com",
    "https://jupiter.api.dex.guru/v6",
    "https://solana-gateway.hellomoon.io/v1/jupiter/quote",
)

PRIMARY_QUOTE_URL = "https://quote-api.jup.ag/v6/quote"


def _encoded(prefix: str) -> Callable[[str], str]:
    return lambda target: prefix + urlquote(target, safe="")


def _raw(prefix: str) -> Callable[[str], str]:
    return lambda target: prefix + target


PROXY_SERVICES: tuple = (
    _encoded("https://api.allorigins.win/get?url="),
    _raw("https://thingproxy.freeboard.io/fetch/"),
    _encoded("https://corsproxy.io/?"),
    _raw("https://cors-anywhere.herokuapp.com/"),
    _raw("https://proxy.cors.sh/"),
    _encoded("https://api.codetabs.com/v1/proxy?quest="),
    _encoded(
        "https://api.proxyscrape.com/v2/?request=getproxies&protocol=http&timeout=10000"
        "&country=all&ssl=all&anonymity=all&target="
    ),
)

QUOTE_HEADERS = {"Accept": "application/json", "User-Agent": "SolanaSMCBot/1.0"}

_DNS_FAILURE_HINTS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo failed",
    "nameresolutionerror",
    "failed to resolve",
)


class SwapError(RuntimeError):
    """Base error for quote and swap failures."""


class ExecutionUnreachableError(SwapError):
    """Every quote mirror and every proxy failed."""

    def __init__(self) -> None:
        super().__init__(
            "Execution failed: Trade routes are currently unreachable. This is often due "
            "to network restrictions. Please try again in 1 minute."
        )


class SwapRejectedError(SwapError):
    """The routing service or RPC node answered and refused the request."""

    def __init__(self, message: str, body: Any = None, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.body = body
        self.status = status


class SwapUnconfirmedError(SwapError):
    """A transaction was handed to the RPC node but its outcome is unknown.

    The transaction may still land, so callers must not submit another one
    for the same order.  ``signature`` identifies it for a later lookup.
    """

    def __init__(self, signature: str, reason: Any = None) -> None:
        super().__init__(f"Transaction {signature} was submitted but not confirmed: {reason}")
        self.signature = signature


def _status_of(exc: BaseException) -> Optional[int]:
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None) if response is not None else None


def _is_dns_failure(exc: BaseException) -> bool:
    if not isinstance(exc, requests.ConnectionError):
        return False
    text = repr(exc).lower()
    return any(hint in text for hint in _DNS_FAILURE_HINTS)


def _body_of(response: Any) -> Any:
    try:
        return response.json()
    except ValueError:
        return getattr(response, "text", "")


def load_keypair(secret: str | bytes | Keypair) -> Keypair:
    """Return a ``Keypair`` from a base58 secret string or 64 raw bytes."""

    if isinstance(secret, Keypair):
        return secret
    if isinstance(secret, (bytes, bytearray)):
        return Keypair.from_bytes(bytes(secret))
    return Keypair.from_base58_string(secret.strip())


class SwapRouter:
    """Quote, swap and balance access for the auto-buy executor."""

    def __init__(
        self,
        rpc_url: str,
        *,
        endpoints: Sequence[str] = JUPITER_ENDPOINTS,
        proxies: Sequence[Callable[[str], str]] = PROXY_SERVICES,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], Any] = time.sleep,
        quote_timeout: float = 25.0,
        proxy_timeout: float = 15.0,
        swap_timeout: float = 15.0,
        confirm_timeout: float = 60.0,
        confirm_poll: float = 2.0,
    ) -> None:
        self.rpc_url = rpc_url
        self.endpoints = list(endpoints)
        self.proxies = list(proxies)
        self.session = session or requests.Session()
        self.sleep = sleep
        self.quote_timeout = quote_timeout
        self.proxy_timeout = proxy_timeout
        self.swap_timeout = swap_timeout
        self.confirm_timeout = confirm_timeout
        self.confirm_poll = confirm_poll

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------
    def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int | str,
        slippage_bps: int = 100,
    ) -> Dict[str, Any]:
        """Return a Jupiter quote carrying a non-empty ``outAmount``.

        Raises :class:`ExecutionUnreachableError` once every mirror and every
        proxy has failed.
        """

        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": int(slippage_bps),
            "onlyDirectRoutes": "false",
            "asLegacyTransaction": "false",
        }

        def _attempt(endpoint: str) -> Optional[Dict[str, Any]]:
            logger.info("Requesting quote from %s", endpoint)
            response = self.session.get(
                f"{endpoint}/quote",
                params=params,
                headers=QUOTE_HEADERS,
                timeout=self.quote_timeout,
            )
            response.raise_for_status()
            data = response.json()
            if isinstance(data, dict) and data.get("outAmount"):
                return data
            logger.warning("Quote from %s carried no outAmount", endpoint)
            return None

        def _classify(exc: BaseException, attempt: int) -> Decision:
            status = _status_of(exc)
            logger.warning("Quote error on attempt %d (status=%s): %s", attempt + 1, status, exc)
            if status in (400, 401, 403, 429):
                self.sleep(2.0 * (attempt + 1))
                if status in (401, 403):
                    return Decision.NEXT
            if _is_dns_failure(exc):
                return Decision.NEXT
            return Decision.RETRY

        try:
            endpoint, quote = try_in_order(
                self.endpoints,
                _attempt,
                attempts=3,
                classify=_classify,
                backoff=lambda attempt: 1.0 * (attempt + 1),
                sleep=self.sleep,
                label="jupiter quote",
            )
        except FallbackExhausted as exc:
            logger.warning("All quote mirrors failed (%s); trying proxies", exc.last_error)
            return self._quote_via_proxies(input_mint, output_mint, amount, slippage_bps)
        record_metric("quote_endpoint_hit", 1, labels={"endpoint": endpoint})
        return quote

    def _quote_via_proxies(
        self, input_mint: str, output_mint: str, amount: int | str, slippage_bps: int
    ) -> Dict[str, Any]:
        target = PRIMARY_QUOTE_URL + "?" + urlencode(
            {
                "inputMint": input_mint,
                "outputMint": output_mint,
                "amount": str(amount),
                "slippageBps": int(slippage_bps),
            }
        )

        def _attempt(build: Callable[[str], str]) -> Optional[Dict[str, Any]]:
            url = build(target)
            logger.info("Trying quote proxy %s", url.split("?", 1)[0])
            response = self.session.get(url, timeout=self.proxy_timeout)
            response.raise_for_status()
            return unwrap_proxy_payload(response.json())

        try:
            _, quote = try_in_order(
                self.proxies,
                _attempt,
                attempts=1,
                classify=lambda exc, attempt: Decision.NEXT,
                label="quote proxy",
            )
        except FallbackExhausted as exc:
            logger.error("Quote proxies exhausted: %s", exc.last_error)
            record_metric("quote_unreachable", 1)
            raise ExecutionUnreachableError() from exc
        logger.info("Proxy fallback produced a quote")
        record_metric("quote_proxy_hit", 1)
        return quote

    # ------------------------------------------------------------------
    # Swaps
    # ------------------------------------------------------------------
    def swap(
        self,
        keypair_secret: str | bytes | Keypair,
        quote: Dict[str, Any],
        priority_fee: str | float = "0.0015",
        *,
        mev_protection: bool = True,
    ) -> str:
        """Build, sign, submit and confirm a swap; return the signature.

        Mirrors are only abandoned while nothing has reached the RPC node.
        An HTTP refusal from the node raises :class:`SwapRejectedError`; a
        submitted transaction whose outcome is unknown raises
        :class:`SwapUnconfirmedError`.  ``mev_protection`` is accepted for
        caller compatibility and has no effect on the swap request.
        """

        keypair = load_keypair(keypair_secret)
        body = {
            "quoteResponse": quote,
            "userPublicKey": str(keypair.pubkey()),
            "wrapAndUnwrapSol": True,
            "useSharedAccounts": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": int(math.floor(float(priority_fee) * LAMPORTS_PER_SOL)),
        }
        last_error: Optional[BaseException] = None
        for endpoint in self.endpoints:
            try:
                response = self.session.post(f"{endpoint}/swap", json=body, timeout=self.swap_timeout)
            except requests.RequestException as exc:
                last_error = exc
                logger.warning("Swap request to %s failed: %s", endpoint, exc)
                continue
            if response.status_code >= 400:
                raise SwapRejectedError(
                    f"Swap rejected by {endpoint} (HTTP {response.status_code})",
                    body=_body_of(response),
                    status=response.status_code,
                )
            payload = _body_of(response)
            encoded = payload.get("swapTransaction") if isinstance(payload, dict) else None
            if not encoded:
                raise SwapRejectedError(f"Swap response from {endpoint} had no transaction", body=payload)
            try:
                signature = self._sign_and_submit(keypair, encoded)
            except requests.RequestException as exc:
                response = getattr(exc, "response", None)
                if response is not None:
                    raise SwapRejectedError(
                        f"RPC node refused transaction from {endpoint} (HTTP {response.status_code})",
                        body=_body_of(response),
                        status=response.status_code,
                    ) from exc
                last_error = exc
                logger.warning("RPC submission via %s failed: %s", endpoint, exc)
                continue
            record_metric("swap_submitted", 1, labels={"endpoint": endpoint})
            return signature
        raise SwapError(f"Failed to execute swap on Jupiter. Last error: {last_error}")

    def _sign_and_submit(self, keypair: Keypair, encoded_tx: str) -> str:
        try:
            raw = VersionedTransaction.from_bytes(base64.b64decode(encoded_tx, validate=True))
            signed = VersionedTransaction(raw.message, [keypair])
        except (TypeError, ValueError, BincodeError, SignerError) as exc:
            raise SwapRejectedError(f"Swap transaction could not be signed: {exc}", body=encoded_tx) from exc
        local_signature = str(signed.signatures[0])
        try:
            signature = self._rpc(
                "sendTransaction",
                [
                    base64.b64encode(bytes(signed)).decode("ascii"),
                    {"encoding": "base64", "skipPreflight": True, "maxRetries": 3},
                ],
            )
        except requests.ReadTimeout as exc:
            # The node may have accepted the transaction before the read timed out.
            raise SwapUnconfirmedError(local_signature, exc) from exc
        signature = str(signature or local_signature)
        logger.info("Submitted swap transaction %s", signature)
        self._confirm(signature)
        return signature

    def _confirm(self, signature: str) -> None:
        deadline = time.monotonic() + self.confirm_timeout
        while True:
            try:
                result = self._rpc("getSignatureStatuses", [[signature]])
            except (requests.RequestException, SwapError) as exc:
                logger.warning("Status lookup for %s failed: %s", signature, exc)
                raise SwapUnconfirmedError(signature, exc) from exc
            statuses = result.get("value") if isinstance(result, dict) else None
            status = (statuses or [None])[0]
            if isinstance(status, dict):
                if status.get("err"):
                    raise SwapRejectedError(f"Transaction {signature} failed", body=status.get("err"))
                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    return
            if time.monotonic() >= deadline:
                raise SwapUnconfirmedError(signature, f"no confirmation within {self.confirm_timeout:g}s")
            self.sleep(self.confirm_poll)

    # ------------------------------------------------------------------
    # RPC
    # ------------------------------------------------------------------
    def _rpc(self, method: str, params: List[Any]) -> Any:
        response = self.session.post(
            self.rpc_url,
            json={"jsonrpc": "2.0", "id": 1, "method": method, "params": params},
            timeout=self.swap_timeout,
        )
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as exc:
            raise SwapRejectedError(
                f"Solana RPC sent a non-JSON reply to {method}", body=getattr(response, "text", "")
            ) from exc
        if not isinstance(payload, dict):
            raise SwapRejectedError(f"Unexpected Solana RPC reply to {method}", body=payload)
        if payload.get("error"):
            raise SwapRejectedError(f"Solana RPC error in {method}", body=payload["error"])
        return payload.get("result")

    def get_balance(self, pubkey: str) -> int:
        """Return the balance of ``pubkey`` in lamports; lookup failures raise :class:`SwapError`."""

        try:
            result = self._rpc("getBalance", [str(pubkey), {"commitment": "confirmed"}])
        except requests.RequestException as exc:
            raise SwapError(f"Balance lookup failed: {exc}") from exc
        value = result.get("value") if isinstance(result, dict) else result
        try:
            return int(value or 0)
        except (TypeError, ValueError) as exc:
            raise SwapRejectedError("Unexpected balance in RPC reply", body=result) from exc


def unwrap_proxy_payload(data: Any) -> Optional[Dict[str, Any]]:
    """Return the quote inside a proxy reply, unwrapping ``{"contents": ...}``."""

    if isinstance(data, dict) and data.get("contents"):
        contents = data["contents"]
        if isinstance(contents, str):
            try:
                contents = json.loads(contents)
            except ValueError:
                return None
        data = contents
    if isinstance(data, dict) and data.get("outAmount"):
        return data
    return None


__all__ = [
    "ExecutionUnreachableError",
    "JUPITER_ENDPOINTS",
    "LAMPORTS_PER_SOL",
    "PROXY_SERVICES",
    "SwapError",
    "SwapRejectedError",
    "SwapRouter",
    "SwapUnconfirmedError",
    "WRAPPED_SOL_MINT",
    "load_keypair",
    "unwrap_proxy_payload",
]
