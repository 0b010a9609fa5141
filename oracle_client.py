"""Client for the language-model oracle that produces directional calls.

The oracle is opaque: we send a system prompt and a user instruction and get
free text back.  Each call is a single attempt; transport errors, HTTP
errors and empty replies all surface as ``None`` so the scanner can move to
the next candidate.  A missing or rejected API key disables the oracle for
the rest of the process until :func:`reset_auth_state` is called.
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Optional

from llm_http import http_chat_completion
from log_utils import setup_logger
from signal_schema import Bias

logger = setup_logger(__name__)

_BULLISH_RE = re.compile(r"\bbullish\b", re.IGNORECASE)
_BEARISH_RE = re.compile(r"\bbearish\b", re.IGNORECASE)


class OracleAuthError(RuntimeError):
    """Raised when oracle authentication fails and requests must be skipped."""


_auth_disabled: bool = False


def reset_auth_state() -> None:
    """Reset authentication state (primarily for tests)."""

    global _auth_disabled
    _auth_disabled = False


def auth_disabled() -> bool:
    return _auth_disabled


def describe_error(error: Any) -> str:
    """Return a compact description of ``error`` suitable for logging."""

    if isinstance(error, Mapping):
        inner = error.get("error")
        source = inner if isinstance(inner, Mapping) else error
        message = str(source.get("message", "") or "")
        code = source.get("code")
        if code is not None and message:
            return f"{code}: {message}"
        if code is not None:
            return str(code)
        return message
    return str(error or "")


def extract_bias(text: Optional[str]) -> Bias:
    """Classify ``text`` as bullish, bearish or neutral.

    "bullish" is checked first, so a text mentioning both is bullish.
    """

    if not text:
        return Bias.NEUTRAL
    if _BULLISH_RE.search(text):
        return Bias.BULLISH
    if _BEARISH_RE.search(text):
        return Bias.BEARISH
    return Bias.NEUTRAL


class SignalOracle:
    """Thin wrapper around one OpenAI-compatible chat endpoint."""

    def __init__(
        self,
        *,
        api_key: Optional[str],
        base_url: str,
        model: str,
        timeout: float = 30.0,
        default_max_tokens: int = 1024,
        extra_headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.model = model
        self.timeout = timeout
        self.default_max_tokens = default_max_tokens
        self.extra_headers = dict(extra_headers or {})
        if not api_key:
            logger.warning("Oracle API key missing; analysis requests will be skipped")

    @classmethod
    def from_settings(cls, settings) -> "SignalOracle":
        return cls(
            api_key=settings.oracle_api_key,
            base_url=settings.oracle_base_url,
            model=settings.oracle_model,
            timeout=settings.oracle_timeout,
            default_max_tokens=settings.scan_max_tokens,
            extra_headers=settings.extra_headers,
        )

    @property
    def available(self) -> bool:
        return bool(self.api_key) and not _auth_disabled

    def ask(self, system_prompt: str, user_prompt: str, max_tokens: Optional[int] = None) -> Optional[str]:
        """Return the oracle's text reply, or ``None`` on any failure."""

        if not self.available:
            logger.info("Oracle unavailable; skipping request")
            return None
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        try:
            content, status, payload = http_chat_completion(
                model=self.model,
                messages=messages,
                max_tokens=int(max_tokens or self.default_max_tokens),
                api_key=self.api_key or "",
                api_url=self.base_url,
                timeout=self.timeout,
                extra_headers=self.extra_headers,
            )
        except OracleAuthError as exc:
            logger.warning("Oracle request skipped: %s", exc)
            return None
        if content:
            logger.info("Oracle reply excerpt: %s", content[:1000])
            return content
        if isinstance(payload, Exception):
            logger.warning("Oracle request failed: %s", payload)
        elif status is not None:
            logger.warning("Oracle HTTP %s: %s", status, describe_error(payload))
        else:
            logger.warning("Oracle returned an empty reply")
        return None


__all__ = [
    "OracleAuthError",
    "SignalOracle",
    "auth_disabled",
    "describe_error",
    "extract_bias",
    "reset_auth_state",
]
