"""Shared HTTP helpers for OpenAI-compatible chat completion endpoints."""

from __future__ import annotations

from typing import Any, List, Mapping, Optional, Tuple

import requests

from log_utils import setup_logger

logger = setup_logger(__name__)

_HTTP_TIMEOUT = 30.0


def chat_completions_url(base_url: str) -> str:
    """Return the ``/chat/completions`` URL for ``base_url``."""

    base = (base_url or "").rstrip("/")
    if base.endswith("/chat/completions"):
        return base
    return f"{base}/chat/completions"


def extract_error_payload(response: Any) -> Any:
    """Best-effort extraction of an error payload from ``response``."""

    try:
        return response.json()
    except ValueError:
        return getattr(response, "text", "")


def extract_content(payload: Any) -> str:
    """Return the completion text from the response shapes providers use."""

    if isinstance(payload, str):
        return payload
    if not isinstance(payload, Mapping):
        return ""
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        if isinstance(first, Mapping):
            message = first.get("message")
            if isinstance(message, Mapping):
                content = message.get("content")
                if isinstance(content, str) and content:
                    return content
            text = first.get("text")
            if isinstance(text, str) and text:
                return text
    output = payload.get("output")
    if isinstance(output, list) and output:
        first = output[0]
        if isinstance(first, Mapping):
            parts = first.get("content")
            if isinstance(parts, list) and parts and isinstance(parts[0], Mapping):
                text = parts[0].get("text")
                if isinstance(text, str):
                    return text
    return ""


def is_auth_error(status_code: Optional[int], error_payload: Any) -> bool:
    """Return ``True`` if the payload describes an authentication failure."""

    if status_code == 401:
        return True
    if isinstance(error_payload, Mapping):
        payload = error_payload.get("error") if "error" in error_payload else error_payload
        if isinstance(payload, Mapping):
            code = str(payload.get("code", ""))
            if code.lower() in {"authentication_error", "invalid_api_key"}:
                return True
            lowered = str(payload.get("message", "")).lower()
            return "invalid api key" in lowered or "authentication" in lowered
    if isinstance(error_payload, str):
        lowered = error_payload.lower()
        return "invalid api key" in lowered or "authentication" in lowered
    return False


def http_chat_completion(
    *,
    model: str,
    messages: List[Mapping[str, str]],
    max_tokens: int,
    api_key: str,
    api_url: str,
    temperature: Optional[float] = None,
    timeout: Optional[float] = None,
    extra_headers: Optional[Mapping[str, str]] = None,
) -> Tuple[Optional[str], Optional[int], Any]:
    """Execute one chat completion and return ``(content, status, payload)``.

    Transport failures come back as ``(None, None, exc)``; HTTP errors as
    ``(None, status, error_payload)``.  Authentication failures disable the
    oracle for the rest of the process and raise ``OracleAuthError``.
    """

    from oracle_client import OracleAuthError

    if not api_key:
        raise OracleAuthError("Oracle API key missing")

    payload: dict = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
    }
    if temperature is not None:
        payload["temperature"] = temperature
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }
    if extra_headers:
        headers.update(extra_headers)

    try:
        response = requests.post(
            chat_completions_url(api_url),
            headers=headers,
            json=payload,
            timeout=timeout or _HTTP_TIMEOUT,
        )
    except requests.RequestException as exc:
        return None, None, exc

    if response.status_code >= 400:
        error_payload = extract_error_payload(response)
        if is_auth_error(response.status_code, error_payload):
            import oracle_client

            oracle_client._auth_disabled = True
            logger.error("Oracle authentication failed (401). Disabling oracle requests.")
            raise OracleAuthError("Oracle authentication disabled")
        return None, response.status_code, error_payload

    try:
        data = response.json()
    except ValueError:
        return None, None, None

    content = extract_content(data)
    if not content:
        return None, None, data
    return content, None, data


__all__ = [
    "chat_completions_url",
    "extract_content",
    "extract_error_payload",
    "http_chat_completion",
    "is_auth_error",
]
