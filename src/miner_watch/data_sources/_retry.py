"""
JSON-RPC POST with retry and exponential backoff.

Every Alchemy call goes through ``async_http_post_json`` so 429 handling
and transient-failure backoff live in one place.  What is retried:

- 429: after ``Retry-After`` (or the backoff delay when absent)
- 5xx and transport errors: after ``backoff_base * 2**attempt``

What is not: 403 (key rejected / method not enabled), other 4xx
(malformed params) and JSON-RPC ``error`` bodies, since the same request
would fail again.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

_MIN_RETRY_AFTER = 0.5


def _backoff(attempt: int, base: float) -> float:
    return base * (2 ** attempt)


def _parse_retry_after(resp: httpx.Response, default: float) -> float:
    """Seconds from a ``Retry-After`` header, or *default*.

    Only the integer-seconds form is handled; that is what Alchemy sends.
    """
    raw = resp.headers.get("retry-after")
    if raw is None:
        return default
    try:
        return max(float(raw), _MIN_RETRY_AFTER)
    except (ValueError, TypeError):
        return default


async def async_http_post_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    json_payload: Any,
    max_retries: int = 3,
    backoff_base: float = 1.5,
    label: str = "RPC",
) -> Optional[Any]:
    """POST *json_payload* and return the body's ``result`` member.

    A body without ``result`` is returned whole.  ``None`` means the call
    gave up: retries exhausted or a non-retryable failure.
    """
    for attempt in range(max_retries):
        last_attempt = attempt == max_retries - 1
        try:
            resp = await client.post(url, json=json_payload)
        except httpx.RequestError as exc:
            logger.warning("%s request failed (attempt %d/%d): %s", label, attempt + 1, max_retries, exc)
            if not last_attempt:
                await asyncio.sleep(_backoff(attempt, backoff_base))
            continue

        status = resp.status_code
        if status == 429:
            wait = _parse_retry_after(resp, _backoff(attempt, backoff_base))
            logger.warning("%s rate-limited, retry in %.1fs", label, wait)
            await asyncio.sleep(wait)
            continue
        if status == 403:
            logger.warning("%s 403 – key rejected or method not enabled", label)
            return None

        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError:
            if status < 500:
                logger.warning("%s HTTP %s – not retried", label, status)
                return None
            logger.warning("%s HTTP %s (attempt %d/%d)", label, status, attempt + 1, max_retries)
            if not last_attempt:
                await asyncio.sleep(_backoff(attempt, backoff_base))
            continue

        try:
            body = resp.json()
        except ValueError:
            logger.warning("%s HTTP %s with a non-JSON body", label, status)
            return None
        if isinstance(body, dict) and "error" in body:
            logger.warning("%s error: %s", label, body["error"])
            return None
        if isinstance(body, dict):
            return body.get("result", body)
        return body
    return None
