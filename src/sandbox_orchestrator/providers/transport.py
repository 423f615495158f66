from __future__ import annotations

import asyncio
import random
from typing import Any, Dict, Optional

import httpx

RETRYABLE_STATUS = frozenset({408, 409, 425, 429, 500, 502, 503, 504})


def build_httpx_client(
    *,
    base_url: str = "",
    headers: Optional[Dict[str, str]] = None,
    connect_timeout_sec: float = 5.0,
    read_timeout_sec: float = 60.0,
    max_connections: int = 30,
    max_keepalive_connections: int = 10,
) -> httpx.AsyncClient:
    timeout = httpx.Timeout(connect=connect_timeout_sec, read=read_timeout_sec, write=read_timeout_sec, pool=5.0)
    limits = httpx.Limits(
        max_connections=max(1, int(max_connections)),
        max_keepalive_connections=max(1, int(max_keepalive_connections)),
    )
    return httpx.AsyncClient(base_url=base_url, headers=headers or {}, timeout=timeout, limits=limits)


async def post_json_with_retries(
    client: httpx.AsyncClient,
    *,
    path: str,
    payload: Dict[str, Any],
    attempts: int = 3,
    base_backoff_sec: float = 0.5,
    headers: Optional[Dict[str, str]] = None,
) -> httpx.Response:
    last_exc: Exception | None = None
    max_attempts = max(1, int(attempts))
    for idx in range(max_attempts):
        try:
            resp = await client.post(path, json=payload, headers=headers)
            if resp.status_code in RETRYABLE_STATUS:
                if idx + 1 >= max_attempts:
                    resp.raise_for_status()
                await sleep_backoff(idx, base_backoff_sec)
                continue
            resp.raise_for_status()
            return resp
        except Exception as exc:
            last_exc = exc
            if idx + 1 >= max_attempts or (not is_transient_error(exc)):
                raise
            await sleep_backoff(idx, base_backoff_sec)
    if last_exc is not None:
        raise last_exc
    raise RuntimeError("post_json_with_retries exhausted without result")


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    text = type(exc).__name__.lower() + " " + str(exc).lower()
    transient_markers = ["timeout", "readerror", "connecterror", "network", "tempor", "name or service not known"]
    return any(marker in text for marker in transient_markers)


def backoff_delay(attempt_idx: int, base_backoff_sec: float) -> float:
    # bounded exponential backoff with jitter
    delay = min(8.0, max(0.05, float(base_backoff_sec)) * (2 ** attempt_idx))
    return delay * (0.8 + random.random() * 0.4)


async def sleep_backoff(attempt_idx: int, base_backoff_sec: float) -> None:
    await asyncio.sleep(backoff_delay(attempt_idx, base_backoff_sec))
