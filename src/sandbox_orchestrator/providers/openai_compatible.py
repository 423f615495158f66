from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Sequence

import httpx

from sandbox_orchestrator.observability.structured_log import log_json
from sandbox_orchestrator.providers.transport import build_httpx_client, post_json_with_retries
from sandbox_orchestrator.util import redact

logger = logging.getLogger(__name__)

MAX_TOOL_RESULT_CHARS = 6000

_SUMMARY_SYSTEM_PROMPT = (
    "You turn raw tool output into a short, plain-language answer for the user. "
    "Mention failures honestly and never invent data that is not in the output."
)


def _normalize_base_url(value: str) -> str:
    return (value or "").strip().rstrip("/")


def _normalize_messages(messages: Sequence[Dict[str, str]]) -> list[Dict[str, str]]:
    out: list[Dict[str, str]] = []
    for item in messages or []:
        if not isinstance(item, dict):
            continue
        role = str(item.get("role") or "user").strip().lower() or "user"
        content = str(item.get("content") or "").strip()
        if not content:
            continue
        if role not in {"system", "user", "assistant", "tool"}:
            role = "user"
        out.append({"role": role, "content": content})
    return out or [{"role": "user", "content": ""}]


class OpenAICompatibleModelClient:
    """Chat-completions client with an explicit start/close lifecycle.

    Without an API key every call returns a fixed notice instead of reaching
    the network, so the orchestrator stays usable in local setups.
    """

    def __init__(
        self,
        api_key: str = "",
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_sec: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = (api_key or "").strip()
        self._model = (model or "").strip()
        self._base_url = _normalize_base_url(base_url)
        self._timeout_sec = timeout_sec
        self._client = client
        self._owns_client = client is None

    async def start(self) -> None:
        if self._client is None:
            self._client = build_httpx_client(
                base_url=self._base_url,
                headers={"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"},
                read_timeout_sec=self._timeout_sec,
            )
            self._owns_client = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._base_url)

    async def generate(self, messages: Sequence[Dict[str, str]], correlation_id: str = "") -> str:
        if not self.configured:
            return "The language model is not configured (missing OPENAI_API_KEY)."
        await self.start()
        assert self._client is not None
        payload = {"model": self._model, "messages": _normalize_messages(messages)}
        try:
            resp = await post_json_with_retries(self._client, path="/chat/completions", payload=payload)
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            detail = redact((exc.response.text or "")[:300])
            log_json(logger, "model.request.failed", level=logging.WARNING, run_id=correlation_id,
                     status=exc.response.status_code)
            return f"Error: model API HTTP {exc.response.status_code}. {detail}".strip()
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            log_json(logger, "model.request.failed", level=logging.WARNING, run_id=correlation_id,
                     error=type(exc).__name__)
            return f"Error: model API request failed: {redact(str(exc))}"
        return _extract_completion_text(data if isinstance(data, dict) else {})

    async def summarize_tool_result(
        self,
        user_message: str,
        server: str,
        tool: str,
        result: Dict[str, Any],
        correlation_id: str = "",
    ) -> str:
        raw = json.dumps(result, ensure_ascii=False, default=str)[:MAX_TOOL_RESULT_CHARS]
        if not self.configured:
            return f"Result of {server}.{tool}:\n{raw}"
        messages = [
            {"role": "system", "content": _SUMMARY_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    f"User request:\n{user_message[:2000]}\n\n"
                    f"Tool: {server}.{tool}\n"
                    f"Raw result:\n{raw}"
                ),
            },
        ]
        return await self.generate(messages, correlation_id=correlation_id)

    async def health(self) -> Dict[str, Any]:
        if not self._api_key:
            return {"provider": "openai_compatible", "status": "unhealthy", "reason": "missing_api_key"}
        return {
            "provider": "openai_compatible",
            "status": "healthy",
            "model": self._model,
            "base_url": self._base_url,
        }


def _extract_completion_text(data: Dict[str, Any]) -> str:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0] if isinstance(choices[0], dict) else {}
    message = first.get("message") if isinstance(first, dict) else {}
    if isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, str):
            return content
    content = first.get("text") if isinstance(first, dict) else ""
    if isinstance(content, str):
        return content
    return ""
