from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from sandbox_orchestrator.domain.errors import NotificationDeliveryError
from sandbox_orchestrator.observability.structured_log import log_json
from sandbox_orchestrator.providers.transport import build_httpx_client, post_json_with_retries
from sandbox_orchestrator.services.session_store import SessionStore
from sandbox_orchestrator.util import redact

logger = logging.getLogger(__name__)

RESPONSE_CALLBACK_PATH = "/chat/callback/response"
EXECUTION_STARTED_CALLBACK_PATH = "/chat/callback/execution-started"


def _log_delivery_failure(err: NotificationDeliveryError, session_id: str, kind: str) -> None:
    log_json(
        logger,
        "notifier.delivery_failed",
        level=logging.WARNING,
        session_id=session_id,
        kind=kind,
        detail=redact(err.message),
    )


class HttpCompletionNotifier:
    """Pushes session updates to the front door's callback endpoints."""

    def __init__(
        self,
        base_url: str,
        attempts: int = 3,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = (base_url or "").strip().rstrip("/")
        self._attempts = max(1, int(attempts))
        self._client = client
        self._owns_client = client is None

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def notify_response(
        self,
        session_id: str,
        text: str,
        requires_sandbox: bool,
        sandbox_id: Optional[str] = None,
    ) -> None:
        payload: Dict[str, Any] = {
            "sessionId": session_id,
            "response": text,
            "requiresE2B": bool(requires_sandbox),
        }
        if sandbox_id:
            payload["sandboxId"] = sandbox_id
        await self._deliver(RESPONSE_CALLBACK_PATH, payload, session_id, "response")

    async def notify_execution_started(self, session_id: str, sandbox_id: str) -> None:
        payload = {"sessionId": session_id, "sandboxId": sandbox_id}
        await self._deliver(EXECUTION_STARTED_CALLBACK_PATH, payload, session_id, "execution_started")

    async def _deliver(self, path: str, payload: Dict[str, Any], session_id: str, kind: str) -> None:
        try:
            if not self._base_url:
                raise NotificationDeliveryError("CALLBACK_BASE_URL is not configured")
            if self._client is None:
                self._client = build_httpx_client(base_url=self._base_url, read_timeout_sec=15.0)
                self._owns_client = True
            await post_json_with_retries(self._client, path=path, payload=payload, attempts=self._attempts)
            log_json(logger, "notifier.delivered", session_id=session_id, kind=kind)
        except NotificationDeliveryError as err:
            _log_delivery_failure(err, session_id, kind)
        except Exception as exc:
            _log_delivery_failure(NotificationDeliveryError(f"{type(exc).__name__}: {exc}"), session_id, kind)


class LocalCompletionNotifier:
    """Merges updates straight into an in-process session store."""

    def __init__(self, session_store: SessionStore) -> None:
        self._sessions = session_store

    async def notify_response(
        self,
        session_id: str,
        text: str,
        requires_sandbox: bool,
        sandbox_id: Optional[str] = None,
    ) -> None:
        try:
            await self._sessions.record_response(session_id, text, requires_sandbox, sandbox_id)
        except Exception as exc:
            _log_delivery_failure(NotificationDeliveryError(f"{type(exc).__name__}: {exc}"), session_id, "response")

    async def notify_execution_started(self, session_id: str, sandbox_id: str) -> None:
        try:
            await self._sessions.record_execution_started(session_id, sandbox_id)
        except Exception as exc:
            _log_delivery_failure(
                NotificationDeliveryError(f"{type(exc).__name__}: {exc}"), session_id, "execution_started"
            )
