"""E2B implementation of the sandbox provisioning backend.

Configuration:
  E2B_API_KEY   – API key passed to every E2B call
  E2B_TEMPLATE  – default template when a server definition names none
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from e2b import AsyncSandbox

from sandbox_orchestrator.observability.structured_log import log_json

logger = logging.getLogger(__name__)


class E2BSandboxBackend:
    def __init__(self, api_key: str = "", metadata: Optional[Dict[str, str]] = None) -> None:
        self._api_key = (api_key or "").strip() or None
        self._metadata = dict(metadata or {"purpose": "sandbox-orchestrator"})

    async def create(self, template: str, timeout_ms: int) -> Any:
        sandbox = await AsyncSandbox.create(
            template=template or None,
            timeout=max(1, int(timeout_ms) // 1000),
            metadata=self._metadata,
            api_key=self._api_key,
        )
        log_json(logger, "e2b.sandbox.created", sandbox_id=sandbox.sandbox_id, template=template)
        return sandbox

    def sandbox_id(self, raw: Any) -> str:
        return str(getattr(raw, "sandbox_id", "") or "")

    def get_external_host(self, raw: Any, port: int) -> str:
        return str(raw.get_host(port))

    async def kill(self, sandbox_id: str) -> None:
        await AsyncSandbox.kill(sandbox_id, api_key=self._api_key)

    async def set_timeout(self, sandbox_id: str, timeout_ms: int) -> None:
        await AsyncSandbox.set_timeout(sandbox_id, max(1, int(timeout_ms) // 1000), api_key=self._api_key)
