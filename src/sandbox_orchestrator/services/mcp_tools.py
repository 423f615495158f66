"""Invoke tools on MCP servers running inside sandboxes.

Each call opens an MCP client session over the streamable HTTP transport,
runs the ``initialize`` handshake and issues ``tools/call``.

Configuration:
  MCP_ENDPOINT_PATH – path of the MCP endpoint on the server (default: /mcp)
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Dict, Optional

from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError
from mcp.types import METHOD_NOT_FOUND

from sandbox_orchestrator.domain.errors import ToolInvocationError, ToolResolutionError
from sandbox_orchestrator.observability.structured_log import log_json
from sandbox_orchestrator.util import redact

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str], AsyncContextManager[Any]]


@asynccontextmanager
async def open_streamable_session(url: str) -> AsyncIterator[ClientSession]:
    async with streamablehttp_client(url) as (read_stream, write_stream, _get_session_id):
        async with ClientSession(read_stream, write_stream) as session:
            await session.initialize()
            yield session


class HttpMcpToolInvoker:
    def __init__(
        self,
        endpoint_path: str = "/mcp",
        timeout_sec: float = 60.0,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        path = (endpoint_path or "").strip()
        self._endpoint_path = path if not path or path.startswith("/") else f"/{path}"
        self._timeout_sec = timeout_sec
        self._session_factory = session_factory or open_streamable_session

    def endpoint_url(self, server_url: str) -> str:
        return server_url.rstrip("/") + self._endpoint_path

    async def call_tool(self, server_url: str, tool: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        url = self.endpoint_url(server_url)
        try:
            result = await asyncio.wait_for(self._call(url, tool, arguments), timeout=self._timeout_sec)
        except McpError as exc:
            log_json(logger, "mcp.tool.error", level=logging.WARNING, tool=tool, detail=redact(exc.error.message))
            if exc.error.code == METHOD_NOT_FOUND:
                raise ToolResolutionError(f"Tool '{tool}' is not available on this MCP server.") from exc
            return {"isError": True, "content": [{"type": "text", "text": exc.error.message}]}
        except asyncio.TimeoutError as exc:
            raise ToolInvocationError(f"Tool '{tool}' timed out after {self._timeout_sec:g}s") from exc
        except Exception as exc:
            logger.warning("mcp.tool.unreachable url=%s error=%s", url, type(exc).__name__)
            raise ToolInvocationError(f"MCP server at {url} failed: {redact(str(exc))[:200]}") from exc
        log_json(logger, "mcp.tool.called", tool=tool, is_error=bool(result.get("isError")))
        return result

    async def _call(self, url: str, tool: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        async with self._session_factory(url) as session:
            result = await session.call_tool(tool, arguments)
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)
