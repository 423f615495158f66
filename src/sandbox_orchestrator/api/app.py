import asyncio
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from sandbox_orchestrator.app_container import Orchestrator
from sandbox_orchestrator.domain.errors import (
    InstallFailedError,
    NotFoundError,
    OrchestratorError,
    ValidationError,
)
from sandbox_orchestrator.services.error_codes import ERROR_CATALOG, entry_for_error
from sandbox_orchestrator.services.mcp_connections import connection_to_dict, definition_to_dict
from sandbox_orchestrator.services.session_store import session_to_dict
from sandbox_orchestrator.services.workflow import EVENT_CHAT_MESSAGE, EVENT_MCP_INSTALL
from sandbox_orchestrator.util import redact

logger = logging.getLogger(__name__)

SESSION_EVICTION_INTERVAL_SEC = 300


class InstallRequest(BaseModel):
    serverDefinitionId: str = ""
    tenantId: str = ""
    title: str = ""
    credentials: Dict[str, Any] = {}
    testMode: bool = False


class KeepaliveRequest(BaseModel):
    timeoutSec: Optional[int] = None


class ChatRequest(BaseModel):
    message: str = ""
    userId: str = ""
    tenantId: str = ""
    sessionId: str = ""


class ResponseCallback(BaseModel):
    sessionId: str
    response: str = ""
    requiresE2B: bool = False
    sandboxId: Optional[str] = None


class ExecutionStartedCallback(BaseModel):
    sessionId: str
    sandboxId: str


def _error_response(exc: OrchestratorError) -> JSONResponse:
    entry = entry_for_error(exc)
    return JSONResponse(
        status_code=entry.http_status,
        content={
            "success": False,
            "error": redact(exc.message) or entry.user_message,
            "code": entry.code,
            "title": entry.title,
        },
    )


def _catalog_to_dict() -> List[Dict[str, Any]]:
    return [
        {
            "code": entry.code,
            "http_status": entry.http_status,
            "title": entry.title,
            "user_message": entry.user_message,
        }
        for entry in ERROR_CATALOG
    ]


def create_app(orchestrator: Orchestrator) -> FastAPI:
    app = FastAPI(title="Sandbox Orchestrator", version="0.3.0")
    connections = orchestrator.connections
    sessions = orchestrator.sessions
    engine = orchestrator.engine

    @app.on_event("startup")
    async def _startup() -> None:
        await orchestrator.start()

        async def _eviction_loop() -> None:
            while True:
                await asyncio.sleep(SESSION_EVICTION_INTERVAL_SEC)
                try:
                    sessions.evict_expired()
                except Exception:
                    logger.exception("session eviction failed")

        async def _keepalive_loop() -> None:
            while True:
                await asyncio.sleep(orchestrator.config.mcp_keepalive_interval_sec)
                try:
                    await connections.refresh_running()
                except Exception:
                    logger.exception("mcp keepalive sweep failed")

        app.state.background_tasks = [
            asyncio.create_task(_eviction_loop(), name="session-eviction"),
            asyncio.create_task(_keepalive_loop(), name="mcp-keepalive"),
        ]

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        for task in getattr(app.state, "background_tasks", []):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await orchestrator.shutdown()

    @app.exception_handler(OrchestratorError)
    async def _orchestrator_error(_request, exc: OrchestratorError) -> JSONResponse:
        return _error_response(exc)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "active_sandboxes": connections.active_sandbox_count(),
            "pending_workflows": engine.pending_count(),
            "sessions": len(sessions.list_ids()),
            "model_health": await orchestrator.model.health(),
        }

    @app.get("/api/error-catalog")
    async def error_catalog() -> List[Dict[str, Any]]:
        return _catalog_to_dict()

    # ---- MCP ----

    @app.get("/mcp/server-definitions")
    async def server_definitions() -> List[Dict[str, Any]]:
        return [definition_to_dict(d) for d in connections.list_server_definitions()]

    @app.post("/mcp/install")
    async def install(req: InstallRequest) -> JSONResponse:
        if not req.serverDefinitionId.strip() or not req.tenantId.strip() or not req.title.strip():
            raise ValidationError("serverDefinitionId, tenantId and title are required")
        # Unknown definitions are rejected before any workflow runs.
        connections.get_server_definition(req.serverDefinitionId.strip())
        event_id = await engine.send(EVENT_MCP_INSTALL, req.model_dump())
        run = await engine.wait(event_id)
        if run.exception is not None:
            exc = run.exception
            if isinstance(exc, InstallFailedError):
                return JSONResponse(
                    status_code=502,
                    content={"success": False, "error": exc.message, "connectionId": exc.connection_id},
                )
            if isinstance(exc, OrchestratorError):
                return _error_response(exc)
            raise HTTPException(status_code=500, detail="MCP install failed unexpectedly")
        return JSONResponse(status_code=200, content=run.result)

    @app.delete("/mcp/connection/{connection_id}")
    async def remove_connection(connection_id: str) -> Dict[str, Any]:
        await connections.remove(connection_id)
        return {"success": True, "connectionId": connection_id}

    @app.get("/mcp/connections")
    async def list_connections(tenantId: str = "") -> List[Dict[str, Any]]:
        return [connection_to_dict(c) for c in connections.list_for_tenant(tenantId)]

    @app.post("/mcp/connection/{connection_id}/keepalive")
    async def keepalive(connection_id: str, req: Optional[KeepaliveRequest] = None) -> Dict[str, Any]:
        timeout_sec = req.timeoutSec if req is not None else None
        extended = await connections.keepalive(connection_id, timeout_sec)
        return {"success": True, "connectionId": connection_id, "timeoutSec": extended}

    # ---- Chat ----

    @app.post("/chat", status_code=202)
    async def chat(req: ChatRequest) -> Dict[str, Any]:
        message = req.message.strip()
        if not message:
            raise ValidationError("message is required")
        record = await sessions.submit(
            message,
            session_id=req.sessionId or None,
            user_id=req.userId,
            tenant_id=req.tenantId,
        )
        await engine.send(
            EVENT_CHAT_MESSAGE,
            {
                "sessionId": record.session_id,
                "message": message,
                "tenantId": record.tenant_id,
                "userId": record.user_id,
            },
        )
        return {"sessionId": record.session_id, "status": record.state}

    @app.post("/chat/callback/response")
    async def response_callback(req: ResponseCallback) -> Dict[str, Any]:
        if not req.sessionId.strip():
            raise ValidationError("sessionId is required")
        record = await sessions.record_response(req.sessionId, req.response, req.requiresE2B, req.sandboxId)
        return {"success": True, "processingState": record.state}

    @app.post("/chat/callback/execution-started")
    async def execution_started_callback(req: ExecutionStartedCallback) -> Dict[str, Any]:
        if not req.sessionId.strip() or not req.sandboxId.strip():
            raise ValidationError("sessionId and sandboxId are required")
        record = await sessions.record_execution_started(req.sessionId, req.sandboxId)
        return {"success": True, "processingState": record.state}

    @app.get("/chat/session/{session_id}")
    async def get_session(session_id: str) -> Dict[str, Any]:
        try:
            record = sessions.get(session_id)
        except NotFoundError:
            raise HTTPException(status_code=404, detail={"status": "not_found", "sessionId": session_id})
        return session_to_dict(record)

    return app
