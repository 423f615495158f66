"""Tenant MCP server connections deployed into sandboxes.

A connection moves ``pending -> deploying -> running`` or ends in ``error``.
Server definitions and connections are rows in the generic object store,
told apart by ``related_object_type``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from sandbox_orchestrator.domain.connections import (
    CONNECTION_STATUS_DEPLOYING,
    CONNECTION_STATUS_ERROR,
    CONNECTION_STATUS_PENDING,
    CONNECTION_STATUS_RUNNING,
    DEFAULT_MCP_PORT,
    DEFAULT_MCP_TIMEOUT_SEC,
    MAX_SANDBOX_TIMEOUT_SEC,
    OBJECT_TYPE_CONNECTION,
    OBJECT_TYPE_SERVER_DEFINITION,
    ConnectionRecord,
    InstallResult,
    ServerDefinition,
)
from sandbox_orchestrator.domain.contracts import CredentialCodec, RowStore
from sandbox_orchestrator.domain.errors import (
    InstallFailedError,
    NotFoundError,
    OrchestratorError,
    ProvisioningError,
    ReadinessTimeoutError,
    ToolResolutionError,
    ValidationError,
)
from sandbox_orchestrator.observability.structured_log import log_json
from sandbox_orchestrator.sandbox.driver import READINESS_ATTEMPTS, READINESS_INTERVAL_SEC, SandboxDriver, SandboxHandle
from sandbox_orchestrator.util import redact_credentials, redact_values

logger = logging.getLogger(__name__)


class McpConnectionManager:
    def __init__(
        self,
        store: RowStore,
        driver: SandboxDriver,
        codec: CredentialCodec,
        default_template: str = "base",
        default_port: int = DEFAULT_MCP_PORT,
        default_timeout_sec: int = DEFAULT_MCP_TIMEOUT_SEC,
        readiness_attempts: int = READINESS_ATTEMPTS,
        readiness_interval_sec: float = READINESS_INTERVAL_SEC,
    ) -> None:
        self._store = store
        self._driver = driver
        self._codec = codec
        self._default_template = default_template
        self._default_port = default_port
        self._default_timeout_sec = default_timeout_sec
        self._readiness_attempts = readiness_attempts
        self._readiness_interval_sec = readiness_interval_sec

    # ---- Server definitions ----

    def get_server_definition(self, definition_id: str) -> ServerDefinition:
        row = self._store.get_row_by_id(definition_id)
        if row is None or row.get("related_object_type") != OBJECT_TYPE_SERVER_DEFINITION:
            raise NotFoundError(f"MCP server definition {definition_id} not found")
        return self._row_to_definition(row)

    def list_server_definitions(self) -> List[ServerDefinition]:
        rows = self._store.get_rows(OBJECT_TYPE_SERVER_DEFINITION)
        return [self._row_to_definition(r) for r in rows]

    def register_server_definition(self, fields: Mapping[str, Any]) -> ServerDefinition:
        name = str(fields.get("name") or "").strip()
        start_command = str(fields.get("start_command") or "").strip()
        if not name or not start_command:
            raise ValidationError("Server definitions need a name and a start_command")
        row = dict(fields)
        row["related_object_type"] = OBJECT_TYPE_SERVER_DEFINITION
        row.pop("owner_tenant_id", None)
        stored = self._store.upsert_row(row)
        return self._row_to_definition(stored)

    # ---- Connections ----

    async def install(
        self,
        server_definition_id: str,
        tenant_id: str,
        credentials: Optional[Mapping[str, Any]] = None,
        title: str = "",
        test_mode: bool = False,
    ) -> InstallResult:
        server_definition_id = str(server_definition_id or "").strip()
        tenant_id = str(tenant_id or "").strip()
        title = str(title or "").strip()
        if not server_definition_id:
            raise ValidationError("serverDefinitionId is required")
        if not tenant_id:
            raise ValidationError("tenantId is required")
        if not title:
            raise ValidationError("title is required")
        definition = self.get_server_definition(server_definition_id)
        # Decoded here and only held in memory until injected into the sandbox env.
        creds = self._codec.decrypt({str(k): "" if v is None else str(v) for k, v in (credentials or {}).items()})

        connection_id: Optional[str] = None
        if not test_mode:
            row = self._store.insert_row(
                {
                    "related_object_type": OBJECT_TYPE_CONNECTION,
                    "owner_tenant_id": tenant_id,
                    "title": title,
                    "server_definition_id": definition.definition_id,
                    "server_name": definition.name,
                    "mcp_status": CONNECTION_STATUS_PENDING,
                    "sandbox_id": None,
                    "server_url": None,
                    "last_error": None,
                    "credentials": self._codec.encrypt(creds),
                }
            )
            connection_id = str(row["id"])
            log_json(logger, "mcp.connection.created", connection_id=connection_id, tenant_id=tenant_id)
            self._set_status(connection_id, CONNECTION_STATUS_DEPLOYING)

        handle: Optional[SandboxHandle] = None
        try:
            handle = await self._driver.provision(definition.template or self._default_template, definition.timeout_sec)
            server_url = await self._deploy(handle, definition, creds)
            if connection_id is not None:
                self._set_status(
                    connection_id,
                    CONNECTION_STATUS_RUNNING,
                    sandbox_id=handle.sandbox_id,
                    server_url=server_url,
                    last_error=None,
                )
        except Exception as exc:
            raise await self._fail_install(exc, connection_id, handle, creds, test_mode) from exc

        if test_mode:
            await self._driver.teardown(handle)
            log_json(logger, "mcp.install.test_passed", definition_id=definition.definition_id, tenant_id=tenant_id)
            return InstallResult(
                success=True,
                test_mode=True,
                message=f"MCP server '{definition.name}' installed and responded; test sandbox discarded.",
            )
        log_json(logger, "mcp.install.completed", connection_id=connection_id, sandbox_id=handle.sandbox_id)
        return InstallResult(
            success=True,
            test_mode=False,
            message="MCP server deployed successfully",
            connection_id=connection_id,
            mcp_status=CONNECTION_STATUS_RUNNING,
            server_url=server_url,
            sandbox_id=handle.sandbox_id,
            credentials=redact_credentials(creds),
        )

    async def remove(self, connection_id: str) -> None:
        record = self.get_connection(connection_id)
        if record.sandbox_id:
            await self._driver.teardown_by_id(record.sandbox_id)
        self._store.delete_row(record.connection_id)
        log_json(logger, "mcp.connection.removed", connection_id=record.connection_id, tenant_id=record.tenant_id)

    def get_connection(self, connection_id: str) -> ConnectionRecord:
        row = self._store.get_row_by_id(connection_id)
        if row is None or row.get("related_object_type") != OBJECT_TYPE_CONNECTION:
            raise NotFoundError(f"MCP connection {connection_id} not found")
        return self._row_to_connection(row)

    def list_for_tenant(self, tenant_id: str) -> List[ConnectionRecord]:
        tenant_id = str(tenant_id or "").strip()
        if not tenant_id:
            raise ValidationError("tenantId is required")
        rows = self._store.get_rows(OBJECT_TYPE_CONNECTION, owner_tenant_id=tenant_id)
        return [self._row_to_connection(r) for r in rows]

    def running_connections(self, tenant_id: str) -> List[ConnectionRecord]:
        return [
            c for c in self.list_for_tenant(tenant_id)
            if c.status == CONNECTION_STATUS_RUNNING and c.server_url
        ]

    def find_running(self, tenant_id: str, server_name: str) -> ConnectionRecord:
        wanted = str(server_name or "").strip().lower()
        running = self.running_connections(tenant_id)
        for conn in running:
            names = {conn.server_name.lower(), conn.title.lower(), conn.server_definition_id.lower()}
            if wanted and wanted in names:
                return conn
        available = ", ".join(sorted(c.server_name or c.title for c in running)) or "none"
        raise ToolResolutionError(
            f"No running MCP server named '{server_name}' is connected for this workspace. "
            f"Running servers: {available}."
        )

    async def keepalive(self, connection_id: str, timeout_sec: Optional[int] = None) -> int:
        record = self.get_connection(connection_id)
        if record.status != CONNECTION_STATUS_RUNNING or not record.sandbox_id:
            raise ValidationError(f"MCP connection {connection_id} is not running")
        if timeout_sec is None:
            timeout_sec = self._hosted_timeout_sec(record)
        return await self._driver.extend_timeout(record.sandbox_id, min(int(timeout_sec), MAX_SANDBOX_TIMEOUT_SEC))

    async def refresh_running(self) -> Dict[str, int]:
        """Extend the sandbox timeout of every running connection.

        A sandbox whose timeout can no longer be extended is gone; its
        connection is marked ``error``.
        """
        extended = lost = 0
        for row in self._store.get_rows(OBJECT_TYPE_CONNECTION):
            record = self._row_to_connection(row)
            if record.status != CONNECTION_STATUS_RUNNING or not record.sandbox_id:
                continue
            try:
                await self._driver.extend_timeout(record.sandbox_id, self._hosted_timeout_sec(record))
            except ProvisioningError as exc:
                lost += 1
                self._set_status(
                    record.connection_id,
                    CONNECTION_STATUS_ERROR,
                    last_error=f"Sandbox {record.sandbox_id} is no longer running: {exc.message}",
                )
                await self._driver.teardown_by_id(record.sandbox_id)
                continue
            extended += 1
        if extended or lost:
            log_json(logger, "mcp.keepalive.swept", extended=extended, lost=lost)
        return {"extended": extended, "lost": lost}

    def active_sandbox_count(self) -> int:
        return self._driver.active_count()

    # ---- Internal helpers ----

    def _hosted_timeout_sec(self, record: ConnectionRecord) -> int:
        try:
            return self.get_server_definition(record.server_definition_id).timeout_sec
        except NotFoundError:
            return self._default_timeout_sec

    async def _deploy(self, handle: SandboxHandle, definition: ServerDefinition, creds: Dict[str, str]) -> str:
        env = dict(creds)
        env.update({"MCP_HOST": "0.0.0.0", "MCP_PORT": str(definition.port)})
        if definition.install_command:
            exit_code = await self._driver.install(handle, definition.install_command, env)
            if exit_code != 0:
                raise ProvisioningError(f"Install command exited with status {exit_code}")
        await self._driver.start(handle, definition.start_command, env)
        server_url = self._driver.external_url(handle, definition.port)
        probe_url = server_url + definition.health_path if definition.health_path else server_url
        ready = await self._driver.probe_ready(
            probe_url,
            attempts=self._readiness_attempts,
            interval=self._readiness_interval_sec,
        )
        if not ready:
            raise ReadinessTimeoutError(
                f"MCP server did not become reachable after {self._readiness_attempts} attempts"
            )
        return server_url

    async def _fail_install(
        self,
        exc: Exception,
        connection_id: Optional[str],
        handle: Optional[SandboxHandle],
        creds: Dict[str, str],
        test_mode: bool,
    ) -> InstallFailedError:
        raw_detail = exc.message if isinstance(exc, OrchestratorError) and exc.message else str(exc)
        detail = redact_values(raw_detail or type(exc).__name__, creds)
        code = exc.code if isinstance(exc, OrchestratorError) else "provisioning"
        if connection_id is not None:
            try:
                self._set_status(connection_id, CONNECTION_STATUS_ERROR, last_error=detail)
            except Exception:
                logger.exception("mcp.connection.error_status_failed connection_id=%s", connection_id)
        await self._driver.teardown(handle)
        log_json(
            logger,
            "mcp.install.failed",
            level=logging.WARNING,
            connection_id=connection_id,
            error_code=code,
            detail=detail,
            test_mode=test_mode,
        )
        return InstallFailedError(
            f"Failed to deploy MCP server: {detail}",
            connection_id=connection_id,
            cause_code=code,
            test_mode=test_mode,
        )

    def _set_status(self, connection_id: str, status: str, **fields: Any) -> None:
        updated = self._store.update_row(connection_id, {"mcp_status": status, **fields})
        if updated is None:
            raise NotFoundError(f"MCP connection {connection_id} disappeared during deployment")
        log_json(logger, "mcp.connection.status", connection_id=connection_id, status=status)

    def _row_to_definition(self, row: Dict[str, Any]) -> ServerDefinition:
        return ServerDefinition(
            definition_id=str(row["id"]),
            name=str(row.get("name") or row["id"]),
            start_command=str(row.get("start_command") or ""),
            install_command=str(row.get("install_command") or ""),
            port=_as_int(row.get("port"), self._default_port),
            timeout_sec=_as_int(row.get("timeout_sec"), self._default_timeout_sec),
            template=str(row.get("template") or ""),
            description=str(row.get("description") or ""),
            health_path=str(row.get("health_path") or ""),
        )

    def _row_to_connection(self, row: Dict[str, Any]) -> ConnectionRecord:
        return ConnectionRecord(
            connection_id=str(row["id"]),
            tenant_id=str(row.get("owner_tenant_id") or ""),
            server_definition_id=str(row.get("server_definition_id") or ""),
            title=str(row.get("title") or ""),
            status=str(row.get("mcp_status") or CONNECTION_STATUS_PENDING),
            created_at=_parse_ts(row.get("created_at")),
            updated_at=_parse_ts(row.get("updated_at")),
            sandbox_id=row.get("sandbox_id") or None,
            server_url=row.get("server_url") or None,
            last_error=row.get("last_error") or None,
            credentials=redact_credentials(row.get("credentials") or {}),
            server_name=str(row.get("server_name") or ""),
        )


def connection_to_dict(record: ConnectionRecord) -> Dict[str, Any]:
    return {
        "id": record.connection_id,
        "tenantId": record.tenant_id,
        "serverDefinitionId": record.server_definition_id,
        "serverName": record.server_name,
        "title": record.title,
        "mcp_status": record.status,
        "sandboxId": record.sandbox_id,
        "server_url": record.server_url,
        "last_error": record.last_error,
        "credentials": dict(record.credentials),
        "createdAt": record.created_at.isoformat(),
        "updatedAt": record.updated_at.isoformat(),
    }


def definition_to_dict(definition: ServerDefinition) -> Dict[str, Any]:
    return {
        "id": definition.definition_id,
        "name": definition.name,
        "description": definition.description,
        "port": definition.port,
        "timeoutSec": definition.timeout_sec,
        "template": definition.template,
        "hasInstallCommand": bool(definition.install_command),
    }


def _as_int(value: Any, default: int) -> int:
    try:
        return max(1, int(value))
    except (TypeError, ValueError):
        return default


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)
