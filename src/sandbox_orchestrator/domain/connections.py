from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

CONNECTION_STATUS_PENDING = "pending"
CONNECTION_STATUS_DEPLOYING = "deploying"
CONNECTION_STATUS_RUNNING = "running"
CONNECTION_STATUS_ERROR = "error"

OBJECT_TYPE_SERVER_DEFINITION = "mcp_server"
OBJECT_TYPE_CONNECTION = "mcp_connection"

DEFAULT_MCP_PORT = 3000
DEFAULT_MCP_TIMEOUT_SEC = 30 * 60
MAX_SANDBOX_TIMEOUT_SEC = 60 * 60

REDACTED_PLACEHOLDER = "[REDACTED]"


@dataclass(frozen=True)
class ServerDefinition:
    definition_id: str
    name: str
    start_command: str
    install_command: str = ""
    port: int = DEFAULT_MCP_PORT
    timeout_sec: int = DEFAULT_MCP_TIMEOUT_SEC
    template: str = ""
    description: str = ""
    health_path: str = ""


@dataclass(frozen=True)
class ConnectionRecord:
    connection_id: str
    tenant_id: str
    server_definition_id: str
    title: str
    status: str
    created_at: datetime
    updated_at: datetime
    sandbox_id: Optional[str] = None
    server_url: Optional[str] = None
    last_error: Optional[str] = None
    credentials: Dict[str, str] = field(default_factory=dict)
    server_name: str = ""


@dataclass(frozen=True)
class InstallResult:
    success: bool
    test_mode: bool
    message: str
    connection_id: Optional[str] = None
    mcp_status: Optional[str] = None
    server_url: Optional[str] = None
    sandbox_id: Optional[str] = None
    credentials: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "testMode": self.test_mode,
            "message": self.message,
        }
        if self.connection_id:
            data["connectionId"] = self.connection_id
        if self.mcp_status:
            data["mcp_status"] = self.mcp_status
        if self.server_url:
            data["server_url"] = self.server_url
        if self.sandbox_id:
            data["sandboxId"] = self.sandbox_id
        if not self.test_mode:
            data["credentials"] = dict(self.credentials)
        return data
