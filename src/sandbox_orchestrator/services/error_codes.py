from dataclasses import dataclass
from typing import Dict, List

from sandbox_orchestrator.domain.errors import OrchestratorError


@dataclass(frozen=True)
class ErrorCatalogEntry:
    code: str
    error_code: str
    http_status: int
    title: str
    user_message: str


ERROR_CATALOG: List[ErrorCatalogEntry] = [
    ErrorCatalogEntry(
        code="ERR_VALIDATION",
        error_code="validation",
        http_status=400,
        title="Invalid request",
        user_message="The request is missing a required field or has an invalid value.",
    ),
    ErrorCatalogEntry(
        code="ERR_NOT_FOUND",
        error_code="not_found",
        http_status=404,
        title="Not found",
        user_message="The requested resource does not exist.",
    ),
    ErrorCatalogEntry(
        code="ERR_PROVISIONING",
        error_code="provisioning",
        http_status=502,
        title="Sandbox provisioning failed",
        user_message="A sandbox could not be created or the command inside it failed.",
    ),
    ErrorCatalogEntry(
        code="ERR_READINESS_TIMEOUT",
        error_code="readiness_timeout",
        http_status=504,
        title="Server did not become ready",
        user_message="The MCP server started but never answered its health check.",
    ),
    ErrorCatalogEntry(
        code="ERR_NO_EXEC_CAPABILITY",
        error_code="no_execution_capability",
        http_status=502,
        title="Sandbox cannot run commands",
        user_message="The sandbox exposes no supported way to run commands.",
    ),
    ErrorCatalogEntry(
        code="ERR_TOOL_RESOLUTION",
        error_code="tool_resolution",
        http_status=404,
        title="Tool not available",
        user_message="No running MCP server provides the requested tool.",
    ),
    ErrorCatalogEntry(
        code="ERR_TOOL_INVOCATION",
        error_code="tool_invocation",
        http_status=502,
        title="Tool call failed",
        user_message="The MCP server could not be reached or did not answer in time.",
    ),
    ErrorCatalogEntry(
        code="ERR_NOTIFICATION",
        error_code="notification_delivery",
        http_status=502,
        title="Callback delivery failed",
        user_message="The result could not be delivered back to the session.",
    ),
    ErrorCatalogEntry(
        code="ERR_INSTALL_FAILED",
        error_code="install_failed",
        http_status=502,
        title="MCP install failed",
        user_message="The MCP server could not be installed. Check the connection for details.",
    ),
    ErrorCatalogEntry(
        code="ERR_UNKNOWN",
        error_code="internal",
        http_status=500,
        title="Unexpected error",
        user_message="An unexpected error occurred.",
    ),
]

_BY_ERROR_CODE: Dict[str, ErrorCatalogEntry] = {entry.error_code: entry for entry in ERROR_CATALOG}


def get_catalog_entry(code: str) -> ErrorCatalogEntry:
    for entry in ERROR_CATALOG:
        if entry.code == code:
            return entry
    return _BY_ERROR_CODE["internal"]


def entry_for_error(exc: BaseException) -> ErrorCatalogEntry:
    if isinstance(exc, OrchestratorError):
        return _BY_ERROR_CODE.get(exc.code, _BY_ERROR_CODE["internal"])
    return _BY_ERROR_CODE["internal"]
