from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


class SandboxBackend(Protocol):
    """Provisioning backend for isolated execution environments.

    ``create`` returns the backend's raw sandbox object; the driver probes it
    for one of the supported command-execution shapes.
    """

    async def create(self, template: str, timeout_ms: int) -> Any:
        ...

    def sandbox_id(self, raw: Any) -> str:
        ...

    def get_external_host(self, raw: Any, port: int) -> str:
        ...

    async def kill(self, sandbox_id: str) -> None:
        ...

    async def set_timeout(self, sandbox_id: str, timeout_ms: int) -> None:
        ...


class RowStore(Protocol):
    def get_row_by_id(self, row_id: str) -> Optional[Dict[str, Any]]:
        ...

    def get_rows(
        self,
        related_object_type: str,
        owner_tenant_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        ...

    def insert_row(self, row: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def upsert_row(self, row: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def update_row(self, row_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ...

    def delete_row(self, row_id: str) -> bool:
        ...


class CredentialCodec(Protocol):
    def encrypt(self, fields: Dict[str, str]) -> Dict[str, str]:
        ...

    def decrypt(self, fields: Dict[str, str]) -> Dict[str, str]:
        ...


class ModelClient(Protocol):
    async def generate(self, messages: Sequence[Dict[str, str]], correlation_id: str = "") -> str:
        ...

    async def summarize_tool_result(
        self,
        user_message: str,
        server: str,
        tool: str,
        result: Dict[str, Any],
        correlation_id: str = "",
    ) -> str:
        ...

    async def health(self) -> Dict[str, Any]:
        ...


class ToolInvoker(Protocol):
    async def call_tool(self, server_url: str, tool: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        ...


class CompletionNotifier(Protocol):
    async def notify_response(
        self,
        session_id: str,
        text: str,
        requires_sandbox: bool,
        sandbox_id: Optional[str] = None,
    ) -> None:
        ...

    async def notify_execution_started(self, session_id: str, sandbox_id: str) -> None:
        ...


StepFn = Callable[[], Awaitable[Any]]


class WorkflowContext(Protocol):
    event_id: str
    event_name: str
    payload: Dict[str, Any]

    async def step(self, name: str, fn: StepFn) -> Any:
        ...


class WorkflowEngine(Protocol):
    def register(self, event_name: str, handler: Callable[["WorkflowContext"], Awaitable[Any]]) -> None:
        ...

    async def send(self, event_name: str, payload: Dict[str, Any]) -> str:
        ...
