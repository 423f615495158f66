import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

from sandbox_orchestrator.config import OrchestratorConfig
from sandbox_orchestrator.domain.contracts import CompletionNotifier, SandboxBackend
from sandbox_orchestrator.domain.errors import ValidationError
from sandbox_orchestrator.persistence.sqlite_store import SqliteObjectStore
from sandbox_orchestrator.providers.openai_compatible import OpenAICompatibleModelClient
from sandbox_orchestrator.sandbox.driver import HttpGetter, SandboxDriver
from sandbox_orchestrator.services.credentials import PrefixCredentialCodec
from sandbox_orchestrator.services.dispatcher import MessageDispatcher
from sandbox_orchestrator.services.mcp_connections import McpConnectionManager
from sandbox_orchestrator.services.mcp_tools import HttpMcpToolInvoker
from sandbox_orchestrator.services.notifier import HttpCompletionNotifier, LocalCompletionNotifier
from sandbox_orchestrator.services.session_store import SessionStore
from sandbox_orchestrator.services.workflow import InProcessWorkflowEngine


logger = logging.getLogger(__name__)


@dataclass
class Orchestrator:
    config: OrchestratorConfig
    store: SqliteObjectStore
    driver: SandboxDriver
    connections: McpConnectionManager
    sessions: SessionStore
    model: OpenAICompatibleModelClient
    notifier: Union[HttpCompletionNotifier, LocalCompletionNotifier]
    engine: InProcessWorkflowEngine
    dispatcher: MessageDispatcher

    async def start(self) -> None:
        await self.model.start()
        logger.info(
            "orchestrator started template=%s callbacks=%s",
            self.config.sandbox_template,
            "http" if isinstance(self.notifier, HttpCompletionNotifier) else "local",
        )

    async def shutdown(self) -> None:
        await self.engine.shutdown()
        await self.driver.shutdown()
        if isinstance(self.notifier, HttpCompletionNotifier):
            await self.notifier.close()
        await self.model.close()
        logger.info("orchestrator stopped")


def build_orchestrator(
    config: OrchestratorConfig,
    backend: Optional[SandboxBackend] = None,
    notifier: Optional[CompletionNotifier] = None,
    http_get: Optional[HttpGetter] = None,
) -> Orchestrator:
    store = SqliteObjectStore(config.state_db_path)
    if backend is None:
        from sandbox_orchestrator.sandbox.e2b_backend import E2BSandboxBackend

        backend = E2BSandboxBackend(api_key=config.e2b_api_key)
    driver = SandboxDriver(
        backend=backend,
        http_get=http_get,
        default_template=config.sandbox_template,
        exec_timeout_sec=config.exec_timeout_sec,
    )
    connections = McpConnectionManager(
        store=store,
        driver=driver,
        codec=PrefixCredentialCodec(),
        default_template=config.sandbox_template,
        default_port=config.mcp_default_port,
        default_timeout_sec=config.mcp_default_timeout_sec,
        readiness_attempts=config.readiness_attempts,
        readiness_interval_sec=config.readiness_interval_sec,
    )
    if config.mcp_catalog_path is not None:
        seeded = seed_server_definitions(connections, config.mcp_catalog_path)
        logger.info("seeded %d MCP server definitions from %s", seeded, config.mcp_catalog_path)

    sessions = SessionStore(ttl_sec=config.session_ttl_sec)
    if notifier is None:
        notifier = (
            HttpCompletionNotifier(base_url=config.callback_base_url)
            if config.callback_base_url
            else LocalCompletionNotifier(sessions)
        )
    model = OpenAICompatibleModelClient(
        api_key=config.openai_api_key,
        model=config.openai_model,
        base_url=config.openai_base_url,
    )
    engine = InProcessWorkflowEngine(step_attempts=config.workflow_step_attempts)
    dispatcher = MessageDispatcher(
        driver=driver,
        connections=connections,
        model=model,
        tool_invoker=HttpMcpToolInvoker(endpoint_path=config.mcp_endpoint_path),
        notifier=notifier,
        sessions=sessions,
        exec_template=config.sandbox_template,
        exec_timeout_sec=config.exec_timeout_sec,
    )
    dispatcher.register(engine)
    return Orchestrator(
        config=config,
        store=store,
        driver=driver,
        connections=connections,
        sessions=sessions,
        model=model,
        notifier=notifier,
        engine=engine,
        dispatcher=dispatcher,
    )


def seed_server_definitions(connections: McpConnectionManager, path: Path) -> int:
    """Register every definition in a JSON catalog file (a list of objects, each with an ``id``)."""
    try:
        entries: Any = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("could not read MCP server catalog %s: %s", path, exc)
        return 0
    if isinstance(entries, dict):
        entries = entries.get("servers") or []
    count = 0
    for entry in entries if isinstance(entries, list) else []:
        if not isinstance(entry, dict) or not str(entry.get("id") or "").strip():
            logger.warning("skipping MCP catalog entry without id")
            continue
        try:
            connections.register_server_definition(entry)
        except ValidationError as exc:
            logger.warning("skipping MCP catalog entry %s: %s", entry.get("id"), exc.message)
            continue
        count += 1
    return count

