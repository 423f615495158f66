"""Chat and install workflow handlers.

``MessageDispatcher`` is the body of the ``chat/message.received`` workflow:
it classifies the message, routes it to the model, an ephemeral sandbox or a
tenant's MCP server, and reports back through the completion notifier.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sandbox_orchestrator.domain.connections import ConnectionRecord
from sandbox_orchestrator.domain.contracts import (
    CommandResult,
    CompletionNotifier,
    ModelClient,
    ToolInvoker,
)
from sandbox_orchestrator.domain.errors import ToolInvocationError, ToolResolutionError
from sandbox_orchestrator.observability.structured_log import log_json
from sandbox_orchestrator.routing import (
    KIND_CODE_BLOCK,
    KIND_SHELL_COMMAND,
    KIND_TOOL_CALL,
    ToolCall,
    classify,
    code_block_command,
)
from sandbox_orchestrator.sandbox.driver import SandboxDriver, SandboxHandle
from sandbox_orchestrator.services.mcp_connections import McpConnectionManager
from sandbox_orchestrator.services.session_store import SessionStore
from sandbox_orchestrator.services.workflow import (
    EVENT_CHAT_MESSAGE,
    EVENT_MCP_INSTALL,
    InProcessWorkflowEngine,
    StepContext,
)
from sandbox_orchestrator.util import redact

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 3500
APOLOGY_TEXT = "Sorry, something went wrong while handling your message. Please try again in a moment."

_SYSTEM_PROMPT = (
    "You are a helpful assistant. When the user wants a tool from one of their MCP servers, "
    'answer only with JSON like {"server": "<server>", "tool": "<tool>", "arguments": {}}.'
)

StepRunner = Callable[[str, Callable[[], Awaitable[Any]]], Awaitable[Any]]


async def _run_directly(name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
    return await fn()


def format_command_result(label: str, result: CommandResult) -> str:
    lines = [f"Ran {label} in a sandbox (exit code {result.returncode})."]
    stdout = (result.stdout or "").strip()
    stderr = (result.stderr or "").strip()
    if stdout:
        lines.append("Output:\n```\n" + redact(stdout[-MAX_OUTPUT_CHARS:]) + "\n```")
    if stderr:
        lines.append("Errors:\n```\n" + redact(stderr[-MAX_OUTPUT_CHARS:]) + "\n```")
    if not stdout and not stderr:
        lines.append("The command produced no output.")
    return "\n\n".join(lines)


class MessageDispatcher:
    def __init__(
        self,
        driver: SandboxDriver,
        connections: McpConnectionManager,
        model: ModelClient,
        tool_invoker: ToolInvoker,
        notifier: CompletionNotifier,
        sessions: Optional[SessionStore] = None,
        exec_template: str = "",
        exec_timeout_sec: Optional[int] = None,
    ) -> None:
        self._driver = driver
        self._connections = connections
        self._model = model
        self._tools = tool_invoker
        self._notifier = notifier
        self._sessions = sessions
        self._exec_template = exec_template
        self._exec_timeout_sec = exec_timeout_sec

    def register(self, engine: InProcessWorkflowEngine) -> None:
        engine.register(EVENT_CHAT_MESSAGE, self.on_chat_event)
        engine.register(EVENT_MCP_INSTALL, self.on_install_event)

    async def on_chat_event(self, ctx: StepContext) -> str:
        payload = ctx.payload
        return await self.handle_chat(
            str(payload.get("sessionId") or ""),
            str(payload.get("message") or ""),
            tenant_id=str(payload.get("tenantId") or ""),
            step=ctx.step,
        )

    async def on_install_event(self, ctx: StepContext) -> Dict[str, Any]:
        payload = ctx.payload
        result = await ctx.step(
            "install-mcp-server",
            lambda: self._connections.install(
                payload.get("serverDefinitionId") or "",
                payload.get("tenantId") or "",
                credentials=payload.get("credentials") or {},
                title=payload.get("title") or "",
                test_mode=bool(payload.get("testMode")),
            ),
        )
        return result.to_dict()

    async def handle_chat(
        self,
        session_id: str,
        message: str,
        tenant_id: str = "",
        step: StepRunner = _run_directly,
    ) -> str:
        try:
            reply = await self._route(session_id, message, tenant_id, step)
        except Exception as exc:
            log_json(
                logger,
                "dispatcher.chat.failed",
                level=logging.ERROR,
                session_id=session_id,
                error=type(exc).__name__,
                detail=redact(str(exc))[:300],
            )
            if self._sessions is not None:
                await self._sessions.record_error(session_id, redact(str(exc))[:500] or type(exc).__name__)
            await self._notifier.notify_response(session_id, APOLOGY_TEXT, requires_sandbox=False)
            return APOLOGY_TEXT
        await self._notifier.notify_response(session_id, reply, requires_sandbox=False)
        return reply

    async def _route(self, session_id: str, message: str, tenant_id: str, step: StepRunner) -> str:
        classification = classify(message)
        log_json(logger, "dispatcher.classified", session_id=session_id, kind=classification.kind)
        if classification.kind == KIND_SHELL_COMMAND:
            return await self._execute(session_id, classification.command, f"`{classification.command}`", step)
        if classification.kind == KIND_CODE_BLOCK:
            command = code_block_command(classification.language, classification.code)
            if command is None:
                return (
                    f"I can't execute `{classification.language or 'unlabelled'}` code blocks. "
                    "Supported languages: bash, python, javascript."
                )
            label = f"your {classification.language} snippet"
            return await self._execute(session_id, command, label, step)
        if classification.kind == KIND_TOOL_CALL:
            return await self._dispatch_tool_calls(session_id, message, tenant_id, classification.tool_calls, step)

        reply = await step(
            "generate-reply",
            lambda: self._model.generate(
                [{"role": "system", "content": _SYSTEM_PROMPT}, {"role": "user", "content": message}],
                correlation_id=session_id,
            ),
        )
        # The model may answer with a structured tool call of its own.
        follow_up = classify(reply)
        if follow_up.kind == KIND_TOOL_CALL and tenant_id:
            return await self._dispatch_tool_calls(session_id, message, tenant_id, follow_up.tool_calls, step)
        return reply

    async def _execute(self, session_id: str, command: str, label: str, step: StepRunner) -> str:
        await self._notifier.notify_response(
            session_id, f"Running {label} in a sandbox...", requires_sandbox=True
        )

        async def _on_started(handle: SandboxHandle) -> None:
            await self._notifier.notify_execution_started(session_id, handle.sandbox_id)

        result = await step(
            "execute-in-sandbox",
            lambda: self._driver.run_once(
                command,
                template=self._exec_template,
                timeout_sec=self._exec_timeout_sec,
                on_started=_on_started,
            ),
        )
        log_json(logger, "dispatcher.sandbox.finished", session_id=session_id, returncode=result.returncode)
        return format_command_result(label, result)

    async def _dispatch_tool_calls(
        self,
        session_id: str,
        message: str,
        tenant_id: str,
        calls: Sequence[ToolCall],
        step: StepRunner,
    ) -> str:
        if not tenant_id:
            return "Tool calls need a workspace (tenantId) with at least one running MCP server."
        replies: List[str] = []
        for idx, call in enumerate(calls):
            try:
                connection = self._resolve_connection(tenant_id, call.server)
                result = await step(
                    f"call-tool-{idx}",
                    lambda: self._tools.call_tool(connection.server_url or "", call.tool, dict(call.arguments)),
                )
            except ToolResolutionError as exc:
                log_json(logger, "dispatcher.tool.unresolved", session_id=session_id, server=call.server, tool=call.tool)
                replies.append(exc.message)
                continue
            except ToolInvocationError as exc:
                log_json(
                    logger,
                    "dispatcher.tool.failed",
                    level=logging.WARNING,
                    session_id=session_id,
                    tool=call.tool,
                    error=type(exc).__name__,
                )
                replies.append(f"The tool '{call.tool}' could not be reached: {exc.message}")
                continue
            server_name = connection.server_name or connection.title
            summary = await step(
                f"summarize-tool-{idx}",
                lambda: self._model.summarize_tool_result(
                    message, server_name, call.tool, result, correlation_id=session_id
                ),
            )
            replies.append(summary)
        return "\n\n".join(replies)

    def _resolve_connection(self, tenant_id: str, server: str) -> ConnectionRecord:
        if server:
            return self._connections.find_running(tenant_id, server)
        running = self._connections.running_connections(tenant_id)
        if len(running) == 1:
            return running[0]
        names = ", ".join(sorted(c.server_name or c.title for c in running)) or "none"
        raise ToolResolutionError(f"Which MCP server should handle this tool? Running servers: {names}.")
