"""In-process workflow engine.

Named events fan out to registered handlers, each running as its own
asyncio task. Handlers wrap side effects in ``ctx.step(name, fn)``; a step is
retried with bounded exponential backoff and its result is memoized for the
rest of the run.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sandbox_orchestrator.domain.errors import OrchestratorError, ValidationError
from sandbox_orchestrator.observability.structured_log import log_json
from sandbox_orchestrator.providers.transport import backoff_delay
from sandbox_orchestrator.util import redact

logger = logging.getLogger(__name__)

EVENT_CHAT_MESSAGE = "chat/message.received"
EVENT_MCP_INSTALL = "mcp/install.requested"

StepFn = Callable[[], Awaitable[Any]]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class WorkflowRun:
    event_id: str
    event_name: str
    payload: Dict[str, Any]
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status: str = "queued"
    error: str = ""
    step_attempts: Dict[str, int] = field(default_factory=dict)
    result: Any = None
    exception: Optional[BaseException] = field(default=None, repr=False)


class StepContext:
    def __init__(self, engine: "InProcessWorkflowEngine", run: WorkflowRun) -> None:
        self._engine = engine
        self._run = run
        self._results: Dict[str, Any] = {}

    @property
    def event_id(self) -> str:
        return self._run.event_id

    @property
    def event_name(self) -> str:
        return self._run.event_name

    @property
    def payload(self) -> Dict[str, Any]:
        return self._run.payload

    async def step(self, name: str, fn: StepFn) -> Any:
        if name in self._results:
            return self._results[name]
        attempts = self._engine.step_attempts
        for idx in range(attempts):
            self._run.step_attempts[name] = idx + 1
            try:
                result = await fn()
            except Exception as exc:
                retryable = not isinstance(exc, OrchestratorError) or exc.retryable
                log_json(
                    logger,
                    "workflow.step.failed",
                    level=logging.WARNING,
                    event_id=self._run.event_id,
                    step=name,
                    attempt=idx + 1,
                    retryable=retryable,
                    detail=redact(str(exc))[:300],
                )
                if not retryable or idx + 1 >= attempts:
                    raise
                await self._engine.sleep(backoff_delay(idx, self._engine.base_backoff_sec))
                continue
            self._results[name] = result
            return result
        raise RuntimeError(f"step {name} exhausted without result")  # pragma: no cover


Handler = Callable[[StepContext], Awaitable[Any]]


class InProcessWorkflowEngine:
    def __init__(
        self,
        step_attempts: int = 3,
        base_backoff_sec: float = 0.5,
        sleep: SleepFn = asyncio.sleep,
        max_retained_runs: int = 1000,
    ) -> None:
        self.step_attempts = max(1, int(step_attempts))
        self.base_backoff_sec = base_backoff_sec
        self.sleep = sleep
        self._max_retained_runs = max(1, int(max_retained_runs))
        self._handlers: Dict[str, List[Handler]] = {}
        self._runs: Dict[str, WorkflowRun] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._counter = itertools.count(1)

    def register(self, event_name: str, handler: Handler) -> None:
        self._handlers.setdefault(event_name, []).append(handler)

    async def send(self, event_name: str, payload: Dict[str, Any]) -> str:
        handlers = self._handlers.get(event_name) or []
        if not handlers:
            raise ValidationError(f"No workflow handler registered for {event_name}")
        first_id = ""
        for handler in handlers:
            event_id = f"evt-{next(self._counter)}"
            first_id = first_id or event_id
            run = WorkflowRun(
                event_id=event_id,
                event_name=event_name,
                payload=dict(payload or {}),
                created_at=datetime.now(timezone.utc),
            )
            self._runs[event_id] = run
            self._tasks[event_id] = asyncio.get_running_loop().create_task(
                self._execute(handler, run), name=f"workflow-{event_id}"
            )
        self._prune_finished_runs()
        log_json(logger, "workflow.event.sent", event_name=event_name, event_id=first_id, handlers=len(handlers))
        return first_id

    async def wait(self, event_id: str) -> WorkflowRun:
        task = self._tasks.get(event_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        run = self._runs.get(event_id)
        if run is None:
            raise ValidationError(f"Unknown workflow event {event_id}")
        return run

    def run_status(self, event_id: str) -> str:
        run = self._runs.get(event_id)
        return run.status if run else "unknown"

    def pending_count(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def shutdown(self) -> None:
        pending = [t for t in self._tasks.values() if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _prune_finished_runs(self) -> None:
        excess = len(self._runs) - self._max_retained_runs
        if excess <= 0:
            return
        for event_id in [eid for eid in self._runs if eid not in self._tasks][:excess]:
            self._runs.pop(event_id, None)

    async def _execute(self, handler: Handler, run: WorkflowRun) -> None:
        run.status = "running"
        run.started_at = datetime.now(timezone.utc)
        try:
            run.result = await handler(StepContext(self, run))
        except asyncio.CancelledError:
            run.status = "cancelled"
            raise
        except Exception as exc:
            run.status = "failed"
            run.exception = exc
            run.error = redact(str(exc))[:500]
            logger.exception("workflow.run.failed event=%s event_id=%s", run.event_name, run.event_id)
        else:
            run.status = "completed"
        finally:
            run.completed_at = datetime.now(timezone.utc)
            self._tasks.pop(run.event_id, None)
