from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Type

import httpx

from sandbox_orchestrator.domain.connections import MAX_SANDBOX_TIMEOUT_SEC
from sandbox_orchestrator.domain.contracts import CommandResult, SandboxBackend
from sandbox_orchestrator.domain.errors import (
    NoExecutionCapabilityError,
    OrchestratorError,
    ProvisioningError,
)
from sandbox_orchestrator.observability.structured_log import log_json
from sandbox_orchestrator.sandbox.capabilities import (
    DEFAULT_STRATEGIES,
    ExecutionStrategy,
    select_strategy,
)
from sandbox_orchestrator.util import redact

logger = logging.getLogger(__name__)

READINESS_ATTEMPTS = 5
READINESS_INTERVAL_SEC = 3.0

HttpGetter = Callable[[str], Awaitable[int]]
SleepFn = Callable[[float], Awaitable[None]]
ClockFn = Callable[[], float]
StartedCallback = Callable[["SandboxHandle"], Awaitable[None]]


@dataclass
class SandboxHandle:
    sandbox_id: str
    template: str
    timeout_sec: int
    raw: Any = field(repr=False)
    strategy: Optional[ExecutionStrategy] = field(default=None, repr=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ephemeral: bool = False
    torn_down: bool = False

    @property
    def capability(self) -> str:
        return self.strategy.name if self.strategy is not None else "none"


async def _default_http_get(url: str) -> int:
    async with httpx.AsyncClient(timeout=5.0, follow_redirects=True) as client:
        resp = await client.get(url)
        return resp.status_code


class SandboxDriver:
    """Provision, drive and tear down isolated execution sandboxes.

    The driver keeps an in-memory index of live handles so long-lived
    sandboxes can be looked up by id (keepalive, removal). It holds no
    persistent state. Long-lived sandboxes outlive the process: only
    ephemeral ones are killed on shutdown.
    """

    def __init__(
        self,
        backend: SandboxBackend,
        strategies: Sequence[Type[ExecutionStrategy]] = DEFAULT_STRATEGIES,
        http_get: Optional[HttpGetter] = None,
        sleep: SleepFn = asyncio.sleep,
        clock: ClockFn = time.monotonic,
        default_template: str = "base",
        exec_timeout_sec: int = 300,
    ) -> None:
        self._backend = backend
        self._strategies = tuple(strategies)
        self._http_get = http_get or _default_http_get
        self._sleep = sleep
        self._clock = clock
        self._default_template = default_template
        self._exec_timeout_sec = exec_timeout_sec
        self._handles: Dict[str, SandboxHandle] = {}

    async def provision(self, template: str = "", timeout_sec: int = 300, ephemeral: bool = False) -> SandboxHandle:
        template = (template or self._default_template).strip()
        timeout_sec = max(1, min(int(timeout_sec), MAX_SANDBOX_TIMEOUT_SEC))
        try:
            raw = await self._backend.create(template, timeout_sec * 1000)
        except OrchestratorError:
            raise
        except Exception as exc:
            raise ProvisioningError(f"Sandbox creation failed: {redact(str(exc))}") from exc
        sandbox_id = self._backend.sandbox_id(raw)
        try:
            strategy: Optional[ExecutionStrategy] = select_strategy(raw, self._strategies)
        except NoExecutionCapabilityError:
            strategy = None
        handle = SandboxHandle(
            sandbox_id=sandbox_id,
            template=template,
            timeout_sec=timeout_sec,
            raw=raw,
            strategy=strategy,
            ephemeral=ephemeral,
        )
        self._handles[sandbox_id] = handle
        log_json(
            logger,
            "sandbox.provisioned",
            sandbox_id=sandbox_id,
            template=template,
            timeout_sec=timeout_sec,
            ephemeral=ephemeral,
        )
        log_json(logger, "sandbox.capability.selected", sandbox_id=sandbox_id, capability=handle.capability)
        return handle

    async def install(self, handle: SandboxHandle, command: str, env: Optional[Dict[str, str]] = None) -> int:
        result = await self.run(handle, command, env=env)
        log_json(
            logger,
            "sandbox.install.completed",
            sandbox_id=handle.sandbox_id,
            exit_code=result.returncode,
            capability=handle.capability,
        )
        if result.returncode != 0:
            logger.warning(
                "sandbox.install.failed sandbox_id=%s exit_code=%s stderr=%s",
                handle.sandbox_id,
                result.returncode,
                redact(result.stderr[-400:]),
            )
        return result.returncode

    async def run(
        self,
        handle: SandboxHandle,
        command: str,
        env: Optional[Dict[str, str]] = None,
        timeout_sec: Optional[int] = None,
    ) -> CommandResult:
        strategy = self._require_strategy(handle)
        try:
            return await strategy.run(
                command,
                dict(env or {}),
                timeout_sec=timeout_sec or self._exec_timeout_sec,
                on_stdout=self._stream_logger(handle, "stdout"),
                on_stderr=self._stream_logger(handle, "stderr"),
            )
        except OrchestratorError:
            raise
        except asyncio.TimeoutError as exc:
            raise ProvisioningError(f"Command timed out in sandbox {handle.sandbox_id}") from exc
        except Exception as exc:
            raise ProvisioningError(f"Command failed in sandbox {handle.sandbox_id}: {redact(str(exc))}") from exc

    async def start(self, handle: SandboxHandle, command: str, env: Optional[Dict[str, str]] = None) -> None:
        strategy = self._require_strategy(handle)
        try:
            await strategy.start_background(
                command,
                dict(env or {}),
                on_stdout=self._stream_logger(handle, "stdout"),
                on_stderr=self._stream_logger(handle, "stderr"),
            )
        except OrchestratorError:
            raise
        except Exception as exc:
            raise ProvisioningError(f"Start command failed in sandbox {handle.sandbox_id}: {redact(str(exc))}") from exc
        log_json(
            logger,
            "sandbox.start.issued",
            sandbox_id=handle.sandbox_id,
            capability=handle.capability,
            env_keys=sorted((env or {}).keys()),
        )

    async def probe_ready(
        self,
        url: str,
        attempts: int = READINESS_ATTEMPTS,
        interval: float = READINESS_INTERVAL_SEC,
    ) -> bool:
        """GET ``url`` until it answers 2xx.

        The whole loop, requests included, stays within ``attempts * interval``
        seconds. A non-positive interval disables that budget.
        """
        attempts = max(1, int(attempts))
        budget = attempts * interval
        deadline = self._clock() + budget if budget > 0 else None
        for attempt in range(1, attempts + 1):
            timeout = None
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                timeout = min(interval, remaining)
            status = 0
            error = ""
            try:
                status = int(await asyncio.wait_for(self._http_get(url), timeout))
            except asyncio.TimeoutError:
                error = "timeout"
            except Exception as exc:
                error = type(exc).__name__
            ready = 200 <= status < 300
            log_json(logger, "sandbox.probe.attempt", url=url, attempt=attempt, status=status, error=error, ready=ready)
            if ready:
                return True
            if attempt < attempts:
                pause = interval
                if deadline is not None:
                    pause = min(interval, deadline - self._clock())
                    if pause <= 0:
                        break
                await self._sleep(pause)
        return False

    def external_url(self, handle: SandboxHandle, port: int) -> str:
        host = str(self._backend.get_external_host(handle.raw, port) or "").strip().rstrip("/")
        if not host:
            raise ProvisioningError(f"Sandbox {handle.sandbox_id} exposed no host for port {port}")
        if not host.startswith(("http://", "https://")):
            host = f"https://{host}"
        return host

    async def teardown(self, handle: Optional[SandboxHandle]) -> None:
        if handle is None or handle.torn_down:
            return
        handle.torn_down = True
        self._handles.pop(handle.sandbox_id, None)
        await self._kill(handle.sandbox_id)

    async def teardown_by_id(self, sandbox_id: str) -> None:
        if not sandbox_id:
            return
        handle = self._handles.get(sandbox_id)
        if handle is not None:
            await self.teardown(handle)
            return
        await self._kill(sandbox_id)

    async def run_once(
        self,
        command: str,
        env: Optional[Dict[str, str]] = None,
        template: str = "",
        timeout_sec: Optional[int] = None,
        on_started: Optional[StartedCallback] = None,
    ) -> CommandResult:
        """Ad-hoc execution in an ephemeral sandbox, torn down afterwards."""
        timeout = timeout_sec or self._exec_timeout_sec
        handle = await self.provision(template, timeout, ephemeral=True)
        try:
            if on_started is not None:
                await on_started(handle)
            return await self.run(handle, command, env=env, timeout_sec=timeout)
        finally:
            await self.teardown(handle)

    async def extend_timeout(self, sandbox_id: str, timeout_sec: int) -> int:
        timeout_sec = max(1, min(int(timeout_sec), MAX_SANDBOX_TIMEOUT_SEC))
        try:
            await self._backend.set_timeout(sandbox_id, timeout_sec * 1000)
        except Exception as exc:
            raise ProvisioningError(f"Could not extend sandbox {sandbox_id}: {redact(str(exc))}") from exc
        handle = self._handles.get(sandbox_id)
        if handle is not None:
            handle.timeout_sec = timeout_sec
        log_json(logger, "sandbox.timeout.extended", sandbox_id=sandbox_id, timeout_sec=timeout_sec)
        return timeout_sec

    def active_count(self) -> int:
        return len(self._handles)

    def active_ids(self) -> List[str]:
        return sorted(self._handles)

    async def shutdown(self) -> None:
        detached = 0
        for handle in list(self._handles.values()):
            if handle.ephemeral:
                await self.teardown(handle)
            else:
                detached += 1
        self._handles.clear()
        if detached:
            log_json(logger, "sandbox.shutdown.detached", count=detached)

    # ---- Internal helpers ----

    def _require_strategy(self, handle: SandboxHandle) -> ExecutionStrategy:
        if handle.torn_down:
            raise ProvisioningError(f"Sandbox {handle.sandbox_id} was already torn down")
        if handle.strategy is None:
            raise NoExecutionCapabilityError(
                f"Sandbox {handle.sandbox_id} exposes no supported command-execution API"
            )
        return handle.strategy

    async def _kill(self, sandbox_id: str) -> None:
        try:
            await self._backend.kill(sandbox_id)
            log_json(logger, "sandbox.teardown.completed", sandbox_id=sandbox_id)
        except Exception as exc:
            logger.warning("sandbox.teardown.failed sandbox_id=%s error=%s", sandbox_id, redact(str(exc)))

    @staticmethod
    def _stream_logger(handle: SandboxHandle, stream: str) -> Callable[[str], None]:
        def _emit(data: Any) -> None:
            text = str(getattr(data, "line", data) or "").rstrip()
            if text:
                logger.debug("sandbox.%s sandbox_id=%s %s", stream, handle.sandbox_id, redact(text[:500]))

        return _emit
