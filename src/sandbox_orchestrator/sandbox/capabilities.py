"""Command-execution strategies for provisioned sandboxes.

Backends expose one of several mutually exclusive command APIs. Each
strategy knows one shape and returns itself from ``try_handle`` when the raw
sandbox object supports it. ``select_strategy`` walks the strategies in
preference order once per sandbox; the driver caches the result on the
handle.

Preference order:
  1. ``commands.run`` with streaming callbacks
  2. ``process.start`` + ``wait``
  3. direct ``exec``
  4. generated shell script through ``files.write`` + ``run``
"""
from __future__ import annotations

import asyncio
import logging
import re
import shlex
from typing import Any, Callable, Dict, Optional, Sequence, Type

from sandbox_orchestrator.domain.contracts import CommandResult
from sandbox_orchestrator.domain.errors import NoExecutionCapabilityError

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], None]

SERVER_LOG_PATH = "/tmp/mcp-server.log"
SCRIPT_DIR = "/tmp"
_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


async def maybe_await(value: Any) -> Any:
    if asyncio.iscoroutine(value) or asyncio.isfuture(value):
        return await value
    return value


def _callable_at(obj: Any, *path: str) -> bool:
    current = obj
    for name in path:
        current = getattr(current, name, None)
        if current is None:
            return False
    return callable(current)


def background_command(command: str) -> str:
    return f"nohup {command} > {SERVER_LOG_PATH} 2>&1 &"


def build_env_script(command: str, env: Dict[str, str], background: bool = False) -> str:
    lines = ["#!/bin/bash"]
    for key, value in (env or {}).items():
        if not _ENV_NAME_RE.match(str(key)):
            logger.warning("sandbox.script.env_skipped key=%s", key)
            continue
        lines.append(f"export {key}={shlex.quote(str(value if value is not None else ''))}")
    lines.append(background_command(command) if background else command)
    return "\n".join(lines) + "\n"


def to_command_result(raw: Any) -> CommandResult:
    if isinstance(raw, int):
        return CommandResult(returncode=raw, stdout="", stderr="")
    code = None
    for attr in ("exit_code", "exitCode", "returncode"):
        code = getattr(raw, attr, None)
        if code is not None:
            break
    if code is None and isinstance(raw, dict):
        code = raw.get("exit_code", raw.get("exitCode", 0))
    stdout = getattr(raw, "stdout", None)
    stderr = getattr(raw, "stderr", None)
    if isinstance(raw, dict):
        stdout = raw.get("stdout", stdout)
        stderr = raw.get("stderr", stderr)
    return CommandResult(
        returncode=int(code or 0),
        stdout=str(stdout or ""),
        stderr=str(stderr or ""),
    )


class ExecutionStrategy:
    name = "base"

    def __init__(self, raw: Any) -> None:
        self._raw = raw

    @classmethod
    def try_handle(cls, raw: Any) -> Optional["ExecutionStrategy"]:
        raise NotImplementedError

    async def run(
        self,
        command: str,
        env: Dict[str, str],
        timeout_sec: int = 300,
        on_stdout: Optional[OutputCallback] = None,
        on_stderr: Optional[OutputCallback] = None,
    ) -> CommandResult:
        raise NotImplementedError

    async def start_background(
        self,
        command: str,
        env: Dict[str, str],
        on_stdout: Optional[OutputCallback] = None,
        on_stderr: Optional[OutputCallback] = None,
    ) -> None:
        raise NotImplementedError


class StreamingCommandStrategy(ExecutionStrategy):
    name = "commands.run"

    @classmethod
    def try_handle(cls, raw: Any) -> Optional[ExecutionStrategy]:
        if _callable_at(raw, "commands", "run"):
            return cls(raw)
        return None

    async def run(self, command, env, timeout_sec=300, on_stdout=None, on_stderr=None):
        try:
            result = await maybe_await(
                self._raw.commands.run(
                    command,
                    envs=dict(env or {}),
                    on_stdout=on_stdout,
                    on_stderr=on_stderr,
                    timeout=timeout_sec,
                )
            )
        except Exception as exc:
            # Non-zero exits surface as exceptions carrying the exit code.
            if getattr(exc, "exit_code", None) is None:
                raise
            return to_command_result(exc)
        return to_command_result(result)

    async def start_background(self, command, env, on_stdout=None, on_stderr=None):
        await maybe_await(
            self._raw.commands.run(
                command,
                background=True,
                envs=dict(env or {}),
                on_stdout=on_stdout,
                on_stderr=on_stderr,
                timeout=0,
            )
        )


class ProcessStartStrategy(ExecutionStrategy):
    name = "process.start"

    @classmethod
    def try_handle(cls, raw: Any) -> Optional[ExecutionStrategy]:
        if _callable_at(raw, "process", "start"):
            return cls(raw)
        return None

    async def _start(self, command, env, on_stdout, on_stderr) -> Any:
        return await maybe_await(
            self._raw.process.start(
                cmd=command,
                env_vars=dict(env or {}),
                on_stdout=on_stdout,
                on_stderr=on_stderr,
            )
        )

    async def run(self, command, env, timeout_sec=300, on_stdout=None, on_stderr=None):
        proc = await self._start(command, env, on_stdout, on_stderr)
        waited = await asyncio.wait_for(maybe_await(proc.wait()), timeout=timeout_sec)
        if waited is None:
            waited = proc
        return to_command_result(waited)

    async def start_background(self, command, env, on_stdout=None, on_stderr=None):
        await self._start(command, env, on_stdout, on_stderr)


class DirectExecStrategy(ExecutionStrategy):
    name = "exec"

    @classmethod
    def try_handle(cls, raw: Any) -> Optional[ExecutionStrategy]:
        if _callable_at(raw, "exec"):
            return cls(raw)
        return None

    async def run(self, command, env, timeout_sec=300, on_stdout=None, on_stderr=None):
        result = await asyncio.wait_for(
            maybe_await(self._raw.exec(command, env=dict(env or {}))),
            timeout=timeout_sec,
        )
        out = to_command_result(result)
        if on_stdout and out.stdout:
            on_stdout(out.stdout)
        if on_stderr and out.stderr:
            on_stderr(out.stderr)
        return out

    async def start_background(self, command, env, on_stdout=None, on_stderr=None):
        await maybe_await(self._raw.exec(background_command(command), env=dict(env or {})))


class ScriptFileStrategy(ExecutionStrategy):
    name = "script"

    def __init__(self, raw: Any) -> None:
        super().__init__(raw)
        self._counter = 0

    @classmethod
    def try_handle(cls, raw: Any) -> Optional[ExecutionStrategy]:
        if _callable_at(raw, "files", "write") and _callable_at(raw, "run"):
            return cls(raw)
        return None

    async def _write_script(self, prefix: str, content: str) -> str:
        self._counter += 1
        path = f"{SCRIPT_DIR}/{prefix}_{self._counter}.sh"
        await maybe_await(self._raw.files.write(path, content))
        if _callable_at(self._raw, "files", "chmod"):
            await maybe_await(self._raw.files.chmod(path, "755"))
        return path

    async def run(self, command, env, timeout_sec=300, on_stdout=None, on_stderr=None):
        path = await self._write_script("exec_script", build_env_script(command, env))
        result = await asyncio.wait_for(maybe_await(self._raw.run(f"bash {path}")), timeout=timeout_sec)
        out = to_command_result(result)
        if on_stdout and out.stdout:
            on_stdout(out.stdout)
        if on_stderr and out.stderr:
            on_stderr(out.stderr)
        return out

    async def start_background(self, command, env, on_stdout=None, on_stderr=None):
        path = await self._write_script("start_script", build_env_script(command, env, background=True))
        await maybe_await(self._raw.run(f"bash {path}"))


DEFAULT_STRATEGIES: Sequence[Type[ExecutionStrategy]] = (
    StreamingCommandStrategy,
    ProcessStartStrategy,
    DirectExecStrategy,
    ScriptFileStrategy,
)


def select_strategy(
    raw: Any,
    strategies: Sequence[Type[ExecutionStrategy]] = DEFAULT_STRATEGIES,
) -> ExecutionStrategy:
    for strategy_cls in strategies:
        strategy = strategy_cls.try_handle(raw)
        if strategy is not None:
            return strategy
    raise NoExecutionCapabilityError(
        "Sandbox exposes no supported command-execution API "
        "(commands.run, process.start, exec, files.write+run)."
    )
