import asyncio
import json
import time
import unittest
from types import SimpleNamespace

from sandbox_orchestrator.domain.errors import NoExecutionCapabilityError, ProvisioningError
from sandbox_orchestrator.sandbox.capabilities import (
    DirectExecStrategy,
    ProcessStartStrategy,
    ScriptFileStrategy,
    StreamingCommandStrategy,
    build_env_script,
    select_strategy,
)
from sandbox_orchestrator.sandbox.driver import SandboxDriver


class _Commands:
    def __init__(self, result=None, error=None):
        self.calls = []
        self._result = result or SimpleNamespace(exit_code=0, stdout="hi\n", stderr="")
        self._error = error

    async def run(self, cmd, background=False, envs=None, on_stdout=None, on_stderr=None, timeout=None):
        self.calls.append({"cmd": cmd, "background": background, "envs": envs, "timeout": timeout})
        if self._error is not None:
            raise self._error
        if on_stdout and self._result.stdout:
            on_stdout(self._result.stdout)
        return self._result


class _Process:
    def __init__(self):
        self.started = []

    async def start(self, cmd, env_vars=None, on_stdout=None, on_stderr=None):
        self.started.append((cmd, env_vars))

        async def _wait():
            return SimpleNamespace(exit_code=3, stdout="", stderr="boom")

        return SimpleNamespace(wait=_wait)


class _Files:
    def __init__(self):
        self.written = {}

    async def write(self, path, content):
        self.written[path] = content


class _ScriptSandbox:
    def __init__(self, sandbox_id="sbx-script"):
        self.sandbox_id = sandbox_id
        self.files = _Files()
        self.ran = []

    async def run(self, command):
        self.ran.append(command)
        return {"exit_code": 0, "stdout": "done", "stderr": ""}


class _ExecSandbox:
    def __init__(self, sandbox_id="sbx-exec"):
        self.sandbox_id = sandbox_id
        self.executed = []

    def exec(self, command, env=None):
        self.executed.append((command, env))
        return SimpleNamespace(returncode=0, stdout="ok", stderr="")


class _FakeBackend:
    def __init__(self, factory=None, create_error=None):
        self._factory = factory or (lambda n: SimpleNamespace(sandbox_id=f"sbx-{n}", commands=_Commands()))
        self._create_error = create_error
        self.created = []
        self.killed = []
        self.timeouts = []

    async def create(self, template, timeout_ms):
        if self._create_error is not None:
            raise self._create_error
        self.created.append((template, timeout_ms))
        return self._factory(len(self.created))

    def sandbox_id(self, raw):
        return raw.sandbox_id

    def get_external_host(self, raw, port):
        return f"{port}-{raw.sandbox_id}.e2b.dev"

    async def kill(self, sandbox_id):
        self.killed.append(sandbox_id)

    async def set_timeout(self, sandbox_id, timeout_ms):
        self.timeouts.append((sandbox_id, timeout_ms))


class _FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def monotonic(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestCapabilitySelection(unittest.TestCase):
    def test_prefers_streaming_commands_over_exec(self):
        raw = SimpleNamespace(commands=_Commands(), exec=lambda *a, **k: None)
        self.assertIsInstance(select_strategy(raw), StreamingCommandStrategy)

    def test_falls_back_in_preference_order(self):
        self.assertIsInstance(select_strategy(SimpleNamespace(process=_Process())), ProcessStartStrategy)
        self.assertIsInstance(select_strategy(_ExecSandbox()), DirectExecStrategy)
        self.assertIsInstance(select_strategy(_ScriptSandbox()), ScriptFileStrategy)

    def test_no_supported_api_raises(self):
        with self.assertRaises(NoExecutionCapabilityError) as ctx:
            select_strategy(SimpleNamespace(files=_Files()))
        self.assertFalse(ctx.exception.retryable)

    def test_env_script_quotes_values_and_skips_invalid_names(self):
        script = build_env_script("npx server", {"API_TOKEN": "a b'c", "BAD-NAME": "x"}, background=True)
        self.assertIn("export API_TOKEN='a b'\"'\"'c'", script)
        self.assertNotIn("BAD-NAME", script)
        self.assertTrue(script.rstrip().endswith("nohup npx server > /tmp/mcp-server.log 2>&1 &"))


class TestExecutionStrategies(unittest.IsolatedAsyncioTestCase):
    async def test_streaming_run_passes_env_and_timeout(self):
        raw = SimpleNamespace(commands=_Commands())
        chunks = []
        result = await StreamingCommandStrategy(raw).run("echo hi", {"A": "1"}, timeout_sec=9, on_stdout=chunks.append)
        self.assertEqual(result.returncode, 0)
        self.assertEqual(result.stdout, "hi\n")
        self.assertEqual(chunks, ["hi\n"])
        self.assertEqual(raw.commands.calls[0]["envs"], {"A": "1"})
        self.assertEqual(raw.commands.calls[0]["timeout"], 9)

    async def test_streaming_run_turns_exit_error_into_result(self):
        error = RuntimeError("command failed")
        error.exit_code = 2
        error.stdout = ""
        error.stderr = "nope"
        raw = SimpleNamespace(commands=_Commands(error=error))
        result = await StreamingCommandStrategy(raw).run("false", {})
        self.assertEqual(result.returncode, 2)
        self.assertEqual(result.stderr, "nope")

    async def test_streaming_background_start(self):
        raw = SimpleNamespace(commands=_Commands())
        await StreamingCommandStrategy(raw).start_background("npx server", {"PORT": "3000"})
        call = raw.commands.calls[0]
        self.assertTrue(call["background"])
        self.assertEqual(call["timeout"], 0)

    async def test_process_start_waits_for_exit(self):
        raw = SimpleNamespace(process=_Process())
        result = await ProcessStartStrategy(raw).run("make", {"X": "1"})
        self.assertEqual(result.returncode, 3)
        self.assertEqual(raw.process.started, [("make", {"X": "1"})])

    async def test_script_strategy_writes_and_runs_script(self):
        raw = _ScriptSandbox()
        result = await ScriptFileStrategy(raw).run("echo done", {"TOKEN": "t"})
        self.assertEqual(result.stdout, "done")
        path = next(iter(raw.files.written))
        self.assertTrue(path.startswith("/tmp/exec_script_"))
        self.assertIn("export TOKEN=t", raw.files.written[path])
        self.assertEqual(raw.ran, [f"bash {path}"])


class TestSandboxDriver(unittest.IsolatedAsyncioTestCase):
    async def test_provision_caches_capability_and_caps_timeout(self):
        backend = _FakeBackend()
        driver = SandboxDriver(backend)
        handle = await driver.provision("base", timeout_sec=10_000)
        self.assertEqual(handle.capability, "commands.run")
        self.assertEqual(handle.timeout_sec, 3600)
        self.assertEqual(backend.created, [("base", 3_600_000)])
        self.assertEqual(driver.active_ids(), [handle.sandbox_id])

    async def test_provision_failure_is_provisioning_error(self):
        driver = SandboxDriver(_FakeBackend(create_error=RuntimeError("quota exceeded")))
        with self.assertRaises(ProvisioningError):
            await driver.provision()

    async def test_sandbox_without_capability_cannot_run(self):
        backend = _FakeBackend(factory=lambda n: SimpleNamespace(sandbox_id=f"bare-{n}"))
        driver = SandboxDriver(backend)
        handle = await driver.provision()
        self.assertEqual(handle.capability, "none")
        with self.assertRaises(NoExecutionCapabilityError):
            await driver.run(handle, "echo hi")
        with self.assertRaises(NoExecutionCapabilityError):
            await driver.start(handle, "npx server")

    async def test_readiness_gives_up_after_five_attempts(self):
        clock = _FakeClock()
        requested = []

        async def http_get(url):
            requested.append(url)
            return 503

        driver = SandboxDriver(_FakeBackend(), http_get=http_get, sleep=clock.sleep, clock=clock.monotonic)
        ready = await driver.probe_ready("https://3000-sbx.e2b.dev")
        self.assertFalse(ready)
        self.assertEqual(len(requested), 5)
        self.assertEqual(clock.sleeps, [3.0, 3.0, 3.0, 3.0])
        self.assertLessEqual(clock.now, 15.0)

    async def test_readiness_stops_on_first_success(self):
        clock = _FakeClock()
        statuses = [0, 502, 200]

        async def http_get(url):
            status = statuses.pop(0)
            if status == 0:
                raise ConnectionError("refused")
            return status

        driver = SandboxDriver(_FakeBackend(), http_get=http_get, sleep=clock.sleep, clock=clock.monotonic)
        self.assertTrue(await driver.probe_ready("https://host"))
        self.assertEqual(clock.sleeps, [3.0, 3.0])

    async def test_readiness_bounds_hanging_requests(self):
        requested = []

        async def http_get(url):
            requested.append(url)
            await asyncio.Event().wait()

        driver = SandboxDriver(_FakeBackend(), http_get=http_get)
        began = time.monotonic()
        ready = await driver.probe_ready("https://3000-sbx.e2b.dev", attempts=5, interval=0.05)
        elapsed = time.monotonic() - began
        self.assertFalse(ready)
        self.assertGreaterEqual(len(requested), 1)
        self.assertLessEqual(len(requested), 5)
        self.assertLess(elapsed, 1.0)

    async def test_provision_logs_selected_capability(self):
        driver = SandboxDriver(_FakeBackend())
        with self.assertLogs("sandbox_orchestrator.sandbox.driver", level="INFO") as captured:
            await driver.provision()
        events = [json.loads(r.getMessage())["event"] for r in captured.records]
        self.assertIn("sandbox.capability.selected", events)

    async def test_shutdown_kills_only_ephemeral_sandboxes(self):
        backend = _FakeBackend()
        driver = SandboxDriver(backend)
        hosted = await driver.provision("mcp-node", timeout_sec=1800)
        scratch = await driver.provision(ephemeral=True)
        await driver.shutdown()
        self.assertEqual(backend.killed, [scratch.sandbox_id])
        self.assertFalse(hosted.torn_down)
        self.assertEqual(driver.active_count(), 0)

        await driver.teardown_by_id(hosted.sandbox_id)
        self.assertEqual(backend.killed, [scratch.sandbox_id, hosted.sandbox_id])

    async def test_run_once_tears_down_after_failure(self):
        error = RuntimeError("sandbox crashed")
        backend = _FakeBackend(
            factory=lambda n: SimpleNamespace(sandbox_id=f"sbx-{n}", commands=_Commands(error=error))
        )
        driver = SandboxDriver(backend)
        started = []

        async def on_started(handle):
            started.append(handle.sandbox_id)

        with self.assertRaises(ProvisioningError):
            await driver.run_once("echo hi", on_started=on_started)
        self.assertEqual(started, ["sbx-1"])
        self.assertEqual(backend.killed, ["sbx-1"])
        self.assertEqual(driver.active_count(), 0)

    async def test_run_once_returns_output(self):
        backend = _FakeBackend()
        driver = SandboxDriver(backend, exec_timeout_sec=42)
        result = await driver.run_once("echo hi")
        self.assertEqual(result.stdout, "hi\n")
        self.assertEqual(backend.created[0][1], 42_000)
        self.assertEqual(backend.killed, ["sbx-1"])

    async def test_teardown_is_idempotent(self):
        backend = _FakeBackend()
        driver = SandboxDriver(backend)
        handle = await driver.provision()
        await driver.teardown(handle)
        await driver.teardown(handle)
        await driver.teardown(None)
        self.assertEqual(backend.killed, [handle.sandbox_id])

    async def test_external_url_and_keepalive(self):
        backend = _FakeBackend()
        driver = SandboxDriver(backend)
        handle = await driver.provision()
        self.assertEqual(driver.external_url(handle, 3000), "https://3000-sbx-1.e2b.dev")
        extended = await driver.extend_timeout(handle.sandbox_id, 99_999)
        self.assertEqual(extended, 3600)
        self.assertEqual(backend.timeouts, [("sbx-1", 3_600_000)])


if __name__ == "__main__":
    unittest.main()
