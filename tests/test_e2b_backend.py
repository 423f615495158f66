import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from sandbox_orchestrator.sandbox.e2b_backend import E2BSandboxBackend


class TestE2BSandboxBackend:
    def test_create_converts_timeout_to_seconds(self):
        raw = SimpleNamespace(sandbox_id="sbx-1")
        with patch("sandbox_orchestrator.sandbox.e2b_backend.AsyncSandbox") as sandbox_cls:
            sandbox_cls.create = AsyncMock(return_value=raw)
            backend = E2BSandboxBackend(api_key="e2b_key")
            created = asyncio.run(backend.create("mcp-node", 1_800_000))
        assert created is raw
        kwargs = sandbox_cls.create.await_args.kwargs
        assert kwargs["template"] == "mcp-node"
        assert kwargs["timeout"] == 1800
        assert kwargs["api_key"] == "e2b_key"
        assert backend.sandbox_id(raw) == "sbx-1"

    def test_kill_and_set_timeout_use_sandbox_id(self):
        with patch("sandbox_orchestrator.sandbox.e2b_backend.AsyncSandbox") as sandbox_cls:
            sandbox_cls.kill = AsyncMock(return_value=True)
            sandbox_cls.set_timeout = AsyncMock(return_value=None)
            backend = E2BSandboxBackend()
            asyncio.run(backend.kill("sbx-2"))
            asyncio.run(backend.set_timeout("sbx-2", 600_000))
        sandbox_cls.kill.assert_awaited_once_with("sbx-2", api_key=None)
        sandbox_cls.set_timeout.assert_awaited_once_with("sbx-2", 600, api_key=None)

    def test_external_host_comes_from_sandbox(self):
        raw = MagicMock()
        raw.get_host.return_value = "3000-sbx-3.e2b.app"
        assert E2BSandboxBackend().get_external_host(raw, 3000) == "3000-sbx-3.e2b.app"
        raw.get_host.assert_called_once_with(3000)
