import asyncio
import unittest

from sandbox_orchestrator.domain.errors import ValidationError
from sandbox_orchestrator.services.workflow import InProcessWorkflowEngine


class TestInProcessWorkflowEngine(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.sleeps = []

        async def sleep(seconds):
            self.sleeps.append(seconds)

        self.engine = InProcessWorkflowEngine(step_attempts=3, base_backoff_sec=0.5, sleep=sleep)

    async def asyncTearDown(self):
        await self.engine.shutdown()

    async def test_send_without_handler_is_rejected(self):
        with self.assertRaises(ValidationError):
            await self.engine.send("nobody/listens", {})

    async def test_step_retries_then_succeeds(self):
        attempts = {"n": 0}

        async def flaky():
            attempts["n"] += 1
            if attempts["n"] < 3:
                raise ConnectionError("temporary")
            return "done"

        async def handler(ctx):
            return await ctx.step("flaky", flaky)

        self.engine.register("demo/event", handler)
        run = await self.engine.wait(await self.engine.send("demo/event", {"x": 1}))
        self.assertEqual(run.status, "completed")
        self.assertEqual(run.result, "done")
        self.assertEqual(run.step_attempts["flaky"], 3)
        self.assertEqual(len(self.sleeps), 2)
        self.assertLess(self.sleeps[0], self.sleeps[1])

    async def test_non_retryable_error_fails_immediately(self):
        calls = []

        async def invalid():
            calls.append(1)
            raise ValidationError("bad input")

        async def handler(ctx):
            await ctx.step("invalid", invalid)

        self.engine.register("demo/event", handler)
        run = await self.engine.wait(await self.engine.send("demo/event", {}))
        self.assertEqual(run.status, "failed")
        self.assertIsInstance(run.exception, ValidationError)
        self.assertEqual(calls, [1])
        self.assertEqual(self.sleeps, [])

    async def test_completed_steps_are_memoized(self):
        calls = []

        async def once():
            calls.append(1)
            return len(calls)

        async def handler(ctx):
            first = await ctx.step("once", once)
            second = await ctx.step("once", once)
            return first, second

        self.engine.register("demo/event", handler)
        run = await self.engine.wait(await self.engine.send("demo/event", {}))
        self.assertEqual(run.result, (1, 1))

    async def test_handlers_run_independently(self):
        gate = asyncio.Event()
        seen = []

        async def slow(ctx):
            await gate.wait()
            seen.append(ctx.payload["id"])

        self.engine.register("demo/event", slow)
        first = await self.engine.send("demo/event", {"id": "a"})
        second = await self.engine.send("demo/event", {"id": "b"})
        await asyncio.sleep(0)
        self.assertEqual(self.engine.pending_count(), 2)
        gate.set()
        await self.engine.wait(first)
        await self.engine.wait(second)
        self.assertEqual(sorted(seen), ["a", "b"])
        self.assertEqual(self.engine.run_status(first), "completed")

    async def test_shutdown_cancels_pending_runs(self):
        async def forever(ctx):
            await asyncio.Event().wait()

        self.engine.register("demo/event", forever)
        event_id = await self.engine.send("demo/event", {})
        await asyncio.sleep(0)
        await self.engine.shutdown()
        self.assertEqual(self.engine.run_status(event_id), "cancelled")


if __name__ == "__main__":
    unittest.main()
