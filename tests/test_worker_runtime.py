"""Tests for the worker process check-in loop."""

from __future__ import annotations

import asyncio
import json
import os
import unittest

import httpx

from cloudcrowd.workers.runner import WorkerRuntime


class WorkerRuntimeTests(unittest.IsolatedAsyncioTestCase):
    """Validate check-in requests and graceful loop shutdown."""

    async def test_check_in_posts_slot_and_pid(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"status": "ok"})

        runtime = WorkerRuntime(
            slot=2,
            central_server="http://central:9173/",
            check_in_interval=30,
            transport=httpx.MockTransport(handler),
        )
        self.assertTrue(await runtime.check_in())
        self.assertEqual(str(seen[0].url), "http://central:9173/workers/2/check-in")
        self.assertEqual(json.loads(seen[0].content), {"pid": os.getpid()})
        self.assertIsNotNone(runtime.last_successful_check_in)

    async def test_check_in_failures_are_not_fatal(self) -> None:
        def refused(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        runtime = WorkerRuntime(0, "http://central:9173", 30, transport=httpx.MockTransport(refused))
        self.assertFalse(await runtime.check_in())

        rejected = WorkerRuntime(
            0, "http://central:9173", 30, transport=httpx.MockTransport(lambda request: httpx.Response(500))
        )
        self.assertFalse(await rejected.check_in())
        self.assertIsNone(rejected.last_successful_check_in)

    async def test_foreground_worker_skips_check_in(self) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        runtime = WorkerRuntime(None, "http://central:9173", 30, transport=httpx.MockTransport(handler))
        self.assertFalse(await runtime.check_in())
        self.assertEqual(calls, [])

    async def test_stop_ends_loop(self) -> None:
        runtime = WorkerRuntime(
            1, "http://central:9173", 30, transport=httpx.MockTransport(lambda request: httpx.Response(200))
        )
        task = asyncio.create_task(runtime.start())
        await asyncio.sleep(0.05)
        self.assertTrue(runtime.running)
        await runtime.stop()
        await asyncio.wait_for(task, timeout=2)
        self.assertFalse(runtime.running)


if __name__ == "__main__":
    unittest.main()
