"""Tests for the central server health, fleet status and check-in endpoints."""

import os
import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from cloudcrowd.config import FleetConfiguration
from cloudcrowd.server.app import create_app
from cloudcrowd.workers.records import DaemonRecordStore


class CentralServerTests(unittest.TestCase):
    """Validate fleet reporting merged with worker check-ins."""

    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmpdir.cleanup)
        root = Path(self._tmpdir.name)
        self.config = FleetConfiguration(
            worker_count=2,
            config_location=root,
            database_config=root / "database.yml",
            central_server="http://localhost:9173",
            pid_dir=root / "pids",
            log_dir=root / "log",
        )
        self.client = TestClient(create_app(self.config))

    def test_health(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")

    def test_workers_empty(self) -> None:
        payload = self.client.get("/workers").json()
        self.assertEqual(payload, {"workers": [], "alive": 0, "expected": 2})

    def test_check_in_attached_to_matching_record(self) -> None:
        store = DaemonRecordStore(self.config.pid_dir)
        store.register(0, os.getpid())
        store.register(1, os.getpid())

        response = self.client.post("/workers/0/check-in", json={"pid": os.getpid()})
        self.assertEqual(response.status_code, 200)
        self.client.post("/workers/1/check-in", json={"pid": os.getpid() + 100000})

        workers = self.client.get("/workers").json()["workers"]
        self.assertEqual([item["id"] for item in workers], [0, 1])
        self.assertIsNotNone(workers[0]["last_check_in"])
        self.assertTrue(workers[0]["last_check_in"].endswith("+00:00"))
        self.assertIsNone(workers[1]["last_check_in"])
        self.assertTrue(all(item["alive"] for item in workers))

    def test_check_in_requires_pid(self) -> None:
        response = self.client.post("/workers/0/check-in", json={})
        self.assertEqual(response.status_code, 422)


if __name__ == "__main__":
    unittest.main()
