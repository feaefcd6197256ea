"""Tests for crowd command dispatch, exit codes and output."""

import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest import mock

import typer

from cloudcrowd.cli import (
    _version_callback,
    install,
    load_schema_command,
    workers_restart,
    workers_run,
    workers_start,
    workers_status,
    workers_stop,
)
from cloudcrowd.install import install_configuration
from cloudcrowd.workers.lifecycle import FleetReport, SlotAction


class CliCommandTests(unittest.TestCase):
    """Validate command wiring with the lifecycle controller stubbed out."""

    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmpdir.cleanup)
        self.bundle = Path(self._tmpdir.name) / "crowd"
        install_configuration(self.bundle)
        env_patch = mock.patch.dict(os.environ, {"CLOUD_CROWD_CONFIG": str(self.bundle)})
        env_patch.start()
        self.addCleanup(env_patch.stop)

    def _patch_controller(self):
        patcher = mock.patch("cloudcrowd.cli.LifecycleController")
        controller_cls = patcher.start()
        self.addCleanup(patcher.stop)
        return controller_cls.for_config.return_value

    def test_missing_config_exits_nonzero(self) -> None:
        with mock.patch.dict(os.environ, {"CLOUD_CROWD_CONFIG": str(Path(self._tmpdir.name) / "empty")}):
            with self.assertRaises(typer.Exit) as cm:
                with redirect_stderr(io.StringIO()) as err:
                    workers_stop()
        self.assertEqual(cm.exception.exit_code, 1)
        self.assertIn("can't find the CloudCrowd configuration", err.getvalue())

    def test_start_uses_flag_over_positional_count(self) -> None:
        controller = self._patch_controller()
        controller.start.return_value = FleetReport(
            actions=[SlotAction(id=0, action="started", pid=101), SlotAction(id=1, action="already_running", pid=102)]
        )
        with redirect_stdout(io.StringIO()) as out:
            workers_start(count=5, num_workers=2)
        fleet_config = controller.start.call_args.args[0]
        self.assertEqual(fleet_config.worker_count, 2)
        self.assertTrue(fleet_config.worker_count_explicit)
        self.assertIn("worker 0: started (PID: 101)", out.getvalue())
        self.assertIn("worker 1: already running (PID: 102)", out.getvalue())

    def test_start_defaults_to_configured_count(self) -> None:
        controller = self._patch_controller()
        controller.start.return_value = FleetReport()
        with redirect_stdout(io.StringIO()):
            workers_start(count=None, num_workers=None)
        self.assertEqual(controller.start.call_args.args[0].worker_count, 4)

    def test_spawn_failure_exits_nonzero(self) -> None:
        controller = self._patch_controller()
        controller.start.return_value = FleetReport(
            actions=[
                SlotAction(id=0, action="started", pid=101),
                SlotAction(id=1, action="failed", error="failed to spawn worker 1: boom"),
            ]
        )
        with self.assertRaises(typer.Exit) as cm:
            with redirect_stdout(io.StringIO()), redirect_stderr(io.StringIO()) as err:
                workers_start(count=2, num_workers=None)
        self.assertEqual(cm.exception.exit_code, 1)
        self.assertIn("1 worker(s) failed to start: 1", err.getvalue())

    def test_stop_empty_fleet(self) -> None:
        controller = self._patch_controller()
        controller.stop.return_value = FleetReport()
        with redirect_stdout(io.StringIO()) as out:
            workers_stop()
        self.assertEqual(out.getvalue().strip(), "No workers running.")

    def test_restart_passes_explicit_count(self) -> None:
        controller = self._patch_controller()
        controller.restart.return_value = FleetReport()
        with redirect_stdout(io.StringIO()):
            workers_restart(num_workers=None)
        self.assertFalse(controller.restart.call_args.args[0].worker_count_explicit)

    def test_run_propagates_worker_exit_code(self) -> None:
        controller = self._patch_controller()
        controller.run.return_value = 3
        with self.assertRaises(typer.Exit) as cm:
            workers_run()
        self.assertEqual(cm.exception.exit_code, 3)

    def test_status_json_on_empty_fleet(self) -> None:
        with redirect_stdout(io.StringIO()) as out:
            workers_status(as_json=True)
        self.assertEqual(json.loads(out.getvalue()), [])

    def test_status_text_on_empty_fleet(self) -> None:
        with redirect_stdout(io.StringIO()) as out:
            workers_status(as_json=False)
        self.assertEqual(out.getvalue().strip(), "No workers running.")

    def test_load_schema_then_up_to_date(self) -> None:
        with redirect_stdout(io.StringIO()) as out:
            load_schema_command(database_config=None)
            load_schema_command(database_config=None)
        lines = out.getvalue().strip().splitlines()
        self.assertIn("migrations applied", lines[0])
        self.assertIn("already up to date", lines[1])

    def test_install_reports_each_file(self) -> None:
        target = Path(self._tmpdir.name) / "fresh"
        with redirect_stdout(io.StringIO()) as out:
            install(path=target)
        self.assertIn(f"installed {target / 'config.yml'}", out.getvalue())

    def test_version_flag_exits(self) -> None:
        with self.assertRaises(typer.Exit):
            with redirect_stdout(io.StringIO()) as out:
                _version_callback(True)
        self.assertEqual(out.getvalue().strip(), "0.1.0")


if __name__ == "__main__":
    unittest.main()
