"""Start, stop, restart and foreground-run the worker fleet.

Every decision is made against the DaemonRecordStore, never against memory,
so a `stop` issued from a fresh shell sees exactly what an earlier `start`
left behind.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from typing import Callable, Mapping, Sequence

import psutil
from pydantic import BaseModel, Field

from cloudcrowd.config import CONFIG_ENV_VAR, FleetConfiguration
from cloudcrowd.errors import RecordConflict, SignalFailure, SpawnFailure
from cloudcrowd.workers.records import DaemonRecordStore

logger = logging.getLogger("cloudcrowd.workers.lifecycle")

PYTHON_EXEC = sys.executable
WORKER_MODULE = "cloudcrowd.workers.runner"

ACTION_STARTED = "started"
ACTION_ALREADY_RUNNING = "already_running"
ACTION_FAILED = "failed"
ACTION_STOPPED = "stopped"
ACTION_KILLED = "killed"
ACTION_ALREADY_GONE = "already_gone"


class SlotAction(BaseModel):
    id: int
    action: str
    pid: int | None = None
    error: str | None = None


class FleetReport(BaseModel):
    """Ordered per-slot outcome of one lifecycle operation."""

    actions: list[SlotAction] = Field(default_factory=list)

    @property
    def failures(self) -> list[SlotAction]:
        return [item for item in self.actions if item.action == ACTION_FAILED]

    @property
    def ok(self) -> bool:
        return not self.failures


def default_worker_command(slot: int | None) -> list[str]:
    cmd = [PYTHON_EXEC, "-m", WORKER_MODULE]
    if slot is not None:
        cmd += ["--slot", str(slot)]
    return cmd


def worker_environment(fleet_config: FleetConfiguration, base: Mapping[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    env[CONFIG_ENV_VAR] = str(fleet_config.config_location)
    return env


def _detach_kwargs() -> dict:
    kwargs: dict = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.DETACHED_PROCESS
    else:
        kwargs["start_new_session"] = True
    return kwargs


class LifecycleController:
    def __init__(
        self,
        store: DaemonRecordStore,
        *,
        worker_command: Callable[[int | None], Sequence[str]] = default_worker_command,
    ):
        self.store = store
        self.worker_command = worker_command

    @classmethod
    def for_config(cls, fleet_config: FleetConfiguration, **kwargs) -> "LifecycleController":
        return cls(DaemonRecordStore(fleet_config.pid_dir), **kwargs)

    def _spawn(self, slot: int, fleet_config: FleetConfiguration) -> int:
        """Launch one detached worker with its output appended to a per-slot log."""
        try:
            fleet_config.log_dir.mkdir(parents=True, exist_ok=True)
            log_path = fleet_config.log_dir / f"worker_{slot}.log"
            with log_path.open("a", encoding="utf-8") as log_file:
                process = subprocess.Popen(
                    list(self.worker_command(slot)),
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=log_file,
                    cwd=str(fleet_config.config_location),
                    env=worker_environment(fleet_config),
                    **_detach_kwargs(),
                )
        except OSError as exc:
            raise SpawnFailure(slot, str(exc)) from exc
        return process.pid

    def _terminate(self, slot: int, pid: int, grace_period: float) -> str:
        """SIGTERM, wait out the grace period, then SIGKILL."""
        try:
            proc = psutil.Process(pid)
            proc.terminate()
        except psutil.NoSuchProcess as exc:
            raise SignalFailure(slot, pid) from exc
        _, alive = psutil.wait_procs([proc], timeout=grace_period)
        if not alive:
            logger.info("Worker %s (PID: %s) stopped", slot, pid)
            return ACTION_STOPPED
        logger.warning(
            "Worker %s (PID: %s) did not exit within %.1fs, killing it", slot, pid, grace_period
        )
        for straggler in alive:
            try:
                straggler.kill()
            except psutil.NoSuchProcess:
                return ACTION_STOPPED
        psutil.wait_procs(alive, timeout=grace_period)
        return ACTION_KILLED

    def _start_slot(self, slot: int, fleet_config: FleetConfiguration) -> SlotAction:
        with self.store.slot_lock(slot):
            existing = self.store.lookup(slot)
            if existing is not None:
                logger.info("Worker %s already running (PID: %s)", slot, existing.pid)
                return SlotAction(id=slot, action=ACTION_ALREADY_RUNNING, pid=existing.pid)
            try:
                pid = self._spawn(slot, fleet_config)
            except SpawnFailure as exc:
                logger.error("%s", exc)
                return SlotAction(id=slot, action=ACTION_FAILED, error=str(exc))
            try:
                record = self.store.register(slot, pid)
            except RecordConflict as exc:
                logger.warning("%s; discarding duplicate PID %s", exc, pid)
                try:
                    self._terminate(slot, pid, fleet_config.grace_period)
                except SignalFailure:
                    pass
                return SlotAction(id=slot, action=ACTION_ALREADY_RUNNING, pid=exc.pid)
        logger.info("Started worker %s (PID: %s)", slot, record.pid)
        return SlotAction(id=slot, action=ACTION_STARTED, pid=record.pid)

    def _stop_slot(self, slot: int, known_pid: int | None, grace_period: float) -> SlotAction:
        with self.store.slot_lock(slot):
            current = self.store.lookup(slot)
            if current is None:
                logger.info("Worker %s was not running; cleared its record", slot)
                return SlotAction(id=slot, action=ACTION_ALREADY_GONE, pid=known_pid)
            try:
                action = self._terminate(current.id, current.pid, grace_period)
            except SignalFailure as exc:
                logger.info("%s", exc)
                action = ACTION_ALREADY_GONE
            except psutil.AccessDenied as exc:
                logger.error("Not permitted to stop worker %s (PID: %s): %s", current.id, current.pid, exc)
                return SlotAction(id=current.id, action=ACTION_FAILED, pid=current.pid, error=str(exc))
            self.store.remove(current.id)
        return SlotAction(id=current.id, action=action, pid=current.pid)

    def start(self, fleet_config: FleetConfiguration) -> FleetReport:
        """Fill every empty slot in 0..worker_count-1; live slots are left alone."""
        report = FleetReport()
        for slot in range(fleet_config.worker_count):
            report.actions.append(self._start_slot(slot, fleet_config))
        if report.failures:
            logger.error(
                "%s of %s workers failed to start", len(report.failures), fleet_config.worker_count
            )
        return report

    def stop(self, fleet_config: FleetConfiguration) -> FleetReport:
        """Stop every recorded worker and remove its record, unreadable ones included."""
        report = FleetReport()
        known = {record.id: record.pid for record in self.store.all()}
        for slot in self.store.slots():
            report.actions.append(self._stop_slot(slot, known.get(slot), fleet_config.grace_period))
        return report

    def restart(self, fleet_config: FleetConfiguration) -> FleetReport:
        """Stop the fleet completely, then start it again at the same size."""
        if not fleet_config.worker_count_explicit:
            recorded = len(self.store.all())
            if recorded:
                fleet_config = fleet_config.model_copy(update={"worker_count": recorded})
        stopped = self.stop(fleet_config)
        if not stopped.ok:
            logger.error("Restart aborted: %s workers could not be stopped", len(stopped.failures))
            return stopped
        started = self.start(fleet_config)
        return FleetReport(actions=stopped.actions + started.actions)

    def run(self, fleet_config: FleetConfiguration) -> int:
        """Run one unrecorded worker attached to this terminal and return its exit code."""
        cmd = list(self.worker_command(None))
        logger.info("Running worker in the foreground: %s", " ".join(cmd))
        try:
            completed = subprocess.run(
                cmd,
                cwd=str(fleet_config.config_location),
                env=worker_environment(fleet_config),
                check=False,
            )
        except OSError as exc:
            raise SpawnFailure(None, str(exc)) from exc
        return completed.returncode
