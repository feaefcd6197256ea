"""Read-only view of the worker fleet."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from cloudcrowd.workers.records import DaemonRecordStore


class WorkerStatus(BaseModel):
    id: int
    pid: int
    alive: bool
    started_at: datetime


class StatusReporter:
    """Report liveness per recorded slot without touching the store."""

    def __init__(self, store: DaemonRecordStore):
        self.store = store

    def report(self) -> list[WorkerStatus]:
        return [
            WorkerStatus(
                id=record.id,
                pid=record.pid,
                alive=self.store.is_alive(record),
                started_at=record.started_at,
            )
            for record in self.store.all()
        ]


def format_report(rows: list[WorkerStatus]) -> list[str]:
    if not rows:
        return ["No workers running."]
    lines = []
    for row in rows:
        state = "running" if row.alive else "dead (stale record)"
        started = row.started_at.isoformat(timespec="seconds")
        lines.append(f"worker {row.id}: {state} [pid {row.pid}, started {started}]")
    alive = sum(1 for row in rows if row.alive)
    lines.append(f"{alive}/{len(rows)} workers alive")
    return lines
