"""Central coordination server: health, fleet status and worker check-ins."""

import logging
from datetime import datetime, timezone

from fastapi import FastAPI
from pydantic import BaseModel

from cloudcrowd.config import FleetConfiguration
from cloudcrowd.version import VERSION
from cloudcrowd.workers.records import DaemonRecordStore
from cloudcrowd.workers.status import StatusReporter

logger = logging.getLogger("cloudcrowd.server")


class CheckIn(BaseModel):
    pid: int


def create_app(fleet_config: FleetConfiguration) -> FastAPI:
    app = FastAPI(title="CloudCrowd Central Server")
    reporter = StatusReporter(DaemonRecordStore(fleet_config.pid_dir))
    # Check-ins are advisory; the pid records stay the source of truth for liveness.
    check_ins: dict[int, dict] = {}

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "version": VERSION}

    @app.get("/workers")
    async def list_workers():
        rows = []
        for row in reporter.report():
            item = row.model_dump(mode="json")
            last = check_ins.get(row.id)
            item["last_check_in"] = last["at"] if last and last["pid"] == row.pid else None
            rows.append(item)
        return {
            "workers": rows,
            "alive": sum(1 for row in rows if row["alive"]),
            "expected": fleet_config.worker_count,
        }

    @app.post("/workers/{slot}/check-in")
    async def worker_check_in(slot: int, payload: CheckIn):
        check_ins[slot] = {"pid": payload.pid, "at": datetime.now(timezone.utc).isoformat()}
        logger.debug("Worker %s (PID: %s) checked in", slot, payload.pid)
        return {"status": "ok"}

    return app
