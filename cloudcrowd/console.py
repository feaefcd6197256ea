"""Interactive console with the cluster configuration preloaded."""

import asyncio
import code
from typing import Any, Callable

from cloudcrowd.config import FleetConfiguration
from cloudcrowd.database import database_path, get_db
from cloudcrowd.version import VERSION
from cloudcrowd.workers.records import DaemonRecordStore
from cloudcrowd.workers.status import StatusReporter

BANNER = """CloudCrowd {version} console
  config   resolved FleetConfiguration
  db_path  central sqlite database
  query    query(sql, *params) -> list of row dicts
  records  worker DaemonRecordStore
  status   worker StatusReporter, try status.report()"""


async def _fetch_rows(db_path, sql: str, params: tuple) -> list[dict]:
    async for db in get_db(db_path):
        async with db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]
    return []


def build_namespace(fleet_config: FleetConfiguration) -> dict[str, Any]:
    db_path = database_path(fleet_config.database_config)
    store = DaemonRecordStore(fleet_config.pid_dir)

    def query(sql: str, *params) -> list[dict]:
        return asyncio.run(_fetch_rows(db_path, sql, params))

    return {
        "config": fleet_config,
        "db_path": db_path,
        "query": query,
        "records": store,
        "status": StatusReporter(store),
    }


def open_console(fleet_config: FleetConfiguration, interact: Callable[..., None] = code.interact) -> None:
    interact(banner=BANNER.format(version=VERSION), local=build_namespace(fleet_config))
