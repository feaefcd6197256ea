"""Worker daemon process, launched per slot by `crowd workers start`."""

import asyncio
import logging
import os
import signal
import time
from typing import Optional

import httpx
import typer

from cloudcrowd.config import resolve
from cloudcrowd.errors import ConfigNotFound

logger = logging.getLogger("cloudcrowd.worker")

CHECK_IN_TIMEOUT_SECONDS = 5.0

app = typer.Typer()


class WorkerRuntime:
    def __init__(
        self,
        slot: Optional[int],
        central_server: str,
        check_in_interval: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.slot = slot
        self.central_server = central_server.rstrip("/")
        self.check_in_interval = check_in_interval
        self.transport = transport
        self.running = False
        self._shutdown_event = asyncio.Event()
        self.last_successful_check_in: Optional[float] = None

    @property
    def name(self) -> str:
        return "foreground worker" if self.slot is None else f"worker {self.slot}"

    async def start(self):
        """Main worker loop; returns once stop() is called."""
        self.running = True
        logger.info("%s starting (PID: %s)", self.name.capitalize(), os.getpid())

        loop = asyncio.get_running_loop()
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, lambda: asyncio.create_task(self.stop()))
        except NotImplementedError:
            # Windows ProactorEventLoop does not support add_signal_handler
            logger.warning("Signal handlers not supported on this platform (likely Windows).")

        try:
            while self.running:
                await self.check_in()
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.check_in_interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("Worker loop cancelled.")
        finally:
            logger.info("%s stopped.", self.name.capitalize())

    async def stop(self):
        logger.info("Stopping %s...", self.name)
        self.running = False
        self._shutdown_event.set()

    async def check_in(self) -> bool:
        """Tell the central server this slot is alive; failures are never fatal."""
        if self.slot is None:
            return False
        url = f"{self.central_server}/workers/{self.slot}/check-in"
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=CHECK_IN_TIMEOUT_SECONDS) as client:
                response = await client.post(url, json={"pid": os.getpid()})
        except httpx.HTTPError as exc:
            logger.warning("Check-in with %s failed: %s", self.central_server, exc)
            return False
        if response.status_code != 200:
            logger.warning("Check-in rejected with status %s", response.status_code)
            return False
        self.last_successful_check_in = time.time()
        logger.debug("Checked in %s", self.name)
        return True


@app.command()
def main(
    slot: Optional[int] = typer.Option(None, help="Fleet slot this worker occupies"),
):
    """
    Start a worker process using the configuration named by CLOUD_CROWD_CONFIG.
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )
    try:
        config = resolve()
    except ConfigNotFound as exc:
        logger.error("%s", exc)
        raise typer.Exit(code=1)
    runtime = WorkerRuntime(
        slot=slot,
        central_server=config.central_server,
        check_in_interval=config.check_in_interval,
    )
    asyncio.run(runtime.start())


if __name__ == "__main__":
    app()
