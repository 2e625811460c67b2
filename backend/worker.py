"""
Standalone status poller

Runs the periodic completion sweep outside the API process, e.g. when the
API is started with POLLER_ENABLED=false and scaled horizontally. Run a
single instance: the sweep is safe to duplicate (every transition goes
through the job store's compare-and-set) but duplicates waste API calls.

Supports graceful shutdown (SIGTERM, SIGINT): the current tick finishes,
then the loop exits.
"""

import asyncio
import signal
import sys
import traceback

import structlog

from config import configure_logging
from database import init_db
from redis_client import redis_client
from services.job_store import JobStore
from services.replicate_client import get_replicate_client
from workers.scene_sequencer import SceneSequencer
from workers.status_poller import StatusPoller

logger = structlog.get_logger()


class PollerWorker:
    """
    Owns one StatusPoller and the sequencer it drives.

    Compositing triggered by the sweep runs inline in this process, so a
    long encode delays the next tick but never overlaps it.
    """

    def __init__(self, store: JobStore = None, gateway=None):
        self.store = store or JobStore()
        self.gateway = gateway or get_replicate_client()
        self.sequencer = SceneSequencer(self.store, self.gateway)
        self.poller = StatusPoller(self.store, self.gateway, self.sequencer)

        logger.info(
            "worker_initialized",
            interval=self.poller.interval,
            batch_size=self.poller.batch_size,
            scene_timeout=self.poller.scene_timeout
        )

    def _handle_shutdown_signal(self, signum) -> None:
        """Handle shutdown signals (SIGTERM, SIGINT)"""
        signal_name = "SIGTERM" if signum == signal.SIGTERM else "SIGINT"
        logger.info("shutdown_signal_received", signal=signal_name)
        self.poller.stop()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, self._handle_shutdown_signal, signum)

        try:
            await self.poller.run_forever()
        finally:
            redis_client.close()
            logger.info("worker_stopped")


def main():
    """
    Main entry point for worker

    Usage:
        python worker.py
    """
    configure_logging()

    try:
        init_db()
        worker = PollerWorker()
        asyncio.run(worker.run())
    except Exception as e:
        logger.error(
            "worker_fatal_error",
            error=str(e),
            traceback=traceback.format_exc()
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
