# shipline/background/signals.py
"""
SIGINT/SIGTERM handling for the runner.

On the first signal the worker is stopped (its current run is marked
interrupted and stays resumable) and the store is closed. Repeated signals
while shutting down are ignored.
"""

import asyncio
import logging
import signal
from typing import TYPE_CHECKING

from shipline.models.store import RunStore

if TYPE_CHECKING:
    from shipline.background.worker import BackgroundWorker

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def setup_signal_handlers(
    worker: "BackgroundWorker",
    store: RunStore,
    on_shutdown: asyncio.Event | None = None,
) -> None:
    """
    Register shutdown handlers on the running loop.

    Event loops without add_signal_handler (Windows Proactor) get
    signal.signal() handlers that hop back onto the loop.

    Args:
        worker: BackgroundWorker to stop
        store: RunStore to close (WAL checkpoint)
        on_shutdown: Optional event set once shutdown is complete
    """
    loop = asyncio.get_running_loop()
    shutting_down = False

    async def _shutdown(sig_name: str) -> None:
        nonlocal shutting_down
        if shutting_down:
            logger.info(f"Received {sig_name} again, shutdown already in progress")
            return
        shutting_down = True

        run_id = worker.current_run_id
        if run_id:
            logger.warning(f"Received {sig_name} during run {run_id}; it will be marked interrupted")
        else:
            logger.info(f"Received {sig_name}, shutting down")

        await worker.stop()
        await store.close()

        if on_shutdown is not None:
            on_shutdown.set()
        logger.info("Runner stopped")

    def _fallback_handler(sig_num, frame) -> None:
        sig_name = signal.Signals(sig_num).name
        loop.call_soon_threadsafe(lambda: asyncio.create_task(_shutdown(sig_name)))

    try:
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, lambda name=sig.name: asyncio.create_task(_shutdown(name)))
        logger.debug("Signal handlers registered on event loop")
    except NotImplementedError:
        for sig in SHUTDOWN_SIGNALS:
            signal.signal(sig, _fallback_handler)
        logger.debug("Signal handlers registered with signal.signal()")
