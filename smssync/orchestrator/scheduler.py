"""Continuous background sweeps.

:func:`run_continuous` keeps one service open and calls
:meth:`~smssync.orchestrator.sync.SyncEngine.sweep` every
``SWEEP_INTERVAL_S`` seconds (default 120 s).  A sweep that raises is
logged and the loop carries on; per-rental failures never reach this level
at all.

Health check
~~~~~~~~~~~~
After every sweep, successful or not, the current epoch timestamp is
written to :data:`HEARTBEAT_PATH`.  A supervisor can treat a file older
than :data:`HEARTBEAT_STALE_AFTER_S` as a hung process.

Typical usage::

    import asyncio
    from smssync.orchestrator.scheduler import run_continuous

    asyncio.run(run_continuous())
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from collections.abc import Awaitable, Callable

from smssync.core import events
from smssync.core.settings import Settings
from smssync.orchestrator.runner import open_service
from smssync.orchestrator.sync import SyncEngine

__all__ = [
    "HEARTBEAT_PATH",
    "HEARTBEAT_STALE_AFTER_S",
    "sweep_loop",
    "run_continuous",
]

logger = logging.getLogger(__name__)

#: Heartbeat file; override with ``SMSSYNC_HEARTBEAT_PATH``.
HEARTBEAT_PATH: str = os.environ.get("SMSSYNC_HEARTBEAT_PATH", "/tmp/smssync_heartbeat")

#: 5 × the default sweep interval.
HEARTBEAT_STALE_AFTER_S: int = 600


def _write_heartbeat(path: str = HEARTBEAT_PATH) -> None:
    """Write the current epoch timestamp to *path*; failures are only logged."""
    try:
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(str(time.time()))
    except OSError:
        logger.warning("Failed to write heartbeat file '%s'.", path, exc_info=True)


async def sweep_loop(
    engine: SyncEngine,
    interval_s: float,
    *,
    heartbeat_path: str | None = HEARTBEAT_PATH,
    max_sweeps: int | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> int:
    """Sweep every *interval_s* seconds.

    Args:
        engine: Engine to sweep with.
        interval_s: Pause after each sweep.
        heartbeat_path: Heartbeat file, or ``None`` to skip it.
        max_sweeps: Stop after this many sweeps; ``None`` runs until
            cancelled.
        sleep: Awaitable sleep; injectable for tests.

    Returns:
        The number of sweeps run (only when *max_sweeps* is set).
    """
    logger.info("Sweep loop started; interval %.0fs.", interval_s)
    count = 0
    while max_sweeps is None or count < max_sweeps:
        try:
            await engine.sweep()
        except Exception:
            logger.exception("Sweep failed; retrying after the interval.", extra={"event": events.SWEEP_ERROR})
        count += 1

        if heartbeat_path:
            _write_heartbeat(heartbeat_path)

        summary = engine.states.summary()
        if summary:
            logger.debug("Sync states: %s", summary)

        if max_sweeps is not None and count >= max_sweeps:
            break
        await sleep(interval_s)
    return count


async def run_continuous(settings: Settings | None = None) -> None:
    """Run background sweeps until cancelled or sent ``SIGTERM``.

    ``SIGTERM`` cancels the loop; the service (database connection,
    provider sessions, auto-refresh tasks) is then closed cleanly.
    ``SIGINT`` follows the default asyncio behaviour.

    Raises:
        asyncio.CancelledError: On shutdown.
    """
    if settings is None:
        settings = Settings()

    async with open_service(settings) as service:
        loop_task = asyncio.create_task(
            sweep_loop(service.engine, settings.sweep_interval_s),
            name="smssync-sweep-loop",
        )

        loop = asyncio.get_running_loop()
        shutdown_signal: list[str] = []

        def _request_shutdown(signame: str) -> None:
            if not shutdown_signal:
                shutdown_signal.append(signame)
                logger.info("Received %s; shutting down.", signame)
            loop_task.cancel()

        loop.add_signal_handler(signal.SIGTERM, lambda: _request_shutdown("SIGTERM"))
        try:
            await loop_task
        except asyncio.CancelledError:
            if shutdown_signal:
                logger.info("Graceful shutdown complete (signal: %s).", shutdown_signal[0])
            else:
                logger.info("Sweep loop cancelled.")
            loop_task.cancel()
            await asyncio.gather(loop_task, return_exceptions=True)
            raise
        finally:
            with contextlib.suppress(Exception):
                loop.remove_signal_handler(signal.SIGTERM)
