import asyncio
import time
from typing import Awaitable, TypeVar

from shared.helper.HelperConfig import HelperConfig

T = TypeVar("T")

PROGRESS_INTERVAL_S = 5


async def run_with_watchdog(helper_config: HelperConfig, startup: Awaitable[T], timeout_ms: float | None = None) -> T:
    """Await ``startup`` under ``STARTUP_TIMEOUT_MS``, warning every few seconds while it is still running.

    Raises:
        TimeoutError: If startup does not finish in time.
    """
    logging = helper_config.get_logger()
    timeout_ms = timeout_ms or helper_config.get_number_val("STARTUP_TIMEOUT_MS", default=15_000)
    started = time.monotonic()
    task = asyncio.ensure_future(startup)

    async def report_progress() -> None:
        while True:
            await asyncio.sleep(PROGRESS_INTERVAL_S)
            logging.warning("Startup still running after %.0fs", time.monotonic() - started)

    reporter = asyncio.get_running_loop().create_task(report_progress())
    try:
        return await asyncio.wait_for(task, timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        logging.critical("Startup did not finish within %dms, aborting", timeout_ms)
        raise TimeoutError(f"Startup exceeded {timeout_ms}ms")
    finally:
        reporter.cancel()
        await asyncio.gather(reporter, return_exceptions=True)
