import asyncio

import pytest

from server.core.StartupWatchdog import run_with_watchdog


def test_returns_startup_result(helper_config):
    async def startup():
        await asyncio.sleep(0)
        return "ready"

    assert asyncio.run(run_with_watchdog(helper_config, startup(), timeout_ms=1000)) == "ready"


def test_slow_startup_is_aborted(helper_config):
    cancelled = []

    async def startup():
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    with pytest.raises(TimeoutError, match="Startup exceeded"):
        asyncio.run(run_with_watchdog(helper_config, startup(), timeout_ms=50))
    assert cancelled == [True]


def test_startup_failure_propagates(helper_config):
    async def startup():
        raise RuntimeError("registry unreadable")

    with pytest.raises(RuntimeError, match="registry unreadable"):
        asyncio.run(run_with_watchdog(helper_config, startup(), timeout_ms=1000))
