from __future__ import annotations

import asyncio

import pytest

from imoto.cache import BackgroundRefresher


@pytest.mark.asyncio
async def test_schedule_runs_once_per_key_until_settled() -> None:
    refresher = BackgroundRefresher()
    release = asyncio.Event()
    calls = []

    async def refresh() -> None:
        calls.append("run")
        await release.wait()

    assert refresher.schedule("k", refresh) is True
    assert refresher.schedule("k", refresh) is False
    assert refresher.in_progress("k")

    await asyncio.sleep(0)
    release.set()
    await refresher.drain()

    assert calls == ["run"]
    assert not refresher.in_progress("k")
    assert refresher.pending == 0

    assert refresher.schedule("k", refresh) is True
    await refresher.drain()
    assert calls == ["run", "run"]


@pytest.mark.asyncio
async def test_failed_refresh_releases_key() -> None:
    refresher = BackgroundRefresher()

    async def boom() -> None:
        raise RuntimeError("network down")

    assert refresher.schedule("k", boom) is True
    await refresher.drain()

    assert not refresher.in_progress("k")
    assert refresher.schedule("k", boom) is True
    await refresher.drain()


@pytest.mark.asyncio
async def test_different_keys_refresh_independently() -> None:
    refresher = BackgroundRefresher()
    seen = []

    async def refresh(name: str) -> None:
        seen.append(name)

    assert refresher.schedule("a", lambda: refresh("a")) is True
    assert refresher.schedule("b", lambda: refresh("b")) is True
    await refresher.drain()

    assert sorted(seen) == ["a", "b"]


@pytest.mark.asyncio
async def test_reset_forgets_in_flight_keys() -> None:
    refresher = BackgroundRefresher()

    async def forever() -> None:
        await asyncio.Event().wait()

    refresher.schedule("k", forever)
    refresher.reset()
    await asyncio.sleep(0)

    assert not refresher.in_progress("k")
    assert refresher.pending == 0
