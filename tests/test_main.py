import asyncio

import pytest
from aiortc import AudioStreamTrack

from duochat.main import RemoteMediaSink


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_sink_releases_ended_tracks() -> None:
    sink = RemoteMediaSink()
    first, second = AudioStreamTrack(), AudioStreamTrack()

    sink(first)
    sink(second)
    assert sink.active == 2

    first.stop()
    await wait_until(lambda: sink.active == 1)

    await sink.stop()
    assert sink.active == 0
    second.stop()
    await asyncio.sleep(0.05)
    assert sink.active == 0
