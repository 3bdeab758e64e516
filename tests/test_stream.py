import asyncio

import pytest

from pipekit.errors import StreamConsumedError
from pipekit.stream import CANCELLED, EXHAUSTED, FAILED, ChunkStream


async def _words():
    for word in ("one", b" two", "", " three"):
        yield word


def test_async_source_is_consumed_once():
    async def run():
        stream = ChunkStream(_words())
        chunks = [chunk async for chunk in stream]
        with pytest.raises(StreamConsumedError):
            async for _ in stream:
                pass
        return chunks, stream.state

    chunks, state = asyncio.run(run())
    assert chunks == ["one", " two", " three"]
    assert state == EXHAUSTED


def test_sync_generator_runs_off_the_event_loop():
    def lines():
        yield 'data: {"choices": [{"delta": {"content": "Hel"}}]}'
        yield 'data: {"choices": [{"delta": {"content": "lo"}}]}'
        yield "data: [DONE]"

    assert asyncio.run(ChunkStream(lines()).collect()) == "Hello"


def test_failure_mid_stream_becomes_error_chunk():
    async def flaky():
        yield "partial"
        raise ConnectionError("upstream went away")

    async def run():
        stream = ChunkStream(flaky())
        chunks = [chunk async for chunk in stream]
        return chunks, stream

    chunks, stream = asyncio.run(run())
    assert chunks[0] == "partial"
    assert chunks[-1].startswith("Error:")
    assert "upstream went away" in chunks[-1]
    assert stream.state == FAILED
    assert stream.error == chunks[-1]


def test_aclose_cancels_and_closes_source():
    closed = []
    notified = []

    def numbers():
        try:
            yield "1"
            yield "2"
        finally:
            closed.append(True)

    async def run():
        stream = ChunkStream(numbers(), on_close=notified.append)
        iterator = stream.__aiter__()
        first = await iterator.__anext__()
        await stream.aclose()
        await stream.aclose()
        return first, stream

    first, stream = asyncio.run(run())
    assert first == "1"
    assert stream.state == CANCELLED
    assert closed == [True]
    assert notified == [stream]


def test_closed_stream_cannot_be_iterated():
    async def run():
        stream = ChunkStream(iter(["a"]))
        await stream.aclose()
        with pytest.raises(StreamConsumedError):
            await stream.collect()

    asyncio.run(run())
