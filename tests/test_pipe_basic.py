import asyncio
import types

from pipekit.events import EventRecorder
from pipekit.pipes.echo import Pipe as EchoPipe
from pipekit.pipes.openai_manifold import Pipe as ManifoldPipe


def test_pipe_has_required_interface():
    for pipe_class in (EchoPipe, ManifoldPipe):
        pipe = pipe_class()

        # Required attributes for Open WebUI pipes
        assert hasattr(pipe, "valves")
        assert callable(getattr(pipe, "pipe"))

    assert ManifoldPipe.type == "manifold"
    assert callable(getattr(ManifoldPipe(), "pipes"))
    assert not hasattr(EchoPipe(), "pipes")


def test_echo_pipe_replies_with_latest_user_message():
    pipe = EchoPipe()
    pipe.valves = pipe.Valves(PREFIX="> ")
    recorder = EventRecorder()
    body = {
        "model": "echo",
        "messages": [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "ignored"},
            {"role": "user", "content": "  second  "},
        ],
    }

    reply = asyncio.run(pipe.pipe(body, __event_emitter__=recorder))

    assert reply == "> second"
    status = recorder.of_type("status")
    assert status and status[-1]["data"]["done"] is True


def test_echo_pipe_without_user_message():
    assert asyncio.run(EchoPipe().pipe({"messages": []})) == ""


def test_echo_through_host(host):
    host.register_class(EchoPipe, "echo")
    downstream = []

    async def forward(event):
        downstream.append(event)

    async def run():
        recorder = EventRecorder(downstream=forward)
        result = await host.invoke(
            {"model": "echo", "messages": [{"role": "user", "content": "ping"}]},
            user={"id": "test-user"},
            event_emitter=recorder,
            request=types.SimpleNamespace(headers={}),
        )
        return result, recorder

    result, recorder = asyncio.run(run())
    assert result.ok
    assert result.value == "ping"
    assert downstream == recorder.events
