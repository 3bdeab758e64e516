import pytest
from pydantic import BaseModel

from pipekit.contract import Capability, accepted_context_params, describe_plugin
from pipekit.errors import ContractViolation


class SinglePipe:
    class Valves(BaseModel):
        PREFIX: str = ""

    def pipe(self, body: dict, __user__: dict = None, __event_emitter__=None):
        return "ok"


class ManifoldPipe:
    type = "manifold"
    name = "Manifold"

    def pipes(self):
        return [{"id": "a", "name": "A"}]

    async def pipe(self, body: dict, **kwargs):
        return "ok"


def test_describe_single_pipe():
    definition = describe_plugin(SinglePipe, "single")
    assert definition.capabilities == frozenset({Capability.PROCESS})
    assert not definition.is_manifold
    assert definition.valves_class is SinglePipe.Valves
    assert definition.user_valves_class is None
    assert definition.accepted_params == frozenset({"__user__", "__event_emitter__"})
    assert definition.is_async_process is False
    assert definition.name == "single"


def test_describe_manifold_pipe():
    definition = describe_plugin(ManifoldPipe, "multi", metadata={"version": "1.0"})
    assert definition.is_manifold
    assert Capability.LIST_MODELS in definition.capabilities
    assert definition.accepted_params is None
    assert definition.is_async_process is True
    assert definition.is_async_listing is False
    assert definition.name == "Manifold"
    assert definition.metadata == {"version": "1.0"}


def test_frontmatter_title_names_the_plugin():
    definition = describe_plugin(ManifoldPipe, "multi", metadata={"title": "Proxy"})
    assert definition.name == "Proxy"


def test_missing_pipe_method_is_rejected():
    class NoPipe:
        def pipes(self):
            return []

    with pytest.raises(ContractViolation, match="pipe"):
        describe_plugin(NoPipe, "broken")


def test_manifold_without_listing_is_rejected():
    class FakeManifold:
        type = "manifold"

        def pipe(self, body):
            return ""

    with pytest.raises(ContractViolation, match="pipes"):
        describe_plugin(FakeManifold, "broken")


def test_valves_must_be_pydantic():
    class PlainValves:
        class Valves:
            KEY = ""

        def pipe(self, body):
            return ""

    with pytest.raises(ContractViolation, match="Valves"):
        describe_plugin(PlainValves, "broken")


def test_plugin_id_may_not_contain_dot():
    with pytest.raises(ContractViolation):
        describe_plugin(SinglePipe, "bad.id")


def test_accepted_context_params_ignores_ordinary_arguments():
    def pipe(body, user=None, __task__=None, __files__=None):
        return ""

    assert accepted_context_params(pipe) == frozenset({"__task__", "__files__"})
