from pipekit.contract import Capability
from pipekit.loader import discover_plugins, load_plugin_file, parse_frontmatter
from pipekit.pipes import BUILTIN_PIPES_DIR

GOOD_PLUGIN = '''
"""
title: Shouter
author: tests
version: 0.2.0
"""
from pydantic import BaseModel


class Pipe:
    class Valves(BaseModel):
        SUFFIX: str = "!"

    def __init__(self):
        self.valves = self.Valves()

    def pipe(self, body: dict):
        return body["messages"][-1]["content"].upper() + self.valves.SUFFIX
'''


def test_parse_frontmatter():
    metadata = parse_frontmatter(GOOD_PLUGIN)
    assert metadata == {"title": "Shouter", "author": "tests", "version": "0.2.0"}
    assert parse_frontmatter("x = 1\n") == {}
    assert parse_frontmatter("def broken(:\n") == {}


def test_load_plugin_file(write_plugin):
    path = write_plugin("shouter", GOOD_PLUGIN)
    definition = load_plugin_file(path)
    assert definition.plugin_id == "shouter"
    assert definition.name == "Shouter"
    assert definition.metadata["version"] == "0.2.0"
    assert definition.source == str(path)
    assert definition.capabilities == frozenset({Capability.PROCESS})


def test_discover_skips_broken_plugins(write_plugin, caplog):
    write_plugin("shouter", GOOD_PLUGIN)
    write_plugin("syntax_error", "class Pipe(:\n    pass\n")
    write_plugin("no_pipe", "class Other:\n    pass\n")
    write_plugin("missing_dep", "import not_a_real_module_xyz\n")
    write_plugin("raises", "raise RuntimeError('boom at import')\n")
    write_plugin("_private", GOOD_PLUGIN)

    definitions = discover_plugins(write_plugin.directory)

    assert [d.plugin_id for d in definitions] == ["shouter"]
    assert "no_pipe" in caplog.text
    assert "not_a_real_module_xyz" in caplog.text


def test_discover_missing_directory(tmp_path):
    assert discover_plugins(tmp_path / "nope") == []


def test_builtin_pipes_are_discoverable():
    definitions = {d.plugin_id: d for d in discover_plugins(BUILTIN_PIPES_DIR)}
    assert set(definitions) == {"echo", "openai_manifold"}
    assert definitions["openai_manifold"].is_manifold
    assert definitions["openai_manifold"].name == "OpenAI Manifold"
    assert not definitions["echo"].is_manifold
