import sys
import textwrap
from pathlib import Path

import pytest

# Ensure project root is on path so `import pipekit` works even when pytest is run elsewhere
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pipekit.config import HostSettings  # noqa: E402
from pipekit.host import PipeHost  # noqa: E402


@pytest.fixture
def settings():
    return HostSettings(LIST_TIMEOUT=2.0, THREAD_WORKERS=4)


@pytest.fixture
def host(settings):
    pipe_host = PipeHost(settings)
    yield pipe_host
    pipe_host.shutdown()


@pytest.fixture
def write_plugin(tmp_path):
    """Write a plugin file into a temporary plugin directory"""
    plugin_dir = tmp_path / "pipes"
    plugin_dir.mkdir()

    def _write(name: str, source: str) -> Path:
        path = plugin_dir / f"{name}.py"
        path.write_text(textwrap.dedent(source), encoding="utf-8")
        return path

    _write.directory = plugin_dir
    return _write
