from pipekit.config import HostSettings
from pipekit.contract import (
    Capability,
    PluginDefinition,
    describe_plugin,
    split_model_id,
    strip_model_prefix,
)
from pipekit.errors import (
    ConfigurationError,
    ContractViolation,
    PipeHostError,
    PluginNotFoundError,
    StreamConsumedError,
)
from pipekit.host import HostModel, PipeHost
from pipekit.loader import discover_plugins, load_plugin_file
from pipekit.results import FailureKind, PipeFailure, PipeResult, PipeSuccess
from pipekit.stream import ChunkStream

__all__ = [
    "Capability",
    "ChunkStream",
    "ConfigurationError",
    "ContractViolation",
    "FailureKind",
    "HostModel",
    "HostSettings",
    "PipeFailure",
    "PipeHost",
    "PipeHostError",
    "PipeResult",
    "PipeSuccess",
    "PluginDefinition",
    "PluginNotFoundError",
    "StreamConsumedError",
    "describe_plugin",
    "discover_plugins",
    "load_plugin_file",
    "split_model_id",
    "strip_model_prefix",
]
