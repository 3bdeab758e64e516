from typing import List, Optional


class PipeHostError(Exception):
    """Base class for errors raised by the host."""


class ContractViolation(PipeHostError):
    """A plugin class does not have the shape the host requires."""


class ConfigurationError(PipeHostError):
    """Valves could not be resolved into a complete configuration."""

    def __init__(self, message: str, fields: Optional[List[str]] = None):
        super().__init__(message)
        self.fields = list(fields or [])


class PluginNotFoundError(PipeHostError):
    """No plugin is registered under the requested id."""


class StreamConsumedError(PipeHostError):
    """A ChunkStream was iterated a second time."""
