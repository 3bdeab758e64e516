"""Outcome of a single plugin invocation.

A host call to a plugin yields either PipeSuccess or PipeFailure. Neither is
raised: both travel back to the caller as values so one failing plugin never
takes the serving loop down with it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from pipekit.constants import ERROR_PREFIX
from pipekit.stream import ChunkStream


class FailureKind(str, Enum):
    REPORTED = "reported"  # plugin returned an "Error:" value
    CRASHED = "crashed"  # plugin raised
    CONFIGURATION = "configuration"
    NOT_FOUND = "not_found"
    DISABLED = "disabled"
    INVALID_REQUEST = "invalid_request"


@dataclass(frozen=True)
class PipeSuccess:
    value: Any = None
    stream: Optional[ChunkStream] = None

    @property
    def ok(self) -> bool:
        return True

    @property
    def is_stream(self) -> bool:
        return self.stream is not None

    async def text(self) -> str:
        """Full reply as text, draining the stream when there is one"""
        if self.stream is not None:
            return await self.stream.collect()
        if self.value is None:
            return ""
        if isinstance(self.value, str):
            return self.value
        content = _completion_content(self.value)
        return content if content is not None else str(self.value)


@dataclass(frozen=True)
class PipeFailure:
    message: str
    kind: FailureKind
    error_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return False

    @property
    def is_stream(self) -> bool:
        return False

    async def text(self) -> str:
        return self.message

    @classmethod
    def from_exception(cls, error: BaseException, kind: FailureKind = FailureKind.CRASHED):
        return cls(
            message=as_error_message(str(error) or type(error).__name__),
            kind=kind,
            error_type=type(error).__name__,
        )


PipeResult = Union[PipeSuccess, PipeFailure]


def as_error_message(message: str) -> str:
    """Prefix a message with "Error:" unless it already is one"""
    message = message.strip()
    if message.startswith(ERROR_PREFIX):
        return message
    return f"{ERROR_PREFIX} {message}"


def is_error_value(value: Any) -> bool:
    return isinstance(value, str) and value.lstrip().startswith(ERROR_PREFIX)


def _completion_content(value: Any) -> Optional[str]:
    if not isinstance(value, dict):
        return None
    choices = value.get("choices") or []
    if choices and isinstance(choices[0], dict):
        message = choices[0].get("message") or {}
        if isinstance(message, dict) and message.get("content") is not None:
            return str(message["content"])
    return None
