"""The shape a Pipe plugin must have for the host to load and call it.

A plugin is a class named `Pipe` with:

- `pipe(body, ...)`: required. Processes one request and returns a string,
  a structured value, or an iterable of chunks for streaming replies.
- `pipes()`: optional. Lists the models a manifold exposes, as a list of
  `{"id": ..., "name": ...}` dicts.
- `Valves`: optional pydantic model holding the plugin's configuration.
- `UserValves`: optional pydantic model holding per-user settings.

`describe_plugin` inspects the class once, at registration, and records the
capabilities it found in a PluginDefinition. After that the host dispatches
on the recorded capabilities instead of probing attributes per request.
"""

import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from pydantic import BaseModel

from pipekit.constants import CONTEXT_PARAMS, ERROR_MODEL_ID
from pipekit.errors import ContractViolation

ModelEntry = Dict[str, str]


class Capability(str, Enum):
    PROCESS = "process"
    LIST_MODELS = "list_models"


@dataclass(frozen=True)
class PluginDefinition:
    plugin_id: str
    name: str
    pipe_class: type
    capabilities: FrozenSet[Capability]
    valves_class: Optional[type] = None
    user_valves_class: Optional[type] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    source: Optional[str] = None
    # None means pipe() takes **kwargs and receives every context parameter
    accepted_params: Optional[FrozenSet[str]] = None
    is_async_process: bool = False
    is_async_listing: bool = False

    @property
    def is_manifold(self) -> bool:
        return Capability.LIST_MODELS in self.capabilities


def describe_plugin(
    pipe_class: type,
    plugin_id: str,
    *,
    metadata: Optional[Dict[str, str]] = None,
    source: Optional[str] = None,
) -> PluginDefinition:
    """Validate a Pipe class and record what it can do.

    Raises ContractViolation when the class cannot be served.
    """
    if not inspect.isclass(pipe_class):
        raise ContractViolation(f"{plugin_id}: Pipe must be a class, got {type(pipe_class).__name__}")
    if not plugin_id or "." in plugin_id:
        raise ContractViolation(f"Invalid plugin id {plugin_id!r}: must be non-empty and contain no '.'")

    process = getattr(pipe_class, "pipe", None)
    if process is None or not callable(process):
        raise ContractViolation(f"{plugin_id}: Pipe class has no callable 'pipe' method")

    capabilities = {Capability.PROCESS}

    listing = getattr(pipe_class, "pipes", None)
    if listing is not None:
        if not callable(listing):
            raise ContractViolation(f"{plugin_id}: 'pipes' must be callable when defined")
        capabilities.add(Capability.LIST_MODELS)
    elif getattr(pipe_class, "type", None) == "manifold":
        raise ContractViolation(f"{plugin_id}: manifold plugins must define 'pipes()'")

    valves_class = _model_class(pipe_class, "Valves", plugin_id)
    user_valves_class = _model_class(pipe_class, "UserValves", plugin_id)

    metadata = dict(metadata or {})
    name = metadata.get("title") or getattr(pipe_class, "name", None) or plugin_id

    return PluginDefinition(
        plugin_id=plugin_id,
        name=str(name),
        pipe_class=pipe_class,
        capabilities=frozenset(capabilities),
        valves_class=valves_class,
        user_valves_class=user_valves_class,
        metadata=metadata,
        source=source,
        accepted_params=accepted_context_params(process),
        is_async_process=_is_async(process),
        is_async_listing=_is_async(listing) if listing is not None else False,
    )


def _model_class(pipe_class: type, attr: str, plugin_id: str) -> Optional[type]:
    model = getattr(pipe_class, attr, None)
    if model is None:
        return None
    if not (inspect.isclass(model) and issubclass(model, BaseModel)):
        raise ContractViolation(f"{plugin_id}: {attr} must be a pydantic BaseModel subclass")
    return model


def _is_async(fn) -> bool:
    return inspect.iscoroutinefunction(fn) or inspect.isasyncgenfunction(fn)


def accepted_context_params(fn) -> Optional[FrozenSet[str]]:
    """Context parameter names a callable accepts; None if it takes **kwargs"""
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return frozenset()
    names = set()
    for param in signature.parameters.values():
        if param.kind == inspect.Parameter.VAR_KEYWORD:
            return None
        if param.name in CONTEXT_PARAMS:
            names.add(param.name)
    return frozenset(names)


def select_context(context: Dict[str, Any], accepted: Optional[FrozenSet[str]]) -> Dict[str, Any]:
    """Keep the context entries a plugin asked for"""
    if accepted is None:
        return dict(context)
    return {k: v for k, v in context.items() if k in accepted}


def split_model_id(model_id: str) -> Tuple[str, str]:
    """Split a host model id at its first '.'.

    "vendor.modelname" -> ("vendor", "modelname"); "a.b.c" -> ("a", "b.c");
    an id without '.' has no prefix.
    """
    prefix, sep, rest = model_id.partition(".")
    if not sep:
        return "", model_id
    return prefix, rest


def strip_model_prefix(model_id: str) -> str:
    """The part of a model id after the first '.', or the whole id"""
    return split_model_id(model_id)[1]


def error_entry(message: str) -> ModelEntry:
    return {"id": ERROR_MODEL_ID, "name": message}


def is_error_entry(entry: ModelEntry) -> bool:
    return entry.get("id") == ERROR_MODEL_ID


def normalize_model_entries(entries: Iterable[Any]) -> List[ModelEntry]:
    """Coerce a plugin listing to unique {id, name} dicts.

    Malformed entries are dropped; for a repeated id the first entry wins.
    """
    normalized: List[ModelEntry] = []
    seen = set()
    for entry in entries:
        if isinstance(entry, BaseModel):
            entry = entry.model_dump()
        if not isinstance(entry, dict):
            continue
        model_id = entry.get("id")
        if model_id is None or str(model_id).strip() == "":
            continue
        model_id = str(model_id)
        if model_id in seen:
            continue
        seen.add(model_id)
        name = entry.get("name")
        normalized.append({"id": model_id, "name": str(name) if name else model_id})
    return normalized
