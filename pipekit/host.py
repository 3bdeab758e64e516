import asyncio
import concurrent.futures
import functools
import inspect
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel

from pipekit.config import HostSettings
from pipekit.constants import ERROR_MODEL_ID, HOST_NAME
from pipekit.contract import (
    PluginDefinition,
    describe_plugin,
    error_entry,
    is_error_entry,
    normalize_model_entries,
    select_context,
    split_model_id,
)
from pipekit.errors import ConfigurationError, ContractViolation, PluginNotFoundError
from pipekit.loader import discover_plugins
from pipekit.results import (
    FailureKind,
    PipeFailure,
    PipeResult,
    PipeSuccess,
    as_error_message,
    is_error_value,
)
from pipekit.stream import ChunkStream
from pipekit.utils.logger import setup_logger
from pipekit.utils.text import to_text, truncate_for_log
from pipekit.valves import ValvesStore, dump_valves, resolve_valves

logger = logging.getLogger(HOST_NAME)


@dataclass(frozen=True)
class HostModel:
    """One selectable model as the host presents it"""

    id: str
    name: str
    plugin_id: str
    entry_id: str
    disabled: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "plugin_id": self.plugin_id,
            "disabled": self.disabled,
        }


@dataclass
class RegisteredPlugin:
    definition: PluginDefinition
    instance: Any = None
    active: bool = True
    config_error: Optional[ConfigurationError] = None
    in_flight: int = 0
    valves_version: int = 0
    models_cache: Optional[Tuple[float, List[HostModel]]] = field(default=None, repr=False)

    @property
    def plugin_id(self) -> str:
        return self.definition.plugin_id


class PipeHost:
    """Discovers, configures and invokes Pipe plugins.

    Plugin failures never escape `list_models` or `invoke`: listing problems
    become a single disabled "error" model, invocation problems a PipeFailure.
    Methods that manage the registry itself (`update_valves`, `set_active`,
    ...) raise for unknown plugins or invalid values.
    """

    def __init__(self, settings: Optional[HostSettings] = None, store: Optional[ValvesStore] = None):
        self.settings = settings or HostSettings()
        setup_logger(HOST_NAME, self.settings.LOG_LEVEL)
        self.store = store if store is not None else ValvesStore(self.settings.VALVES_PATH)
        self._plugins: Dict[str, RegisteredPlugin] = {}
        self._lock = threading.RLock()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.settings.THREAD_WORKERS,
            thread_name_prefix="pipekit",
        )

    # Registry

    def load_directory(self, directory: Optional[Union[str, Path]] = None) -> List[str]:
        """Discover and register every plugin in a directory; returns their ids"""
        directory = directory or self.settings.PIPES_DIR
        loaded = []
        for definition in discover_plugins(directory):
            try:
                self.register(definition)
            except ContractViolation as e:
                logger.error("Could not register plugin %s: %s", definition.plugin_id, e)
                continue
            loaded.append(definition.plugin_id)
        logger.info("Loaded %d plugins from %s", len(loaded), directory)
        return loaded

    def register_class(self, pipe_class: type, plugin_id: str, **metadata: str) -> PluginDefinition:
        definition = describe_plugin(pipe_class, plugin_id, metadata=metadata)
        self.register(definition)
        return definition

    def register(self, definition: PluginDefinition) -> RegisteredPlugin:
        """Instantiate a plugin once and resolve its valves.

        A plugin whose valves cannot be resolved is kept as unconfigured until
        `update_valves` supplies what is missing.
        """
        plugin = RegisteredPlugin(definition=definition)
        valves = None
        if definition.valves_class is not None:
            try:
                valves = resolve_valves(definition.valves_class, self.store.get(definition.plugin_id))
            except ConfigurationError as e:
                logger.warning("Plugin %s is unconfigured: %s", definition.plugin_id, e)
                plugin.config_error = e

        if plugin.config_error is None:
            plugin.instance = self._instantiate(definition, valves)

        with self._lock:
            if definition.plugin_id in self._plugins:
                logger.warning("Replacing registered plugin %s", definition.plugin_id)
            self._plugins[definition.plugin_id] = plugin
        return plugin

    def _instantiate(self, definition: PluginDefinition, valves: Optional[BaseModel]):
        try:
            instance = definition.pipe_class()
        except Exception as e:
            raise ContractViolation(
                f"{definition.plugin_id}: Pipe() constructor failed: {e}"
            ) from e
        if valves is not None:
            instance.valves = valves
        return instance

    def unregister(self, plugin_id: str):
        with self._lock:
            self._get(plugin_id)
            del self._plugins[plugin_id]

    def _get(self, plugin_id: str) -> RegisteredPlugin:
        with self._lock:
            plugin = self._plugins.get(plugin_id)
        if plugin is None:
            raise PluginNotFoundError(f"No plugin registered with id {plugin_id!r}")
        return plugin

    @property
    def plugins(self) -> List[PluginDefinition]:
        with self._lock:
            return [p.definition for p in self._plugins.values()]

    def set_active(self, plugin_id: str, active: bool):
        plugin = self._get(plugin_id)
        with self._lock:
            plugin.active = bool(active)
        logger.info("Plugin %s %s", plugin_id, "activated" if active else "deactivated")

    def plugin_state(self, plugin_id: str) -> str:
        """Lifecycle state: unconfigured, constructed, or invoked while a call is in flight"""
        plugin = self._get(plugin_id)
        with self._lock:
            if plugin.instance is None:
                return "unconfigured"
            return "invoked" if plugin.in_flight else "constructed"

    # Valves

    def get_valves(self, plugin_id: str) -> Optional[BaseModel]:
        plugin = self._get(plugin_id)
        return getattr(plugin.instance, "valves", None) if plugin.instance is not None else None

    def get_valves_spec(self, plugin_id: str) -> Optional[Dict[str, Any]]:
        valves_class = self._get(plugin_id).definition.valves_class
        return valves_class.model_json_schema() if valves_class is not None else None

    def get_user_valves_spec(self, plugin_id: str) -> Optional[Dict[str, Any]]:
        user_valves_class = self._get(plugin_id).definition.user_valves_class
        return user_valves_class.model_json_schema() if user_valves_class is not None else None

    def update_valves(self, plugin_id: str, values: Dict[str, Any]) -> BaseModel:
        """Validate new values over the current ones and swap them in.

        The running instance receives a new Valves object in a single
        assignment; calls already in flight keep the object they read.
        Invalid values raise ConfigurationError and change nothing.
        """
        plugin = self._get(plugin_id)
        definition = plugin.definition
        if definition.valves_class is None:
            raise ConfigurationError(f"Plugin {plugin_id} has no valves")

        with self._lock:
            current = self.get_valves(plugin_id)
            base = dump_valves(current) if current is not None else self.store.get(plugin_id)
            valves = resolve_valves(definition.valves_class, {**base, **values})

            if plugin.instance is None:
                plugin.instance = self._instantiate(definition, valves)
            else:
                plugin.instance.valves = valves
            plugin.config_error = None
            plugin.models_cache = None
            plugin.valves_version += 1
            self.store.set(plugin_id, dump_valves(valves))

        logger.info("Updated valves for %s: %s", plugin_id, sorted(values))
        return valves

    def update_user_valves(self, plugin_id: str, user_id: str, values: Dict[str, Any]) -> BaseModel:
        plugin = self._get(plugin_id)
        user_valves_class = plugin.definition.user_valves_class
        if user_valves_class is None:
            raise ConfigurationError(f"Plugin {plugin_id} has no user valves")
        with self._lock:
            current = self.store.get_user(plugin_id, user_id)
            user_valves = resolve_valves(user_valves_class, {**current, **values})
            self.store.set_user(plugin_id, user_id, dump_valves(user_valves))
        return user_valves

    def _user_valves(self, plugin: RegisteredPlugin, user_id: Optional[str]) -> Optional[BaseModel]:
        user_valves_class = plugin.definition.user_valves_class
        if user_valves_class is None:
            return None
        persisted = self.store.get_user(plugin.plugin_id, user_id) if user_id else {}
        return resolve_valves(user_valves_class, persisted)

    # Listing

    async def list_models(self, refresh: bool = False) -> List[HostModel]:
        """Models exposed by all active plugins, in registration order"""
        with self._lock:
            plugins = [p for p in self._plugins.values() if p.active]
        listings = await asyncio.gather(
            *(self._plugin_models(plugin, refresh) for plugin in plugins)
        )
        return [model for listing in listings for model in listing]

    async def _plugin_models(self, plugin: RegisteredPlugin, refresh: bool) -> List[HostModel]:
        definition = plugin.definition
        plugin_id = definition.plugin_id

        if plugin.config_error is not None:
            return [self._sentinel(plugin, f"Configuration incomplete: {plugin.config_error}")]

        if not definition.is_manifold:
            return [HostModel(id=plugin_id, name=definition.name, plugin_id=plugin_id, entry_id=plugin_id)]

        ttl = self.settings.MODEL_LIST_TTL
        cached = plugin.models_cache
        if not refresh and ttl > 0 and cached is not None and time.monotonic() - cached[0] < ttl:
            return list(cached[1])

        with self.timed(f"pipes:{plugin_id}"):
            entries = await self._call_listing(plugin)

        models = []
        for entry in entries:
            if is_error_entry(entry):
                models.append(self._sentinel(plugin, entry["name"]))
            else:
                models.append(
                    HostModel(
                        id=f"{plugin_id}.{entry['id']}",
                        name=entry["name"],
                        plugin_id=plugin_id,
                        entry_id=entry["id"],
                    )
                )

        if ttl > 0 and not any(m.disabled for m in models):
            plugin.models_cache = (time.monotonic(), list(models))
        return models

    async def _call_listing(self, plugin: RegisteredPlugin) -> List[Dict[str, str]]:
        definition = plugin.definition
        try:
            listing = plugin.instance.pipes
            if definition.is_async_listing:
                pending = listing()
            else:
                loop = asyncio.get_running_loop()
                pending = loop.run_in_executor(self._executor, listing)
            raw = await asyncio.wait_for(pending, timeout=self.settings.LIST_TIMEOUT)
            if inspect.isawaitable(raw):
                raw = await asyncio.wait_for(raw, timeout=self.settings.LIST_TIMEOUT)
        except asyncio.TimeoutError:
            logger.error(
                "Model listing for %s timed out after %.1fs",
                definition.plugin_id,
                self.settings.LIST_TIMEOUT,
            )
            return [error_entry("Model listing timed out")]
        except Exception as e:
            logger.error(f"Error listing models for {definition.plugin_id}: {e}")
            return [error_entry(f"Error listing models: {e}")]

        if not isinstance(raw, (list, tuple)):
            logger.error(
                "Model listing for %s returned %s instead of a list",
                definition.plugin_id,
                type(raw).__name__,
            )
            return [error_entry("Invalid model list")]

        entries = normalize_model_entries(raw)
        errors = [e for e in entries if is_error_entry(e)]
        if errors:
            # a failed listing is a single sentinel, whatever else came back
            return errors[:1]
        return entries

    def _sentinel(self, plugin: RegisteredPlugin, message: str) -> HostModel:
        return HostModel(
            id=f"{plugin.plugin_id}.{ERROR_MODEL_ID}",
            name=message,
            plugin_id=plugin.plugin_id,
            entry_id=ERROR_MODEL_ID,
            disabled=True,
        )

    # Invocation

    async def invoke(
        self,
        body: Dict[str, Any],
        *,
        user: Optional[Dict[str, Any]] = None,
        event_emitter=None,
        event_call=None,
        request: Any = None,
        task: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        files: Optional[List[Dict[str, Any]]] = None,
    ) -> PipeResult:
        """Run one request through the plugin that owns `body["model"]`.

        With `stream` false the result is always a single value; with
        `stream` true an iterable reply comes back as a ChunkStream the
        caller must consume (once) or close.
        """
        model_id = body.get("model") if isinstance(body, dict) else None
        if not isinstance(model_id, str) or not model_id:
            return PipeFailure(as_error_message("request body must include a 'model' id"), FailureKind.NOT_FOUND)

        prefix, _ = split_model_id(model_id)
        plugin_id = prefix or model_id
        with self._lock:
            plugin = self._plugins.get(plugin_id)

        if plugin is None:
            return PipeFailure(as_error_message(f"Model {model_id} not found"), FailureKind.NOT_FOUND)
        if not plugin.active:
            return PipeFailure(as_error_message(f"Model {model_id} is disabled"), FailureKind.DISABLED)
        if plugin.instance is None:
            return PipeFailure(
                as_error_message(f"{plugin_id} is not configured: {plugin.config_error}"),
                FailureKind.CONFIGURATION,
            )

        stream = body.get("stream", False)
        if not isinstance(stream, bool):
            return PipeFailure(
                as_error_message(f"'stream' must be true or false, got {stream!r}"),
                FailureKind.INVALID_REQUEST,
            )
        metadata = dict(metadata or {})
        user = dict(user or {})

        try:
            user_valves = self._user_valves(plugin, user.get("id"))
        except ConfigurationError as e:
            return PipeFailure.from_exception(e, FailureKind.CONFIGURATION)
        if user_valves is not None:
            user["valves"] = user_valves

        context = {
            "__user__": user,
            "__request__": request,
            "__event_emitter__": event_emitter,
            "__event_call__": event_call,
            "__task__": task,
            "__model__": {"id": model_id, "name": plugin.definition.name, "plugin_id": plugin_id},
            "__metadata__": metadata,
            "__chat_id__": metadata.get("chat_id"),
            "__message_id__": metadata.get("message_id"),
            "__files__": files if files is not None else metadata.get("files"),
        }
        accepted = plugin.definition.accepted_params
        if accepted is None:
            context = {k: v for k, v in context.items() if v is not None}
        kwargs = select_context(context, accepted)

        if self.settings.DEBUG_INVOKE:
            logger.info(
                "INVOKE DEBUG plugin=%s model=%s stream=%s params=%s body=%s",
                plugin_id,
                model_id,
                stream,
                sorted(kwargs),
                truncate_for_log(body),
            )

        self._enter(plugin)
        released = False
        try:
            with self.timed(f"pipe:{plugin_id}"):
                raw = await self._call_process(plugin, dict(body), kwargs)
            result = await self._normalize_result(plugin, raw, stream)
            if self.settings.DEBUG_INVOKE:
                if result.ok:
                    preview = "<stream>" if result.is_stream else result.value
                else:
                    preview = result.message
                logger.info(
                    "INVOKE DEBUG plugin=%s ok=%s result=%s",
                    plugin_id,
                    result.ok,
                    truncate_for_log(preview),
                )
            if result.is_stream:
                released = True  # released when the stream closes
            return result
        except Exception as e:
            logger.error(f"Error invoking {plugin_id} for model {model_id}: {e}")
            return PipeFailure.from_exception(e)
        finally:
            if not released:
                self._leave(plugin)

    async def _call_process(self, plugin: RegisteredPlugin, body: Dict[str, Any], kwargs: Dict[str, Any]):
        instance = plugin.instance
        with self._lock:
            valves = getattr(instance, "valves", None)
            version = plugin.valves_version
        snapshot = dump_valves(valves) if isinstance(valves, BaseModel) else None
        try:
            if plugin.definition.is_async_process:
                raw = instance.pipe(body, **kwargs)
            else:
                loop = asyncio.get_running_loop()
                raw = await loop.run_in_executor(
                    self._executor, functools.partial(instance.pipe, body, **kwargs)
                )
            if inspect.isawaitable(raw):
                raw = await raw
            return raw
        finally:
            if snapshot is not None:
                self._restore_valves(plugin, valves, snapshot, version)

    def _restore_valves(
        self, plugin: RegisteredPlugin, valves: BaseModel, snapshot: Dict[str, Any], version: int
    ):
        with self._lock:
            # update_valves ran during the call; its object stands
            if plugin.valves_version != version:
                return
            replaced = plugin.instance.valves is not valves
            mutated = dump_valves(valves) != snapshot
            if not (replaced or mutated):
                return
            logger.warning(
                "Plugin %s modified its valves during a request; restoring",
                plugin.plugin_id,
            )
            plugin.instance.valves = plugin.definition.valves_class(**snapshot) if mutated else valves

    async def _normalize_result(self, plugin: RegisteredPlugin, raw: Any, stream: bool) -> PipeResult:
        if raw is None:
            return PipeSuccess("")

        if isinstance(raw, (str, bytes, bytearray)):
            text = to_text(raw)
            if is_error_value(text):
                return PipeFailure(as_error_message(text), FailureKind.REPORTED)
            return PipeSuccess(text)

        if isinstance(raw, BaseModel):
            return PipeSuccess(raw.model_dump())
        if isinstance(raw, dict):
            return PipeSuccess(raw)

        if hasattr(raw, "__aiter__") or hasattr(raw, "__iter__"):
            if stream:
                chunk_stream = ChunkStream(
                    raw,
                    executor=self._executor,
                    label=plugin.plugin_id,
                    on_close=lambda _s: self._leave(plugin),
                )
                return PipeSuccess(stream=chunk_stream)

            chunk_stream = ChunkStream(raw, executor=self._executor, label=plugin.plugin_id)
            text = await chunk_stream.collect()
            if chunk_stream.error is not None:
                return PipeFailure(chunk_stream.error, FailureKind.CRASHED)
            if is_error_value(text):
                return PipeFailure(as_error_message(text), FailureKind.REPORTED)
            return PipeSuccess(text)

        return PipeSuccess(raw)

    def _enter(self, plugin: RegisteredPlugin):
        with self._lock:
            plugin.in_flight += 1

    def _leave(self, plugin: RegisteredPlugin):
        with self._lock:
            plugin.in_flight = max(0, plugin.in_flight - 1)

    # Helpers

    @contextmanager
    def timed(self, label: str):
        """Log elapsed time when DEBUG_TIMING is enabled."""
        start = time.perf_counter()
        try:
            yield
        finally:
            if self.settings.DEBUG_TIMING:
                elapsed = time.perf_counter() - start
                logger.info("TIMING %s: %.3fs", label, elapsed)

    def shutdown(self):
        self._executor.shutdown(wait=False, cancel_futures=True)
