import json
import logging
import os
import tempfile
import threading
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from pipekit.constants import HOST_NAME
from pipekit.errors import ConfigurationError

logger = logging.getLogger(HOST_NAME)


def missing_required(valves_class: type, values: Optional[Dict[str, Any]] = None) -> List[str]:
    """Required Valves fields that have no value in `values`"""
    values = values or {}
    return [
        field_name
        for field_name, info in valves_class.model_fields.items()
        if info.is_required() and field_name not in values
    ]


def resolve_valves(valves_class: type, persisted: Optional[Dict[str, Any]] = None) -> BaseModel:
    """Build a Valves instance from schema defaults plus persisted settings.

    Keys the schema does not know are ignored. Raises ConfigurationError when a
    required option is missing or a value fails validation.
    """
    persisted = persisted or {}
    known = {k: v for k, v in persisted.items() if k in valves_class.model_fields}
    ignored = sorted(set(persisted) - set(known))
    if ignored:
        logger.debug("Ignoring unknown valves for %s: %s", valves_class.__qualname__, ignored)

    missing = missing_required(valves_class, known)
    if missing:
        raise ConfigurationError(
            f"Missing required valves: {', '.join(missing)}", fields=missing
        )

    try:
        return valves_class(**known)
    except ValidationError as e:
        fields = [".".join(str(p) for p in err.get("loc", ())) for err in e.errors()]
        raise ConfigurationError(
            f"Invalid valves for {', '.join(fields) or valves_class.__qualname__}: {e}",
            fields=fields,
        ) from e


def dump_valves(valves: Optional[BaseModel]) -> Dict[str, Any]:
    if valves is None:
        return {}
    return valves.model_dump(mode="json")


class ValvesStore:
    """JSON file holding persisted valves per plugin and per user.

    Layout: {"plugins": {plugin_id: {...}}, "users": {plugin_id: {user_id: {...}}}}
    With no path the store lives in memory only.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._lock = threading.Lock()
        self._data: Dict[str, Dict[str, Any]] = {"plugins": {}, "users": {}}
        if path:
            self.load()

    def load(self):
        if not self.path or not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ConfigurationError(f"Valves file {self.path} must contain a JSON object")
        with self._lock:
            self._data = {
                "plugins": dict(data.get("plugins") or {}),
                "users": dict(data.get("users") or {}),
            }
        logger.info("Loaded valves for %d plugins from %s", len(self._data["plugins"]), self.path)

    def _save(self):
        if not self.path:
            return
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".valves-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, plugin_id: str) -> Dict[str, Any]:
        with self._lock:
            return dict(self._data["plugins"].get(plugin_id) or {})

    def set(self, plugin_id: str, values: Dict[str, Any]):
        with self._lock:
            self._data["plugins"][plugin_id] = dict(values)
            self._save()

    def get_user(self, plugin_id: str, user_id: str) -> Dict[str, Any]:
        with self._lock:
            users = self._data["users"].get(plugin_id) or {}
            return dict(users.get(user_id) or {})

    def set_user(self, plugin_id: str, user_id: str, values: Dict[str, Any]):
        with self._lock:
            self._data["users"].setdefault(plugin_id, {})[user_id] = dict(values)
            self._save()

    def delete(self, plugin_id: str):
        with self._lock:
            self._data["plugins"].pop(plugin_id, None)
            self._data["users"].pop(plugin_id, None)
            self._save()
