import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

ENV_PREFIX = "PIPEKIT_"


class HostSettings(BaseModel):
    PIPES_DIR: str = Field(default="pipes", description="Directory scanned for plugin files")
    VALVES_PATH: Optional[str] = Field(
        default=None, description="JSON file persisting valves; memory only when unset"
    )
    LIST_TIMEOUT: float = Field(default=15.0, gt=0, description="Seconds allowed for one pipes() call")
    MODEL_LIST_TTL: float = Field(
        default=0.0, ge=0, description="Seconds to cache a plugin's model list; 0 disables"
    )
    THREAD_WORKERS: int = Field(default=8, ge=1, le=256, description="Threads for sync plugins")
    LOG_LEVEL: str = Field(default="INFO")
    DEBUG_INVOKE: bool = Field(default=False, description="Log request and result previews")
    DEBUG_TIMING: bool = Field(default=False, description="Log elapsed time per call")

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "HostSettings":
        """Settings from PIPEKIT_<FIELD> environment variables, then overrides"""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for field_name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{field_name}")
            if raw is not None and raw != "":
                values[field_name] = raw
        values.update(overrides)
        return cls(**values)
