"""
Tunables of the orchestrator, overridable from ``DOCKYARD_*`` environment variables.
"""
import os
from typing import Dict, Mapping, Optional
from pydantic import BaseModel

ENV_PREFIX = "DOCKYARD_"


class Settings(BaseModel):
    """
    Orchestrator defaults. Durations are in seconds.
    """
    health_interval: float = 2.0
    health_timeout: float = 30.0
    stop_grace: float = 10.0
    backoff_base: float = 1.0
    backoff_ceiling: float = 30.0
    on_failure_max_attempts: int = 5
    max_parallel: int = 0  # 0 means one worker per service
    state_dir: str = ".dockyard"
    log_level: str = "info"
    log_format: str = "console"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "Settings":
        """
        Builds settings from ``DOCKYARD_<FIELD>`` variables.

        :param environ: Environment to read, defaults to ``os.environ``.
        :param overrides: Explicit values (e.g. CLI options); ``None`` values are ignored.
        :return: Validated settings.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, object] = {}
        for field in cls.model_fields:
            key = ENV_PREFIX + field.upper()
            if key in environ:
                values[field] = environ[key]
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
