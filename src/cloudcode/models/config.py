"""Configuration models for cloudcode.

EngineConfig holds per-engine settings: storage location, sandbox timeouts,
the number of after-trigger supervisors and operational log behaviour.
"""

from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, Field

_ENV_PREFIX = "CLOUDCODE_"


class EngineConfig(BaseModel):
    """Per-engine configuration.

    Timeouts are wall-clock seconds. A registration-level timeout
    overrides the default for its kind.
    """

    db_path: str = ":memory:"
    db_url: Optional[str] = None
    function_timeout: float = Field(default=15.0, gt=0)
    trigger_timeout: float = Field(default=3.0, gt=0)
    max_workers: int = Field(default=16, ge=1)
    persist_log: bool = True
    log_capacity: int = Field(default=1000, ge=1)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides) -> EngineConfig:
        """Build a config from ``CLOUDCODE_*`` environment variables.

        ``CLOUDCODE_FUNCTION_TIMEOUT=5`` sets ``function_timeout``, and so
        on. Explicit keyword overrides win over the environment.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for name in cls.model_fields:
            raw = env.get(_ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = raw
        values.update(overrides)
        return cls.model_validate(values)
