"""Pydantic model for tunables that are not part of the project config."""

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from bam_deploy.utils.errors import ConfigurationError

ENV_PREFIX = "BAM_"


class Settings(BaseModel):
    """Deploy tunables, overridable through ``BAM_*`` environment variables."""

    stage_name: str = Field("bam", min_length=1, pattern="^[A-Za-z0-9_]+$")
    runtime: str = Field("python3.12", min_length=1)
    handler: str = Field("index.handler", min_length=1)
    retry_max_attempts: int = Field(5, ge=1, le=20)
    retry_base_delay: float = Field(1.0, ge=0)
    retry_max_delay: float = Field(30.0, ge=0)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``BAM_STAGE_NAME``, ``BAM_RUNTIME`` and so on.

        Raises:
            ConfigurationError: If an override has an invalid value
        """
        environ = os.environ if environ is None else environ
        overrides = {}
        for name in cls.model_fields:
            value = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if value is not None:
                overrides[name] = value

        try:
            return cls(**overrides)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid {ENV_PREFIX}* environment override: {e}",
                cause=e,
            )
