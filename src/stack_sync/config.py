"""Pydantic models and loading for stack-sync configuration."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .models import ConfigError

logger = logging.getLogger(__name__)

GIT_CONFIG_SECTION = "stack-sync"
ENV_PREFIX = "STACK_SYNC_"


class StackConfig(BaseModel):
    """Settings for one invocation."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    remote: str = "origin"
    trunk: str = "main"
    push: bool = True
    keep_backups: bool = False
    lock_timeout: Optional[float] = Field(default=30.0, ge=0)
    push_workers: int = Field(default=1, ge=1, le=16)
    read_retries: int = Field(default=3, ge=1, le=10)
    retry_delay: float = Field(default=0.25, ge=0)
    github_repo: Optional[str] = None


def _normalize_key(key: str) -> str:
    return key.strip().lower().replace("-", "_")


def _from_git(values: Mapping[str, str]) -> Dict[str, Any]:
    known = set(StackConfig.model_fields)
    result: Dict[str, Any] = {}
    for key, value in values.items():
        name = _normalize_key(key)
        if name in known:
            result[name] = value
        else:
            logger.debug(f"Ignoring unknown git config key {GIT_CONFIG_SECTION}.{key}")
    return result


def _from_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for field_name in StackConfig.model_fields:
        var = f"{ENV_PREFIX}{field_name.upper()}"
        if var in environ:
            result[field_name] = environ[var]
    return result


def load_config(
    git_values: Optional[Mapping[str, str]] = None,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> StackConfig:
    """Merge git config, then ``STACK_SYNC_*`` variables, then explicit overrides.

    ``None`` values in ``overrides`` are treated as "not given".
    """
    merged: Dict[str, Any] = {}
    merged.update(_from_git(git_values or {}))
    merged.update(_from_env(os.environ if environ is None else environ))
    merged.update({k: v for k, v in (overrides or {}).items() if v is not None})
    try:
        config = StackConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
    logger.debug(f"Loaded configuration: {config.model_dump()}")
    return config
