"""Shared flowrun configuration utilities.

Centralises reading of ~/.flowrun/configuration.json so that the engine,
the CLI and embedding applications resolve run defaults the same way.
Environment variables take precedence over the file.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWRUN_CONFIG_FILE = Path.home() / ".flowrun" / "configuration.json"

ENV_CONCURRENCY_LIMIT = "FLOWRUN_CONCURRENCY_LIMIT"
ENV_DEFAULT_TIMEOUT = "FLOWRUN_DEFAULT_TIMEOUT"
ENV_MAX_ATTEMPTS = "FLOWRUN_MAX_ATTEMPTS"


def get_flowrun_config(path: Path | None = None) -> dict[str, Any]:
    """Load flowrun configuration from ~/.flowrun/configuration.json."""
    config_file = path or FLOWRUN_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config file {config_file}: {e}")
        return {}


# ---------------------------------------------------------------------------
# Run settings
# ---------------------------------------------------------------------------


class RetryPolicy(BaseModel):
    """
    Default retry behaviour for nodes that don't set ``retries``.

    Backoff before attempt ``n + 1`` is ``min(max_delay, base_delay * 2**(n - 1))``,
    reduced by up to ``jitter`` (a fraction) at random.
    """

    max_attempts: int = Field(default=1, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    jitter: float = Field(default=0.1, ge=0, le=1)

    @model_validator(mode="after")
    def _check_delays(self) -> "RetryPolicy":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self


class RunSettings(BaseModel):
    """Run-level defaults consumed by the scheduler and supervisor."""

    concurrency_limit: int = Field(default=4, ge=1)
    default_timeout: float = Field(default=300.0, gt=0, description="Seconds per attempt")
    default_retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    cancel_grace_period: float = Field(
        default=5.0,
        ge=0,
        description="Seconds a handler may take to honour cancellation",
    )

    model_config = {"extra": "forbid"}


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if value := os.environ.get(ENV_CONCURRENCY_LIMIT):
        overrides["concurrency_limit"] = value
    if value := os.environ.get(ENV_DEFAULT_TIMEOUT):
        overrides["default_timeout"] = value
    if value := os.environ.get(ENV_MAX_ATTEMPTS):
        overrides.setdefault("default_retry_policy", {})["max_attempts"] = value
    return overrides


def get_default_settings(path: Path | None = None) -> RunSettings:
    """
    Return the process-wide default RunSettings.

    Reads the ``run`` section of the configuration file and applies
    environment overrides. Invalid values are logged and fall back to
    the built-in defaults rather than failing the caller.
    """
    data = dict(get_flowrun_config(path).get("run", {}))
    overrides = _env_overrides()
    retry_override = overrides.pop("default_retry_policy", None)
    data.update(overrides)
    if retry_override:
        data["default_retry_policy"] = {**data.get("default_retry_policy", {}), **retry_override}

    try:
        return RunSettings.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Invalid run settings in configuration, using defaults: {e}")
        return RunSettings()
