"""
Orchestrator settings.

Sections cover execution limits, the approval gate, the plan store backend
and the remote agents that serve step capabilities. Settings load from a
YAML file (``OrchestratorSettings.from_yaml``) or from defaults plus
``PLAN_ORCHESTRATOR_*`` environment variables.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, HttpUrl, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from plan_orchestrator.enums import StoreBackend
from plan_orchestrator.exceptions import ConfigurationError


class ExecutionConfig(BaseModel):
    """Execution engine limits."""

    worker_pool_size: int = Field(default=10, ge=1, description="Maximum concurrently executing units")
    default_step_timeout: float = Field(
        default=300.0, gt=0, description="Seconds allowed for a step without its own timeout"
    )
    cancel_grace_period: float = Field(
        default=5.0, ge=0, description="Seconds cancel(wait=True) waits for the run to unwind"
    )


class ApprovalConfig(BaseModel):
    """Human approval gate configuration."""

    timeout_seconds: float = Field(default=300.0, gt=0, description="Seconds to wait for a decision")
    history_size: int = Field(default=100, ge=0, description="Resolved tickets kept for inspection")


class StoreConfig(BaseModel):
    """Plan store configuration."""

    backend: StoreBackend = Field(default=StoreBackend.FILE, description="Plan store backend")
    plans_directory: str = Field(default="plans", description="Directory for plan files")
    state_directory: str = Field(default=".plan-orchestrator/state", description="Directory for run status files")


class AgentEndpointConfig(BaseModel):
    """Remote agent serving one capability.

    Supports environment references for the token:
    - api_token: "${AGENT_API_TOKEN}"
    """

    base_url: HttpUrl = Field(..., description="Base URL of the agent")
    path: str = Field(default="/api/v1/steps/execute", description="Step execution endpoint path")
    timeout: float = Field(default=300.0, gt=0, description="HTTP request timeout in seconds")
    api_token: SecretStr | None = Field(default=None, description="Bearer token sent to the agent")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra request headers")


_ENV_REFERENCE = re.compile(r"\$\{(?P<name>[A-Z_][A-Z0-9_]*)(?::-(?P<default>[^}]*))?\}")


def expand_env_references(text: str) -> str:
    """Replace ``${NAME}`` and ``${NAME:-fallback}`` with environment values.

    Lines whose first non-blank character is ``#`` are left alone, so
    commented-out settings may reference variables that are not set.

    Raises:
        ValueError: ``${NAME}`` without a fallback names an unset variable.
    """

    def substitute(match: re.Match[str]) -> str:
        name = match.group("name")
        value = os.environ.get(name, match.group("default"))
        if value is None:
            raise ValueError(f"Environment variable {name} is not set")
        return value

    return "\n".join(
        line if line.lstrip().startswith("#") else _ENV_REFERENCE.sub(substitute, line)
        for line in text.split("\n")
    )


class OrchestratorSettings(BaseSettings):
    """Top-level orchestrator configuration.

    Every section has defaults, so ``OrchestratorSettings()`` works without
    a file; values then come from ``PLAN_ORCHESTRATOR_*`` environment
    variables (``PLAN_ORCHESTRATOR_EXECUTION__WORKER_POOL_SIZE=4``).
    ``from_yaml`` loads a file instead.
    """

    model_config = SettingsConfigDict(
        env_prefix="PLAN_ORCHESTRATOR_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    agents: dict[str, AgentEndpointConfig] = Field(
        default_factory=dict, description="Capability id -> remote agent endpoint"
    )

    @property
    def state_dir(self) -> Path:
        return Path(self.store.state_directory)

    @property
    def plans_dir(self) -> Path:
        return Path(self.store.plans_directory)

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> OrchestratorSettings:
        """Load settings from a YAML file.

        Environment references are expanded before parsing (see
        ``expand_env_references``). An empty file yields the defaults.

        Raises:
            ConfigurationError: The file is missing or unreadable, references
                an unset variable, is not a YAML mapping, or fails validation.
        """
        document = _read_config_document(Path(config_path))
        try:
            return cls(**document)
        except ValidationError as e:
            raise ConfigurationError(f"Failed to validate configuration {config_path}: {e}") from e


def _read_config_document(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise ConfigurationError(f"Configuration file not found: {path}")

    try:
        raw = path.read_text()
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e

    try:
        document = yaml.safe_load(expand_env_references(raw))
    except ValueError as e:
        raise ConfigurationError(f"Invalid environment variable reference in {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML syntax in {path}: {e}") from e

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigurationError(f"Configuration {path} must be a YAML object, not a list or scalar")
    return document
