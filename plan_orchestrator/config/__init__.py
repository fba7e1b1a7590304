"""Configuration system for the plan orchestrator.

Key Components:
    - OrchestratorSettings: Main configuration container with YAML loading support
    - ExecutionConfig: Worker pool size and timeouts
    - ApprovalConfig: Approval gate timeout and history
    - StoreConfig: Plan store backend and directories
    - AgentEndpointConfig: Remote agent serving a capability

Example:
    >>> from plan_orchestrator.config import OrchestratorSettings
    >>> settings = OrchestratorSettings.from_yaml("orchestrator.yaml")
    >>> settings.execution.worker_pool_size
    10
"""

from plan_orchestrator.config.settings import (
    AgentEndpointConfig,
    ApprovalConfig,
    ExecutionConfig,
    OrchestratorSettings,
    StoreConfig,
)

__all__ = [
    "AgentEndpointConfig",
    "ApprovalConfig",
    "ExecutionConfig",
    "OrchestratorSettings",
    "StoreConfig",
]
