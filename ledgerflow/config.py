from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_APPROVAL_TIMEOUT_HOURS,
    DEFAULT_CONFIDENCE_FLOOR,
    DEFAULT_MAX_MEMORIES,
    DEFAULT_WORKER_MAX_ATTEMPTS,
    MAX_ITERATIONS,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class WorkflowConfig(BaseModel):
    """Workflow runner settings."""

    approval_timeout_hours: float = DEFAULT_APPROVAL_TIMEOUT_HOURS


class AgentConfig(BaseModel):
    """Budgets and memory retrieval limits for agent executions."""

    max_iterations: int = MAX_ITERATIONS
    max_tokens_per_execution: int = 200_000
    max_cost_per_execution: float = 2.0
    max_duration_seconds: Optional[float] = 600.0
    max_memories: int = DEFAULT_MAX_MEMORIES
    confidence_floor: float = DEFAULT_CONFIDENCE_FLOOR


class ReasoningConfig(BaseModel):
    """Model used by the reasoning service and its token pricing."""

    model: str = "openai:gpt-4o-mini"
    cost_per_1k_tokens: float = 0.0006


class WorkerConfig(BaseModel):
    max_attempts: int = DEFAULT_WORKER_MAX_ATTEMPTS


class LedgerflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    workflow: WorkflowConfig = WorkflowConfig()
    agent: AgentConfig = AgentConfig()
    reasoning: ReasoningConfig = ReasoningConfig()
    worker: WorkerConfig = WorkerConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> LedgerflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to LEDGERFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("LEDGERFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = LedgerflowConfig(**data)
    else:
        config = LedgerflowConfig()

    env_db_url = os.getenv("LEDGERFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("LEDGERFLOW_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport.lower()
    return config
