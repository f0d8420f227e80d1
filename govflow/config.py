from __future__ import annotations

import os
from typing import Any, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .models import StepDefinition
from .pipeline import PIPELINE_PRESETS


class ApiConfig(BaseModel):
    """Governance platform API settings."""

    base_url: str = "http://localhost:8080/api"
    access_token: Optional[str] = None

    def url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"


class SSEConfig(BaseModel):
    """Event stream connection settings."""

    reconnect_interval: float = Field(default=3.0, ge=0)
    max_reconnect_attempts: int = Field(default=5, ge=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    replace_active_connection: bool = True


class TransportConfig(BaseModel):
    """Event source configuration settings."""

    backend: Literal["sse", "inmemory"] = "sse"


class RetentionConfig(BaseModel):
    keep_completed: int = Field(default=10, ge=0)
    evicted_memory: int = Field(default=1000, ge=0)
    max_messages: Optional[int] = Field(default=None, ge=1)


class GovflowConfig(BaseModel):
    """Top-level configuration model."""

    api: ApiConfig = ApiConfig()
    sse: SSEConfig = SSEConfig()
    transport: TransportConfig = TransportConfig()
    retention: RetentionConfig = RetentionConfig()
    pipeline: List[StepDefinition] = Field(default_factory=list)
    database_url: Optional[str] = None
    log_level: str = "INFO"

    @field_validator("pipeline", mode="before")
    @classmethod
    def _expand_preset(cls, v: Any) -> Any:
        if isinstance(v, str):
            preset = PIPELINE_PRESETS.get(v.strip().lower())
            if preset is None:
                raise ValueError(f"Unknown pipeline preset: {v}")
            return list(preset)
        return v


def load_config(path: Optional[str] = None) -> GovflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to GOVFLOW_CONFIG env
            variable or 'govflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("GOVFLOW_CONFIG", "govflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {config_path} must contain a mapping")
        config = GovflowConfig(**data)
    else:
        config = GovflowConfig()

    env_base_url = os.getenv("GOVFLOW_API_BASE_URL")
    if env_base_url:
        config.api.base_url = env_base_url
    env_token = os.getenv("GOVFLOW_ACCESS_TOKEN")
    if env_token:
        config.api.access_token = env_token
    env_db_url = os.getenv("GOVFLOW_DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("GOVFLOW_TRANSPORT")
    if env_transport:
        config.transport = TransportConfig(backend=env_transport.lower())
    return config
