from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_SAME_NODE_VISITS,
    DEFAULT_MAX_STEPS,
)


class StoreConfig(BaseModel):
    """Checkpoint store settings."""

    database_url: Optional[str] = None
    max_checkpoints: Optional[int] = Field(default=None, ge=1)


class LoopDetectionConfig(BaseModel):
    """Limits used by the branching engine to detect runaway loops."""

    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)
    max_same_node_visits: int = Field(default=DEFAULT_MAX_SAME_NODE_VISITS, ge=1)
    detect_cycles: bool = True
    break_on_loop: bool = True


class OrchestratorSettings(BaseModel):
    """Runtime behaviour of the graph orchestrator."""

    default_stage_timeout: Optional[float] = Field(default=None, gt=0)
    run_timeout: Optional[float] = Field(default=None, gt=0)
    durable_checkpoints: bool = False
    continue_on_error: bool = False
    max_steps: int = Field(default=DEFAULT_MAX_STEPS, ge=1)


class DxGraphConfig(BaseModel):
    """Top-level configuration model."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    loop_detection: LoopDetectionConfig = Field(default_factory=LoopDetectionConfig)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)


def load_config(path: Optional[str] = None) -> DxGraphConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DXGRAPH_CONFIG env
            variable or 'dxgraph.yaml' in the current directory.
    """

    config_path = path or os.getenv("DXGRAPH_CONFIG", DEFAULT_CONFIG_FILE)
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DxGraphConfig(**data)
    else:
        config = DxGraphConfig()

    env_db_url = os.getenv("DXGRAPH_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.store.database_url = env_db_url
    return config
