from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel


class EndpointsConfig(BaseModel):
    """Path templates of the workflow admin API."""

    templates: str = "/workflow-admin/templates"
    template: str = "/workflow-admin/templates/{template_id}"
    archive_template: str = "/workflow-admin/templates/{template_id}/archive"
    duplicate_template: str = "/workflow-admin/templates/{template_id}/duplicate"
    instances: str = "/workflow-admin/instances"
    instance: str = "/workflow-admin/instance/{instance_id}"
    start_workflow: str = "/workflow-admin/instance/{instance_id}/start"
    instance_steps: str = "/workflow-admin/instance/{instance_id}/steps"
    transition_step: str = "/workflow-admin/instance/{instance_id}/steps/{step_id}"
    step_automation: str = "/workflow-admin/instance/{instance_id}/steps/{step_id}/automation"
    external_verification: str = "/workflow-admin/instance/{instance_id}/steps/{step_id}/folio/link"


class ApiConfig(BaseModel):
    """Connection settings for the workflow admin API."""

    base_url: str = "http://localhost:8080/api"
    token: Optional[str] = None
    timeout: float = 15.0
    endpoints: EndpointsConfig = EndpointsConfig()


class StoreConfig(BaseModel):
    backend: Literal["inmemory", "sqlite", "http"] = "inmemory"


class StepgateConfig(BaseModel):
    """Top-level configuration model."""

    store: StoreConfig = StoreConfig()
    api: ApiConfig = ApiConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> StepgateConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPGATE_CONFIG env
            variable or 'stepgate.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPGATE_CONFIG", "stepgate.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepgateConfig(**data)
    else:
        config = StepgateConfig()

    if os.getenv("STEPGATE_STORE"):
        config.store.backend = os.environ["STEPGATE_STORE"].lower()
    if os.getenv("STEPGATE_API_URL"):
        config.api.base_url = os.environ["STEPGATE_API_URL"]
    if os.getenv("STEPGATE_API_TOKEN"):
        config.api.token = os.environ["STEPGATE_API_TOKEN"]
    env_db_url = os.getenv("STEPGATE_DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
