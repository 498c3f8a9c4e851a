# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Manages the application's configuration using Pydantic."""

import logging
from typing import Any

import yaml
from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Manages configuration for the application.

    Reads settings from environment variables with the prefix 'TRIALS_'.
    """

    model_config = SettingsConfigDict(env_prefix="TRIALS_")

    # Database connection settings
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "postgres"
    # S105: Hardcoded password is used for local development.
    # In production, this should be set via environment variables.
    db_password: str = "postgres"
    db_name: str = "trials"
    db_schema: str = "public"
    connect_timeout_s: int = 5
    statement_timeout_ms: int = 10_000

    # Trial assigned to enrollment rows that carry no trialId column
    default_trial_id: str = "T999"
    default_trial_name: str = "Default Trial"

    # Event stream
    max_subscribers: int = Field(100, gt=0)
    subscriber_queue_size: int = Field(256, gt=0)

    # Trial summary service (OpenAI-compatible chat completions API)
    summary_api_key: str | None = None
    summary_base_url: str = "https://api.openai.com/v1"
    summary_model: str = "gpt-3.5-turbo"
    summary_timeout_s: float = 10.0

    log_level: str = "INFO"

    @computed_field
    @property
    def db_connection_string(self) -> str:
        """Construct the libpq connection string from individual settings."""
        return (
            f"host='{self.db_host}' port='{self.db_port}' "
            f"user='{self.db_user}' password='{self.db_password}' "
            f"dbname='{self.db_name}' connect_timeout='{self.connect_timeout_s}' "
            f"options='-c statement_timeout={self.statement_timeout_ms}'"
        )


def load_config(config_file: str | None) -> dict[str, Any]:
    """Loads configuration overrides from a YAML file."""
    if config_file:
        try:
            with open(config_file) as f:
                return yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning("Config file not found: %s", config_file)
    return {}
