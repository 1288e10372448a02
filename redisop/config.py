# Copyright 2025 ApeCloud, Inc.
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

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Config(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="REDISOP_", env_file=".env", extra="ignore")

    # Platform
    platform: str = Field("kubernetes", description="Platform backend: kubernetes or memory")
    watch_namespace: Optional[str] = Field(None, description="Namespace to watch, all namespaces when unset")
    kube_context: Optional[str] = None

    # Driver
    workers: int = 4
    resync_interval: float = 30.0
    backoff_base: float = 1.0
    backoff_cap: float = 300.0
    dependency_backoff_cap: float = 60.0
    reconcile_deadline: float = 60.0
    status_write_timeout: float = 10.0

    # Apply engine
    conflict_max_attempts: int = 5
    conflict_wait_min: float = 0.05
    conflict_wait_max: float = 1.0

    # Status
    condition_history_limit: int = 20

    # Health signals
    health_collector_url: Optional[str] = None
    health_poll_interval: float = 15.0
    health_signal_ttl: float = 120.0
    health_request_timeout: float = 5.0

    # Defaults applied to specs
    default_image: str = "redis:7.2"

    # Observability
    metrics_port: int = 8080
    log_level: str = "INFO"


settings = Config()
