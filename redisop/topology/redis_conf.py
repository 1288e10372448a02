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

import hashlib
from typing import Any, Mapping, Optional

from redisop.topology.models import ClusterConfig

REDIS_PORT = 6379
SENTINEL_PORT = 26379
CLUSTER_BUS_PORT = 16379

DEFAULT_REDIS_CONFIG = {
    "appendfsync": "everysec",
    "appendonly": "yes",
    "bind": "0.0.0.0",
    "databases": "16",
    "dbfilename": "dump.rdb",
    "dir": "/data",
    "maxmemory-policy": "allkeys-lru",
    "port": str(REDIS_PORT),
    "rdbchecksum": "yes",
    "rdbcompression": "yes",
    "save": "900 1 300 10 60 10000",
    "stop-writes-on-bgsave-error": "yes",
    "tcp-backlog": "511",
    "tcp-keepalive": "300",
    "timeout": "0",
}


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def render_config(entries: Mapping[str, Any]) -> str:
    """Render config entries as sorted ``key value`` lines"""
    return "".join(f"{key} {format_value(entries[key])}\n" for key in sorted(entries))


def redis_config(
    overrides: Optional[Mapping[str, Any]] = None,
    enforced: Optional[Mapping[str, Any]] = None,
) -> str:
    """
    Build redis.conf contents

    Args:
        overrides: User supplied entries, replacing defaults
        enforced: Entries required by the topology, replacing user entries
    """
    entries = dict(DEFAULT_REDIS_CONFIG)
    entries.update(overrides or {})
    entries.update(enforced or {})
    return render_config(entries)


def replica_config(master_host: str, overrides: Optional[Mapping[str, Any]] = None) -> str:
    return redis_config(overrides, {"replicaof": f"{master_host} {REDIS_PORT}"})


def cluster_config(config: ClusterConfig, overrides: Optional[Mapping[str, Any]] = None) -> str:
    merged = dict(config.additional_config)
    merged.update(overrides or {})
    return redis_config(
        merged,
        {
            "cluster-enabled": "yes",
            "cluster-config-file": "nodes.conf",
            "cluster-node-timeout": config.cluster_node_timeout_ms,
            "cluster-require-full-coverage": config.cluster_require_full_coverage,
            "cluster-migration-barrier": config.cluster_migration_barrier,
        },
    )


def config_hash(*contents: str) -> str:
    digest = hashlib.sha256()
    for content in contents:
        digest.update(content.encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()
