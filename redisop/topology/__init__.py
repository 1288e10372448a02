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

"""
Declarative Redis topologies

This package turns a topology object (RedisInstance, RedisMasterReplica,
RedisSentinel, RedisCluster) into the set of child resources that realize it.
The aggregated Redis kind owns no children and mirrors one of the others.

Key components:
- TopologyRegistry: per-kind capability set (parse, allocate, synthesize, status)
- allocate_slots / diff_assignments: hash-slot partitioning for clusters
- SentinelTopologyBuilder: resolves the master a sentinel group monitors

Synthesis is pure and deterministic; all platform I/O lives in
redisop.reconcile.
"""

from .kinds import Topology, TopologyRegistry, synthesize
from .models import Phase, ReconcileStatus, TopologyKind, TopologyObject
from .resources import ChildResourceSet
from .slots import SlotAssignment, SlotRange, allocate_slots, diff_assignments

__all__ = [
    "ChildResourceSet",
    "Phase",
    "ReconcileStatus",
    "SlotAssignment",
    "SlotRange",
    "Topology",
    "TopologyKind",
    "TopologyObject",
    "TopologyRegistry",
    "allocate_slots",
    "diff_assignments",
    "synthesize",
]
