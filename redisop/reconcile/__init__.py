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
K8s-Inspired Topology Reconciliation

Control loops that drive platform resources toward the declared Redis
topologies.

Key components:
- ReconcileDriver: watch, synthesize, apply, report, requeue
- ApplyEngine: optimistic-concurrency writes with bounded conflict retries
- StatusAggregator: phase state machine and append-only conditions
- HealthCache: health signals pushed by the external metrics collector
"""

from .apply import AppliedResult, ApplyEngine
from .driver import ObjectKey, ReconcileDriver, ReconcileResult
from .health import HealthCache, HealthSignalPoller
from .status import ReconcileOutcome, StatusAggregator

__all__ = [
    "AppliedResult",
    "ApplyEngine",
    "HealthCache",
    "HealthSignalPoller",
    "ObjectKey",
    "ReconcileDriver",
    "ReconcileOutcome",
    "ReconcileResult",
    "StatusAggregator",
]
