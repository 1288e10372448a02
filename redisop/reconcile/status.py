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

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from redisop.config import settings
from redisop.exceptions import (
    ConflictExhaustedError,
    InvalidSpecError,
    PendingDependencyError,
    RedisOperatorError,
    TransientPlatformError,
    UnrecoverableError,
)
from redisop.reconcile.health import HealthSnapshot
from redisop.topology.kinds import StatusDetails
from redisop.topology.models import Condition, Phase, ReconcileStatus, RoleStatus, TopologyObject
from redisop.topology.resources import LABEL_ROLE, ChildResourceSet

logger = logging.getLogger(__name__)

SERVING_PHASES = (Phase.READY, Phase.DEGRADED)


@dataclass
class WorkloadReadiness:
    role: str
    workload: str
    desired: int
    ready: int
    settled: bool = True

    @property
    def is_ready(self) -> bool:
        return self.settled and self.ready >= self.desired

    def describe(self) -> str:
        return f"{self.workload} {self.ready}/{self.desired} ready"


def workload_readiness(
    desired: ChildResourceSet, objects: Dict[Tuple[str, str], Dict[str, Any]]
) -> List[WorkloadReadiness]:
    """Readiness of every desired StatefulSet, read from its live version"""
    readiness = []
    for statefulset in desired.of_kind("StatefulSet"):
        name = statefulset["metadata"]["name"]
        replicas = statefulset["spec"]["replicas"]
        live = objects.get(("StatefulSet", name)) or {}
        status = live.get("status") or {}
        generation = (live.get("metadata") or {}).get("generation") or 0
        readiness.append(
            WorkloadReadiness(
                role=statefulset["metadata"]["labels"][LABEL_ROLE],
                workload=name,
                desired=replicas,
                ready=min(status.get("readyReplicas") or 0, replicas),
                settled=(status.get("observedGeneration") or 0) >= generation,
            )
        )
    return readiness


@dataclass
class ReconcileOutcome:
    """Everything one reconcile pass learned, input to the aggregator"""

    generation: int
    error: Optional[BaseException] = None
    readiness: List[WorkloadReadiness] = field(default_factory=list)
    details: Optional[StatusDetails] = None
    conditions: List[Condition] = field(default_factory=list)
    degraded_reasons: List[str] = field(default_factory=list)
    health: HealthSnapshot = field(default_factory=HealthSnapshot)


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class StatusAggregator:
    """Derives phase and conditions from a reconcile outcome

    Conditions form an append-only history: a condition is appended only when
    it differs from the latest one of the same type, and only the newest
    ``history_limit`` entries are kept.
    """

    def __init__(self, history_limit: Optional[int] = None, clock: Callable[[], str] = utc_now):
        self.history_limit = history_limit or settings.condition_history_limit
        self.clock = clock

    def _previous_phase(self, previous: ReconcileStatus, generation: int) -> Phase:
        if previous.phase == Phase.INVALID and previous.observed_generation != generation:
            return Phase.PENDING
        return previous.phase

    def _error_phase(self, error: BaseException, previous: Phase) -> Phase:
        if isinstance(error, InvalidSpecError):
            return Phase.INVALID
        if isinstance(error, PendingDependencyError):
            return Phase.PENDING
        if isinstance(error, UnrecoverableError):
            return Phase.FAILED
        if isinstance(error, ConflictExhaustedError):
            return Phase.DEGRADED if previous in SERVING_PHASES else Phase.FAILED
        # Transient failures and timeouts keep the last known phase
        return previous

    def _error_conditions(self, error: BaseException) -> List[Condition]:
        if isinstance(error, InvalidSpecError):
            return [Condition(type="SpecValid", status="False", reason=error.reason, message=error.message)]
        if isinstance(error, PendingDependencyError):
            return [Condition(type="DependencyReady", status="False", reason=error.reason, message=error.message)]
        if isinstance(error, RedisOperatorError):
            return [Condition(type="Reconciled", status="False", reason=error.reason, message=error.message)]
        if isinstance(error, asyncio.TimeoutError):
            return [
                Condition(
                    type="Reconciled",
                    status="False",
                    reason=TransientPlatformError.reason,
                    message="reconcile pass exceeded its deadline",
                )
            ]
        return [Condition(type="Reconciled", status="False", reason="Error", message=str(error))]

    def _success_conditions(self, previous: ReconcileStatus) -> List[Condition]:
        conditions = [Condition(type="Reconciled", status="True", reason="Converged", message="children converged")]
        spec_valid = previous.latest("SpecValid")
        if spec_valid is not None and spec_valid.status == "False":
            conditions.append(Condition(type="SpecValid", status="True", reason="Valid", message="spec accepted"))
        dependency = previous.latest("DependencyReady")
        if dependency is not None and dependency.status == "False":
            conditions.append(
                Condition(type="DependencyReady", status="True", reason="Resolved", message="dependency is ready")
            )
        return conditions

    def _append(self, status: ReconcileStatus, condition: Condition, generation: int, now: str) -> None:
        latest = status.latest(condition.type)
        if latest is not None and latest.same_state(condition):
            return
        status.conditions.append(
            condition.model_copy(update={"last_transition_time": now, "observed_generation": generation})
        )

    def aggregate(self, obj: TopologyObject, outcome: ReconcileOutcome) -> ReconcileStatus:
        """
        Compute the next status of a topology object

        Args:
            obj: The object as last read, its status is the previous status
            outcome: What the reconcile pass observed

        Returns:
            The new ReconcileStatus, previous conditions preserved
        """
        previous = obj.status
        previous_phase = self._previous_phase(previous, outcome.generation)
        status = previous.model_copy(deep=True)
        status.observed_generation = outcome.generation
        conditions: List[Condition] = []
        summary: Optional[str] = None

        if outcome.error is not None:
            phase = self._error_phase(outcome.error, previous_phase)
            conditions.extend(self._error_conditions(outcome.error))
            ready_message = str(outcome.error) or type(outcome.error).__name__
        else:
            details = outcome.details or StatusDetails()
            status.roles = {
                r.role: RoleStatus(
                    replicas=r.desired,
                    ready_replicas=r.ready,
                    service_name=details.role_services.get(r.role),
                )
                for r in outcome.readiness
            }
            for name, value in details.fields.items():
                setattr(status, name, value)
            conditions.extend(self._success_conditions(previous))
            conditions.extend(details.conditions)

            not_ready = [r for r in outcome.readiness if not r.is_ready]
            degraded_reasons = list(outcome.degraded_reasons) + list(details.degraded_reasons)
            if details.phase is not None:
                phase = details.phase
                ready_message = summary = details.message or phase.value
            elif not_ready:
                phase = Phase.DEGRADED if previous_phase in SERVING_PHASES else Phase.CREATING
                ready_message = ", ".join(r.describe() for r in not_ready)
            elif not outcome.health.healthy:
                phase = Phase.DEGRADED
                ready_message = outcome.health.problems()
            elif degraded_reasons:
                phase = Phase.DEGRADED
                ready_message = ", ".join(degraded_reasons)
            else:
                phase = Phase.READY
                ready_message = "all roles ready"

        conditions.extend(outcome.conditions)
        conditions.append(
            Condition(
                type="Ready",
                status="True" if phase == Phase.READY else "False",
                reason=phase.value,
                message=ready_message,
            )
        )

        now = self.clock()
        for condition in conditions:
            self._append(status, condition, outcome.generation, now)
        if len(status.conditions) > self.history_limit:
            status.conditions = status.conditions[-self.history_limit :]

        if phase != previous.phase:
            logger.info(f"{obj.kind.value} {obj.namespace}/{obj.name} phase {previous.phase.value} -> {phase.value}")
        status.phase = phase
        if summary is not None:
            status.last_condition_message = summary
        else:
            status.last_condition_message = status.conditions[-1].message if status.conditions else None
        return status
