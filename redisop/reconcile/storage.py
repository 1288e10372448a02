import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from kubernetes.utils.quantity import parse_quantity

from redisop.platform.base import ObjectRef, Platform
from redisop.reconcile.apply import ApplyAction, ApplyEngine
from redisop.topology.models import Condition
from redisop.topology.resources import ChildResourceSet

logger = logging.getLogger(__name__)


class StorageChangeType(str, Enum):
    NONE = "None"
    EXPANSION = "Expansion"
    SHRINK = "Shrink"
    CLASS_CHANGE = "ClassChange"
    LAYOUT_CHANGE = "LayoutChange"


@dataclass
class StorageChange:
    workload: str
    type: StorageChangeType
    current: Optional[str] = None
    desired: Optional[str] = None

    @property
    def rejected(self) -> bool:
        return self.type in (StorageChangeType.SHRINK, StorageChangeType.CLASS_CHANGE, StorageChangeType.LAYOUT_CHANGE)

    def describe(self) -> str:
        if self.type == StorageChangeType.LAYOUT_CHANGE:
            return f"{self.workload}: persistent storage cannot be added or removed after creation"
        if self.type == StorageChangeType.CLASS_CHANGE:
            return f"{self.workload}: storage class {self.current} cannot change to {self.desired}"
        return f"{self.workload}: {self.current} -> {self.desired}"


def claim_template(statefulset: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for template in statefulset.get("spec", {}).get("volumeClaimTemplates") or []:
        if template.get("metadata", {}).get("name") == "data":
            return template
    return None


def _claim_size(template: Dict[str, Any]) -> Optional[str]:
    return template.get("spec", {}).get("resources", {}).get("requests", {}).get("storage")


def analyze_storage_change(desired: Dict[str, Any], actual: Dict[str, Any]) -> StorageChange:
    """Compare the data claim template of a desired StatefulSet with the live one"""
    workload = desired["metadata"]["name"]
    desired_claim = claim_template(desired)
    actual_claim = claim_template(actual)
    if desired_claim is None and actual_claim is None:
        return StorageChange(workload, StorageChangeType.NONE)
    if (desired_claim is None) != (actual_claim is None):
        return StorageChange(workload, StorageChangeType.LAYOUT_CHANGE)

    desired_class = desired_claim["spec"].get("storageClassName")
    actual_class = actual_claim["spec"].get("storageClassName")
    if desired_class and desired_class != actual_class:
        return StorageChange(workload, StorageChangeType.CLASS_CHANGE, actual_class, desired_class)

    current, wanted = _claim_size(actual_claim), _claim_size(desired_claim)
    if current is None or wanted is None:
        return StorageChange(workload, StorageChangeType.NONE, current, wanted)
    current_bytes, wanted_bytes = parse_quantity(current), parse_quantity(wanted)
    if wanted_bytes > current_bytes:
        return StorageChange(workload, StorageChangeType.EXPANSION, current, wanted)
    if wanted_bytes < current_bytes:
        return StorageChange(workload, StorageChangeType.SHRINK, current, wanted)
    return StorageChange(workload, StorageChangeType.NONE, current, wanted)


@dataclass
class StorageOutcome:
    changes: List[StorageChange] = field(default_factory=list)
    expanded_claims: int = 0
    conditions: List[Condition] = field(default_factory=list)
    degraded_reasons: List[str] = field(default_factory=list)


class StorageReconciler:
    """Expands persistent volume claims and rejects unsupported storage changes

    Claim templates of a StatefulSet are immutable, so a larger size is applied
    to the existing claims directly and the template keeps its original size.
    """

    def __init__(self, platform: Platform, apply_engine: ApplyEngine):
        self.platform = platform
        self.apply_engine = apply_engine

    async def _expand(self, statefulset: Dict[str, Any], size: str) -> int:
        metadata = statefulset["metadata"]
        replicas = statefulset.get("spec", {}).get("replicas") or 0
        expanded = 0
        for ordinal in range(replicas):
            ref = ObjectRef("v1", "PersistentVolumeClaim", metadata["namespace"], f"data-{metadata['name']}-{ordinal}")
            claim = await self.platform.get(ref)
            if claim is None:
                continue
            desired = {
                "apiVersion": "v1",
                "kind": "PersistentVolumeClaim",
                "metadata": {"name": ref.name, "namespace": ref.namespace},
                "spec": {"resources": {"requests": {"storage": size}}},
            }
            action, _ = await self.apply_engine.apply_object(desired, claim)
            if action == ApplyAction.UPDATED:
                expanded += 1
        return expanded

    async def reconcile(self, desired: ChildResourceSet, actual: List[Dict[str, Any]]) -> StorageOutcome:
        outcome = StorageOutcome()
        live: Dict[Tuple[str, str], Dict[str, Any]] = {
            (item["kind"], item["metadata"]["name"]): item for item in actual
        }
        for statefulset in desired.of_kind("StatefulSet"):
            current = live.get(("StatefulSet", statefulset["metadata"]["name"]))
            if current is None:
                continue
            change = analyze_storage_change(statefulset, current)
            if change.type == StorageChangeType.NONE:
                continue
            outcome.changes.append(change)
            if change.type == StorageChangeType.EXPANSION:
                outcome.expanded_claims += await self._expand(current, change.desired)

        expansions = [c for c in outcome.changes if c.type == StorageChangeType.EXPANSION]
        rejections = [c for c in outcome.changes if c.rejected]
        if expansions:
            outcome.conditions.append(
                Condition(
                    type="StorageExpansion",
                    status="True",
                    reason="ClaimsExpanded",
                    message="; ".join(change.describe() for change in expansions),
                )
            )
        if rejections:
            logger.warning(f"Rejected storage changes: {'; '.join(c.describe() for c in rejections)}")
            outcome.conditions.append(
                Condition(
                    type="StorageChangeRejected",
                    status="True",
                    reason="UnsupportedStorageChange",
                    message="; ".join(change.describe() for change in rejections),
                )
            )
            outcome.degraded_reasons.append("UnsupportedStorageChange")
        return outcome
