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
Conflict-safe apply engine.

Every write is a read-modify-write guarded by the object's resourceVersion.
Each object gets its own bounded retry loop: on conflict the latest version is
re-read, the change is recomputed against it and the write is retried. Objects
that already contain the desired fields are left untouched, so applying a
converged set performs no writes at all.
"""

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from kubernetes.utils.quantity import parse_quantity
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from redisop.config import settings
from redisop.exceptions import ConflictError, ConflictExhaustedError, UnrecoverableError
from redisop.platform.base import ObjectRef, Platform
from redisop.topology.resources import LABEL_INSTANCE, LABEL_KIND, LABEL_PARENT_UID, ChildResourceSet

logger = logging.getLogger(__name__)

# Fields the API server refuses to change after creation
IMMUTABLE_FIELDS: Dict[str, List[Tuple[str, ...]]] = {
    "StatefulSet": [
        ("spec", "selector"),
        ("spec", "serviceName"),
        ("spec", "volumeClaimTemplates"),
        ("spec", "podManagementPolicy"),
    ],
    "Service": [
        ("spec", "clusterIP"),
        ("spec", "clusterIPs"),
    ],
}

QUANTITY_PARENTS = {"limits", "requests", "capacity"}


class ApplyAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DELETED = "deleted"


@dataclass
class AppliedResult:
    created: List[ObjectRef] = field(default_factory=list)
    updated: List[ObjectRef] = field(default_factory=list)
    unchanged: List[ObjectRef] = field(default_factory=list)
    deleted: List[ObjectRef] = field(default_factory=list)
    objects: Dict[Tuple[str, str], Dict[str, Any]] = field(default_factory=dict)

    @property
    def writes(self) -> int:
        return len(self.created) + len(self.updated) + len(self.deleted)

    def updated_keys(self) -> Set[Tuple[str, str]]:
        return {(ref.kind, ref.name) for ref in self.updated}

    def record(self, action: ApplyAction, ref: ObjectRef) -> None:
        {
            ApplyAction.CREATED: self.created,
            ApplyAction.UPDATED: self.updated,
            ApplyAction.UNCHANGED: self.unchanged,
            ApplyAction.DELETED: self.deleted,
        }[action].append(ref)


def _scalar_equal(desired: Any, actual: Any, parent: Optional[str]) -> bool:
    if desired == actual:
        return True
    if parent in QUANTITY_PARENTS and isinstance(desired, (str, int, float)) and isinstance(actual, (str, int, float)):
        try:
            return parse_quantity(desired) == parse_quantity(actual)
        except ValueError:
            return False
    return False


def is_subset(desired: Any, actual: Any, parent: Optional[str] = None) -> bool:
    """True when every field of ``desired`` is present with the same value in ``actual``"""
    if isinstance(desired, dict):
        if not isinstance(actual, dict):
            return False
        return all(
            key in actual and is_subset(value, actual[key], key if isinstance(value, (dict, list)) else parent)
            for key, value in desired.items()
        )
    if isinstance(desired, list):
        if not isinstance(actual, list) or len(desired) != len(actual):
            return False
        return all(is_subset(d, a, parent) for d, a in zip(desired, actual))
    return _scalar_equal(desired, actual, parent)


def merge(desired: Any, actual: Any) -> Any:
    """Overlay ``desired`` onto ``actual``, keeping fields only ``actual`` carries"""
    if isinstance(desired, dict) and isinstance(actual, dict):
        result = copy.deepcopy(actual)
        for key, value in desired.items():
            result[key] = merge(value, actual[key]) if key in actual else copy.deepcopy(value)
        return result
    if isinstance(desired, list) and isinstance(actual, list) and len(desired) == len(actual):
        return [merge(d, a) for d, a in zip(desired, actual)]
    return copy.deepcopy(desired)


def preserve_immutable(desired: Dict[str, Any], actual: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of ``desired`` whose immutable fields carry the live values"""
    prepared = copy.deepcopy(desired)
    for path in IMMUTABLE_FIELDS.get(desired.get("kind"), []):
        target = prepared
        source = actual
        for part in path[:-1]:
            target = target.get(part)
            source = (source or {}).get(part)
            if not isinstance(target, dict):
                break
        else:
            leaf = path[-1]
            if isinstance(source, dict) and leaf in source:
                target[leaf] = copy.deepcopy(source[leaf])
            else:
                target.pop(leaf, None)
    return prepared


def _owner_uid(manifest: Dict[str, Any]) -> Optional[str]:
    metadata = manifest.get("metadata") or {}
    for reference in metadata.get("ownerReferences") or []:
        if reference.get("controller"):
            return reference.get("uid")
    return (metadata.get("labels") or {}).get(LABEL_PARENT_UID)


def foreign_owner(desired: Dict[str, Any], live: Dict[str, Any]) -> Optional[str]:
    """
    Describe the parent controlling ``live`` when it is not the parent of ``desired``

    Objects without a controller reference or parent label can be adopted.
    Desired manifests that carry no owner, such as claim resizes, never conflict.

    Returns:
        "<kind> <name>" of the other parent, None when the write may proceed
    """
    wanted = _owner_uid(desired)
    if not wanted:
        return None
    metadata = live.get("metadata") or {}
    labels = metadata.get("labels") or {}
    for reference in metadata.get("ownerReferences") or []:
        if reference.get("controller") and reference.get("uid") != wanted:
            return f"{reference.get('kind')} {reference.get('name')}"
    label_uid = labels.get(LABEL_PARENT_UID)
    if label_uid and label_uid != wanted:
        return f"{labels.get(LABEL_KIND, 'parent')} {labels.get(LABEL_INSTANCE, label_uid)}"
    return None


class ApplyEngine:
    """Pushes desired manifests to the platform with optimistic concurrency"""

    def __init__(self, platform: Platform, max_attempts: Optional[int] = None, wait=None):
        self.platform = platform
        self.max_attempts = max_attempts or settings.conflict_max_attempts
        self.wait = wait or wait_exponential(
            multiplier=settings.conflict_wait_min,
            min=settings.conflict_wait_min,
            max=settings.conflict_wait_max,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.wait,
            retry=retry_if_exception_type(ConflictError),
        )

    async def _write(self, desired: Dict[str, Any], baseline: Optional[Dict[str, Any]]):
        if baseline is None:
            return ApplyAction.CREATED, await self.platform.create(copy.deepcopy(desired))

        owner = foreign_owner(desired, baseline)
        if owner is not None:
            raise UnrecoverableError(
                f"{ObjectRef.from_manifest(desired)} already exists and is controlled by {owner}, "
                f"rename one of the parents"
            )

        prepared = preserve_immutable(desired, baseline)
        if is_subset(prepared, baseline):
            return ApplyAction.UNCHANGED, baseline

        merged = merge(prepared, baseline)
        merged["metadata"]["resourceVersion"] = baseline["metadata"].get("resourceVersion")
        return ApplyAction.UPDATED, await self.platform.replace(merged)

    async def apply_object(
        self, desired: Dict[str, Any], actual: Optional[Dict[str, Any]] = None
    ) -> Tuple[ApplyAction, Dict[str, Any]]:
        """
        Converge one object

        Args:
            desired: Fields the engine owns on this object
            actual: Last known version, None when the object is believed absent

        Raises:
            ConflictExhaustedError: Every attempt hit a conflicting write
            UnrecoverableError: The object is controlled by another parent
        """
        ref = ObjectRef.from_manifest(desired)
        baseline = actual
        try:
            async for attempt in self._retrying():
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        baseline = await self.platform.get(ref)
                    action, result = await self._write(desired, baseline)
                    if action != ApplyAction.UNCHANGED:
                        logger.info(f"{action.value.capitalize()} {ref}")
                    return action, result
        except RetryError as e:
            raise ConflictExhaustedError(
                f"{ref}: conflicting writes persisted through {self.max_attempts} attempts",
                attempts=self.max_attempts,
            ) from e.last_attempt.exception()

    async def apply(self, desired: ChildResourceSet, actual: List[Dict[str, Any]]) -> AppliedResult:
        """
        Converge a parent's children and remove the ones no longer desired

        Args:
            desired: Synthesized child manifests
            actual: Children currently owned by the parent
        """
        result = AppliedResult()
        actual_by_key = {(item["kind"], item["metadata"]["name"]): item for item in actual}

        for manifest in desired:
            key = (manifest["kind"], manifest["metadata"]["name"])
            action, stored = await self.apply_object(manifest, actual_by_key.get(key))
            result.record(action, ObjectRef.from_manifest(manifest))
            result.objects[key] = stored

        for key in sorted(set(actual_by_key) - set(desired.keys())):
            ref = ObjectRef.from_manifest(actual_by_key[key])
            if await self.platform.delete(ref):
                logger.info(f"Deleted {ref}, no longer desired")
                result.record(ApplyAction.DELETED, ref)

        if result.writes:
            logger.debug(
                f"Applied {len(desired)} children: {len(result.created)} created, "
                f"{len(result.updated)} updated, {len(result.deleted)} deleted"
            )
        return result

    async def apply_status(
        self,
        ref: ObjectRef,
        build: Callable[[Dict[str, Any]], Dict[str, Any]],
        current: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Write a status computed from the latest object version

        Args:
            ref: Object whose status is written
            build: Computes the status from a fetched object, re-run after each conflict
            current: Already fetched version to start from

        Returns:
            The stored object, or None when it no longer exists
        """
        baseline = current
        try:
            async for attempt in self._retrying():
                with attempt:
                    if baseline is None or attempt.retry_state.attempt_number > 1:
                        baseline = await self.platform.get(ref)
                    if baseline is None:
                        return None
                    status = build(baseline)
                    if status == baseline.get("status"):
                        return baseline
                    manifest = copy.deepcopy(baseline)
                    manifest["status"] = status
                    return await self.platform.replace_status(manifest)
        except RetryError as e:
            raise ConflictExhaustedError(
                f"status of {ref}: conflicting writes persisted through {self.max_attempts} attempts",
                attempts=self.max_attempts,
            ) from e.last_attempt.exception()
