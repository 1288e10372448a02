import asyncio
import copy
import itertools
import logging
import uuid
from collections import defaultdict
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from redisop.exceptions import ConflictError
from redisop.platform.base import ObjectRef, Platform, WatchEvent

logger = logging.getLogger(__name__)

SYSTEM_METADATA = ("uid", "creationTimestamp", "generation", "deletionTimestamp")


class InMemoryPlatform(Platform):
    """In-process platform for testing or local dry runs

    Mirrors the API server semantics the engine depends on: resourceVersion
    checks, generation bumps on spec changes, a separate status subresource and
    watch notifications. Every operation yields to the event loop once so
    concurrent writers interleave.
    """

    def __init__(self):
        self._objects: Dict[Tuple[str, str, str, str], Dict[str, Any]] = {}
        self._versions = itertools.count(1)
        self._watchers: List[Tuple[set, Optional[str], asyncio.Queue]] = []
        self._failures: Dict[str, List[Exception]] = defaultdict(list)
        self.writes: List[Tuple[str, ObjectRef]] = []

    @staticmethod
    def _key(ref: ObjectRef) -> Tuple[str, str, str, str]:
        return (ref.api_version, ref.kind, ref.namespace, ref.name)

    def inject_failure(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``"""
        self._failures[operation].extend([error] * times)

    async def _enter(self, operation: str) -> None:
        await asyncio.sleep(0)
        if self._failures[operation]:
            raise self._failures[operation].pop(0)

    def _notify(self, event_type: str, manifest: Dict[str, Any]) -> None:
        ref = ObjectRef.from_manifest(manifest)
        for types, namespace, queue in list(self._watchers):
            if ref.type_key in types and (namespace is None or namespace == ref.namespace):
                queue.put_nowait(WatchEvent(event_type, copy.deepcopy(manifest)))

    def _store(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        manifest["metadata"]["resourceVersion"] = str(next(self._versions))
        self._objects[self._key(ObjectRef.from_manifest(manifest))] = manifest
        return copy.deepcopy(manifest)

    async def get(self, ref: ObjectRef) -> Optional[Dict[str, Any]]:
        await self._enter("get")
        stored = self._objects.get(self._key(ref))
        return copy.deepcopy(stored) if stored is not None else None

    async def list(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        await self._enter("list")
        selector = label_selector or {}
        result = []
        for (obj_api_version, obj_kind, obj_namespace, _), manifest in sorted(self._objects.items()):
            if (obj_api_version, obj_kind) != (api_version, kind):
                continue
            if namespace is not None and obj_namespace != namespace:
                continue
            labels = manifest["metadata"].get("labels") or {}
            if all(labels.get(k) == v for k, v in selector.items()):
                result.append(copy.deepcopy(manifest))
        return result

    async def create(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("create")
        ref = ObjectRef.from_manifest(manifest)
        if self._key(ref) in self._objects:
            raise ConflictError(f"{ref} already exists")

        stored = copy.deepcopy(manifest)
        stored.pop("status", None)
        metadata = stored["metadata"]
        metadata.setdefault("namespace", ref.namespace)
        metadata["uid"] = metadata.get("uid") or str(uuid.uuid4())
        metadata["generation"] = 1
        self.writes.append(("create", ref))
        created = self._store(stored)
        self._notify(WatchEvent.ADDED, created)
        return created

    async def replace(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("replace")
        ref = ObjectRef.from_manifest(manifest)
        current = self._objects.get(self._key(ref))
        if current is None:
            raise ConflictError(f"{ref} no longer exists")
        if manifest["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise ConflictError(f"{ref} was modified, resourceVersion is stale")

        updated = copy.deepcopy(manifest)
        for field in SYSTEM_METADATA:
            if field in current["metadata"]:
                updated["metadata"][field] = current["metadata"][field]
            else:
                updated["metadata"].pop(field, None)
        updated.pop("status", None)
        if "status" in current:
            updated["status"] = copy.deepcopy(current["status"])
        if updated == current:
            return copy.deepcopy(current)
        if updated.get("spec") != current.get("spec"):
            updated["metadata"]["generation"] = current["metadata"].get("generation", 1) + 1

        self.writes.append(("replace", ref))
        replaced = self._store(updated)
        self._notify(WatchEvent.MODIFIED, replaced)
        return replaced

    async def replace_status(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("replace_status")
        ref = ObjectRef.from_manifest(manifest)
        current = self._objects.get(self._key(ref))
        if current is None:
            raise ConflictError(f"{ref} no longer exists")
        if manifest["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise ConflictError(f"{ref} was modified, resourceVersion is stale")
        if manifest.get("status") == current.get("status"):
            return copy.deepcopy(current)

        updated = copy.deepcopy(current)
        updated["status"] = copy.deepcopy(manifest.get("status") or {})
        self.writes.append(("replace_status", ref))
        replaced = self._store(updated)
        self._notify(WatchEvent.MODIFIED, replaced)
        return replaced

    async def delete(self, ref: ObjectRef) -> bool:
        await self._enter("delete")
        removed = self._objects.pop(self._key(ref), None)
        if removed is None:
            return False
        self.writes.append(("delete", ref))
        self._notify(WatchEvent.DELETED, removed)
        return True

    async def watch(
        self, types: Sequence[Tuple[str, str]], namespace: Optional[str] = None
    ) -> AsyncIterator[WatchEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        watcher = (set(types), namespace, queue)
        self._watchers.append(watcher)
        try:
            while True:
                yield await queue.get()
        finally:
            self._watchers.remove(watcher)

    def set_status(self, ref: ObjectRef, status: Dict[str, Any]) -> Dict[str, Any]:
        """Overwrite an object's status the way a foreign controller would"""
        current = self._objects[self._key(ref)]
        updated = copy.deepcopy(current)
        updated["status"] = copy.deepcopy(status)
        stored = self._store(updated)
        self._notify(WatchEvent.MODIFIED, stored)
        return stored

    def writes_for(self, operation: Optional[str] = None) -> List[ObjectRef]:
        return [ref for op, ref in self.writes if operation is None or op == operation]

    def reset_writes(self) -> None:
        self.writes.clear()
