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
import threading
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

import urllib3
from asgiref.sync import sync_to_async
from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import NotFoundError, ResourceNotFoundError

from redisop.exceptions import (
    ConflictError,
    RedisOperatorError,
    TransientPlatformError,
    UnrecoverableError,
)
from redisop.platform.base import ObjectRef, Platform, WatchEvent

logger = logging.getLogger(__name__)

UNRECOVERABLE_STATUSES = {400, 401, 403, 405, 422}


def load_api_client(context: Optional[str] = None) -> client.ApiClient:
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config(context=context)
        logger.info("Loaded local Kubernetes config")
    return client.ApiClient()


def translate_api_error(e: ApiException, description: str) -> RedisOperatorError:
    """Map an API server error onto the engine's error taxonomy"""
    message = f"{description}: {e.status} {e.reason}"
    if e.status == 409:
        return ConflictError(message)
    if e.status == 404:
        # Writes against a vanished object are retried from a fresh read
        return ConflictError(message)
    if e.status in UNRECOVERABLE_STATUSES:
        return UnrecoverableError(message)
    return TransientPlatformError(message)


def label_selector_string(selector: Optional[Dict[str, str]]) -> Optional[str]:
    if not selector:
        return None
    return ",".join(f"{key}={value}" for key, value in sorted(selector.items()))


class KubernetesPlatform(Platform):
    """Platform backed by the Kubernetes API server through the dynamic client

    The client is synchronous; every call runs in a worker thread so the event
    loop never blocks on the network.
    """

    def __init__(
        self,
        api_client: Optional[client.ApiClient] = None,
        context: Optional[str] = None,
        watch_timeout: int = 300,
    ):
        self._api_client = api_client or load_api_client(context)
        self._dynamic = DynamicClient(self._api_client)
        self._resources: Dict[Tuple[str, str], Any] = {}
        self._resources_lock = threading.Lock()
        self.watch_timeout = watch_timeout

    def _resource(self, api_version: str, kind: str):
        key = (api_version, kind)
        with self._resources_lock:
            if key not in self._resources:
                try:
                    self._resources[key] = self._dynamic.resources.get(api_version=api_version, kind=kind)
                except ResourceNotFoundError as e:
                    raise UnrecoverableError(f"{kind} ({api_version}) is not served by the cluster") from e
            return self._resources[key]

    async def _call(self, description: str, func: Callable, *args, **kwargs):
        try:
            return await sync_to_async(func, thread_sensitive=False)(*args, **kwargs)
        except ApiException as e:
            raise translate_api_error(e, description) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise TransientPlatformError(f"{description}: {e}") from e

    def _get_sync(self, ref: ObjectRef) -> Optional[Dict[str, Any]]:
        resource = self._resource(ref.api_version, ref.kind)
        try:
            return resource.get(name=ref.name, namespace=ref.namespace).to_dict()
        except NotFoundError:
            return None

    def _list_sync(
        self, api_version: str, kind: str, namespace: Optional[str], label_selector: Optional[Dict[str, str]]
    ) -> List[Dict[str, Any]]:
        resource = self._resource(api_version, kind)
        result = resource.get(namespace=namespace, label_selector=label_selector_string(label_selector)).to_dict()
        items = result.get("items") or []
        for item in items:
            # List items omit their type
            item.setdefault("apiVersion", api_version)
            item.setdefault("kind", kind)
        return items

    def _create_sync(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        ref = ObjectRef.from_manifest(manifest)
        resource = self._resource(ref.api_version, ref.kind)
        return resource.create(body=manifest, namespace=ref.namespace).to_dict()

    def _replace_sync(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        ref = ObjectRef.from_manifest(manifest)
        resource = self._resource(ref.api_version, ref.kind)
        return resource.replace(body=manifest, namespace=ref.namespace).to_dict()

    def _replace_status_sync(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        ref = ObjectRef.from_manifest(manifest)
        resource = self._resource(ref.api_version, ref.kind)
        return resource.status.replace(body=manifest, namespace=ref.namespace).to_dict()

    def _delete_sync(self, ref: ObjectRef) -> bool:
        resource = self._resource(ref.api_version, ref.kind)
        try:
            resource.delete(name=ref.name, namespace=ref.namespace, body={"propagationPolicy": "Background"})
        except NotFoundError:
            return False
        return True

    async def get(self, ref: ObjectRef) -> Optional[Dict[str, Any]]:
        return await self._call(f"get {ref}", self._get_sync, ref)

    async def list(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        return await self._call(f"list {kind}", self._list_sync, api_version, kind, namespace, label_selector)

    async def create(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        ref = ObjectRef.from_manifest(manifest)
        return await self._call(f"create {ref}", self._create_sync, manifest)

    async def replace(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        ref = ObjectRef.from_manifest(manifest)
        return await self._call(f"replace {ref}", self._replace_sync, manifest)

    async def replace_status(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        ref = ObjectRef.from_manifest(manifest)
        return await self._call(f"replace status of {ref}", self._replace_status_sync, manifest)

    async def delete(self, ref: ObjectRef) -> bool:
        return await self._call(f"delete {ref}", self._delete_sync, ref)

    def _watch_thread(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str],
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue,
        stop: threading.Event,
    ) -> None:
        resource_version = None
        while not stop.is_set():
            try:
                resource = self._resource(api_version, kind)
                for event in self._dynamic.watch(
                    resource,
                    namespace=namespace,
                    resource_version=resource_version,
                    timeout=self.watch_timeout,
                ):
                    if stop.is_set():
                        return
                    raw = event["raw_object"]
                    if event["type"] == "ERROR":
                        # Expired resourceVersion, restart from a fresh list
                        logger.info(f"Watch on {kind} expired: {raw.get('message')}")
                        resource_version = None
                        break
                    raw.setdefault("apiVersion", api_version)
                    raw.setdefault("kind", kind)
                    resource_version = raw.get("metadata", {}).get("resourceVersion", resource_version)
                    loop.call_soon_threadsafe(queue.put_nowait, WatchEvent(event["type"], raw))
            except ApiException as e:
                if e.status == 410:
                    resource_version = None
                else:
                    logger.warning(f"Watch on {kind} failed: {e.status} {e.reason}, reconnecting")
                    stop.wait(5)
            except Exception as e:
                logger.warning(f"Watch on {kind} interrupted: {e}, reconnecting")
                stop.wait(5)

    async def watch(
        self, types: Sequence[Tuple[str, str]], namespace: Optional[str] = None
    ) -> AsyncIterator[WatchEvent]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        stop = threading.Event()
        for api_version, kind in types:
            thread = threading.Thread(
                target=self._watch_thread,
                args=(api_version, kind, namespace, loop, queue, stop),
                name=f"watch-{kind}",
                daemon=True,
            )
            thread.start()
        try:
            while True:
                yield await queue.get()
        finally:
            stop.set()

    async def close(self) -> None:
        self._api_client.close()
