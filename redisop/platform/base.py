import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObjectRef:
    """Identifies one object on the platform"""

    api_version: str
    kind: str
    namespace: str
    name: str

    @classmethod
    def from_manifest(cls, manifest: Dict[str, Any]) -> "ObjectRef":
        metadata = manifest.get("metadata") or {}
        return cls(
            api_version=manifest["apiVersion"],
            kind=manifest["kind"],
            namespace=metadata.get("namespace") or "default",
            name=metadata["name"],
        )

    @property
    def type_key(self) -> Tuple[str, str]:
        return (self.api_version, self.kind)

    def __str__(self) -> str:
        return f"{self.kind} {self.namespace}/{self.name}"


class WatchEvent:
    """A change notification delivered by a platform watch"""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"

    def __init__(self, type: str, object: Dict[str, Any]):
        self.type = type
        self.object = object

    @property
    def ref(self) -> ObjectRef:
        return ObjectRef.from_manifest(self.object)

    def __repr__(self) -> str:
        return f"WatchEvent({self.type}, {self.ref})"


class Platform(ABC):
    """Abstract base class for orchestration platform backends

    Implementations must enforce optimistic concurrency: ``replace`` and
    ``replace_status`` carry the caller's ``metadata.resourceVersion`` and
    raise ConflictError when it is stale. Status is only ever changed through
    ``replace_status``.
    """

    @abstractmethod
    async def get(self, ref: ObjectRef) -> Optional[Dict[str, Any]]:
        """
        Read one object

        Returns:
            The stored manifest, or None when the object does not exist
        """
        pass

    @abstractmethod
    async def list(
        self,
        api_version: str,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        """
        List objects of one type

        Args:
            api_version: API group/version, e.g. apps/v1
            kind: Object kind
            namespace: Restrict to a namespace, all namespaces when None
            label_selector: Equality-based label selector
        """
        pass

    @abstractmethod
    async def create(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        """Create an object. Raises ConflictError when it already exists."""
        pass

    @abstractmethod
    async def replace(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        """Replace an object guarded by its resourceVersion."""
        pass

    @abstractmethod
    async def replace_status(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the status subresource guarded by the resourceVersion."""
        pass

    @abstractmethod
    async def delete(self, ref: ObjectRef) -> bool:
        """
        Delete an object

        Returns:
            False when the object was already gone
        """
        pass

    @abstractmethod
    def watch(self, types: Sequence[Tuple[str, str]], namespace: Optional[str] = None) -> AsyncIterator[WatchEvent]:
        """
        Stream change events for the given (api_version, kind) pairs

        Args:
            types: Object types to watch
            namespace: Restrict to a namespace, all namespaces when None
        """
        pass

    async def close(self) -> None:
        """Release backend resources"""
        pass


def create_platform(platform_type: str = "kubernetes", **kwargs) -> Platform:
    """
    Factory function to create a platform backend

    Args:
        platform_type: Type of platform ('kubernetes', 'memory')
        **kwargs: Backend specific arguments

    Returns:
        Platform instance
    """
    if platform_type == "memory":
        from redisop.platform.memory import InMemoryPlatform

        return InMemoryPlatform(**kwargs)
    elif platform_type == "kubernetes":
        from redisop.platform.kubernetes import KubernetesPlatform

        return KubernetesPlatform(**kwargs)
    else:
        raise ValueError(f"Unknown platform type: {platform_type}")
