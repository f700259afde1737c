"""
Resource models for remotely stored media.

Coordinates identify one stored media resource; combined with a variant they
form the key under which an expiring access URL is cached.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Union


class Variant(Enum):
    """Renditions of a media resource, each signed and expiring independently."""
    THUMBNAIL = "thumbnail"
    OPTIMIZED = "optimized"
    ORIGINAL = "original"


@dataclass(frozen=True)
class ResourceCoordinates:
    """Identifies one stored media resource and the context needed to authorize it."""
    owner_id: str
    container_id: str
    resource_id: str
    slot_id: str

    @property
    def container(self) -> tuple:
        return (self.owner_id, self.container_id)

    def __str__(self) -> str:
        return f"{self.owner_id}:{self.container_id}:{self.resource_id}:{self.slot_id}"


class ResourceKey(NamedTuple):
    """Cache key: a resource and one of its variants."""
    coordinates: ResourceCoordinates
    variant: Variant

    def __str__(self) -> str:
        return f"{self.coordinates}:{self.variant.value}"


@dataclass
class CachedAccessDescriptor:
    """A resolved access URL and the moment it stops being served."""
    url: str
    expires_at: float
    variant: Variant

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class ResolutionRequest:
    """Batch resolution request for resources of a single container."""
    owner_id: str
    container_id: str
    items: tuple

    @classmethod
    def for_keys(cls, keys: List[ResourceKey]) -> 'ResolutionRequest':
        """
        Build a request covering the given keys.

        Args:
            keys: Keys to resolve; all must share owner and container

        Returns:
            ResolutionRequest instance

        Raises:
            ValueError: If keys is empty or spans several containers
        """
        if not keys:
            raise ValueError("Cannot build a resolution request without keys")
        first = keys[0].coordinates
        if any(key.coordinates.container != first.container for key in keys):
            raise ValueError("All keys of a resolution request must share owner and container")
        return cls(
            owner_id=first.owner_id,
            container_id=first.container_id,
            items=tuple(keys),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ownerId": self.owner_id,
            "containerId": self.container_id,
            "items": [
                {
                    "resourceId": key.coordinates.resource_id,
                    "slotId": key.coordinates.slot_id,
                    "variant": key.variant.value,
                }
                for key in self.items
            ],
        }


def parse_expiry(value: Union[str, int, float, None]) -> Optional[float]:
    """
    Parse a server expiry into epoch seconds.

    Args:
        value: ISO-8601 string, epoch seconds, or None

    Returns:
        Epoch seconds, or None when the server sent no expiry
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


@dataclass(frozen=True)
class ResolvedItem:
    """One entry of a batch resolution response."""
    resource_id: str
    slot_id: str
    variant: Variant
    url: str
    expires_at: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ResolvedItem':
        return cls(
            resource_id=str(data["resourceId"]),
            slot_id=str(data["slotId"]),
            variant=Variant(data["variant"]),
            url=data["url"],
            expires_at=parse_expiry(data.get("expiresAt")),
        )

    def key_in(self, request: ResolutionRequest) -> ResourceKey:
        """Rebuild the cache key of this item within the request's container."""
        coords = ResourceCoordinates(
            owner_id=request.owner_id,
            container_id=request.container_id,
            resource_id=self.resource_id,
            slot_id=self.slot_id,
        )
        return ResourceKey(coords, self.variant)
