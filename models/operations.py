"""
Operation models for the collaborative sync core.

Defines the edit operations recorded by an editing session, the batches they
are submitted in, and the results returned by a transport channel.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple


class FallbackReason:
    """Reasons a batch was routed to the persistent channel."""
    WS_FALLBACK = "ws_fallback"
    WS_UNAVAILABLE = "ws_unavailable"
    REST_PREFERRED = "rest_preferred"


TEMP_ID_PREFIX = "temp_"


@dataclass(frozen=True)
class Operation:
    """One recorded edit action. Immutable once created."""
    id: str
    type: str
    target_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    client_timestamp: int = 0
    actor_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the wire shape."""
        return {
            "id": self.id,
            "type": self.type,
            "targetId": self.target_id,
            "payload": dict(self.payload),
            "clientTimestamp": self.client_timestamp,
            "actorId": self.actor_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Operation':
        """
        Build an operation from its wire shape.

        Args:
            data: Dictionary with id, type, targetId, payload, clientTimestamp, actorId

        Returns:
            Operation instance

        Raises:
            KeyError: If id or type is missing
        """
        return cls(
            id=str(data["id"]),
            type=data["type"],
            target_id=str(data.get("targetId", "")),
            payload=dict(data.get("payload") or {}),
            client_timestamp=int(data.get("clientTimestamp", 0)),
            actor_id=str(data.get("actorId", "")),
        )


@dataclass(frozen=True)
class OperationBatch:
    """
    Ordered group of operations submitted together.

    Operation order is preserved end-to-end. A batch is single-use: the
    editing session discards it once an outcome (success or failure) is known.
    """
    project_id: str
    base_version: int
    operations: Tuple[Operation, ...] = ()

    def __post_init__(self):
        # Accept any iterable but always store an immutable tuple
        if not isinstance(self.operations, tuple):
            object.__setattr__(self, "operations", tuple(self.operations))

    def __len__(self) -> int:
        return len(self.operations)

    @property
    def operation_ids(self) -> List[str]:
        return [op.id for op in self.operations]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projectId": self.project_id,
            "baseVersion": self.base_version,
            "operations": [op.to_dict() for op in self.operations],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OperationBatch':
        return cls(
            project_id=str(data["projectId"]),
            base_version=int(data.get("baseVersion", 0)),
            operations=tuple(Operation.from_dict(op) for op in data.get("operations", [])),
        )


def _clean_processed_ids(raw_ids: Iterable[Any]) -> Tuple[str, ...]:
    """Drop temporary client ids and empty values from a processed-id list."""
    cleaned = []
    for raw in raw_ids or []:
        if raw is None:
            continue
        op_id = str(raw).strip()
        if not op_id or op_id.startswith(TEMP_ID_PREFIX):
            continue
        cleaned.append(op_id)
    return tuple(cleaned)


@dataclass(frozen=True)
class SyncResult:
    """
    Outcome of submitting or pulling operations.

    Attributes:
        success: Whether the server accepted the request
        sync_version: Per-project monotonically increasing version counter
        processed_operations: Ids of the operations durably accepted
        error: Server supplied error message, if any
        server_operations: Operations produced by other collaborators
        transport: Channel that produced the result ("streaming" or "persistent")
        fallback_reason: Why the persistent channel was used, if it was
    """
    success: bool
    sync_version: int
    processed_operations: Tuple[str, ...] = ()
    error: Optional[str] = None
    server_operations: Tuple[Operation, ...] = ()
    transport: Optional[str] = None
    fallback_reason: Optional[str] = None

    def tagged(self, transport: str, fallback_reason: Optional[str] = None) -> 'SyncResult':
        """Return a copy tagged with the transport path that produced it."""
        return replace(self, transport=transport, fallback_reason=fallback_reason)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.success,
            "syncVersion": self.sync_version,
            "processedOperations": list(self.processed_operations),
        }
        if self.error is not None:
            data["error"] = self.error
        if self.server_operations:
            data["serverOperations"] = [op.to_dict() for op in self.server_operations]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_version: int = 0) -> 'SyncResult':
        """
        Build a result from a server response.

        Accepts both ``processedOperations`` and the backend's
        ``appliedOperations`` key. Temporary client ids are filtered out.

        Args:
            data: Response body
            default_version: Version to report when the server omits one

        Returns:
            SyncResult instance
        """
        raw_ids = data.get("processedOperations")
        if raw_ids is None:
            raw_ids = data.get("appliedOperations", [])

        error = data.get("error")
        if error is None and data.get("errors"):
            error = "; ".join(str(e) for e in data["errors"])

        sync_version = data.get("syncVersion")
        return cls(
            success=bool(data.get("success", False)),
            sync_version=int(sync_version) if sync_version is not None else default_version,
            processed_operations=_clean_processed_ids(raw_ids),
            error=error,
            server_operations=tuple(
                Operation.from_dict(op) for op in data.get("serverOperations") or []
            ),
        )
