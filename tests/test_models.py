"""
Tests for operation and resource models.
"""

import pytest
from dataclasses import FrozenInstanceError
from models.operations import Operation, OperationBatch, SyncResult, FallbackReason
from models.resources import (
    CachedAccessDescriptor,
    ResolutionRequest,
    ResolvedItem,
    ResourceCoordinates,
    ResourceKey,
    Variant,
    parse_expiry,
)


def make_operation(op_id="op-1", op_type="UPDATE_ENTITY"):
    return Operation(
        id=op_id,
        type=op_type,
        target_id="entity-7",
        payload={"name": "Aria"},
        client_timestamp=1700000000000,
        actor_id="user-1"
    )


def test_operation_wire_shape():
    """Test that operations serialize to camelCase keys and back."""
    op = make_operation()
    data = op.to_dict()

    assert data == {
        "id": "op-1",
        "type": "UPDATE_ENTITY",
        "targetId": "entity-7",
        "payload": {"name": "Aria"},
        "clientTimestamp": 1700000000000,
        "actorId": "user-1",
    }
    assert Operation.from_dict(data) == op


def test_operation_is_immutable():
    """Test that operations cannot be modified after creation."""
    op = make_operation()
    with pytest.raises(FrozenInstanceError):
        op.type = "DELETE_ENTITY"


def test_batch_stores_tuple_and_preserves_order():
    """Test that any iterable of operations is stored as an ordered tuple."""
    ops = [make_operation("a"), make_operation("b"), make_operation("c")]
    batch = OperationBatch("project-1", 5, ops)

    assert isinstance(batch.operations, tuple)
    assert batch.operation_ids == ["a", "b", "c"]
    assert len(batch) == 3

    ops.append(make_operation("d"))
    assert len(batch) == 3


def test_batch_from_dict():
    """Test parsing a batch from its wire shape."""
    batch = OperationBatch.from_dict({
        "projectId": "project-1",
        "baseVersion": 12,
        "operations": [make_operation("a").to_dict(), make_operation("b").to_dict()],
    })

    assert batch.project_id == "project-1"
    assert batch.base_version == 12
    assert batch.operation_ids == ["a", "b"]
    assert batch.to_dict()["operations"][1]["id"] == "b"


def test_sync_result_from_applied_operations():
    """Test that the backend's appliedOperations key is accepted and temp ids dropped."""
    result = SyncResult.from_dict({
        "success": True,
        "syncVersion": 8,
        "appliedOperations": ["op-1", "temp_123", "", None, "op-2"],
    })

    assert result.success is True
    assert result.sync_version == 8
    assert result.processed_operations == ("op-1", "op-2")


def test_sync_result_defaults_and_errors():
    """Test missing version falls back and error lists are joined."""
    result = SyncResult.from_dict(
        {"success": False, "errors": ["version conflict", "stale base"]},
        default_version=4
    )

    assert result.success is False
    assert result.sync_version == 4
    assert result.processed_operations == ()
    assert result.error == "version conflict; stale base"


def test_sync_result_server_operations():
    """Test that server operations from other collaborators are parsed."""
    result = SyncResult.from_dict({
        "success": True,
        "syncVersion": 3,
        "processedOperations": [],
        "serverOperations": [make_operation("remote-1").to_dict()],
    })

    assert [op.id for op in result.server_operations] == ["remote-1"]
    assert result.to_dict()["serverOperations"][0]["id"] == "remote-1"


def test_sync_result_tagged_keeps_values():
    """Test that tagging returns a copy with identical result values."""
    result = SyncResult(success=True, sync_version=2, processed_operations=("a",))
    tagged = result.tagged("persistent", FallbackReason.WS_FALLBACK)

    assert tagged.transport == "persistent"
    assert tagged.fallback_reason == "ws_fallback"
    assert tagged.to_dict() == result.to_dict()
    assert result.transport is None


def test_resolution_request_for_keys():
    """Test building a request for keys of one container."""
    coords_a = ResourceCoordinates("team-1", "project-1", "entity-1", "portrait")
    coords_b = ResourceCoordinates("team-1", "project-1", "entity-2", "portrait")
    request = ResolutionRequest.for_keys([
        ResourceKey(coords_a, Variant.THUMBNAIL),
        ResourceKey(coords_b, Variant.OPTIMIZED),
    ])

    assert request.to_dict() == {
        "ownerId": "team-1",
        "containerId": "project-1",
        "items": [
            {"resourceId": "entity-1", "slotId": "portrait", "variant": "thumbnail"},
            {"resourceId": "entity-2", "slotId": "portrait", "variant": "optimized"},
        ],
    }


def test_resolution_request_rejects_mixed_containers():
    """Test that a request cannot span several containers or be empty."""
    key_a = ResourceKey(ResourceCoordinates("team-1", "project-1", "e", "s"), Variant.THUMBNAIL)
    key_b = ResourceKey(ResourceCoordinates("team-1", "project-2", "e", "s"), Variant.THUMBNAIL)

    with pytest.raises(ValueError):
        ResolutionRequest.for_keys([key_a, key_b])
    with pytest.raises(ValueError):
        ResolutionRequest.for_keys([])


def test_resolved_item_key_in_request():
    """Test that a resolved item maps back to the requested key."""
    coords = ResourceCoordinates("team-1", "project-1", "entity-1", "portrait")
    request = ResolutionRequest.for_keys([ResourceKey(coords, Variant.ORIGINAL)])
    item = ResolvedItem.from_dict({
        "resourceId": "entity-1",
        "slotId": "portrait",
        "variant": "original",
        "url": "https://cdn.example.com/signed",
        "expiresAt": "2026-01-01T00:00:00Z",
    })

    assert item.key_in(request) == ResourceKey(coords, Variant.ORIGINAL)
    assert item.expires_at == 1767225600.0


def test_parse_expiry():
    """Test expiry parsing for strings, numbers and missing values."""
    assert parse_expiry(None) is None
    assert parse_expiry("") is None
    assert parse_expiry(1700000000) == 1700000000.0
    assert parse_expiry("1970-01-01T00:01:00+00:00") == 60.0
    assert parse_expiry("1970-01-01T00:01:00") == 60.0


def test_descriptor_freshness_boundary():
    """Test that a descriptor stops being fresh exactly at its expiry."""
    descriptor = CachedAccessDescriptor("https://cdn/x", expires_at=100.0, variant=Variant.THUMBNAIL)

    assert descriptor.is_fresh(99.999)
    assert not descriptor.is_fresh(100.0)
