"""
Transport channel contract.

Any object offering these methods can be handed to the HybridDispatcher;
wire format and framing belong to the concrete channel.
"""

from typing import Protocol, runtime_checkable

from models.operations import OperationBatch, SyncResult


@runtime_checkable
class TransportChannel(Protocol):
    """
    Uniform contract for submitting and pulling operations.

    ``send_operations`` fails with ChannelUnavailable, ChannelTimeout or
    OperationRejected. ``is_online`` must be cheap and must not block.
    """

    async def send_operations(self, batch: OperationBatch) -> SyncResult:
        ...

    async def get_operations(self, project_id: str, since_version: int) -> SyncResult:
        ...

    def is_online(self) -> bool:
        ...


@runtime_checkable
class StreamingTransport(TransportChannel, Protocol):
    """A transport that may be absent or disconnected."""

    def is_connected(self) -> bool:
        ...
