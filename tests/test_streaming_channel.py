"""
Tests for StreamingChannel - framed CBOR transport over a loopback server.
"""

import asyncio
import struct

import cbor2
import pytest

from core.error_handler import ChannelTimeout, ChannelUnavailable, OperationRejected
from core.streaming_channel import StreamingChannel
from core.transport import StreamingTransport
from models.operations import Operation, OperationBatch


class FakeSyncServer:
    """
    Minimal collaboration server speaking length-prefixed CBOR frames.

    ``mode`` controls how OPERATION_BROADCAST frames are answered:
    "ack" answers every operation, "reject:<id>" refuses one id,
    "silent" never answers, "close" drops the connection and "garbled"
    answers with a version that is not a number. ``pull_overrides`` replaces
    fields of the answer to PULL_OPERATIONS.
    """

    def __init__(self, mode="ack", version=10, pull_overrides=None):
        self.mode = mode
        self.version = version
        self.pull_overrides = pull_overrides or {}
        self.received = []
        self.writers = []
        self.server = None

    async def start(self):
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        return self.server.sockets[0].getsockname()[1]

    async def stop(self):
        for writer in self.writers:
            writer.close()
        self.server.close()
        await self.server.wait_closed()

    async def send(self, writer, msg_type, payload):
        data = cbor2.dumps({"type": msg_type, "payload": payload})
        writer.write(struct.pack('!I', len(data)) + data)
        await writer.drain()

    async def broadcast(self, msg_type, payload):
        for writer in self.writers:
            await self.send(writer, msg_type, payload)

    async def _handle(self, reader, writer):
        self.writers.append(writer)
        try:
            while True:
                length = struct.unpack('!I', await reader.readexactly(4))[0]
                message = cbor2.loads(await reader.readexactly(length))
                self.received.append(message)
                await self._answer(writer, message)
        except (asyncio.IncompleteReadError, ConnectionError):
            pass

    async def _answer(self, writer, message):
        payload = message["payload"]

        if message["type"] == "PULL_OPERATIONS":
            answer = {
                "requestId": payload["requestId"],
                "success": True,
                "syncVersion": self.version,
                "serverOperations": [{"id": "remote-1", "type": "UPDATE_ENTITY", "targetId": "e"}],
            }
            answer.update(self.pull_overrides)
            await self.send(writer, "operations", answer)
            return

        op_id = payload["operation"]["id"]
        if self.mode == "silent":
            return
        if self.mode == "close":
            writer.close()
            return
        if self.mode == f"reject:{op_id}":
            await self.send(writer, "operation_error", {"operationId": op_id, "error": "Version conflict"})
            return

        await self.send(writer, "operation_result", {
            "operationId": op_id,
            "success": True,
            "syncVersion": "abc" if self.mode == "garbled" else payload["baseVersion"] + 1,
        })


def make_batch(ids=("op-1", "op-2", "op-3"), base_version=10):
    return OperationBatch("project-1", base_version, [
        Operation(id=op_id, type="UPDATE_ENTITY", target_id="entity-1", payload={"n": i})
        for i, op_id in enumerate(ids)
    ])


async def connected(server, **kwargs):
    port = await server.start()
    channel = StreamingChannel(**kwargs)
    await channel.connect("127.0.0.1", port, timeout=5.0)
    for _ in range(100):
        if server.writers:
            break
        await asyncio.sleep(0.01)
    return channel


@pytest.mark.asyncio
async def test_send_batch_combines_results():
    """Test that each operation is sent in order and answers are combined."""
    server = FakeSyncServer()
    channel = await connected(server)
    try:
        result = await channel.send_operations(make_batch())

        assert result.success is True
        assert result.sync_version == 11
        assert result.processed_operations == ("op-1", "op-2", "op-3")
        sent_ids = [m["payload"]["operation"]["id"] for m in server.received]
        assert sent_ids == ["op-1", "op-2", "op-3"]
        assert all(m["type"] == "OPERATION_BROADCAST" for m in server.received)
    finally:
        await channel.disconnect()
        await server.stop()


@pytest.mark.asyncio
async def test_rejected_operation():
    """Test that an operation_error answer raises OperationRejected."""
    server = FakeSyncServer(mode="reject:op-2")
    channel = await connected(server)
    try:
        with pytest.raises(OperationRejected) as exc_info:
            await channel.send_operations(make_batch())

        assert exc_info.value.operation_ids == ("op-2",)
        assert channel._pending == {}
    finally:
        await channel.disconnect()
        await server.stop()


@pytest.mark.asyncio
async def test_send_timeout():
    """Test that missing answers raise ChannelTimeout within the bound."""
    server = FakeSyncServer(mode="silent")
    channel = await connected(server, send_timeout=0.2)
    try:
        with pytest.raises(ChannelTimeout):
            await channel.send_operations(make_batch())
        assert channel._pending == {}
    finally:
        await channel.disconnect()
        await server.stop()


@pytest.mark.asyncio
async def test_connection_loss_fails_pending():
    """Test that a dropped connection rejects every pending request."""
    server = FakeSyncServer(mode="close")
    channel = await connected(server, send_timeout=5.0)
    try:
        with pytest.raises(ChannelUnavailable):
            await channel.send_operations(make_batch())
        await asyncio.sleep(0.05)

        assert channel.is_connected() is False
        with pytest.raises(ChannelUnavailable):
            await channel.send_operations(make_batch())
    finally:
        await channel.disconnect()
        await server.stop()


@pytest.mark.asyncio
async def test_duplicate_ids_rejected():
    """Test that duplicate operation ids are refused before sending."""
    server = FakeSyncServer()
    channel = await connected(server)
    try:
        with pytest.raises(OperationRejected):
            await channel.send_operations(make_batch(ids=("op-1", "op-1")))
        assert server.received == []
    finally:
        await channel.disconnect()
        await server.stop()


@pytest.mark.asyncio
async def test_in_flight_id_rejected():
    """Test that an id already awaiting its answer cannot be sent again."""
    server = FakeSyncServer(mode="silent")
    channel = await connected(server, send_timeout=1.0)
    try:
        first = asyncio.create_task(channel.send_operations(make_batch(ids=("op-1",))))
        await asyncio.sleep(0.05)

        with pytest.raises(OperationRejected):
            await channel.send_operations(make_batch(ids=("op-1",)))

        with pytest.raises(ChannelTimeout):
            await first
    finally:
        await channel.disconnect()
        await server.stop()


@pytest.mark.asyncio
async def test_empty_batch():
    """Test that an empty batch succeeds at its base version without traffic."""
    server = FakeSyncServer()
    channel = await connected(server)
    try:
        result = await channel.send_operations(make_batch(ids=(), base_version=4))
        assert result.success is True
        assert result.sync_version == 4
        assert server.received == []
    finally:
        await channel.disconnect()
        await server.stop()


@pytest.mark.asyncio
async def test_pull_operations():
    """Test pulling operations correlated by request id."""
    server = FakeSyncServer(version=42)
    channel = await connected(server)
    try:
        result = await channel.get_operations("project-1", 40)

        assert result.sync_version == 42
        assert [op.id for op in result.server_operations] == ["remote-1"]
        assert server.received[0]["payload"]["sinceVersion"] == 40
    finally:
        await channel.disconnect()
        await server.stop()


@pytest.mark.asyncio
async def test_remote_operations_callback():
    """Test that operations broadcast by other collaborators reach the callback."""
    received = []
    server = FakeSyncServer()
    channel = await connected(server, on_remote_operations=received.extend)
    try:
        await server.broadcast("OPERATION_BROADCAST", {
            "projectId": "project-1",
            "operation": {"id": "remote-7", "type": "CREATE_ENTITY", "targetId": "entity-9"},
        })
        for _ in range(50):
            if received:
                break
            await asyncio.sleep(0.01)

        assert [op.id for op in received] == ["remote-7"]
    finally:
        await channel.disconnect()
        await server.stop()


@pytest.mark.asyncio
async def test_garbled_answers_are_rejected():
    """Test that answers with bad field types raise OperationRejected."""
    server = FakeSyncServer(mode="garbled", pull_overrides={"serverOperations": [{"type": "UPDATE_ENTITY"}]})
    channel = await connected(server)
    try:
        with pytest.raises(OperationRejected) as exc_info:
            await channel.send_operations(make_batch(ids=("op-1",)))
        assert exc_info.value.operation_ids == ("op-1",)

        with pytest.raises(OperationRejected, match="Malformed response to pull"):
            await channel.get_operations("project-1", 40)
        assert channel.is_connected() is True
    finally:
        await channel.disconnect()
        await server.stop()


@pytest.mark.asyncio
async def test_bad_frame_payload_drops_connection(caplog):
    """Test that a frame whose payload is not a map closes the connection cleanly."""
    server = FakeSyncServer(mode="silent")
    channel = await connected(server, send_timeout=5.0)
    try:
        pending = asyncio.create_task(channel.send_operations(make_batch(ids=("op-1",))))
        await asyncio.sleep(0.05)

        with caplog.at_level("ERROR", logger="core.streaming_channel"):
            await server.broadcast("operation_result", [1, 2])
            with pytest.raises(ChannelUnavailable):
                await pending

        assert channel.is_connected() is False
        assert "bad frame" in caplog.text
        receive_task = channel._receive_task
        assert receive_task is None or (receive_task.done() and receive_task.exception() is None)
    finally:
        await channel.disconnect()
        await server.stop()


@pytest.mark.asyncio
async def test_frame_debug_logging(caplog):
    """Test that frame debugging logs frames in both directions."""
    server = FakeSyncServer()
    channel = await connected(server)
    channel.debug_frames = True
    try:
        with caplog.at_level("INFO", logger="core.streaming_channel"):
            await channel.send_operations(make_batch(ids=("op-1",)))

        assert "-> OPERATION_BROADCAST" in caplog.text
        assert "<- operation_result" in caplog.text
    finally:
        await channel.disconnect()
        await server.stop()


@pytest.mark.asyncio
async def test_not_connected():
    """Test the contract before connecting and after connection failure."""
    channel = StreamingChannel()

    assert isinstance(channel, StreamingTransport)
    assert channel.is_connected() is False
    with pytest.raises(ChannelUnavailable):
        await channel.send_operations(make_batch())
    with pytest.raises(ChannelUnavailable):
        await channel.get_operations("project-1", 0)

    server = FakeSyncServer()
    port = await server.start()
    await server.stop()
    with pytest.raises(ChannelUnavailable):
        await channel.connect("127.0.0.1", port, timeout=2.0)

    channel.set_online(False)
    assert channel.is_online() is False
