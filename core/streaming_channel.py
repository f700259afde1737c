"""
Streaming Channel for the Collaborative Sync Core

Connection-oriented, lower-latency transport. Keeps one TCP connection to
the collaboration server and exchanges length-prefixed CBOR frames:

- 4 bytes: frame length (big-endian)
- N bytes: CBOR-encoded {"type": str, "payload": dict}

Each submitted operation is correlated with its answer by operation id;
pulls are correlated by request id.
"""

import asyncio
import logging
import struct
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

try:
    import cbor2
except ImportError:
    raise ImportError("cbor2 is required. Install with: pip install cbor2")

from core.error_handler import ChannelTimeout, ChannelUnavailable, OperationRejected
from models.operations import Operation, OperationBatch, SyncResult


logger = logging.getLogger(__name__)

MAX_FRAME_SIZE = 10 * 1024 * 1024  # 10 MB
DEFAULT_SEND_TIMEOUT = 10.0

# Frame types
OPERATION_BROADCAST = "OPERATION_BROADCAST"
OPERATION_RESULT = "operation_result"
OPERATION_ERROR = "operation_error"
PULL_OPERATIONS = "PULL_OPERATIONS"
OPERATIONS = "operations"


class ConnectionState(Enum):
    """Connection state enumeration."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class StreamingChannel:
    """
    Streaming implementation of the transport channel contract.

    Responsibilities:
    - Maintain the connection and its receive loop
    - Send operations one frame each, in batch order
    - Await every answer within a bounded wait
    - Hand operations broadcast by other collaborators to a callback
    - Fail every pending request when the connection drops
    """

    name = "streaming"

    def __init__(
        self,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        on_remote_operations: Optional[Callable[[List[Operation]], None]] = None
    ):
        """
        Initialize StreamingChannel.

        Args:
            send_timeout: Bounded wait in seconds for answers to a send or pull
            on_remote_operations: Optional callback for operations from other collaborators
        """
        self.send_timeout = send_timeout
        self.on_remote_operations = on_remote_operations
        self.debug_frames = False  # log every frame at INFO
        self.state = ConnectionState.DISCONNECTED

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._network_online = True

        # Pending answers keyed by operation id or request id
        self._pending: Dict[str, asyncio.Future] = {}

    async def connect(self, host: str, port: int, timeout: float = 30.0) -> None:
        """
        Open the connection and start the receive loop.

        Args:
            host: Server hostname
            port: Server port
            timeout: Connection timeout in seconds

        Raises:
            ChannelUnavailable: If the connection cannot be established
            ChannelTimeout: If connecting times out
        """
        self.state = ConnectionState.CONNECTING
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=timeout
            )
        except asyncio.TimeoutError as e:
            self.state = ConnectionState.DISCONNECTED
            logger.error(f"Connection to {host}:{port} timed out")
            raise ChannelTimeout(f"Connection to {host}:{port} timed out") from e
        except OSError as e:
            self.state = ConnectionState.DISCONNECTED
            logger.error(f"Failed to connect to {host}:{port}: {e}")
            raise ChannelUnavailable(f"Connection failed: {e}") from e

        self.state = ConnectionState.CONNECTED
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info(f"Streaming channel connected to {host}:{port}")

    async def disconnect(self) -> None:
        """Close the connection and fail all pending requests."""
        if self.state == ConnectionState.DISCONNECTED and self._writer is None:
            return

        self.state = ConnectionState.DISCONNECTED

        if self._receive_task and not self._receive_task.done():
            self._receive_task.cancel()
            try:
                await asyncio.wait_for(self._receive_task, timeout=1.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
            except Exception as e:
                logger.debug(f"Error waiting for receive task to complete: {e}")
        self._receive_task = None

        self._close_writer()
        self._fail_pending(ChannelUnavailable("Streaming channel disconnected"))
        logger.info("Streaming channel disconnected")

    def is_online(self) -> bool:
        """Host network availability as last reported."""
        return self._network_online

    def set_online(self, online: bool) -> None:
        """Record host network availability reported by an external monitor."""
        self._network_online = online

    def is_connected(self) -> bool:
        """Whether the connection is currently established."""
        return (
            self.state == ConnectionState.CONNECTED
            and self._writer is not None
            and not self._writer.is_closing()
        )

    async def send_operations(self, batch: OperationBatch) -> SyncResult:
        """
        Send each operation of a batch and combine the answers.

        Args:
            batch: Batch to submit; it is not modified

        Returns:
            Combined SyncResult: success only if every operation succeeded,
            the highest sync version, processed ids in batch order

        Raises:
            ChannelUnavailable: If not connected or the connection drops
            ChannelTimeout: If answers do not arrive within send_timeout
            OperationRejected: If the server refuses an operation or answers malformed
        """
        if not self.is_connected():
            raise ChannelUnavailable("Streaming channel not connected")

        op_ids = batch.operation_ids
        if len(set(op_ids)) != len(op_ids):
            raise OperationRejected("Batch contains duplicate operation ids", operation_ids=op_ids)
        in_flight = [op_id for op_id in op_ids if op_id in self._pending]
        if in_flight:
            raise OperationRejected(
                f"Operations already in progress: {', '.join(in_flight)}",
                operation_ids=in_flight
            )

        if not batch.operations:
            return SyncResult(success=True, sync_version=batch.base_version)

        loop = asyncio.get_running_loop()
        futures = []
        for op_id in op_ids:
            future = loop.create_future()
            self._pending[op_id] = future
            futures.append(future)

        try:
            for operation in batch.operations:
                await self._send_frame(OPERATION_BROADCAST, {
                    "projectId": batch.project_id,
                    "baseVersion": batch.base_version,
                    "operation": operation.to_dict(),
                })
            logger.debug(f"Sent {len(batch)} operations for project {batch.project_id}, awaiting results")

            answers = await asyncio.wait_for(
                asyncio.gather(*futures),
                timeout=self.send_timeout
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"Timed out after {self.send_timeout}s waiting for {len(batch)} operation results")
            raise ChannelTimeout(f"No answer within {self.send_timeout}s") from e
        finally:
            for op_id, future in zip(op_ids, futures):
                if self._pending.get(op_id) is future:
                    del self._pending[op_id]
                if not future.done():
                    future.cancel()
                elif not future.cancelled():
                    future.exception()

        processed = []
        for op_id, answer in zip(op_ids, answers):
            if answer.get("success"):
                processed.append(op_id)

        try:
            sync_version = max(int(answer.get("syncVersion") or 0) for answer in answers)
        except (TypeError, ValueError) as e:
            raise OperationRejected(f"Malformed operation result: {e!r}", operation_ids=op_ids) from e

        return SyncResult(
            success=all(answer.get("success") for answer in answers),
            sync_version=sync_version,
            processed_operations=tuple(processed)
        )

    async def get_operations(self, project_id: str, since_version: int) -> SyncResult:
        """
        Pull operations recorded after a version over the open connection.

        Raises:
            ChannelUnavailable: If not connected
            ChannelTimeout: If the answer does not arrive within send_timeout
        """
        if not self.is_connected():
            raise ChannelUnavailable("Streaming channel not connected")

        request_id = f"pull_{uuid.uuid4().hex}"
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await self._send_frame(PULL_OPERATIONS, {
                "requestId": request_id,
                "projectId": project_id,
                "sinceVersion": since_version,
            })
            answer = await asyncio.wait_for(future, timeout=self.send_timeout)
        except asyncio.TimeoutError as e:
            raise ChannelTimeout(f"No answer to pull within {self.send_timeout}s") from e
        finally:
            self._pending.pop(request_id, None)

        try:
            return SyncResult.from_dict(answer, default_version=since_version)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Malformed pull answer for project {project_id}: {e!r}")
            raise OperationRejected(f"Malformed response to pull: {e!r}") from e

    async def _send_frame(self, msg_type: str, payload: Dict[str, Any]) -> None:
        """
        Encode and write one frame.

        Raises:
            ChannelUnavailable: If the write fails
        """
        if self.debug_frames:
            logger.info(f"-> {msg_type} {payload}")
        data = cbor2.dumps({"type": msg_type, "payload": payload})
        frame = struct.pack('!I', len(data)) + data
        try:
            self._writer.write(frame)
            await self._writer.drain()
        except (ConnectionError, OSError, AttributeError) as e:
            logger.error(f"Failed to send {msg_type} frame: {e}")
            raise ChannelUnavailable(f"Send failed: {e}") from e

    async def _receive_frame(self) -> Dict[str, Any]:
        """
        Read and decode one frame.

        Raises:
            asyncio.IncompleteReadError: If the connection is closed
            ValueError: If the frame is too large or malformed
        """
        length_bytes = await self._reader.readexactly(4)
        frame_length = struct.unpack('!I', length_bytes)[0]

        if frame_length > MAX_FRAME_SIZE:
            raise ValueError(f"Frame too large: {frame_length} bytes")

        data = await self._reader.readexactly(frame_length)
        message = cbor2.loads(data)
        if not isinstance(message, dict) or "type" not in message:
            raise ValueError("Malformed frame")
        if not isinstance(message.get("payload") or {}, dict):
            raise ValueError(f"Malformed {message['type']} frame payload")
        if self.debug_frames:
            logger.info(f"<- {message['type']} {message.get('payload')}")
        return message

    async def _receive_loop(self) -> None:
        """Continuously receive frames until the connection closes."""
        try:
            while self.state == ConnectionState.CONNECTED:
                try:
                    message = await self._receive_frame()
                except asyncio.IncompleteReadError:
                    logger.info("Server closed the streaming connection")
                    break
                except (ValueError, cbor2.CBORDecodeError) as e:
                    logger.error(f"Dropping connection after bad frame: {e}")
                    break
                self._dispatch_frame(message)
        except asyncio.CancelledError:
            logger.debug("Receive loop cancelled")
            raise
        except OSError as e:
            logger.error(f"Error in receive loop: {e}")
        except Exception as e:
            logger.error(f"Unexpected error in receive loop: {e!r}")
        finally:
            if self.state == ConnectionState.CONNECTED:
                self.state = ConnectionState.DISCONNECTED
                self._close_writer()
                self._fail_pending(ChannelUnavailable("Connection closed"))

    def _dispatch_frame(self, message: Dict[str, Any]) -> None:
        """Route a received frame to its waiting request or to the remote callback."""
        msg_type = message["type"]
        payload = message.get("payload") or {}

        if msg_type == OPERATION_RESULT:
            self._resolve(str(payload.get("operationId")), payload)
        elif msg_type == OPERATION_ERROR:
            op_id = str(payload.get("operationId"))
            self._reject(op_id, OperationRejected(
                str(payload.get("error") or "Operation rejected"),
                operation_ids=[op_id]
            ))
        elif msg_type == OPERATIONS:
            self._resolve(str(payload.get("requestId")), payload)
        elif msg_type == OPERATION_BROADCAST:
            self._handle_remote_operation(payload)
        else:
            logger.debug(f"Ignoring unknown frame type {msg_type}")

    def _resolve(self, key: str, payload: Dict[str, Any]) -> None:
        future = self._pending.pop(key, None)
        if future is None or future.done():
            logger.warning(f"No pending request for answer {key} (duplicate or late response?)")
            return
        future.set_result(payload)

    def _reject(self, key: str, error: Exception) -> None:
        future = self._pending.pop(key, None)
        if future is None or future.done():
            logger.warning(f"No pending request for error answer {key}")
            return
        future.set_exception(error)

    def _handle_remote_operation(self, payload: Dict[str, Any]) -> None:
        """Apply an operation broadcast by another collaborator."""
        raw = payload.get("operation")
        if not raw:
            return
        if not self.on_remote_operations:
            logger.debug("Remote operation received but no callback is set")
            return
        try:
            operation = Operation.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Ignoring malformed remote operation: {e}")
            return
        self.on_remote_operations([operation])

    def _fail_pending(self, error: Exception) -> None:
        pending = list(self._pending.items())
        self._pending.clear()
        for key, future in pending:
            if not future.done():
                future.set_exception(error)
        if pending:
            logger.warning(f"Failed {len(pending)} pending requests: {error}")

    def _close_writer(self) -> None:
        if self._writer is not None:
            try:
                self._writer.close()
            except Exception as e:
                logger.debug(f"Error closing streaming connection: {e}")
            self._writer = None
            self._reader = None
