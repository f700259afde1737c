"""
Hybrid Dispatcher for the Collaborative Sync Core

Single entry point for operation submission. Chooses the streaming channel
or the persistent channel on every call and falls back from streaming to
persistent at most once. Reads always go through the persistent channel.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from core.feature_flags import REALTIME_COLLABORATION, WS_DEBUG_MODE, WS_SYNC_ENABLED, FeatureFlags
from core.persistent_channel import PersistentChannel
from core.streaming_channel import StreamingChannel
from core.transport import StreamingTransport, TransportChannel
from models.operations import FallbackReason, Operation, OperationBatch, SyncResult


logger = logging.getLogger(__name__)

STREAMING = "streaming"
PERSISTENT = "persistent"

RemoteHandler = Callable[[List[Operation]], None]


@dataclass
class DispatchCounters:
    """Running totals of how batches were routed."""
    streaming_sent: int = 0
    persistent_sent: int = 0
    fallbacks: int = 0
    failures: int = 0


class HybridDispatcher:
    """
    Routes operation batches over the best available transport.

    A batch is attempted on at most one channel per level: streaming first
    when it is preferred and usable, otherwise (or after a streaming
    failure) the persistent channel. A persistent failure propagates to
    the caller unchanged; in-flight batches are never retried here.
    """

    def __init__(
        self,
        persistent_channel: TransportChannel,
        streaming_channel: Optional[StreamingTransport] = None,
        prefer_streaming: bool = True
    ):
        """
        Initialize HybridDispatcher.

        Args:
            persistent_channel: Always-attemptable request/response channel
            streaming_channel: Optional lower-latency channel
            prefer_streaming: Whether to try the streaming channel first
        """
        self.persistent_channel = persistent_channel
        self.streaming_channel = streaming_channel
        self.prefer_streaming = prefer_streaming
        self.realtime_enabled = True
        self.debug_frames = False
        self.counters = DispatchCounters()
        self._remote_handler: Optional[RemoteHandler] = None
        self._attach_streaming(streaming_channel)

    async def send_operations(self, batch: OperationBatch) -> SyncResult:
        """
        Send a batch through the best available transport.

        Args:
            batch: Batch to send; the same object is passed to the fallback

        Returns:
            SyncResult tagged with the transport and fallback reason

        Raises:
            TransportError: If the persistent channel fails
        """
        use_streaming = self._should_use_streaming()

        if use_streaming:
            logger.info(f"Using streaming channel for {len(batch)} operations")
            try:
                result = await self.streaming_channel.send_operations(batch)
            except Exception as e:
                logger.warning(f"Streaming channel failed, falling back to persistent: {e}")
                self.counters.fallbacks += 1
                return await self._send_via_persistent(batch, FallbackReason.WS_FALLBACK)

            self.counters.streaming_sent += 1
            logger.info(
                f"Streaming operations completed: success={result.success}, "
                f"sync_version={result.sync_version}, "
                f"processed={len(result.processed_operations)}"
            )
            return result.tagged(STREAMING)

        reason = FallbackReason.WS_UNAVAILABLE if self.prefer_streaming else FallbackReason.REST_PREFERRED
        return await self._send_via_persistent(batch, reason)

    async def get_operations(self, project_id: str, since_version: int) -> SyncResult:
        """Pull operations; always served by the persistent channel."""
        result = await self.persistent_channel.get_operations(project_id, since_version)
        return result.tagged(PERSISTENT)

    def is_online(self) -> bool:
        """Connectivity as reported by the persistent channel."""
        return self.persistent_channel.is_online()

    def set_streaming_channel(self, channel: Optional[StreamingTransport]) -> None:
        """
        Rebind the streaming channel, e.g. after a reconnect.

        Batches already in flight are not retried; the caller resubmits.
        """
        self.streaming_channel = channel
        self._attach_streaming(channel)
        logger.info(f"Streaming channel {'bound' if channel is not None else 'unbound'}")

    def set_streaming_preference(self, prefer: bool) -> None:
        """Switch strategy without reconnecting."""
        self.prefer_streaming = prefer
        logger.info(f"Streaming preference set to {prefer}")

    def set_remote_operations_handler(self, handler: Optional[RemoteHandler]) -> None:
        """
        Receive operations broadcast by other collaborators.

        Operations are only delivered while realtime collaboration is enabled.
        """
        self._remote_handler = handler
        self._attach_streaming(self.streaming_channel)

    def set_realtime_collaboration(self, enabled: bool) -> None:
        self.realtime_enabled = enabled
        logger.info(f"Realtime collaboration {'enabled' if enabled else 'disabled'}")

    def set_frame_debugging(self, enabled: bool) -> None:
        self.debug_frames = enabled
        if isinstance(self.streaming_channel, StreamingChannel):
            self.streaming_channel.debug_frames = enabled

    def get_transport_stats(self) -> Dict[str, Any]:
        """
        Get transport telemetry.

        Returns:
            Dictionary with current routing inputs and dispatch counters
        """
        streaming = self.streaming_channel
        return {
            "prefer_streaming": self.prefer_streaming,
            "streaming_available": streaming is not None,
            "streaming_connected": bool(streaming is not None and streaming.is_connected()),
            "persistent_available": True,
            "network_online": self.is_online(),
            "realtime_collaboration": self.realtime_enabled,
            "streaming_sent": self.counters.streaming_sent,
            "persistent_sent": self.counters.persistent_sent,
            "fallbacks": self.counters.fallbacks,
            "failures": self.counters.failures,
        }

    def bind_feature_flags(self, flags: FeatureFlags) -> None:
        """Follow the streaming, realtime and frame debugging flags at runtime."""
        self.set_streaming_preference(flags.is_enabled(WS_SYNC_ENABLED))
        self.set_realtime_collaboration(flags.is_enabled(REALTIME_COLLABORATION))
        self.set_frame_debugging(flags.is_enabled(WS_DEBUG_MODE))
        flags.add_listener(self._on_flag_changed)

    def _on_flag_changed(self, flag: str, enabled: bool) -> None:
        if flag == WS_SYNC_ENABLED:
            self.set_streaming_preference(enabled)
        elif flag == REALTIME_COLLABORATION:
            self.set_realtime_collaboration(enabled)
        elif flag == WS_DEBUG_MODE:
            self.set_frame_debugging(enabled)

    def _attach_streaming(self, channel: Optional[StreamingTransport]) -> None:
        if not isinstance(channel, StreamingChannel):
            return
        channel.debug_frames = self.debug_frames
        if self._remote_handler is not None:
            channel.on_remote_operations = self._deliver_remote_operations

    def _deliver_remote_operations(self, operations: List[Operation]) -> None:
        if self._remote_handler is None:
            return
        if not self.realtime_enabled:
            logger.debug(f"Realtime collaboration off, dropping {len(operations)} remote operations")
            return
        self._remote_handler(operations)

    def _should_use_streaming(self) -> bool:
        if not self.prefer_streaming:
            return False
        if self.streaming_channel is None:
            return False
        if not self.streaming_channel.is_online():
            return False
        return self.streaming_channel.is_connected()

    async def _send_via_persistent(self, batch: OperationBatch, reason: str) -> SyncResult:
        logger.info(f"Using persistent channel ({reason}) for {len(batch)} operations")

        try:
            result = await self.persistent_channel.send_operations(batch)
        except Exception as e:
            self.counters.failures += 1
            logger.error(f"Persistent channel also failed ({reason}): {e}")
            raise

        self.counters.persistent_sent += 1
        logger.info(
            f"Persistent operations completed: success={result.success}, "
            f"sync_version={result.sync_version}, "
            f"processed={len(result.processed_operations)}, reason={reason}"
        )
        return result.tagged(PERSISTENT, reason)


def create_dispatcher(
    api_base_url: str,
    flags: FeatureFlags,
    streaming_channel: Optional[StreamingChannel] = None,
    request_timeout: float = 30.0,
    headers: Optional[Dict[str, str]] = None,
    on_remote_operations: Optional[Callable[[List[Operation]], None]] = None
) -> HybridDispatcher:
    """
    Build a dispatcher with a persistent channel and an optional streaming one.

    Args:
        api_base_url: REST API root for the persistent channel
        flags: Feature flags; WS_SYNC_ENABLED drives the streaming preference
        streaming_channel: Already created streaming channel, if any
        request_timeout: Persistent channel timeout in seconds
        headers: Extra HTTP headers such as Authorization
        on_remote_operations: Callback for operations from other collaborators

    Returns:
        Configured HybridDispatcher
    """
    persistent = PersistentChannel(api_base_url, timeout=request_timeout, headers=headers)

    dispatcher = HybridDispatcher(persistent, streaming_channel)
    dispatcher.bind_feature_flags(flags)
    if on_remote_operations is not None:
        dispatcher.set_remote_operations_handler(on_remote_operations)
        logger.info("Remote operation callback set for realtime sync")
    return dispatcher
