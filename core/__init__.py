"""
Core module for the collaborative sync client.

This module contains the core functionality including:
- Transport channels (streaming and persistent) and their contract
- Hybrid dispatch with single-level fallback
- Resource URL resolution with caching and deduplication
- Thumbnail proxy URL building
- Feature flags and error handling
"""

__version__ = "0.1.0"

from core.error_handler import (
    SyncCoreError,
    TransportError,
    ChannelUnavailable,
    ChannelTimeout,
    OperationRejected,
    ResolutionFailure,
    ConfigurationError,
)
from core.transport import TransportChannel, StreamingTransport
from core.persistent_channel import PersistentChannel
from core.streaming_channel import StreamingChannel
from core.dispatcher import HybridDispatcher, create_dispatcher
from core.feature_flags import FeatureFlags
from core.resource_cache import ResourceLocationCache
from core.resource_api import HttpResourceResolver
from core.proxy_url import ProxyURLBuilder, build_thumbnail_url

__all__ = [
    'SyncCoreError',
    'TransportError',
    'ChannelUnavailable',
    'ChannelTimeout',
    'OperationRejected',
    'ResolutionFailure',
    'ConfigurationError',
    'TransportChannel',
    'StreamingTransport',
    'PersistentChannel',
    'StreamingChannel',
    'HybridDispatcher',
    'create_dispatcher',
    'FeatureFlags',
    'ResourceLocationCache',
    'HttpResourceResolver',
    'ProxyURLBuilder',
    'build_thumbnail_url',
]
