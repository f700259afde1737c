"""
Data models module for the collaborative sync core.

This module contains plain dataclass models for:
- Operations, operation batches and sync results
- Resource coordinates, variants and cached access descriptors
"""

from models.operations import FallbackReason, Operation, OperationBatch, SyncResult
from models.resources import (
    CachedAccessDescriptor,
    ResolutionRequest,
    ResolvedItem,
    ResourceCoordinates,
    ResourceKey,
    Variant,
)

__all__ = [
    'FallbackReason',
    'Operation',
    'OperationBatch',
    'SyncResult',
    'CachedAccessDescriptor',
    'ResolutionRequest',
    'ResolvedItem',
    'ResourceCoordinates',
    'ResourceKey',
    'Variant',
]
