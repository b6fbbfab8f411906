"""
Comment View-Model Package

ARCHITECTURAL BOUNDARY:
=======================
Holds the in-memory comment tree and mediates every change to it.
Rendering and transport live outside; the transport is reached only
through a MutationGateway supplied by the caller.

DIRECTION OF DEPENDENCY:
========================
viewmodel -> store / transformer / sorter / policy / events -> contracts

DESIGN PRINCIPLES:
==================
1. One authorized mutator (CommentViewModel)
2. Frozen records, swapped whole on change
3. Optimistic changes always carry their own rollback snapshot
4. Context is passed explicitly, never looked up globally
"""

from .config import (
    CommentsContext, CommentsOptions, FieldMapping, SortMode, TimestampFormat,
    DEFAULT_FIELD_MAPPINGS,
)
from .contracts import (
    AttachmentRecord, CommentRecord, CommentSnapshot, CommentEvent,
    ViewModelEvent, EventPhase, MutationKind, MutationOutcome, MutationResult,
    AuditEventType, AuditLogEntry, MetricPoint,
    ErrorCode, CommentError, ValidationError, GatewayError, ConsistencyError,
)
from .events import EventRegistry, Subscription
from .gateway import GatewayResponse, MutationGateway, MockGateway, HttpMutationGateway
from .observability import LogCollector, MetricsCollector, MutationObserver
from .policy import ActionPolicy, ActionSet
from .sorter import CommentSorter
from .store import CommentStore
from .transformer import CommentTransformer
from .viewmodel import CommentViewModel, PendingMutation

__all__ = [
    'CommentsContext', 'CommentsOptions', 'FieldMapping', 'SortMode', 'TimestampFormat',
    'DEFAULT_FIELD_MAPPINGS',
    'AttachmentRecord', 'CommentRecord', 'CommentSnapshot', 'CommentEvent',
    'ViewModelEvent', 'EventPhase', 'MutationKind', 'MutationOutcome', 'MutationResult',
    'AuditEventType', 'AuditLogEntry', 'MetricPoint',
    'ErrorCode', 'CommentError', 'ValidationError', 'GatewayError', 'ConsistencyError',
    'EventRegistry', 'Subscription',
    'GatewayResponse', 'MutationGateway', 'MockGateway', 'HttpMutationGateway',
    'LogCollector', 'MetricsCollector', 'MutationObserver',
    'ActionPolicy', 'ActionSet',
    'CommentSorter',
    'CommentStore',
    'CommentTransformer',
    'CommentViewModel', 'PendingMutation',
]
