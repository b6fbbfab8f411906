"""
Contracts

Pure data shared by every component: records, events and errors.
No behavior beyond validation and small derived properties.
"""

from .errors import (
    ErrorCode, CommentError, ValidationError, GatewayError, ConsistencyError
)
from .records import (
    AttachmentRecord, CommentRecord, CommentSnapshot,
    WIRE_FIELDS, DERIVED_FIELDS, STORE_FIELDS, MERGEABLE_FIELDS,
)
from .events import (
    ViewModelEvent, EventPhase, CommentEvent,
    MutationKind, MutationOutcome, MutationResult,
    AuditEventType, AuditLogEntry, MetricPoint,
)

__all__ = [
    'ErrorCode', 'CommentError', 'ValidationError', 'GatewayError', 'ConsistencyError',
    'AttachmentRecord', 'CommentRecord', 'CommentSnapshot',
    'WIRE_FIELDS', 'DERIVED_FIELDS', 'STORE_FIELDS', 'MERGEABLE_FIELDS',
    'ViewModelEvent', 'EventPhase', 'CommentEvent',
    'MutationKind', 'MutationOutcome', 'MutationResult',
    'AuditEventType', 'AuditLogEntry', 'MetricPoint',
]
