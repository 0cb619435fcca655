"""
Audit trail of attempt state transitions.
"""

from .audit_system import (
    AuditBackend,
    AuditStream,
    FileAuditBackend,
    MemoryAuditBackend,
    TransitionEvent,
)

__all__ = [
    "AuditBackend",
    "AuditStream",
    "FileAuditBackend",
    "MemoryAuditBackend",
    "TransitionEvent",
]
