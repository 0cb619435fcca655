"""
Durable state for ADAPT-Remediate.
"""

from .attempt_store import AttemptStore, StoredAttempt

__all__ = ["AttemptStore", "StoredAttempt"]
