"""
Risk-based approval gate and out-of-band approval broker.

High-risk and irreversible fixes always need approval, other low-risk
fixes never do, and medium-risk fixes follow the ``require_approval`` flag. Approval is given
out-of-band with a token tied to the attempt id; a token is only accepted
for its own attempt and only until it expires.
"""

import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from hmac import compare_digest
from typing import Any, Dict, List, Optional

from ..alerting.notifiers import Notification, Notifier
from ..constants import DEFAULT_APPROVAL_TIMEOUT_SECONDS
from ..exceptions import InvalidApprovalTokenError
from ..models import FixPattern, RiskLevel
from ..storage.attempt_store import AttemptStore

logger = logging.getLogger(__name__)


class ApprovalDecision(Enum):
    """Outcome of waiting for an approval."""
    APPROVED = "approved"
    DENIED = "denied"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class ApprovalGate:
    """Decides whether a fix may proceed unattended."""

    def __init__(self, require_approval: bool = False):
        self.require_approval = require_approval

    def needs_approval(self, pattern: FixPattern) -> bool:
        if pattern.risk_level == RiskLevel.HIGH or not pattern.reversible:
            return True
        if pattern.risk_level == RiskLevel.LOW:
            return False
        return self.require_approval


@dataclass
class ApprovalHandle:
    """Ticket returned by an approval request."""

    attempt_id: str
    token: str
    expires_at: datetime
    pattern_id: str

    @property
    def expired(self) -> bool:
        return datetime.now() >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "pattern_id": self.pattern_id,
            "expires_at": self.expires_at.isoformat()
        }


class _PendingApproval:
    def __init__(self, handle: ApprovalHandle):
        self.handle = handle
        self.decision: Optional[ApprovalDecision] = None
        self.decided = threading.Event()
        self.closed = False


class ApprovalBroker:
    """
    Issues approval tokens and collects decisions.

    With a ``store`` the request is also written to the attempt database, so
    ``adapt-remediate approve ATTEMPT TOKEN`` run from another process can
    decide it. The token itself travels in the approval notification.

    Args:
        timeout_seconds: Lifetime of an approval request
        auto_approve: Approve every request immediately (unattended runs)
        notifier: Receives an announcement, including the token, per request
        poll_interval: Seconds between checks for a decision
        store: Shared attempt store for out-of-process decisions

    Example:
        >>> broker = ApprovalBroker()
        >>> handle = broker.request_approval("E1#1", pattern)
        >>> broker.approve("E1#1", handle.token)
        >>> broker.check_approval("E1#1", handle.token)
        True
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
        auto_approve: bool = False,
        notifier: Optional[Notifier] = None,
        poll_interval: float = 0.1,
        store: Optional[AttemptStore] = None
    ):
        self.timeout_seconds = timeout_seconds
        self.auto_approve = auto_approve
        self.notifier = notifier
        self.poll_interval = poll_interval
        self.store = store

        self._lock = threading.Lock()
        self._pending: Dict[str, _PendingApproval] = {}

    def request_approval(self, attempt_id: str, pattern: FixPattern) -> ApprovalHandle:
        """
        Open an approval request for an attempt.

        Args:
            attempt_id: Attempt awaiting approval
            pattern: Fix that would be deployed

        Returns:
            ApprovalHandle carrying the token and expiry
        """
        handle = ApprovalHandle(
            attempt_id=attempt_id,
            token=secrets.token_urlsafe(32),
            expires_at=datetime.now() + timedelta(seconds=self.timeout_seconds),
            pattern_id=pattern.id
        )
        entry = _PendingApproval(handle)

        with self._lock:
            for key in [k for k, e in self._pending.items() if e.closed and e.handle.expired]:
                del self._pending[key]
            self._pending[attempt_id] = entry

        if self.auto_approve:
            entry.decision = ApprovalDecision.APPROVED
            entry.decided.set()
            logger.info(f"Auto-approved fix '{pattern.id}' for {attempt_id}")
            return handle

        if self.store is not None:
            self.store.open_approval(attempt_id, handle.token, pattern.id, handle.expires_at)

        logger.info(
            f"Approval requested for {attempt_id} (fix '{pattern.id}', "
            f"risk {pattern.risk_level.value}), expires {handle.expires_at.isoformat()}"
        )
        if self.notifier is not None:
            self.notifier.notify(Notification(
                title="Remediation approval required",
                message=(
                    f"Fix '{pattern.name}' ({pattern.id}) is awaiting approval; "
                    f"run: adapt-remediate approve {attempt_id} {handle.token}"
                ),
                severity="medium",
                attempt_id=attempt_id,
                details={
                    "risk_level": pattern.risk_level.value,
                    "expires_at": handle.expires_at.isoformat(),
                    "token": handle.token
                }
            ))

        return handle

    def _entry_for(self, attempt_id: str, token: str) -> _PendingApproval:
        with self._lock:
            entry = self._pending.get(attempt_id)

        if entry is None or not compare_digest(entry.handle.token.encode(), token.encode()):
            raise InvalidApprovalTokenError(f"Invalid approval token for {attempt_id}")
        if entry.handle.expired:
            raise InvalidApprovalTokenError(f"Approval token for {attempt_id} has expired")
        return entry

    def check_approval(self, attempt_id: str, token: str) -> bool:
        """True if the token is valid, unexpired and the attempt was approved."""
        try:
            entry = self._entry_for(attempt_id, token)
        except InvalidApprovalTokenError:
            return False
        return entry.decision == ApprovalDecision.APPROVED

    def _decide(self, attempt_id: str, token: str, decision: ApprovalDecision) -> None:
        with self._lock:
            local = attempt_id in self._pending

        entry = None
        if local or self.store is None:
            entry = self._entry_for(attempt_id, token)
            if entry.decision is not None:
                raise InvalidApprovalTokenError(
                    f"Approval for {attempt_id} already settled: {entry.decision.value}"
                )
        if self.store is not None:
            self.store.record_decision(attempt_id, token, decision.value)

        if entry is not None:
            entry.decision = decision
            entry.decided.set()
        logger.info(f"Approval {decision.value} for {attempt_id}")

    def approve(self, attempt_id: str, token: str) -> None:
        """
        Approve a pending attempt.

        Raises:
            InvalidApprovalTokenError: If the token is wrong, expired or the
                request was already settled
        """
        self._decide(attempt_id, token, ApprovalDecision.APPROVED)

    def deny(self, attempt_id: str, token: str) -> None:
        """
        Deny a pending attempt.

        Raises:
            InvalidApprovalTokenError: If the token is wrong, expired or the
                request was already settled
        """
        self._decide(attempt_id, token, ApprovalDecision.DENIED)

    def _stored_decision(self, attempt_id: str) -> Optional[ApprovalDecision]:
        if self.store is None:
            return None
        value = self.store.approval_decision(attempt_id)
        if value in (ApprovalDecision.APPROVED.value, ApprovalDecision.DENIED.value):
            return ApprovalDecision(value)
        return None

    def wait_for_decision(
        self,
        attempt_id: str,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> ApprovalDecision:
        """
        Block until the attempt is approved, denied, expires or is cancelled.

        Decisions recorded in the store by another process are picked up on
        each poll.

        Args:
            attempt_id: Attempt with an open request
            timeout: Maximum seconds to wait (defaults to the request expiry)
            cancel_event: Set to abandon the wait

        Returns:
            ApprovalDecision
        """
        with self._lock:
            entry = self._pending.get(attempt_id)
        if entry is None:
            raise InvalidApprovalTokenError(f"No approval request for {attempt_id}")

        remaining = (entry.handle.expires_at - datetime.now()).total_seconds()
        if timeout is not None:
            remaining = min(remaining, timeout)
        deadline = datetime.now() + timedelta(seconds=max(remaining, 0))

        while True:
            if entry.decided.is_set():
                decision = entry.decision
                break
            stored = self._stored_decision(attempt_id)
            if stored is not None:
                entry.decision = stored
                entry.decided.set()
                continue
            if cancel_event is not None and cancel_event.is_set():
                decision = ApprovalDecision.CANCELLED
                break
            left = (deadline - datetime.now()).total_seconds()
            if left <= 0:
                logger.warning(f"Approval for {attempt_id} timed out")
                decision = ApprovalDecision.TIMEOUT
                break
            entry.decided.wait(min(self.poll_interval, left))

        entry.closed = True
        if decision in (ApprovalDecision.TIMEOUT, ApprovalDecision.CANCELLED):
            if entry.decision is None:
                entry.decision = decision
            if self.store is not None:
                self.store.settle_approval(attempt_id, decision.value)
        return decision

    def pending(self) -> List[ApprovalHandle]:
        """Open approval requests."""
        with self._lock:
            return [
                entry.handle for entry in self._pending.values()
                if entry.decision is None and not entry.closed
            ]
