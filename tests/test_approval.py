"""
Tests for the approval gate and broker.
"""

import threading

import pytest

from adapt_remediate.exceptions import InvalidApprovalTokenError
from adapt_remediate.remediation.approval import ApprovalBroker, ApprovalDecision, ApprovalGate
from adapt_remediate.storage.attempt_store import AttemptStore

from conftest import RecordingNotifier, make_pattern


@pytest.mark.parametrize("risk, reversible, require, expected", [
    ("low", True, True, False),
    ("medium", True, False, False),
    ("medium", True, True, True),
    ("high", True, False, True),
    ("low", False, False, True),
])
def test_gate_policy(risk, reversible, require, expected):
    gate = ApprovalGate(require_approval=require)
    pattern = make_pattern(risk_level=risk, reversible=reversible)

    assert gate.needs_approval(pattern) is expected


def test_request_announces_to_notifier():
    notifier = RecordingNotifier()
    broker = ApprovalBroker(notifier=notifier)

    handle = broker.request_approval("E1#1", make_pattern(risk_level="high"))

    assert handle.attempt_id == "E1#1"
    assert len(handle.token) > 20
    assert notifier.sent[0].attempt_id == "E1#1"
    assert [h.attempt_id for h in broker.pending()] == ["E1#1"]


def test_approve_with_valid_token():
    broker = ApprovalBroker()
    handle = broker.request_approval("E1#1", make_pattern())

    broker.approve("E1#1", handle.token)

    assert broker.check_approval("E1#1", handle.token)
    assert broker.wait_for_decision("E1#1") == ApprovalDecision.APPROVED


def test_wrong_token_rejected():
    broker = ApprovalBroker()
    broker.request_approval("E1#1", make_pattern())

    with pytest.raises(InvalidApprovalTokenError):
        broker.approve("E1#1", "forged")
    assert broker.check_approval("E1#1", "forged") is False


def test_token_is_bound_to_attempt():
    broker = ApprovalBroker()
    first = broker.request_approval("E1#1", make_pattern())
    broker.request_approval("E2#1", make_pattern())

    with pytest.raises(InvalidApprovalTokenError):
        broker.approve("E2#1", first.token)


def test_deny():
    broker = ApprovalBroker()
    handle = broker.request_approval("E1#1", make_pattern())

    broker.deny("E1#1", handle.token)

    assert broker.wait_for_decision("E1#1") == ApprovalDecision.DENIED
    assert broker.pending() == []


def test_timeout():
    broker = ApprovalBroker(timeout_seconds=0.05, poll_interval=0.01)
    broker.request_approval("E1#1", make_pattern())

    assert broker.wait_for_decision("E1#1") == ApprovalDecision.TIMEOUT


def test_expired_token_cannot_approve():
    broker = ApprovalBroker(timeout_seconds=0)
    handle = broker.request_approval("E1#1", make_pattern())

    with pytest.raises(InvalidApprovalTokenError):
        broker.approve("E1#1", handle.token)


def test_cancel_event_ends_wait():
    broker = ApprovalBroker(poll_interval=0.01)
    broker.request_approval("E1#1", make_pattern())
    cancel = threading.Event()
    cancel.set()

    assert broker.wait_for_decision("E1#1", cancel_event=cancel) == ApprovalDecision.CANCELLED


def test_auto_approve():
    notifier = RecordingNotifier()
    broker = ApprovalBroker(auto_approve=True, notifier=notifier)
    broker.request_approval("E1#1", make_pattern())

    assert broker.wait_for_decision("E1#1", timeout=1) == ApprovalDecision.APPROVED
    assert notifier.sent == []


def test_approval_from_another_thread():
    broker = ApprovalBroker(poll_interval=0.01)
    handle = broker.request_approval("E1#1", make_pattern())

    timer = threading.Timer(0.05, broker.approve, args=("E1#1", handle.token))
    timer.start()
    try:
        assert broker.wait_for_decision("E1#1", timeout=5) == ApprovalDecision.APPROVED
    finally:
        timer.cancel()


def test_wait_without_request():
    with pytest.raises(InvalidApprovalTokenError):
        ApprovalBroker().wait_for_decision("nobody#1")


def test_approval_still_checks_after_wait():
    broker = ApprovalBroker()
    handle = broker.request_approval("E1#1", make_pattern())
    broker.approve("E1#1", handle.token)

    assert broker.wait_for_decision("E1#1", timeout=1) == ApprovalDecision.APPROVED
    assert broker.check_approval("E1#1", handle.token) is True
    assert broker.pending() == []


def test_approve_after_timeout_rejected():
    broker = ApprovalBroker(poll_interval=0.01)
    handle = broker.request_approval("E1#1", make_pattern())

    assert broker.wait_for_decision("E1#1", timeout=0.05) == ApprovalDecision.TIMEOUT
    with pytest.raises(InvalidApprovalTokenError):
        broker.approve("E1#1", handle.token)
    assert broker.check_approval("E1#1", handle.token) is False


def test_decision_from_another_process_is_picked_up(tmp_path):
    db = tmp_path / "attempts.db"
    notifier = RecordingNotifier()
    waiting = ApprovalBroker(notifier=notifier, poll_interval=0.01, store=AttemptStore(db))
    handle = waiting.request_approval("E1#1", make_pattern(risk_level="high"))

    assert handle.token in notifier.sent[0].message

    operator = ApprovalBroker(store=AttemptStore(db))
    with pytest.raises(InvalidApprovalTokenError):
        operator.approve("E1#1", "wrong-token")
    operator.deny("E1#1", handle.token)

    assert waiting.wait_for_decision("E1#1", timeout=5) == ApprovalDecision.DENIED


def test_timeout_settles_stored_request(tmp_path):
    store = AttemptStore(tmp_path / "attempts.db")
    broker = ApprovalBroker(poll_interval=0.01, store=store)
    handle = broker.request_approval("E1#1", make_pattern())

    assert broker.wait_for_decision("E1#1", timeout=0.05) == ApprovalDecision.TIMEOUT
    assert store.approval_decision("E1#1") == "timeout"
    with pytest.raises(InvalidApprovalTokenError):
        ApprovalBroker(store=store).approve("E1#1", handle.token)
