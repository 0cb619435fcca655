"""
Remediation orchestrator for ADAPT-Remediate.

Drives each detected error through the remediation state machine:

    detected -> matching -> backup -> applying -> validating
        -> (awaiting-approval) -> deploying -> succeeded

with a rollback branch (rolling-back -> failed) reachable from every state
that may have mutated something. A failed restore escalates to
manual-intervention-required.

Detections arrive through a single ingestion call, are queued, and are
drained by a bounded pool of worker threads. Each attempt's transitions are
serialized by the attempt's own lock, and every transition is appended to
the audit stream.

Classes:
    RemediationOrchestrator: Core orchestrator
    RemediationAttempt: In-flight attempt state
    RemediationResult: Terminal summary of an attempt
    AttemptState, Disposition, FailureReason: Enums
    IngestionRule: Drop/allow rule evaluated before an attempt is created

Example:
    >>> orchestrator = RemediationOrchestrator(catalog=default_catalog())
    >>> result = orchestrator.remediate(error)
    >>> result.disposition
    <Disposition.SUCCEEDED: 'succeeded'>
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from ..alerting.notifiers import LogNotifier, Notification, Notifier, build_notifier
from ..audit.audit_system import (
    TAG_BUDGET_EXHAUSTED,
    TAG_CANCELLED,
    TAG_DUPLICATE_IGNORED,
    TAG_FILTERED,
    TAG_RECOVERED,
    AuditStream,
    FileAuditBackend,
    TransitionEvent,
)
from ..config import RemediationConfig
from ..constants import DEFAULT_BACKUP_DIR, DEFAULT_MAX_CONCURRENT, DEFAULT_MAX_RETRIES
from ..exceptions import (
    BackupFailedError,
    BackupMissingError,
    BackupNotFoundError,
    InvalidTransitionError,
    RestoreFailedError,
    TargetUnreadableError,
)
from ..logging_context import LoggingContext
from ..metrics import (
    track_active_attempts,
    track_deployment,
    track_remediation_duration,
    track_remediation_total,
    track_rollback,
)
from ..models import DetectedError, FixPattern
from ..rules import RuleExpression, parse_rule
from ..storage.attempt_store import AttemptStore
from .actions import AppliedFix, FixApplier
from .approval import ApprovalBroker, ApprovalDecision, ApprovalGate, ApprovalHandle
from .backup import Backup, BackupStore, normalize_target
from .catalog import FixCatalog, default_catalog, load_catalog
from .deployment import (
    CommandDeploymentTarget,
    DeploymentDriver,
    DeploymentResult,
    DeploymentStrategy,
)
from .matcher import FixMatcher
from .validation import CommandValidationRunner, ValidationGate, ValidationResult

logger = logging.getLogger(__name__)


class AttemptState(Enum):
    """States of a remediation attempt."""
    DETECTED = "detected"
    MATCHING = "matching"
    BACKUP = "backup"
    APPLYING = "applying"
    VALIDATING = "validating"
    AWAITING_APPROVAL = "awaiting-approval"
    DEPLOYING = "deploying"
    ROLLING_BACK = "rolling-back"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    MANUAL_INTERVENTION_REQUIRED = "manual-intervention-required"


TERMINAL_STATES = frozenset({
    AttemptState.SUCCEEDED,
    AttemptState.FAILED,
    AttemptState.MANUAL_INTERVENTION_REQUIRED,
})

# from-state -> allowed to-states
TRANSITIONS: Dict[AttemptState, frozenset] = {
    AttemptState.DETECTED: frozenset({AttemptState.MATCHING}),
    AttemptState.MATCHING: frozenset({AttemptState.BACKUP, AttemptState.FAILED}),
    AttemptState.BACKUP: frozenset({AttemptState.APPLYING, AttemptState.ROLLING_BACK}),
    AttemptState.APPLYING: frozenset({AttemptState.VALIDATING, AttemptState.ROLLING_BACK}),
    AttemptState.VALIDATING: frozenset({
        AttemptState.AWAITING_APPROVAL, AttemptState.DEPLOYING, AttemptState.ROLLING_BACK
    }),
    AttemptState.AWAITING_APPROVAL: frozenset({
        AttemptState.DEPLOYING, AttemptState.ROLLING_BACK
    }),
    AttemptState.DEPLOYING: frozenset({AttemptState.SUCCEEDED, AttemptState.ROLLING_BACK}),
    AttemptState.ROLLING_BACK: frozenset({
        AttemptState.FAILED, AttemptState.MATCHING, AttemptState.MANUAL_INTERVENTION_REQUIRED
    }),
    AttemptState.SUCCEEDED: frozenset(),
    AttemptState.FAILED: frozenset(),
    AttemptState.MANUAL_INTERVENTION_REQUIRED: frozenset(),
}


class Disposition(Enum):
    """Terminal outcome of an attempt."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"
    MANUAL_INTERVENTION_REQUIRED = "manual-intervention-required"


class FailureReason(Enum):
    """Why an attempt did not succeed."""
    NO_MATCH = "NoMatch"
    TARGET_UNREADABLE = "TargetUnreadable"
    BACKUP_FAILED = "BackupFailed"
    ACTION_FAILED = "ActionFailed"
    VALIDATION_FAILED = "ValidationFailed"
    APPROVAL_DENIED = "ApprovalDenied"
    APPROVAL_TIMEOUT = "ApprovalTimeout"
    DEPLOY_FAILED = "DeployFailed"
    CANCELLED = "Cancelled"
    RETRY_BUDGET_EXHAUSTED = "RetryBudgetExhausted"
    RESTORE_FAILED = "RestoreFailed"
    INTERNAL_ERROR = "InternalError"


# Failures after which the next-ranked candidate may be tried
NEXT_CANDIDATE_REASONS = frozenset({
    FailureReason.ACTION_FAILED,
    FailureReason.VALIDATION_FAILED,
    FailureReason.DEPLOY_FAILED,
})


@dataclass
class IngestionRule:
    """
    Rule evaluated against a detection before an attempt is created.

    The first rule whose ``when`` expression matches decides; detections
    matching no rule are allowed.
    """

    name: str
    when: RuleExpression
    action: str = "drop"

    def __post_init__(self):
        if self.action not in ("drop", "allow"):
            raise ValueError(f"Ingestion rule action must be 'drop' or 'allow', got {self.action!r}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IngestionRule":
        return cls(
            name=data.get("name", "unnamed"),
            when=parse_rule(data["when"]),
            action=data.get("action", "drop")
        )


@dataclass
class RemediationAttempt:
    """One end-to-end run of the pipeline for a single detected error."""

    attempt_id: str
    error: DetectedError
    dry_run: bool = False
    state: AttemptState = AttemptState.DETECTED
    states: List[str] = field(default_factory=lambda: [AttemptState.DETECTED.value])
    pattern: Optional[FixPattern] = None
    patterns_tried: List[str] = field(default_factory=list)
    backups: List[Backup] = field(default_factory=list)
    applied_fixes: List[AppliedFix] = field(default_factory=list)
    validation: Optional[ValidationResult] = None
    approval: Optional[ApprovalHandle] = None
    deployment: Optional[DeploymentResult] = None
    backups_restored: int = 0
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    disposition: Optional[Disposition] = None
    reason: Optional[FailureReason] = None
    result: Optional["RemediationResult"] = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "error_id": self.error.id,
            "state": self.state.value,
            "pattern_id": self.pattern.id if self.pattern else None,
            "patterns_tried": list(self.patterns_tried),
            "backups": [b.backup_id for b in self.backups],
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
        }


@dataclass
class RemediationResult:
    """Terminal summary of an attempt."""

    attempt_id: Optional[str]
    error_id: str
    disposition: Disposition
    reason: Optional[FailureReason]
    started_at: datetime
    completed_at: datetime
    detail: str = ""
    pattern_id: Optional[str] = None
    patterns_tried: List[str] = field(default_factory=list)
    states: List[str] = field(default_factory=list)
    validation: Optional[ValidationResult] = None
    deployment: Optional[DeploymentResult] = None
    applied_fixes: List[AppliedFix] = field(default_factory=list)
    backups_restored: int = 0
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return self.disposition == Disposition.SUCCEEDED

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "attempt_id": self.attempt_id,
            "error_id": self.error_id,
            "disposition": self.disposition.value,
            "reason": self.reason.value if self.reason else None,
            "detail": self.detail,
            "pattern_id": self.pattern_id,
            "patterns_tried": self.patterns_tried,
            "states": self.states,
            "validation": self.validation.to_dict() if self.validation else None,
            "deployment": self.deployment.to_dict() if self.deployment else None,
            "applied_fixes": [f.to_dict() for f in self.applied_fixes],
            "backups_restored": self.backups_restored,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration_seconds,
        }


class _CancelRequested(Exception):
    pass


@dataclass
class _Failure:
    reason: FailureReason
    detail: str


class RemediationOrchestrator:
    """
    Automated remediation orchestrator.

    Args:
        catalog: Fix catalog (defaults to the built-in patterns)
        backup_store: Snapshot store for mutation targets
        applier: Fix applier
        validation_gate: Validation gate (no runner means validation fails)
        approval_gate: Risk policy for approvals
        approval_broker: Out-of-band approval channel
        deployment_driver: Deployment driver (defaults to a null target)
        attempt_store: Durable attempt registry and retry budget
        audit: Audit stream for transition events
        notifier: Receives escalations
        max_concurrent: Worker threads draining the ingestion queue
        max_retries: Candidates that may be tried per error id
        try_next_candidate: Re-enter matching with the next candidate after
            a failed apply, validation or deploy
        dry_run: Plan fixes without touching anything
        deployment_strategy: Strategy passed to the deployment driver
        ingestion_rules: Drop/allow rules evaluated on ingestion

    Example:
        >>> orchestrator = RemediationOrchestrator(catalog=catalog, max_concurrent=2)
        >>> attempt_id = orchestrator.submit(error)
        >>> result = orchestrator.wait(attempt_id, timeout=30)
        >>> orchestrator.shutdown()
    """

    def __init__(
        self,
        catalog: Optional[FixCatalog] = None,
        backup_store: Optional[BackupStore] = None,
        applier: Optional[FixApplier] = None,
        validation_gate: Optional[ValidationGate] = None,
        approval_gate: Optional[ApprovalGate] = None,
        approval_broker: Optional[ApprovalBroker] = None,
        deployment_driver: Optional[DeploymentDriver] = None,
        attempt_store: Optional[AttemptStore] = None,
        audit: Optional[AuditStream] = None,
        notifier: Optional[Notifier] = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        try_next_candidate: bool = False,
        dry_run: bool = False,
        deployment_strategy: Optional[Union[str, DeploymentStrategy]] = None,
        ingestion_rules: Optional[List[IngestionRule]] = None
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self.catalog = catalog if catalog is not None else default_catalog()
        self.matcher = FixMatcher(self.catalog)
        self.backup_store = backup_store or BackupStore(DEFAULT_BACKUP_DIR)
        self.applier = applier or FixApplier()
        self.validation_gate = validation_gate or ValidationGate()
        self.approval_gate = approval_gate or ApprovalGate()
        self.notifier = notifier or LogNotifier()
        self.deployment_driver = deployment_driver or DeploymentDriver()
        self.attempt_store = attempt_store or AttemptStore()
        self.approval_broker = approval_broker or ApprovalBroker(
            notifier=self.notifier, store=self.attempt_store
        )
        self.audit = audit or AuditStream()
        self.max_concurrent = max_concurrent
        self.max_retries = max_retries
        self.try_next_candidate = try_next_candidate
        self.dry_run = dry_run
        self.deployment_strategy = deployment_strategy
        self.ingestion_rules: List[IngestionRule] = list(ingestion_rules or [])

        self._lock = threading.Lock()
        self._active: Dict[str, RemediationAttempt] = {}
        self._attempts: Dict[str, RemediationAttempt] = {}
        self.execution_history: List[RemediationResult] = []

        self._queue: "queue.Queue[Optional[RemediationAttempt]]" = queue.Queue()
        self._workers: List[threading.Thread] = []
        self._started = False

        logger.info(
            f"Initialized RemediationOrchestrator "
            f"(workers={max_concurrent}, max_retries={max_retries}, "
            f"next_candidate={try_next_candidate}, dry_run={dry_run})"
        )

    @classmethod
    def from_config(
        cls,
        config: RemediationConfig,
        catalog: Optional[FixCatalog] = None
    ) -> "RemediationOrchestrator":
        """
        Build an orchestrator and its collaborators from configuration.

        Args:
            config: Validated configuration
            catalog: Catalog to use instead of the configured one
        """
        if catalog is None:
            if config.catalog_path:
                catalog = load_catalog(
                    config.catalog_path, include_defaults=config.include_default_patterns
                )
            else:
                catalog = default_catalog()

        notifier = build_notifier(
            slack_webhook_url=config.slack_webhook_url,
            webhook_url=config.webhook_url,
            webhook_token=config.webhook_token
        )

        runner = None
        if config.validation_command:
            runner = CommandValidationRunner(config.validation_command, cwd=config.base_dir)

        deploy_target = None
        if any([config.build_command, config.deploy_command, config.canary_command,
                config.health_check_url, config.health_check_command]):
            deploy_target = CommandDeploymentTarget(
                build_command=config.build_command,
                deploy_command=config.deploy_command,
                canary_command=config.canary_command,
                promote_command=config.promote_command,
                rollback_command=config.rollback_command,
                health_check_url=config.health_check_url,
                health_check_command=config.health_check_command,
                timeout=config.deploy_timeout,
                cwd=config.base_dir
            )

        attempt_store = AttemptStore(config.state_db)

        return cls(
            catalog=catalog,
            backup_store=BackupStore(config.backup_dir, retention=config.backup_retention),
            applier=FixApplier(
                insertion_policy=config.insertion_policy,
                command_timeout=config.command_timeout,
                config_target=config.config_target,
                base_dir=config.base_dir
            ),
            validation_gate=ValidationGate(runner, timeout=config.validation_timeout),
            approval_gate=ApprovalGate(require_approval=config.require_approval),
            approval_broker=ApprovalBroker(
                timeout_seconds=config.approval_timeout,
                auto_approve=config.auto_approve,
                notifier=notifier,
                store=attempt_store
            ),
            deployment_driver=DeploymentDriver(
                target=deploy_target,
                default_strategy=config.deploy_strategy,
                stages=config.deploy_stages,
                stage_pause=config.stage_pause,
                canary_soak=config.canary_soak
            ),
            attempt_store=attempt_store,
            audit=AuditStream(FileAuditBackend(config.audit_file)) if config.audit_file else None,
            notifier=notifier,
            max_concurrent=config.max_concurrent,
            max_retries=config.max_retries,
            try_next_candidate=config.try_next_candidate,
            dry_run=config.dry_run,
            ingestion_rules=[IngestionRule.from_dict(r) for r in config.ingestion_rules]
        )

    # Lifecycle

    def start(self) -> List[RemediationResult]:
        """
        Recover attempts interrupted by a previous process and start workers.

        Returns:
            Results of recovered attempts
        """
        with self._lock:
            if self._started:
                return []
            self._started = True

        recovered = self.recover_interrupted()

        for index in range(self.max_concurrent):
            worker = threading.Thread(
                target=self._worker_loop,
                name=f"remediation-worker-{index}",
                daemon=True
            )
            worker.start()
            self._workers.append(worker)

        logger.info(f"Started {self.max_concurrent} remediation workers")
        return recovered

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        """
        Stop the worker pool.

        Args:
            wait: Block until workers exit
            cancel_pending: Cancel attempts that are still in flight
        """
        if cancel_pending:
            with self._lock:
                in_flight = list(self._active.values())
            for attempt in in_flight:
                attempt.cancel_event.set()

        for _ in self._workers:
            self._queue.put(None)

        if wait:
            for worker in self._workers:
                worker.join()

        self._workers = []
        with self._lock:
            self._started = False
        logger.info("Remediation workers stopped")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
        return False

    def _worker_loop(self) -> None:
        while True:
            attempt = self._queue.get()
            try:
                if attempt is None:
                    return
                self._run_attempt(attempt)
            except Exception as e:
                logger.critical(f"Worker failed on {attempt.attempt_id}: {e}", exc_info=True)
                attempt.done.set()
            finally:
                self._queue.task_done()

    # Ingestion

    def submit(self, error: DetectedError) -> Optional[str]:
        """
        Hand a detected error to the pipeline.

        The error is queued for a worker. Filtered detections, duplicates of
        an active attempt and errors with an exhausted retry budget are not
        queued.

        Args:
            error: Detected error

        Returns:
            Attempt id, or None when no attempt was created
        """
        attempt, _ = self._ingest(error)
        if attempt is None:
            return None

        if not self._started:
            self.start()
        self._queue.put(attempt)
        return attempt.attempt_id

    def remediate(self, error: DetectedError) -> Optional[RemediationResult]:
        """
        Run a detected error through the pipeline on the calling thread.

        Returns:
            The terminal result, or None for filtered and duplicate detections
        """
        attempt, result = self._ingest(error)
        if attempt is None:
            return result
        return self._run_attempt(attempt)

    def _ingest(
        self,
        error: DetectedError
    ) -> Tuple[Optional[RemediationAttempt], Optional[RemediationResult]]:
        rule = self._matching_rule(error)
        if rule is not None and rule.action == "drop":
            logger.info(f"Detection {error.id} dropped by ingestion rule '{rule.name}'")
            self.audit.emit(TransitionEvent(
                attempt_id=None,
                error_id=error.id,
                from_state=None,
                to_state=None,
                detail=f"dropped by ingestion rule '{rule.name}'",
                tag=TAG_FILTERED
            ))
            return None, None

        with self._lock:
            active = self._active.get(error.id)
            if active is not None:
                logger.info(
                    f"Ignoring duplicate detection {error.id}; "
                    f"{active.attempt_id} is {active.state.value}"
                )
                self.audit.emit(TransitionEvent(
                    attempt_id=active.attempt_id,
                    error_id=error.id,
                    from_state=AttemptState.DETECTED.value,
                    to_state=None,
                    detail=f"duplicate of active attempt {active.attempt_id}",
                    tag=TAG_DUPLICATE_IGNORED
                ))
                return None, None

            used = 0 if self.dry_run else self.attempt_store.tries_used(error.id)
            if used >= self.max_retries:
                return None, self._budget_exhausted(error, used)

            stored = self.attempt_store.create_attempt(
                error.id, error.model_dump(mode="json"), dry_run=self.dry_run
            )
            attempt = RemediationAttempt(
                attempt_id=stored.attempt_id,
                error=error,
                dry_run=self.dry_run,
                started_at=stored.started_at
            )
            self._active[error.id] = attempt
            self._attempts[attempt.attempt_id] = attempt
            track_active_attempts(len(self._active))

        if not self.dry_run:
            self.backup_store.pin(attempt.attempt_id)

        self.audit.emit(TransitionEvent(
            attempt_id=attempt.attempt_id,
            error_id=error.id,
            from_state=None,
            to_state=AttemptState.DETECTED.value,
            detail=f"{error.category.value}/{error.severity.value}: {error.message[:200]}"
        ))
        logger.info(f"Accepted {error.id} as {attempt.attempt_id}")
        return attempt, None

    def _matching_rule(self, error: DetectedError) -> Optional[IngestionRule]:
        for rule in self.ingestion_rules:
            if rule.when.evaluate(error):
                return rule
        return None

    def _budget_exhausted(self, error: DetectedError, used: int) -> RemediationResult:
        now = datetime.now()
        detail = f"retry budget exhausted ({used}/{self.max_retries} candidates tried)"
        logger.warning(f"{error.id}: {detail}")

        self.audit.emit(TransitionEvent(
            attempt_id=None,
            error_id=error.id,
            from_state=AttemptState.DETECTED.value,
            to_state=AttemptState.FAILED.value,
            detail=detail,
            tag=TAG_BUDGET_EXHAUSTED
        ))

        result = RemediationResult(
            attempt_id=None,
            error_id=error.id,
            disposition=Disposition.FAILED,
            reason=FailureReason.RETRY_BUDGET_EXHAUSTED,
            started_at=now,
            completed_at=now,
            detail=detail,
            states=[AttemptState.DETECTED.value, AttemptState.FAILED.value],
            dry_run=self.dry_run
        )
        self.execution_history.append(result)
        track_remediation_total(result.disposition.value, result.reason.value)
        return result

    # State machine

    def _transition(
        self,
        attempt: RemediationAttempt,
        to_state: AttemptState,
        detail: str = "",
        tag: Optional[str] = None
    ) -> None:
        """
        Move an attempt to a new state and audit the transition.

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        with attempt.lock:
            from_state = attempt.state
            if to_state not in TRANSITIONS[from_state]:
                raise InvalidTransitionError(
                    f"{attempt.attempt_id}: {from_state.value} -> {to_state.value} is not allowed"
                )

            attempt.state = to_state
            attempt.states.append(to_state.value)
            self.attempt_store.update_state(
                attempt.attempt_id,
                to_state.value,
                pattern_id=attempt.pattern.id if attempt.pattern else None
            )
            self.audit.emit(TransitionEvent(
                attempt_id=attempt.attempt_id,
                error_id=attempt.error.id,
                from_state=from_state.value,
                to_state=to_state.value,
                detail=detail,
                tag=tag
            ))

        logger.debug(f"{from_state.value} -> {to_state.value} {detail}".rstrip())

    def _checkpoint(self, attempt: RemediationAttempt) -> None:
        if attempt.cancel_event.is_set():
            raise _CancelRequested()

    def _run_attempt(self, attempt: RemediationAttempt) -> RemediationResult:
        """Drive one attempt to a terminal state."""
        with LoggingContext(attempt_id=attempt.attempt_id, error_id=attempt.error.id):
            try:
                return self._pipeline(attempt)
            except Exception as e:
                logger.error(f"Internal error in {attempt.attempt_id}: {e}", exc_info=True)
                return self._abort(attempt, f"internal error: {e}")

    def _pipeline(self, attempt: RemediationAttempt) -> RemediationResult:
        error = attempt.error
        self._transition(attempt, AttemptState.MATCHING)

        if attempt.cancel_event.is_set():
            return self._finish(
                attempt, AttemptState.FAILED, FailureReason.CANCELLED,
                "cancelled before matching", tag=TAG_CANCELLED
            )

        candidates = self.matcher.find_candidates(error)
        if not candidates:
            return self._finish(
                attempt, AttemptState.FAILED, FailureReason.NO_MATCH,
                "no catalog pattern scored above zero"
            )

        index = 0
        while True:
            if not attempt.dry_run and self.attempt_store.tries_used(error.id) >= self.max_retries:
                return self._finish(
                    attempt, AttemptState.FAILED, FailureReason.RETRY_BUDGET_EXHAUSTED,
                    f"retry budget of {self.max_retries} exhausted", tag=TAG_BUDGET_EXHAUSTED
                )

            pattern = candidates[index]
            # dry runs leave the persisted budget untouched
            if not attempt.dry_run:
                self.attempt_store.consume_try(error.id)

            with LoggingContext(pattern_id=pattern.id):
                failure = self._try_candidate(attempt, pattern)

                if failure is None:
                    if not attempt.dry_run:
                        self.attempt_store.reset_budget(error.id)
                    return self._finish(
                        attempt, AttemptState.SUCCEEDED, None,
                        "dry run planned" if attempt.dry_run else f"fix '{pattern.id}' deployed"
                    )

                restore_errors = self._rollback(attempt, failure)
                if restore_errors:
                    return self._escalate(attempt, restore_errors)

            has_next = index + 1 < len(candidates)
            budget_left = (attempt.dry_run
                           or self.attempt_store.tries_used(error.id) < self.max_retries)
            if (self.try_next_candidate and failure.reason in NEXT_CANDIDATE_REASONS
                    and has_next and budget_left):
                index += 1
                attempt.pattern = None
                self._transition(
                    attempt, AttemptState.MATCHING,
                    f"trying next candidate '{candidates[index].id}' after {failure.reason.value}"
                )
                continue

            tag = TAG_CANCELLED if failure.reason == FailureReason.CANCELLED else None
            return self._finish(attempt, AttemptState.FAILED, failure.reason, failure.detail, tag=tag)

    def _try_candidate(
        self,
        attempt: RemediationAttempt,
        pattern: FixPattern
    ) -> Optional[_Failure]:
        """
        Run one candidate from backup through deployment.

        Returns:
            None on success, otherwise the failure that requires rollback
        """
        error = attempt.error
        attempt.pattern = pattern
        attempt.patterns_tried.append(pattern.id)

        self._transition(attempt, AttemptState.BACKUP, f"candidate '{pattern.id}'")

        try:
            self._checkpoint(attempt)

            # Backup
            protected = self._snapshot_targets(attempt, pattern)
            if isinstance(protected, _Failure):
                return protected
            self._checkpoint(attempt)

            # Applying
            self._transition(
                attempt, AttemptState.APPLYING,
                f"{len(pattern.actions)} actions, {len(protected)} targets backed up"
            )

            def before_mutate(target: str) -> None:
                if normalize_target(target) not in protected:
                    raise BackupMissingError(f"No backup recorded for {target}")

            applied = self.applier.apply(
                pattern, error, dry_run=attempt.dry_run, before_mutate=before_mutate
            )
            attempt.applied_fixes.append(applied)
            if not applied.success:
                failed = applied.failed_outcome
                return _Failure(
                    FailureReason.ACTION_FAILED,
                    f"{failed.kind} failed: {failed.error or failed.message}" if failed
                    else "fix did not complete"
                )
            self._checkpoint(attempt)

            # Validating
            if attempt.dry_run:
                self._transition(attempt, AttemptState.VALIDATING, "dry run: validation skipped")
            elif pattern.validation_required:
                self._transition(attempt, AttemptState.VALIDATING, "running validation")
                attempt.validation = self.validation_gate.validate(attempt)
                if not attempt.validation.passed:
                    return _Failure(
                        FailureReason.VALIDATION_FAILED,
                        f"validation failed: {attempt.validation.details}"
                    )
            else:
                self._transition(attempt, AttemptState.VALIDATING, "validation not required")
            self._checkpoint(attempt)

            # Approval
            if not attempt.dry_run and self.approval_gate.needs_approval(pattern):
                failure = self._await_approval(attempt, pattern)
                if failure is not None:
                    return failure
                self._checkpoint(attempt)

            # Deploying
            if attempt.dry_run:
                self._transition(attempt, AttemptState.DEPLOYING, "dry run: deployment skipped")
                return None

            self._transition(attempt, AttemptState.DEPLOYING)
            attempt.deployment = self.deployment_driver.deploy(
                self.deployment_strategy, cancel_event=attempt.cancel_event
            )
            track_deployment(attempt.deployment.strategy, attempt.deployment.healthy)
            if attempt.cancel_event.is_set():
                raise _CancelRequested()
            if not attempt.deployment.success:
                return _Failure(
                    FailureReason.DEPLOY_FAILED,
                    f"deployment failed: {attempt.deployment.error}"
                )
            return None

        except _CancelRequested:
            logger.warning(f"{attempt.attempt_id} cancelled in state {attempt.state.value}")
            return _Failure(FailureReason.CANCELLED, f"cancelled during {attempt.state.value}")

    def _snapshot_targets(
        self,
        attempt: RemediationAttempt,
        pattern: FixPattern
    ) -> Union[set, _Failure]:
        """Back up every target the fix will touch; returns the protected set."""
        protected = set()
        if attempt.dry_run:
            return protected

        for target in self.applier.targets_for(pattern, attempt.error):
            try:
                backup = self.backup_store.snapshot(target, attempt_id=attempt.attempt_id)
            except TargetUnreadableError as e:
                return _Failure(FailureReason.TARGET_UNREADABLE, str(e))
            except BackupFailedError as e:
                return _Failure(FailureReason.BACKUP_FAILED, str(e))
            attempt.backups.append(backup)
            protected.add(backup.target)

        return protected

    def _await_approval(
        self,
        attempt: RemediationAttempt,
        pattern: FixPattern
    ) -> Optional[_Failure]:
        handle = self.approval_broker.request_approval(attempt.attempt_id, pattern)
        attempt.approval = handle
        self._transition(
            attempt, AttemptState.AWAITING_APPROVAL,
            f"{pattern.risk_level.value} risk, expires {handle.expires_at.isoformat()}"
        )

        decision = self.approval_broker.wait_for_decision(
            attempt.attempt_id, cancel_event=attempt.cancel_event
        )

        if decision == ApprovalDecision.APPROVED:
            return None
        if decision == ApprovalDecision.DENIED:
            return _Failure(FailureReason.APPROVAL_DENIED, "approval denied")
        if decision == ApprovalDecision.TIMEOUT:
            return _Failure(FailureReason.APPROVAL_TIMEOUT, "approval timed out")
        raise _CancelRequested()

    def _rollback(self, attempt: RemediationAttempt, failure: _Failure) -> List[str]:
        """
        Restore every backup taken by the attempt, newest first.

        Returns:
            Descriptions of restores that failed
        """
        self._transition(
            attempt, AttemptState.ROLLING_BACK,
            f"{failure.reason.value}: {failure.detail}"
        )

        restored = 0
        errors: List[str] = []
        for backup in reversed(attempt.backups):
            try:
                if self.backup_store.restore(backup.backup_id):
                    restored += 1
            except (RestoreFailedError, BackupNotFoundError) as e:
                logger.error(f"Restore of {backup.target} failed: {e}")
                errors.append(f"{backup.target}: {e}")

        attempt.backups_restored += restored
        if restored:
            track_rollback(restored)
        logger.warning(
            f"Rolled back {attempt.attempt_id} ({failure.reason.value}): "
            f"restored {restored} backups"
        )
        return errors

    def _escalate(self, attempt: RemediationAttempt, restore_errors: List[str]) -> RemediationResult:
        detail = "restore failed: " + "; ".join(restore_errors)
        logger.critical(
            f"{attempt.attempt_id} requires manual intervention; {detail}"
        )
        self.notifier.notify(Notification(
            title="Remediation rollback failed",
            message=f"Restoring backups for {attempt.error.id} failed; manual intervention required",
            severity="critical",
            attempt_id=attempt.attempt_id,
            details={"errors": restore_errors, "source": attempt.error.source}
        ))
        return self._finish(
            attempt, AttemptState.MANUAL_INTERVENTION_REQUIRED,
            FailureReason.RESTORE_FAILED, detail
        )

    def _abort(self, attempt: RemediationAttempt, detail: str) -> RemediationResult:
        """Bring an attempt that hit an unexpected error to a terminal state."""
        if attempt.terminal and attempt.result is not None:
            return attempt.result

        failure = _Failure(FailureReason.INTERNAL_ERROR, detail)
        try:
            if attempt.state == AttemptState.DETECTED:
                self._transition(attempt, AttemptState.MATCHING)
            if attempt.state == AttemptState.MATCHING:
                return self._finish(attempt, AttemptState.FAILED, failure.reason, detail)
            if attempt.state != AttemptState.ROLLING_BACK:
                restore_errors = self._rollback(attempt, failure)
                if restore_errors:
                    return self._escalate(attempt, restore_errors)
                return self._finish(attempt, AttemptState.FAILED, failure.reason, detail)
        except Exception as e:
            logger.critical(f"Could not roll back {attempt.attempt_id}: {e}", exc_info=True)

        return self._escalate(attempt, [detail])

    def _finish(
        self,
        attempt: RemediationAttempt,
        state: AttemptState,
        reason: Optional[FailureReason],
        detail: str,
        tag: Optional[str] = None
    ) -> RemediationResult:
        """Record the terminal state and release the attempt."""
        if state == AttemptState.SUCCEEDED:
            disposition = Disposition.SUCCEEDED
        elif state == AttemptState.MANUAL_INTERVENTION_REQUIRED:
            disposition = Disposition.MANUAL_INTERVENTION_REQUIRED
        elif attempt.backups_restored > 0:
            disposition = Disposition.ROLLED_BACK
        else:
            disposition = Disposition.FAILED

        self._transition(attempt, state, detail, tag=tag)

        attempt.completed_at = datetime.now()
        attempt.disposition = disposition
        attempt.reason = reason

        result = RemediationResult(
            attempt_id=attempt.attempt_id,
            error_id=attempt.error.id,
            disposition=disposition,
            reason=reason,
            started_at=attempt.started_at,
            completed_at=attempt.completed_at,
            detail=detail,
            pattern_id=attempt.pattern.id if attempt.pattern else None,
            patterns_tried=list(attempt.patterns_tried),
            states=list(attempt.states),
            validation=attempt.validation,
            deployment=attempt.deployment,
            applied_fixes=list(attempt.applied_fixes),
            backups_restored=attempt.backups_restored,
            dry_run=attempt.dry_run
        )
        attempt.result = result

        self.attempt_store.complete_attempt(
            attempt.attempt_id,
            state.value,
            disposition.value,
            reason.value if reason else None,
            result=result.to_dict()
        )
        # backups of an escalated attempt stay pinned for the operator
        if not attempt.dry_run and disposition != Disposition.MANUAL_INTERVENTION_REQUIRED:
            self.backup_store.unpin(attempt.attempt_id)

        with self._lock:
            if self._active.get(attempt.error.id) is attempt:
                del self._active[attempt.error.id]
            self.execution_history.append(result)
            track_active_attempts(len(self._active))

        track_remediation_total(disposition.value, reason.value if reason else None)
        track_remediation_duration(result.duration_seconds, disposition.value)

        log = logger.info if result.success else logger.warning
        log(
            f"{attempt.attempt_id} finished: {disposition.value}"
            + (f" ({reason.value})" if reason else "")
            + f" after {result.duration_seconds:.2f}s"
        )

        attempt.done.set()
        return result

    # Control and status

    def cancel(self, attempt_id: str) -> bool:
        """
        Request cancellation; honored at the next state boundary.

        Returns:
            True if the attempt was in flight
        """
        with self._lock:
            attempt = self._attempts.get(attempt_id)
        if attempt is None or attempt.terminal:
            return False
        attempt.cancel_event.set()
        logger.info(f"Cancellation requested for {attempt_id}")
        return True

    def wait(self, attempt_id: str, timeout: Optional[float] = None) -> Optional[RemediationResult]:
        """
        Block until an attempt is terminal.

        Returns:
            The result, or None if it is unknown or still running at timeout
        """
        with self._lock:
            attempt = self._attempts.get(attempt_id)
        if attempt is None:
            return None
        if not attempt.done.wait(timeout):
            return None
        return attempt.result

    def get_attempt(self, attempt_id: str) -> Optional[RemediationAttempt]:
        with self._lock:
            return self._attempts.get(attempt_id)

    def active_attempts(self) -> List[RemediationAttempt]:
        """Attempts that have not reached a terminal state."""
        with self._lock:
            return list(self._active.values())

    def approve(self, attempt_id: str, token: str) -> None:
        """Approve an attempt awaiting approval (out-of-band)."""
        self.approval_broker.approve(attempt_id, token)

    def deny(self, attempt_id: str, token: str) -> None:
        self.approval_broker.deny(attempt_id, token)

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of the pipeline."""
        active = self.active_attempts()
        return {
            "running": self._started,
            "workers": len(self._workers),
            "queued": self._queue.qsize(),
            "active": [
                {"attempt_id": a.attempt_id, "state": a.state.value} for a in active
            ],
            "pending_approvals": [h.to_dict() for h in self.approval_broker.pending()],
            "catalog_size": len(self.catalog),
            "dry_run": self.dry_run,
        }

    def get_execution_history(
        self,
        limit: Optional[int] = None
    ) -> List[RemediationResult]:
        """
        Get remediation history of this process.

        Args:
            limit: Maximum number of results (most recent first)

        Returns:
            List of RemediationResult
        """
        with self._lock:
            history = sorted(
                self.execution_history,
                key=lambda r: r.completed_at,
                reverse=True
            )

        if limit:
            history = history[:limit]

        return history

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get remediation statistics.

        Returns:
            Statistics dictionary

        Example:
            >>> stats = orchestrator.get_statistics()
            >>> print(f"Success rate: {stats['success_rate']:.1%}")
        """
        with self._lock:
            history = list(self.execution_history)

        if not history:
            return {
                "total_executions": 0,
                "success_rate": 0.0,
                "avg_duration_seconds": 0.0
            }

        total = len(history)
        successful = sum(1 for r in history if r.success)
        avg_duration = sum(r.duration_seconds for r in history) / total

        disposition_counts: Dict[str, int] = {}
        reason_counts: Dict[str, int] = {}
        for result in history:
            key = result.disposition.value
            disposition_counts[key] = disposition_counts.get(key, 0) + 1
            if result.reason:
                reason_counts[result.reason.value] = reason_counts.get(result.reason.value, 0) + 1

        return {
            "total_executions": total,
            "success_rate": successful / total,
            "avg_duration_seconds": avg_duration,
            "disposition_counts": disposition_counts,
            "reason_counts": reason_counts,
            "rollback_count": sum(1 for r in history if r.backups_restored > 0)
        }

    # Restart recovery

    def recover_interrupted(self) -> List[RemediationResult]:
        """
        Settle attempts a previous process left in flight.

        Unrestored backups of each such attempt are restored. The attempt is
        then recorded as rolled back, failed, or needing manual intervention
        if a restore fails.

        Returns:
            One result per recovered attempt
        """
        results = []

        for stored in self.attempt_store.non_terminal_attempts():
            with self._lock:
                if stored.attempt_id in self._attempts:
                    continue

            restored = 0
            errors: List[str] = []
            for backup in reversed(self.backup_store.for_attempt(stored.attempt_id)):
                if backup.restored_at is not None:
                    continue
                try:
                    if self.backup_store.restore(backup.backup_id):
                        restored += 1
                except (RestoreFailedError, BackupNotFoundError) as e:
                    errors.append(f"{backup.target}: {e}")

            if errors:
                state = AttemptState.MANUAL_INTERVENTION_REQUIRED
                disposition = Disposition.MANUAL_INTERVENTION_REQUIRED
                reason = FailureReason.RESTORE_FAILED
                detail = "restore failed after restart: " + "; ".join(errors)
            else:
                state = AttemptState.FAILED
                disposition = Disposition.ROLLED_BACK if restored else Disposition.FAILED
                reason = FailureReason.INTERNAL_ERROR
                detail = f"interrupted in {stored.state}; restored {restored} backups after restart"

            now = datetime.now()
            result = RemediationResult(
                attempt_id=stored.attempt_id,
                error_id=stored.error_id,
                disposition=disposition,
                reason=reason,
                started_at=stored.started_at,
                completed_at=now,
                detail=detail,
                pattern_id=stored.pattern_id,
                states=[stored.state, state.value],
                backups_restored=restored,
                dry_run=stored.dry_run
            )

            self.attempt_store.complete_attempt(
                stored.attempt_id, state.value, disposition.value, reason.value,
                result=result.to_dict()
            )
            self.audit.emit(TransitionEvent(
                attempt_id=stored.attempt_id,
                error_id=stored.error_id,
                from_state=stored.state,
                to_state=state.value,
                detail=detail,
                tag=TAG_RECOVERED
            ))
            if errors:
                logger.critical(f"{stored.attempt_id} requires manual intervention; {detail}")
                self.notifier.notify(Notification(
                    title="Remediation rollback failed",
                    message=f"Recovering {stored.attempt_id} after restart failed",
                    severity="critical",
                    attempt_id=stored.attempt_id,
                    details={"errors": errors}
                ))
            else:
                self.backup_store.unpin(stored.attempt_id)
                logger.warning(f"Recovered interrupted attempt {stored.attempt_id}: {detail}")

            with self._lock:
                self.execution_history.append(result)
            results.append(result)

        return results

    def preview(self, error: DetectedError) -> List[Dict[str, Any]]:
        """
        Ranked candidates with their planned actions; performs no I/O.
        """
        plans = []
        for scored in self.matcher.rank(error):
            plans.append({
                **scored.to_dict(),
                "targets": self.applier.targets_for(scored.pattern, error),
                "actions": [a.to_dict() for a in self.applier.preview(scored.pattern, error)],
                "needs_approval": self.approval_gate.needs_approval(scored.pattern),
            })
        return plans

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the queue is drained and no attempt is active."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                idle = not self._active and self._queue.unfinished_tasks == 0
            if idle:
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(0.02)
