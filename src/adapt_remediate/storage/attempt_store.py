"""
SQLite-based attempt registry for ADAPT-Remediate.

Persists remediation attempts, the per-error retry budget and open approval
requests so that they survive a process restart. Attempts without a
completion time are the ones a restarted orchestrator must recover. Approval
rows let an operator approve from another process through the same database.
"""
import hashlib
import hmac
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..exceptions import InvalidApprovalTokenError

logger = logging.getLogger(__name__)


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass
class StoredAttempt:
    """Represents a stored attempt record."""
    attempt_id: str
    error_id: str
    sequence: int
    state: str
    started_at: datetime
    completed_at: Optional[datetime]
    disposition: Optional[str]
    reason: Optional[str]
    pattern_id: Optional[str]
    dry_run: bool
    error: Dict[str, Any]
    result: Optional[Dict[str, Any]] = None

    @property
    def terminal(self) -> bool:
        return self.completed_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "error_id": self.error_id,
            "sequence": self.sequence,
            "state": self.state,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "disposition": self.disposition,
            "reason": self.reason,
            "pattern_id": self.pattern_id,
            "dry_run": self.dry_run,
        }


class AttemptStore:
    """
    Durable registry of remediation attempts.

    Example:
        >>> store = AttemptStore(".remediation-state/attempts.db")
        >>> seq = store.create_attempt("E1", error.model_dump(mode="json"))
        >>> store.consume_try("E1")
        1
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        """
        Initialize attempt store.

        Args:
            db_path: Path to SQLite database file (":memory:" for a
                process-local store)
        """
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        self._memory_conn: Optional[sqlite3.Connection] = None

        if self.db_path == ":memory:":
            self._memory_conn = sqlite3.connect(":memory:", check_same_thread=False)
            self._memory_conn.row_factory = sqlite3.Row
        else:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._init_database()

    def _init_database(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS attempts (
                    attempt_id TEXT PRIMARY KEY,
                    error_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    state TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    disposition TEXT,
                    reason TEXT,
                    pattern_id TEXT,
                    dry_run INTEGER NOT NULL DEFAULT 0,
                    error_json TEXT NOT NULL,
                    result_json TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS retry_budget (
                    error_id TEXT PRIMARY KEY,
                    tries INTEGER NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS approvals (
                    attempt_id TEXT PRIMARY KEY,
                    token_sha256 TEXT NOT NULL,
                    pattern_id TEXT NOT NULL,
                    requested_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    decision TEXT,
                    decided_at TEXT
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_attempts_error
                ON attempts(error_id, sequence DESC)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_attempts_open
                ON attempts(completed_at)
            """)

            conn.commit()
            logger.debug(f"Attempt database initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        if self._memory_conn is not None:
            with self._lock:
                yield self._memory_conn
            return

        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _row_to_attempt(self, row: sqlite3.Row) -> StoredAttempt:
        return StoredAttempt(
            attempt_id=row['attempt_id'],
            error_id=row['error_id'],
            sequence=row['sequence'],
            state=row['state'],
            started_at=datetime.fromisoformat(row['started_at']),
            completed_at=(
                datetime.fromisoformat(row['completed_at']) if row['completed_at'] else None
            ),
            disposition=row['disposition'],
            reason=row['reason'],
            pattern_id=row['pattern_id'],
            dry_run=bool(row['dry_run']),
            error=json.loads(row['error_json']),
            result=json.loads(row['result_json']) if row['result_json'] else None,
        )

    def create_attempt(
        self,
        error_id: str,
        error: Dict[str, Any],
        state: str = "detected",
        dry_run: bool = False
    ) -> StoredAttempt:
        """
        Register a new attempt for an error.

        The attempt id is ``"{error_id}#{n}"`` where ``n`` counts this
        error's attempts.

        Returns:
            The stored attempt
        """
        started_at = datetime.now()

        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(sequence), 0) FROM attempts WHERE error_id = ?",
                (error_id,)
            ).fetchone()
            sequence = row[0] + 1
            attempt_id = f"{error_id}#{sequence}"

            conn.execute(
                """
                INSERT INTO attempts
                (attempt_id, error_id, sequence, state, started_at, dry_run, error_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (attempt_id, error_id, sequence, state, started_at.isoformat(),
                 int(dry_run), json.dumps(error, default=str))
            )
            conn.commit()

        logger.debug(f"Registered attempt {attempt_id}")
        return StoredAttempt(
            attempt_id=attempt_id,
            error_id=error_id,
            sequence=sequence,
            state=state,
            started_at=started_at,
            completed_at=None,
            disposition=None,
            reason=None,
            pattern_id=None,
            dry_run=dry_run,
            error=error,
        )

    def update_state(
        self,
        attempt_id: str,
        state: str,
        pattern_id: Optional[str] = None
    ) -> None:
        with self._get_connection() as conn:
            if pattern_id is not None:
                conn.execute(
                    "UPDATE attempts SET state = ?, pattern_id = ? WHERE attempt_id = ?",
                    (state, pattern_id, attempt_id)
                )
            else:
                conn.execute(
                    "UPDATE attempts SET state = ? WHERE attempt_id = ?",
                    (state, attempt_id)
                )
            conn.commit()

    def complete_attempt(
        self,
        attempt_id: str,
        state: str,
        disposition: str,
        reason: Optional[str],
        result: Optional[Dict[str, Any]] = None
    ) -> None:
        """Mark an attempt terminal."""
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE attempts
                SET state = ?, disposition = ?, reason = ?, completed_at = ?, result_json = ?
                WHERE attempt_id = ?
                """,
                (state, disposition, reason, datetime.now().isoformat(),
                 json.dumps(result, default=str) if result is not None else None,
                 attempt_id)
            )
            conn.commit()

    def get_attempt(self, attempt_id: str) -> Optional[StoredAttempt]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM attempts WHERE attempt_id = ?", (attempt_id,)
            ).fetchone()
        return self._row_to_attempt(row) if row else None

    def list_attempts(
        self,
        limit: Optional[int] = None,
        error_id: Optional[str] = None
    ) -> List[StoredAttempt]:
        """List attempts, most recent first."""
        query = "SELECT * FROM attempts"
        params: List[Any] = []

        if error_id:
            query += " WHERE error_id = ?"
            params.append(error_id)

        query += " ORDER BY started_at DESC, sequence DESC"

        if limit:
            query += " LIMIT ?"
            params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_attempt(row) for row in rows]

    def non_terminal_attempts(self) -> List[StoredAttempt]:
        """Attempts that never reached a terminal state."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM attempts WHERE completed_at IS NULL ORDER BY started_at"
            ).fetchall()
        return [self._row_to_attempt(row) for row in rows]

    def tries_used(self, error_id: str) -> int:
        """Candidates already tried for an error."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT tries FROM retry_budget WHERE error_id = ?", (error_id,)
            ).fetchone()
        return row['tries'] if row else 0

    def consume_try(self, error_id: str) -> int:
        """
        Use one unit of an error's retry budget.

        Returns:
            Tries used after this one
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO retry_budget (error_id, tries, updated_at) VALUES (?, 1, ?)
                ON CONFLICT(error_id) DO UPDATE SET tries = tries + 1, updated_at = excluded.updated_at
                """,
                (error_id, datetime.now().isoformat())
            )
            conn.commit()
            row = conn.execute(
                "SELECT tries FROM retry_budget WHERE error_id = ?", (error_id,)
            ).fetchone()
        return row['tries']

    def reset_budget(self, error_id: str) -> None:
        """Forget an error's used retries (operator action)."""
        with self._get_connection() as conn:
            conn.execute("DELETE FROM retry_budget WHERE error_id = ?", (error_id,))
            conn.commit()
        logger.info(f"Reset retry budget for {error_id}")

    # Approvals

    def open_approval(
        self,
        attempt_id: str,
        token: str,
        pattern_id: str,
        expires_at: datetime
    ) -> None:
        """Record a pending approval request; only the token digest is stored."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO approvals
                    (attempt_id, token_sha256, pattern_id, requested_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (attempt_id, _digest(token), pattern_id,
                 datetime.now().isoformat(), expires_at.isoformat())
            )
            conn.commit()

    def record_decision(self, attempt_id: str, token: str, decision: str) -> None:
        """
        Approve or deny a pending request, possibly from another process.

        Raises:
            InvalidApprovalTokenError: If there is no open request, the token
                does not match, the request expired or was already settled
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM approvals WHERE attempt_id = ?", (attempt_id,)
            ).fetchone()
            if row is None or not hmac.compare_digest(row['token_sha256'], _digest(token)):
                raise InvalidApprovalTokenError(f"Invalid approval token for {attempt_id}")
            if row['decision'] is not None:
                raise InvalidApprovalTokenError(
                    f"Approval for {attempt_id} already settled: {row['decision']}"
                )
            if datetime.fromisoformat(row['expires_at']) <= datetime.now():
                raise InvalidApprovalTokenError(f"Approval token for {attempt_id} has expired")

            cursor = conn.execute(
                """
                UPDATE approvals SET decision = ?, decided_at = ?
                WHERE attempt_id = ? AND decision IS NULL
                """,
                (decision, datetime.now().isoformat(), attempt_id)
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise InvalidApprovalTokenError(f"Approval for {attempt_id} was settled concurrently")
        logger.info(f"Recorded {decision} for {attempt_id}")

    def settle_approval(self, attempt_id: str, decision: str) -> None:
        """Close a request that is still open (timed out or cancelled)."""
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE approvals SET decision = ?, decided_at = ?
                WHERE attempt_id = ? AND decision IS NULL
                """,
                (decision, datetime.now().isoformat(), attempt_id)
            )
            conn.commit()

    def approval_decision(self, attempt_id: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT decision FROM approvals WHERE attempt_id = ?", (attempt_id,)
            ).fetchone()
        return row['decision'] if row else None

    def pending_approvals(self) -> List[Dict[str, Any]]:
        """Open, unexpired requests, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT attempt_id, pattern_id, requested_at, expires_at FROM approvals
                WHERE decision IS NULL AND expires_at > ? ORDER BY requested_at
                """,
                (datetime.now().isoformat(),)
            ).fetchall()
        return [dict(row) for row in rows]

    def get_stats(self) -> Dict[str, Any]:
        """Counts of attempts by disposition."""
        with self._get_connection() as conn:
            total = conn.execute("SELECT COUNT(*) FROM attempts").fetchone()[0]
            rows = conn.execute(
                """
                SELECT COALESCE(disposition, 'in-flight') AS disposition, COUNT(*) AS n
                FROM attempts GROUP BY disposition
                """
            ).fetchall()

        return {
            "total_attempts": total,
            "by_disposition": {row['disposition']: row['n'] for row in rows},
        }

    def close(self) -> None:
        if self._memory_conn is not None:
            self._memory_conn.close()
            self._memory_conn = None
