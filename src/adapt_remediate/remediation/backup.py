"""
Content-addressed backup store for remediation targets.

Every file a fix is about to mutate is snapshotted first. File bytes are
stored once per sha256 digest under ``<backup_dir>/objects/ab/<digest>`` and
each snapshot is a row in ``<backup_dir>/backups.db``. Both are durable before
``snapshot()`` returns, so records survive a process restart.

A target that does not exist is recorded as "absent" (digest ``None``);
restoring such a backup deletes the target rather than writing an empty file.

Example:
    >>> store = BackupStore(".remediation-backups")
    >>> backup = store.snapshot("config.json", attempt_id="E1#1")
    >>> # ... mutate config.json ...
    >>> store.restore(backup.backup_id)
    True
"""

import hashlib
import logging
import os
import sqlite3
import stat
import tempfile
import threading
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..constants import DEFAULT_BACKUP_RETENTION
from ..exceptions import (
    BackupFailedError,
    BackupNotFoundError,
    RestoreFailedError,
    TargetUnreadableError,
)

logger = logging.getLogger(__name__)


@dataclass
class Backup:
    """Recorded prior state of one mutation target."""
    backup_id: str
    target: str
    digest: Optional[str]
    mode: Optional[int]
    created_at: datetime
    attempt_id: Optional[str] = None
    sequence: int = 0
    restored_at: Optional[datetime] = None

    @property
    def absent(self) -> bool:
        """True if the target did not exist when snapshotted."""
        return self.digest is None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        data['restored_at'] = self.restored_at.isoformat() if self.restored_at else None
        data['mode'] = oct(self.mode) if self.mode is not None else None
        data['absent'] = self.absent
        return data


def normalize_target(target: Union[str, Path]) -> str:
    """Absolute path used as the backup key for a target."""
    return os.path.abspath(os.fspath(target))


class BackupStore:
    """
    Append-only snapshot store with atomic restore.

    Snapshots of the same target are serialized; snapshots of different
    targets may run concurrently. Backups belonging to pinned (in-flight)
    attempts are never pruned.

    Args:
        backup_dir: Directory holding blobs and the metadata database
        retention: Number of most recent backups kept by automatic pruning
    """

    def __init__(
        self,
        backup_dir: Union[str, Path],
        retention: int = DEFAULT_BACKUP_RETENTION
    ):
        self.backup_dir = Path(backup_dir)
        self.objects_dir = self.backup_dir / "objects"
        self.db_path = self.backup_dir / "backups.db"
        self.retention = retention

        self._locks_guard = threading.Lock()
        self._target_locks: Dict[str, threading.Lock] = {}
        # blob writes, row inserts and pruning see one consistent store
        self._store_lock = threading.RLock()

        self.objects_dir.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _init_database(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS backups (
                    sequence INTEGER PRIMARY KEY AUTOINCREMENT,
                    backup_id TEXT UNIQUE NOT NULL,
                    target TEXT NOT NULL,
                    digest TEXT,
                    mode INTEGER,
                    created_at TEXT NOT NULL,
                    attempt_id TEXT,
                    restored_at TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS pinned_attempts (
                    attempt_id TEXT PRIMARY KEY,
                    pinned_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_backups_target
                ON backups(target, sequence DESC)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_backups_attempt
                ON backups(attempt_id)
            """)

            conn.commit()
            logger.debug(f"Backup database initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _lock_for(self, target: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._target_locks.get(target)
            if lock is None:
                lock = threading.Lock()
                self._target_locks[target] = lock
            return lock

    def _blob_path(self, digest: str) -> Path:
        return self.objects_dir / digest[:2] / digest

    def _write_blob(self, digest: str, data: bytes) -> None:
        path = self._blob_path(digest)
        if path.exists():
            return

        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".blob-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _row_to_backup(self, row: sqlite3.Row) -> Backup:
        return Backup(
            backup_id=row['backup_id'],
            target=row['target'],
            digest=row['digest'],
            mode=row['mode'],
            created_at=datetime.fromisoformat(row['created_at']),
            attempt_id=row['attempt_id'],
            sequence=row['sequence'],
            restored_at=(
                datetime.fromisoformat(row['restored_at'])
                if row['restored_at'] else None
            ),
        )

    def snapshot(
        self,
        target: Union[str, Path],
        attempt_id: Optional[str] = None
    ) -> Backup:
        """
        Record the current state of a target.

        Args:
            target: File path about to be mutated
            attempt_id: Attempt that owns the backup

        Returns:
            The durably recorded Backup

        Raises:
            TargetUnreadableError: If the target exists but cannot be read
            BackupFailedError: If the snapshot cannot be stored
        """
        key = normalize_target(target)

        with self._lock_for(key):
            digest: Optional[str] = None
            mode: Optional[int] = None

            try:
                st = os.stat(key)
            except FileNotFoundError:
                st = None
            except OSError as e:
                raise TargetUnreadableError(f"Cannot stat {key}: {e}") from e

            if st is not None:
                if not stat.S_ISREG(st.st_mode):
                    raise TargetUnreadableError(f"Target is not a regular file: {key}")
                try:
                    with open(key, "rb") as f:
                        data = f.read()
                except OSError as e:
                    raise TargetUnreadableError(f"Cannot read {key}: {e}") from e

                digest = hashlib.sha256(data).hexdigest()
                mode = stat.S_IMODE(st.st_mode)

            backup_id = uuid.uuid4().hex
            created_at = datetime.now()

            with self._store_lock:
                if digest is not None:
                    try:
                        self._write_blob(digest, data)
                    except OSError as e:
                        raise BackupFailedError(f"Cannot store blob for {key}: {e}") from e

                try:
                    with self._get_connection() as conn:
                        cursor = conn.execute(
                            """
                            INSERT INTO backups
                            (backup_id, target, digest, mode, created_at, attempt_id)
                            VALUES (?, ?, ?, ?, ?, ?)
                            """,
                            (backup_id, key, digest, mode, created_at.isoformat(), attempt_id)
                        )
                        sequence = cursor.lastrowid
                        conn.commit()
                except sqlite3.Error as e:
                    raise BackupFailedError(f"Cannot record backup for {key}: {e}") from e

        backup = Backup(
            backup_id=backup_id,
            target=key,
            digest=digest,
            mode=mode,
            created_at=created_at,
            attempt_id=attempt_id,
            sequence=sequence or 0,
        )

        state = "absent" if backup.absent else f"sha256:{digest[:12]}"
        logger.info(f"Backed up {key} ({state}) as {backup_id}")

        if self.retention and self.count() > self.retention:
            self.prune(self.retention)

        return backup

    def restore(self, backup_id: str) -> bool:
        """
        Restore a target to its recorded state.

        Content is written to a temporary file and moved into place, and the
        recorded permission bits are reapplied. An "absent" backup deletes
        the target. Restoring the same backup twice is a no-op.

        Args:
            backup_id: Backup to restore

        Returns:
            True if the target was restored, False if already restored

        Raises:
            BackupNotFoundError: If no such backup exists
            RestoreFailedError: If the target could not be restored
        """
        backup = self.get(backup_id)
        if backup is None:
            raise BackupNotFoundError(f"Backup not found: {backup_id}")

        with self._lock_for(backup.target):
            # Re-read under the lock; a concurrent restore may have won
            backup = self.get(backup_id)
            if backup is None:
                raise BackupNotFoundError(f"Backup not found: {backup_id}")
            if backup.restored_at is not None:
                logger.debug(f"Backup {backup_id} already restored, skipping")
                return False

            try:
                if backup.absent:
                    try:
                        os.remove(backup.target)
                    except FileNotFoundError:
                        pass
                else:
                    self._restore_content(backup)
            except OSError as e:
                raise RestoreFailedError(
                    f"Failed to restore {backup.target} from {backup_id}: {e}"
                ) from e

            try:
                with self._get_connection() as conn:
                    conn.execute(
                        "UPDATE backups SET restored_at = ? WHERE backup_id = ?",
                        (datetime.now().isoformat(), backup_id)
                    )
                    conn.commit()
            except sqlite3.Error as e:
                raise RestoreFailedError(
                    f"Restored {backup.target} but could not record it: {e}"
                ) from e

        action = "deleted" if backup.absent else "restored"
        logger.info(f"Rollback {action} {backup.target} from backup {backup_id}")
        return True

    def _restore_content(self, backup: Backup) -> None:
        blob = self._blob_path(backup.digest)
        try:
            data = blob.read_bytes()
        except OSError as e:
            raise RestoreFailedError(f"Backup blob missing for {backup.backup_id}: {e}") from e

        if hashlib.sha256(data).hexdigest() != backup.digest:
            raise RestoreFailedError(f"Backup blob corrupted for {backup.backup_id}")

        parent = os.path.dirname(backup.target)
        os.makedirs(parent, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=parent, prefix=".restore-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            if backup.mode is not None:
                os.chmod(tmp_name, backup.mode)
            os.replace(tmp_name, backup.target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def get(self, backup_id: str) -> Optional[Backup]:
        """Get backup record by id."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM backups WHERE backup_id = ?", (backup_id,)
            ).fetchone()
        return self._row_to_backup(row) if row else None

    def latest_for(self, target: Union[str, Path]) -> Optional[Backup]:
        """Most recent backup of a target."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM backups WHERE target = ? ORDER BY sequence DESC LIMIT 1",
                (normalize_target(target),)
            ).fetchone()
        return self._row_to_backup(row) if row else None

    def for_attempt(self, attempt_id: str) -> List[Backup]:
        """Backups taken by one attempt, in creation order."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM backups WHERE attempt_id = ? ORDER BY sequence",
                (attempt_id,)
            ).fetchall()
        return [self._row_to_backup(row) for row in rows]

    def list_backups(
        self,
        limit: Optional[int] = None,
        target: Optional[Union[str, Path]] = None
    ) -> List[Backup]:
        """
        List backups, newest first.

        Args:
            limit: Maximum number of records
            target: Only backups of this target
        """
        query = "SELECT * FROM backups"
        params: List[Any] = []

        if target is not None:
            query += " WHERE target = ?"
            params.append(normalize_target(target))

        query += " ORDER BY sequence DESC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_backup(row) for row in rows]

    def count(self) -> int:
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM backups").fetchone()[0]

    def pin(self, attempt_id: str) -> None:
        """Protect an in-flight attempt's backups from pruning."""
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO pinned_attempts (attempt_id, pinned_at) VALUES (?, ?)",
                (attempt_id, datetime.now().isoformat())
            )
            conn.commit()

    def unpin(self, attempt_id: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM pinned_attempts WHERE attempt_id = ?", (attempt_id,))
            conn.commit()

    def pinned_attempts(self) -> List[str]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT attempt_id FROM pinned_attempts").fetchall()
        return [row['attempt_id'] for row in rows]

    def prune(self, retain: int) -> int:
        """
        Delete the oldest backups beyond the ``retain`` most recent.

        Backups of pinned attempts are skipped. Blobs no longer referenced
        by any backup are removed.

        Args:
            retain: Number of most recent backups to keep

        Returns:
            Number of backup records deleted
        """
        if retain < 0:
            raise ValueError("retain must be non-negative")

        with self._store_lock:
            with self._get_connection() as conn:
                rows = conn.execute(
                    """
                    SELECT b.backup_id, b.digest FROM backups b
                    WHERE b.sequence NOT IN (
                        SELECT sequence FROM backups ORDER BY sequence DESC LIMIT ?
                    )
                    AND (b.attempt_id IS NULL OR b.attempt_id NOT IN (
                        SELECT attempt_id FROM pinned_attempts
                    ))
                    ORDER BY b.sequence
                    """,
                    (retain,)
                ).fetchall()

                if not rows:
                    return 0

                conn.executemany(
                    "DELETE FROM backups WHERE backup_id = ?",
                    [(row['backup_id'],) for row in rows]
                )
                conn.commit()

                candidate_digests = {row['digest'] for row in rows if row['digest']}
                still_referenced = {
                    row['digest'] for row in conn.execute(
                        "SELECT DISTINCT digest FROM backups WHERE digest IS NOT NULL"
                    ).fetchall()
                }

            for digest in candidate_digests - still_referenced:
                blob = self._blob_path(digest)
                try:
                    blob.unlink()
                except FileNotFoundError:
                    pass

        logger.info(f"Pruned {len(rows)} backups (retaining {retain})")
        return len(rows)
