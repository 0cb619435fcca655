"""
Tests for the backup store.

Verifies snapshots, atomic restore, absent targets, pruning and persistence.
"""

import stat
import threading

import pytest

from adapt_remediate.exceptions import (
    BackupNotFoundError,
    RestoreFailedError,
    TargetUnreadableError,
)
from adapt_remediate.remediation.backup import BackupStore, normalize_target


def test_snapshot_and_restore(backup_store, target_file):
    """Test that restore brings back content and permission bits."""
    backup = backup_store.snapshot(target_file, attempt_id="E1#1")

    target_file.write_text("mutated")
    target_file.chmod(0o600)

    assert backup_store.restore(backup.backup_id) is True
    assert target_file.read_text() == '{"debug": true}\n'
    assert stat.S_IMODE(target_file.stat().st_mode) == 0o777


def test_snapshot_records_metadata(backup_store, target_file):
    backup = backup_store.snapshot(target_file, attempt_id="E1#1")

    assert backup.target == normalize_target(target_file)
    assert backup.attempt_id == "E1#1"
    assert backup.mode == 0o777
    assert len(backup.digest) == 64
    assert not backup.absent


def test_identical_content_shares_one_blob(backup_store, target_file):
    first = backup_store.snapshot(target_file)
    second = backup_store.snapshot(target_file)

    blobs = [p for p in (backup_store.objects_dir).rglob("*") if p.is_file()]

    assert first.digest == second.digest
    assert first.backup_id != second.backup_id
    assert len(blobs) == 1


def test_absent_target_restore_deletes(backup_store, tmp_path):
    """A backup of a missing file restores by deleting the file."""
    path = tmp_path / "new.conf"
    backup = backup_store.snapshot(path)

    assert backup.absent
    path.write_text("created by a fix")

    assert backup_store.restore(backup.backup_id) is True
    assert not path.exists()


def test_second_restore_is_noop(backup_store, target_file):
    backup = backup_store.snapshot(target_file)
    target_file.write_text("mutated")

    assert backup_store.restore(backup.backup_id) is True
    target_file.write_text("mutated again")

    assert backup_store.restore(backup.backup_id) is False
    assert target_file.read_text() == "mutated again"


def test_restore_unknown_backup(backup_store):
    with pytest.raises(BackupNotFoundError):
        backup_store.restore("does-not-exist")


def test_restore_with_corrupted_blob(backup_store, target_file):
    backup = backup_store.snapshot(target_file)
    backup_store._blob_path(backup.digest).write_bytes(b"tampered")

    with pytest.raises(RestoreFailedError):
        backup_store.restore(backup.backup_id)


def test_directory_target_is_unreadable(backup_store, tmp_path):
    with pytest.raises(TargetUnreadableError):
        backup_store.snapshot(tmp_path)


def test_for_attempt_in_creation_order(backup_store, tmp_path):
    paths = [tmp_path / name for name in ("a.txt", "b.txt")]
    for path in paths:
        path.write_text(path.name)
        backup_store.snapshot(path, attempt_id="E1#1")
    backup_store.snapshot(paths[0], attempt_id="E2#1")

    backups = backup_store.for_attempt("E1#1")

    assert [b.target for b in backups] == [normalize_target(p) for p in paths]


def test_list_backups_newest_first(backup_store, tmp_path):
    for n in range(3):
        path = tmp_path / f"{n}.txt"
        path.write_text(str(n))
        backup_store.snapshot(path)

    listed = backup_store.list_backups(limit=2)

    assert len(listed) == 2
    assert listed[0].target.endswith("2.txt")
    assert listed[0].sequence > listed[1].sequence


def test_prune_skips_pinned_attempts(backup_store, tmp_path):
    """Backups of in-flight attempts survive pruning."""
    for n in range(4):
        path = tmp_path / f"{n}.txt"
        path.write_text(f"content {n}")
        backup_store.snapshot(path, attempt_id="busy#1" if n == 0 else f"done#{n}")
    backup_store.pin("busy#1")

    deleted = backup_store.prune(retain=1)

    assert deleted == 2
    remaining = {b.attempt_id for b in backup_store.list_backups()}
    assert remaining == {"busy#1", "done#3"}


def test_prune_removes_unreferenced_blobs(backup_store, tmp_path):
    old = tmp_path / "old.txt"
    old.write_text("old content")
    old_backup = backup_store.snapshot(old)
    new = tmp_path / "new.txt"
    new.write_text("new content")
    backup_store.snapshot(new)

    backup_store.prune(retain=1)

    assert backup_store.get(old_backup.backup_id) is None
    assert not backup_store._blob_path(old_backup.digest).exists()


def test_prune_rejects_negative(backup_store):
    with pytest.raises(ValueError):
        backup_store.prune(-1)


def test_automatic_retention(tmp_path):
    store = BackupStore(tmp_path / "backups", retention=2)
    path = tmp_path / "f.txt"
    for n in range(4):
        path.write_text(str(n))
        store.snapshot(path)

    assert store.count() == 2


def test_records_survive_reopen(tmp_path, target_file):
    """Backups are durable once snapshot() returns."""
    backup = BackupStore(tmp_path / "backups").snapshot(target_file, attempt_id="E1#1")
    target_file.write_text("mutated")

    reopened = BackupStore(tmp_path / "backups")

    assert reopened.get(backup.backup_id).digest == backup.digest
    assert reopened.restore(backup.backup_id) is True
    assert target_file.read_text() == '{"debug": true}\n'


def test_pin_unpin(backup_store):
    backup_store.pin("E1#1")
    backup_store.pin("E1#1")
    assert backup_store.pinned_attempts() == ["E1#1"]

    backup_store.unpin("E1#1")
    assert backup_store.pinned_attempts() == []


def test_prune_during_snapshot_keeps_shared_blob(tmp_path, target_file, monkeypatch):
    """A prune racing a snapshot of identical content must not drop its blob."""
    store = BackupStore(tmp_path / "backups", retention=0)
    old = store.snapshot(target_file, attempt_id="old#1")
    store.pin("new#1")

    pruner = threading.Thread(target=store.prune, args=(0,))
    write_blob = store._write_blob

    def write_then_prune(digest, data):
        write_blob(digest, data)
        pruner.start()
        pruner.join(timeout=0.2)

    monkeypatch.setattr(store, "_write_blob", write_then_prune)
    new = store.snapshot(target_file, attempt_id="new#1")
    pruner.join(timeout=5)

    assert store.get(old.backup_id) is None
    assert store._blob_path(new.digest).exists()
    target_file.write_text("mutated")
    assert store.restore(new.backup_id) is True
    assert target_file.read_text() == '{"debug": true}\n'
