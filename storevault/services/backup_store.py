"""
Backup store.
Persists encoded backup payloads as files in the backup directory and keeps
one Backup record per export in the database.
"""
import logging
import os
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storevault import config
from storevault.constants import (
    BACKUP_STATUS_COMPLETED, BACKUP_STATUS_FAILED, BACKUP_STATUS_PENDING,
    BACKUP_TYPE_AUTOMATIC, BACKUP_TYPE_MANUAL,
    DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT,
    PAYLOAD_FILE_PREFIX, PAYLOAD_FILE_SUFFIX, TOMBSTONE_SUFFIX,
)
from storevault.database import SessionLocal
from storevault.exceptions import (
    BackupException, BackupNotFoundException, CorruptPayloadException, ValidationException
)
from storevault.models import Backup, BackupMirror
from storevault.repositories.backup_repository import BackupMirrorRepository, BackupRepository
from storevault.services import snapshot_codec
from storevault.services.date_service import utcnow

logger = logging.getLogger("storevault.backup")


def new_backup_id() -> str:
    """Generate an opaque backup id"""
    return f"backup_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def validate_backup_id(backup_id) -> str:
    """Reject missing or malformed backup ids before touching the store"""
    if not backup_id or not isinstance(backup_id, str):
        raise ValidationException("backup_id", "Backup ID is required")
    backup_id = backup_id.strip()
    if not backup_id or len(backup_id) > 128 or "/" in backup_id or "\\" in backup_id:
        raise ValidationException("backup_id", "Backup ID is malformed")
    return backup_id


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


class BackupStore:
    """Local system of record for which backups exist"""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal,
                 backup_dir: Optional[str] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.backup_dir = Path(backup_dir or config.BACKUP_DIR)
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        self.clock = clock
        self.repo = BackupRepository()
        self.mirror_repo = BackupMirrorRepository()

    def _payload_path(self, backup_id: str, created_at: datetime) -> Tuple[str, Path]:
        filename = f"{PAYLOAD_FILE_PREFIX}{backup_id}_{created_at:%Y-%m-%d}{PAYLOAD_FILE_SUFFIX}"
        return filename, self.backup_dir / filename

    def create(self, collections: Mapping[str, Sequence[dict]],
               backup_type: str = BACKUP_TYPE_AUTOMATIC) -> Backup:
        """
        Export a snapshot into a new backup.

        The record is written as pending first. The payload goes to a temporary
        file that is fsynced and renamed into place, and only then is the record
        flipped to completed. Any failure after the pending write removes the
        partial payload and marks the record failed.

        Args:
            collections: Mapping of collection name to documents
            backup_type: "automatic" or "manual"

        Returns:
            The completed Backup record

        Raises:
            BackupException: if the export could not be made durable
        """
        if backup_type not in (BACKUP_TYPE_AUTOMATIC, BACKUP_TYPE_MANUAL):
            raise ValidationException("backup_type", f"Unknown backup type {backup_type}")

        db = self.session_factory()
        try:
            backup_id = new_backup_id()
            created_at = self.clock()
            filename, final_path = self._payload_path(backup_id, created_at)
            temp_path = final_path.with_name(final_path.name + ".tmp")

            backup = Backup(
                backup_id=backup_id,
                created_at=created_at,
                filename=filename,
                filepath=str(final_path),
                collections=list(collections.keys()),
                backup_type=backup_type,
                status=BACKUP_STATUS_PENDING,
            )
            try:
                self.repo.create(db, backup)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"✗ Could not record backup {backup_id}: {e}")
                raise BackupException(f"could not record {backup_id}: {e}") from e
            logger.info(f"Creating backup: {backup_id} ({backup_type})")

            try:
                payload = snapshot_codec.encode(collections, metadata={
                    "backup_id": backup_id,
                    "created_at": created_at,
                    "backup_type": backup_type,
                })

                with open(temp_path, "wb") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_path, final_path)

                counts = {name: len(docs) for name, docs in collections.items()}
                backup.document_counts = counts
                backup.total_documents = sum(counts.values())
                backup.size_bytes = len(payload)
                backup.completed_at = self.clock()
                backup.status = BACKUP_STATUS_COMPLETED
                self.repo.update(db, backup)

            except Exception as e:
                logger.error(f"✗ Backup failed: {backup_id}: {e}")
                db.rollback()
                _remove_quietly(temp_path)
                _remove_quietly(final_path)
                self._mark_failed(db, backup_id, str(e))
                raise BackupException(str(e)) from e

            logger.info(
                f"✓ Backup created: {filename} "
                f"({backup.total_documents} documents, {backup.size_bytes} bytes)"
            )
            db.expunge(backup)
            return backup
        finally:
            db.close()

    def _mark_failed(self, db: Session, backup_id: str, message: str) -> None:
        try:
            backup = self.repo.get_by_backup_id(db, backup_id)
            if backup:
                backup.status = BACKUP_STATUS_FAILED
                backup.error_message = message[:500]
                backup.completed_at = None
                self.repo.update(db, backup)
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to store failed backup status for {backup_id}: {e}")

    def list(self, limit: int = DEFAULT_LIST_LIMIT, status: Optional[str] = None) -> List[Backup]:
        """Get backups, newest first, at most ``limit`` of them"""
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        db = self.session_factory()
        try:
            backups = self.repo.get_all(db, limit, status)
            for backup in backups:
                db.expunge(backup)
            return backups
        finally:
            db.close()

    def get(self, backup_id: str) -> Backup:
        """Get a backup by id or raise BackupNotFoundException"""
        backup_id = validate_backup_id(backup_id)
        db = self.session_factory()
        try:
            backup = self.repo.get_by_backup_id(db, backup_id)
            if not backup:
                raise BackupNotFoundException(backup_id)
            db.expunge(backup)
            return backup
        finally:
            db.close()

    def latest_completed(self) -> Optional[Backup]:
        """Most recent completed backup, the durable last-backup anchor"""
        db = self.session_factory()
        try:
            backup = self.repo.get_latest_completed(db)
            if backup:
                db.expunge(backup)
            return backup
        finally:
            db.close()

    def read_payload(self, backup: Backup) -> bytes:
        """
        Read the local payload of a completed backup.

        Raises:
            CorruptPayloadException: if the backup is not completed or its file is gone
        """
        if backup.status != BACKUP_STATUS_COMPLETED:
            raise CorruptPayloadException(
                f"backup {backup.backup_id} is {backup.status}, not completed"
            )
        try:
            with open(backup.filepath, "rb") as f:
                return f.read()
        except FileNotFoundError:
            raise CorruptPayloadException(f"payload file for {backup.backup_id} is missing")

    def add_mirror(self, backup_id: str, user_id: str, remote_file_id: str,
                   remote_file_name: Optional[str] = None) -> Optional[BackupMirror]:
        """Record that a backup was copied to a user's Drive"""
        db = self.session_factory()
        try:
            if not self.repo.get_by_backup_id(db, backup_id):
                logger.warning(f"Backup {backup_id} was deleted before its mirror was recorded")
                return None
            mirror = BackupMirror(
                backup_id=backup_id,
                user_id=user_id,
                remote_file_id=remote_file_id,
                remote_file_name=remote_file_name,
                uploaded_at=self.clock(),
            )
            self.mirror_repo.create(db, mirror)
            db.expunge(mirror)
            return mirror
        finally:
            db.close()

    def get_mirror(self, backup_id: str, user_id: str) -> Optional[BackupMirror]:
        db = self.session_factory()
        try:
            mirror = self.mirror_repo.get_for_owner(db, backup_id, user_id)
            if mirror:
                db.expunge(mirror)
            return mirror
        finally:
            db.close()

    def delete(self, backup_id: str) -> List[Dict[str, str]]:
        """
        Delete a backup record together with its payload.

        The payload is first renamed to a tombstone. The record and its mirror
        rows are deleted in one transaction; if that fails the tombstone is
        renamed back, so a record never survives without its payload or the
        other way round.

        Returns:
            Mirror references ({"user_id", "remote_file_id"}) of the deleted backup

        Raises:
            BackupNotFoundException: unknown backup id
            BackupException: the record could not be deleted
        """
        backup_id = validate_backup_id(backup_id)
        db = self.session_factory()
        try:
            backup = self.repo.get_by_backup_id(db, backup_id)
            if not backup:
                raise BackupNotFoundException(backup_id)

            payload_path = Path(backup.filepath) if backup.filepath else None
            tombstone = payload_path.with_name(payload_path.name + TOMBSTONE_SUFFIX) if payload_path else None
            moved = False
            if payload_path and payload_path.exists():
                try:
                    os.replace(payload_path, tombstone)
                except OSError as e:
                    logger.error(f"Failed to delete backup {backup_id}: {e}")
                    raise BackupException(f"could not delete {backup_id}: {e}") from e
                moved = True

            try:
                mirror_rows = self.mirror_repo.get_for_backup(db, backup_id)
                mirrors = [
                    {"user_id": m.user_id, "remote_file_id": m.remote_file_id}
                    for m in mirror_rows
                ]
                for mirror in mirror_rows:
                    db.delete(mirror)
                db.flush()
                db.delete(backup)
                db.commit()
            except Exception as e:
                db.rollback()
                if moved:
                    os.replace(tombstone, payload_path)
                logger.error(f"Failed to delete backup {backup_id}: {e}")
                raise BackupException(f"could not delete {backup_id}: {e}") from e

            if moved:
                try:
                    tombstone.unlink()
                except OSError as e:
                    # Record is gone; the tombstone is swept by recover()
                    logger.warning(f"Could not remove tombstone {tombstone}: {e}")

            logger.info(f"Deleted backup: {backup_id}")
            return mirrors
        finally:
            db.close()

    def recover(self) -> Dict[str, int]:
        """
        Clean up after an interrupted process.

        Pending records left by a crash are marked failed and their partial
        files removed; leftover tombstones and temporary files are deleted.
        """
        swept_files = 0
        for pattern in (f"*{TOMBSTONE_SUFFIX}", "*.tmp"):
            for path in self.backup_dir.glob(pattern):
                _remove_quietly(path)
                swept_files += 1

        failed_records = 0
        db = self.session_factory()
        try:
            stale = db.query(Backup).filter(Backup.status == BACKUP_STATUS_PENDING).all()
            for backup in stale:
                if backup.filepath:
                    _remove_quietly(Path(backup.filepath))
                backup.status = BACKUP_STATUS_FAILED
                backup.error_message = "Interrupted before completion"
                failed_records += 1
            db.commit()
        finally:
            db.close()

        if swept_files or failed_records:
            logger.info(
                f"Backup store recovery: {failed_records} interrupted backups marked failed, "
                f"{swept_files} stale files removed"
            )
        return {"failed_records": failed_records, "swept_files": swept_files}

    def stats(self) -> dict:
        """Backup statistics for health and status reporting"""
        db = self.session_factory()
        try:
            latest = self.repo.get_latest_completed(db)
            oldest = self.repo.get_oldest(db)
            return {
                "total_backups": self.repo.count(db),
                "completed_backups": self.repo.count(db, status=BACKUP_STATUS_COMPLETED),
                "failed_backups": self.repo.count(db, status=BACKUP_STATUS_FAILED),
                "automatic_backups": self.repo.count(
                    db, status=BACKUP_STATUS_COMPLETED, backup_type=BACKUP_TYPE_AUTOMATIC),
                "manual_backups": self.repo.count(
                    db, status=BACKUP_STATUS_COMPLETED, backup_type=BACKUP_TYPE_MANUAL),
                "oldest_backup_time": oldest.created_at if oldest else None,
                "last_backup_time": latest.completed_at if latest else None,
                "documents_in_last_backup": latest.total_documents if latest else 0,
            }
        finally:
            db.close()
