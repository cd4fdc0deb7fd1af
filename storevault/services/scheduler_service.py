"""
Global backup manager.
Handles:
- Periodic global backups on a fixed interval (APScheduler interval job)
- Forced backups
- Per-owner mirroring of each backup to Google Drive
- Restores and deletes, serialized with exports through one gate
"""
import logging
import threading
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storevault import config
from storevault.constants import (
    BACKUP_COLLECTIONS, BACKUP_TYPE_AUTOMATIC, BACKUP_TYPE_MANUAL,
    DEFAULT_LIST_LIMIT, ERROR_KIND_BACKUP_FAILED, OWNER_KEY,
    SCHEDULER_IDLE, SCHEDULER_RUNNING, SCHEDULER_STOPPED,
)
from storevault.database import SessionLocal
from storevault.exceptions import (
    BackupException, ConcurrencyConflictException, StoreVaultException, ValidationException
)
from storevault.models import Backup
from storevault.repositories.document_repository import DocumentRepository
from storevault.services import snapshot_codec
from storevault.services.backup_store import BackupStore, validate_backup_id
from storevault.services.date_service import DateService, utcnow
from storevault.services.mirror_service import MirrorClient
from storevault.services.restore_service import RestoreService, validate_owner_id

logger = logging.getLogger("storevault.scheduler")

SCHEDULER_JOB_ID = "global_backup_check"


def _failure(error: Exception, /, **extra) -> dict:
    kind = getattr(error, "kind", ERROR_KIND_BACKUP_FAILED)
    result = {"success": False, "message": str(error), "error_kind": kind}
    result.update(extra)
    return result


def _storage_failure(error: Exception, /, **extra) -> dict:
    return _failure(BackupException(str(error)), **extra)


class SchedulerState:
    """In-memory scheduler state, guarded by ``lock``"""

    def __init__(self):
        self.lock = threading.Lock()
        self.started = False
        self.in_progress = False
        self.last_backup_time: Optional[datetime] = None
        self.anchor_loaded = False

    @property
    def state(self) -> str:
        if self.in_progress:
            return SCHEDULER_RUNNING
        return SCHEDULER_IDLE if self.started else SCHEDULER_STOPPED


class GlobalBackupManager:
    """
    One manager per process.

    Exports, forced runs, restores and deletes share a single gate that is
    acquired without blocking: a second caller is told the engine is busy
    instead of waiting. Mirror uploads and remote downloads run outside the
    gate. The last backup time is rebuilt from the newest completed record,
    so a restart neither skips nor doubles a backup.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal,
                 backup_store: Optional[BackupStore] = None,
                 mirror_client: Optional[MirrorClient] = None,
                 restore_service: Optional[RestoreService] = None,
                 clock: Callable[[], datetime] = utcnow,
                 interval_minutes: int = config.BACKUP_INTERVAL_MINUTES,
                 check_interval_seconds: int = config.CHECK_INTERVAL_SECONDS,
                 collections: Sequence[str] = BACKUP_COLLECTIONS,
                 scheduler_factory: Callable[[], BackgroundScheduler] = BackgroundScheduler):
        self.session_factory = session_factory
        self.clock = clock
        self.backup_store = backup_store or BackupStore(session_factory, clock=clock)
        self.mirror_client = mirror_client or MirrorClient(session_factory, clock=clock)
        self.restore_service = restore_service or RestoreService(
            self.backup_store, self.mirror_client, session_factory, collections
        )
        self.interval = timedelta(minutes=interval_minutes)
        self.check_interval_seconds = check_interval_seconds
        self.collections = tuple(collections)
        self.scheduler_factory = scheduler_factory
        self.documents = DocumentRepository()

        self.state = SchedulerState()
        self._gate = threading.Lock()
        self._scheduler: Optional[BackgroundScheduler] = None

    # ===== GATE AND ANCHOR =====

    @contextmanager
    def _hold_gate(self, operation: str):
        if not self._gate.acquire(blocking=False):
            raise ConcurrencyConflictException(operation)
        with self.state.lock:
            self.state.in_progress = True
        try:
            yield
        finally:
            with self.state.lock:
                self.state.in_progress = False
            self._gate.release()

    def _last_backup_time(self) -> Optional[datetime]:
        with self.state.lock:
            if not self.state.anchor_loaded:
                latest = self.backup_store.latest_completed()
                self.state.last_backup_time = latest.completed_at if latest else None
                self.state.anchor_loaded = True
            return self.state.last_backup_time

    def _advance_anchor(self, completed_at: datetime) -> None:
        with self.state.lock:
            if self.state.last_backup_time is None or completed_at > self.state.last_backup_time:
                self.state.last_backup_time = completed_at
            self.state.anchor_loaded = True

    # ===== LIFECYCLE =====

    def start(self) -> None:
        """Start periodic checks; calling it again while running does nothing"""
        with self.state.lock:
            if self.state.started:
                logger.info("Global backup scheduler already running")
                return
            self.state.started = True

        try:
            self.backup_store.recover()
            with self.state.lock:
                self.state.anchor_loaded = False
            last = self._last_backup_time()

            scheduler = self.scheduler_factory()
            scheduler.add_job(
                self._scheduled_check,
                IntervalTrigger(seconds=self.check_interval_seconds),
                id=SCHEDULER_JOB_ID,
                next_run_time=datetime.now(),
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            scheduler.start()
            self._scheduler = scheduler
        except Exception:
            with self.state.lock:
                self.state.started = False
            raise

        logger.info(
            f">>> Global backup scheduler STARTED <<< interval={self.interval}, "
            f"last backup={last or 'never'}"
        )

    def stop(self) -> None:
        """Stop future checks; a cycle already running is allowed to finish"""
        with self.state.lock:
            if not self.state.started:
                return
            self.state.started = False
            scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        logger.info("Global backup scheduler stopped")

    def hard_reset(self) -> dict:
        """Stop, forget in-memory state, rebuild the anchor and start again"""
        logger.warning("Hard reset of global backup scheduler requested")
        self.stop()
        with self.state.lock:
            self.state.last_backup_time = None
            self.state.anchor_loaded = False
        self.start()
        return {"success": True, "message": "Scheduler reset", **self.get_status()}

    def _scheduled_check(self) -> None:
        try:
            self.tick()
        except Exception as e:
            logger.error(f"Scheduler Error (global backup): {e}")

    def tick(self) -> Optional[dict]:
        """
        One periodic check.

        Runs an automatic backup when one is due and nothing else holds the
        gate. Returns the backup result, or None when nothing was started.
        """
        if not self.is_backup_needed():
            return None
        with self.state.lock:
            if self.state.in_progress:
                logger.debug("Backup check skipped: another operation in progress")
                return None

        result = self._run_backup(BACKUP_TYPE_AUTOMATIC, only_if_due=True)
        if result is None:
            return None
        if not result["success"] and result.get("error_kind") == ConcurrencyConflictException.kind:
            return None
        return result

    # ===== TIMING =====

    def is_backup_needed(self, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        last = self._last_backup_time()
        return last is None or now - last >= self.interval

    def _next_backup_time(self, now: datetime) -> datetime:
        return DateService.next_due(self._last_backup_time(), self.interval, now)

    def get_time_until_next_backup(self) -> int:
        """Whole minutes until the next backup is due (0 if due now)"""
        now = self.clock()
        return DateService.minutes_until(self._next_backup_time(now), now)

    def get_status(self) -> dict:
        now = self.clock()
        last = self._last_backup_time()
        next_time = self._next_backup_time(now)
        with self.state.lock:
            running = self.state.started
            in_progress = self.state.in_progress
            state = self.state.state
        return {
            "running": running,
            "in_progress": in_progress,
            "state": state,
            "last_backup_time": last,
            "next_backup_time": next_time,
            "minutes_until_next": DateService.minutes_until(next_time, now),
            "interval_minutes": int(self.interval.total_seconds() // 60),
        }

    def get_scheduler_status(self) -> dict:
        status = self.get_status()
        return {"is_running": status["running"], "next_backup_in": status["minutes_until_next"]}

    def get_backup_status(self) -> dict:
        """Timing detail for health checks"""
        now = self.clock()
        last = self._last_backup_time()
        latest = self.backup_store.latest_completed()
        minutes_since = None
        if last is not None:
            minutes_since = int((now - last).total_seconds() // 60)
        return {
            "now": now,
            "last_backup_time": last,
            "last_backup_id": latest.backup_id if latest else None,
            "minutes_since_last_backup": minutes_since,
            "is_backup_needed": self.is_backup_needed(now),
            "minutes_until_next": DateService.minutes_until(self._next_backup_time(now), now),
            "interval_minutes": int(self.interval.total_seconds() // 60),
            "in_progress": self.state.in_progress,
        }

    # ===== BACKUPS =====

    def _read_live_collections(self) -> Dict[str, List[dict]]:
        db = self.session_factory()
        try:
            return self.documents.snapshot(db, self.collections)
        except SQLAlchemyError as e:
            raise BackupException(f"could not read live collections: {e}") from e
        finally:
            db.close()

    def _mirror(self, backup: Backup, collections: Mapping[str, Sequence[dict]]) -> dict:
        """Upload each connected owner's slice of the backup to their Drive"""
        mirrored: List[str] = []
        errors: Dict[str, str] = {}
        try:
            users = self.mirror_client.connected_users()
        except SQLAlchemyError as e:
            logger.error(f"Could not list Drive connections: {e}")
            return {"mirrored_to": mirrored, "mirror_errors": {"*": str(e)}}

        for user_id in users:
            owned = {
                name: [doc for doc in docs
                       if doc.get(OWNER_KEY) is not None and str(doc.get(OWNER_KEY)) == user_id]
                for name, docs in collections.items()
            }
            try:
                payload = snapshot_codec.encode(owned, metadata={
                    "backup_id": backup.backup_id,
                    "created_at": backup.created_at,
                    "backup_type": backup.backup_type,
                    "owner_id": user_id,
                })
                file_id = self.mirror_client.upload_payload(user_id, backup.filename, payload)
                mirror = self.backup_store.add_mirror(backup.backup_id, user_id, file_id, backup.filename)
            except (StoreVaultException, SQLAlchemyError) as e:
                logger.error(f"✗ Google Drive upload failed for user {user_id}: {e}")
                errors[user_id] = str(e)
                continue

            if mirror is None:
                # Backup was deleted while uploading; nothing references this copy
                errors[user_id] = f"backup {backup.backup_id} was deleted during upload"
                self._discard_remote(user_id, file_id, backup.backup_id)
                continue
            mirrored.append(user_id)
        return {"mirrored_to": mirrored, "mirror_errors": errors}

    def _discard_remote(self, user_id: str, file_id: str, backup_id: str) -> None:
        try:
            self.mirror_client.delete_remote_payload(user_id, file_id)
            logger.info(f"Removed orphaned Drive copy {file_id} of deleted backup {backup_id}")
        except StoreVaultException as e:
            logger.warning(f"Could not remove orphaned Drive copy {file_id} for user {user_id}: {e}")

    def perform_global_backup(self, backup_type: str = BACKUP_TYPE_AUTOMATIC) -> dict:
        """
        Export every collection into a new backup, then mirror it.

        Returns:
            {"success", "message", "backup", "mirrored_to", "mirror_errors"}
            or a failure result with "error_kind"
        """
        return self._run_backup(backup_type)

    def _run_backup(self, backup_type: str, only_if_due: bool = False) -> Optional[dict]:
        """Returns None when ``only_if_due`` and the interval has not elapsed under the gate"""
        try:
            with self._hold_gate("start a backup"):
                if only_if_due and not self.is_backup_needed():
                    logger.debug("Backup check skipped: a backup completed since the check")
                    return None
                logger.info(f"Starting {backup_type} global backup")
                collections = self._read_live_collections()
                backup = self.backup_store.create(collections, backup_type)
                self._advance_anchor(backup.completed_at)
        except ConcurrencyConflictException as e:
            logger.info(str(e))
            return _failure(e)
        except StoreVaultException as e:
            logger.error(f"✗ Global backup failed: {e}")
            return _failure(e)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"✗ Global backup failed: {e}")
            return _storage_failure(e)

        mirror_result = self._mirror(backup, collections)
        logger.info(f"✓ Global backup completed: {backup.backup_id}")
        return {
            "success": True,
            "message": f"Backup {backup.backup_id} created with {backup.total_documents} documents",
            "backup": backup,
            **mirror_result,
        }

    def force_backup_now(self) -> dict:
        """Run a backup immediately, ignoring the interval but not the gate"""
        return self.perform_global_backup(BACKUP_TYPE_MANUAL)

    def list_backups(self, limit: int = DEFAULT_LIST_LIMIT) -> List[Backup]:
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            raise ValidationException("limit", "Limit must be a number")
        return self.backup_store.list(limit)

    def delete_backup(self, backup_id) -> dict:
        """Delete a backup and, best effort, its Drive copies"""
        try:
            backup_id = validate_backup_id(backup_id)
            with self._hold_gate("delete a backup"):
                mirrors = self.backup_store.delete(backup_id)
        except StoreVaultException as e:
            return _failure(e)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Delete of {backup_id} failed: {e}")
            return _storage_failure(e)

        remote_errors = 0
        for mirror in mirrors:
            try:
                self.mirror_client.delete_remote_payload(mirror["user_id"], mirror["remote_file_id"])
            except StoreVaultException as e:
                remote_errors += 1
                logger.warning(
                    f"Could not delete Drive copy {mirror['remote_file_id']} "
                    f"of {backup_id} for user {mirror['user_id']}: {e}"
                )

        message = f"Backup {backup_id} deleted"
        if remote_errors:
            message += f" ({remote_errors} Drive copies could not be removed)"
        return {"success": True, "message": message, "remote_copies": len(mirrors),
                "remote_errors": remote_errors}

    # ===== RESTORE =====

    def restore_from_backup(self, backup_id, owner_id) -> dict:
        try:
            result = self.restore_service.restore(
                owner_id, backup_id=backup_id, gate=self._hold_gate("restore")
            )
        except StoreVaultException as e:
            logger.error(f"Restore of {backup_id} for {owner_id} failed: {e}")
            return _failure(e, restored_count=0)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Restore of {backup_id} for {owner_id} failed: {e}")
            return _storage_failure(e, restored_count=0)
        return result.to_dict()

    def restore_from_remote(self, file_id, owner_id) -> dict:
        try:
            if not file_id or not isinstance(file_id, str):
                raise ValidationException("file_id", "File ID is required")
            result = self.restore_service.restore(
                owner_id, file_id=file_id, gate=self._hold_gate("restore")
            )
        except StoreVaultException as e:
            logger.error(f"Restore of Drive file {file_id} for {owner_id} failed: {e}")
            return _failure(e, restored=0, error=str(e))
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Restore of Drive file {file_id} for {owner_id} failed: {e}")
            return _storage_failure(e, restored=0, error=str(e))

        payload = result.to_dict()
        payload["restored"] = result.restored_count
        if not result.success:
            payload["error"] = result.message
        return payload

    def list_remote_backups(self, owner_id) -> dict:
        try:
            owner_id = validate_owner_id(owner_id)
            files = self.mirror_client.list_remote_payloads(owner_id)
        except StoreVaultException as e:
            return _failure(e, backups=[])
        except SQLAlchemyError as e:
            return _storage_failure(e, backups=[])
        return {
            "success": True,
            "message": f"{len(files)} backups in Google Drive",
            "backups": [asdict(f) for f in files],
        }

    def get_backup_stats(self) -> dict:
        stats = self.backup_store.stats()
        stats.update({
            "scheduler": self.get_scheduler_status(),
            "connected_drive_users": len(self.mirror_client.connected_users()),
        })
        return stats


_manager: Optional[GlobalBackupManager] = None
_manager_lock = threading.Lock()


def get_backup_manager() -> GlobalBackupManager:
    """Process-wide manager, created on first use"""
    global _manager
    with _manager_lock:
        if _manager is None:
            _manager = GlobalBackupManager()
        return _manager


def reset_backup_manager() -> None:
    """Stop and forget the process-wide manager"""
    global _manager
    with _manager_lock:
        if _manager is not None:
            _manager.stop()
        _manager = None
