"""
Restore engine.
Replays a backup payload into the live collections for one owner.

Policy: owner-scoped destructive replace. For every collection in the payload
the owner's live documents are removed and the owner's documents from the
payload are inserted; documents of other owners are not touched. Documents
without an owner key are global and are never touched by a restore.

Each collection is swapped inside its own transaction, so a collection is
either fully replaced or left as it was. The first failing collection stops
the restore and the result lists which collections completed, which failed
and which were not attempted.
"""
import logging
from contextlib import nullcontext
from dataclasses import asdict, dataclass, field
from typing import Callable, ContextManager, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storevault.constants import BACKUP_COLLECTIONS, ERROR_KIND_DATA_PROBLEM, OWNER_KEY
from storevault.database import SessionLocal
from storevault.exceptions import BackupException, CorruptPayloadException, ValidationException
from storevault.repositories.document_repository import DocumentRepository
from storevault.services import snapshot_codec
from storevault.services.backup_store import BackupStore, validate_backup_id
from storevault.services.mirror_service import MirrorClient
from storevault.services.snapshot_codec import Snapshot

logger = logging.getLogger("storevault.restore")


@dataclass
class RestoreResult:
    success: bool
    restored_count: int
    message: str
    source: str
    completed_collections: List[str] = field(default_factory=list)
    failed_collection: Optional[str] = None
    pending_collections: List[str] = field(default_factory=list)
    error_kind: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def validate_owner_id(owner_id) -> str:
    if not owner_id or not isinstance(owner_id, str) or not owner_id.strip():
        raise ValidationException("owner_id", "Owner identity is required")
    return owner_id.strip()


class RestoreService:
    """Service for restoring backups into the live store"""

    def __init__(self, backup_store: BackupStore,
                 mirror_client: Optional[MirrorClient] = None,
                 session_factory: Callable[[], Session] = SessionLocal,
                 collections=BACKUP_COLLECTIONS):
        self.backup_store = backup_store
        self.mirror_client = mirror_client
        self.session_factory = session_factory
        self.collections = tuple(collections)
        self.documents = DocumentRepository()

    def load_local(self, backup_id: str, owner_id: str) -> Snapshot:
        """
        Load and decode a local backup.

        Falls back to the owner's Drive copy when the local payload file is gone.
        """
        backup = self.backup_store.get(backup_id)
        try:
            payload = self.backup_store.read_payload(backup)
        except CorruptPayloadException:
            mirror = self.backup_store.get_mirror(backup_id, owner_id)
            if not mirror or not self.mirror_client:
                raise
            logger.warning(
                f"Local payload of {backup_id} unavailable, using Drive copy {mirror.remote_file_id}"
            )
            payload = self.mirror_client.download_payload(owner_id, mirror.remote_file_id)
        return snapshot_codec.decode(payload)

    def load_remote(self, file_id: str, owner_id: str) -> Snapshot:
        """Download and decode a payload from the owner's Drive"""
        if not file_id or not isinstance(file_id, str):
            raise ValidationException("file_id", "File ID is required")
        if not self.mirror_client:
            raise ValidationException("file_id", "Remote restore is not available")
        payload = self.mirror_client.download_payload(owner_id, file_id)
        return snapshot_codec.decode(payload)

    def apply(self, snapshot: Snapshot, owner_id: str, source: str) -> RestoreResult:
        """Replace the owner's documents collection by collection"""
        names = [name for name in snapshot.collections if name in self.collections]
        ignored = [name for name in snapshot.collections if name not in self.collections]
        if ignored:
            logger.warning(f"Ignoring unknown collections in {source}: {ignored}")

        completed: List[str] = []
        restored_count = 0
        db = self.session_factory()
        try:
            for index, name in enumerate(names):
                owned = [
                    doc for doc in snapshot.collections[name]
                    if doc.get(OWNER_KEY) is not None and str(doc.get(OWNER_KEY)) == owner_id
                ]
                try:
                    restored_count += self.documents.replace_owner_documents(db, name, owner_id, owned)
                except Exception as e:
                    pending = names[index + 1:]
                    logger.error(
                        f"Restore of {source} for {owner_id} failed in '{name}': {e}. "
                        f"Completed: {completed}, not attempted: {pending}"
                    )
                    return RestoreResult(
                        success=False,
                        restored_count=restored_count,
                        message=(
                            f"Restore stopped at collection '{name}': {e}. "
                            f"{len(completed)} collections were restored, "
                            f"'{name}' was left unchanged, {len(pending)} were not attempted."
                        ),
                        source=source,
                        completed_collections=completed,
                        failed_collection=name,
                        pending_collections=pending,
                        error_kind=ERROR_KIND_DATA_PROBLEM,
                    )
                completed.append(name)
        finally:
            db.close()

        logger.info(f"Restored {restored_count} documents for {owner_id} from {source}")
        return RestoreResult(
            success=True,
            restored_count=restored_count,
            message=f"Successfully restored {restored_count} documents from {source}.",
            source=source,
            completed_collections=completed,
        )

    @staticmethod
    def _read(loader: Callable[..., Snapshot], *args) -> Snapshot:
        try:
            return loader(*args)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"✗ Could not read backup source: {e}")
            raise BackupException(f"could not read backup: {e}") from e

    def restore(self, owner_id: str, backup_id: Optional[str] = None,
                file_id: Optional[str] = None,
                gate: Optional[ContextManager] = None) -> RestoreResult:
        """
        Restore from a local backup id or a remote Drive file id.

        The gate, when given, is held while the live collections are written,
        and also while a local payload is read. Remote downloads happen before
        the gate is taken.

        Raises:
            ValidationException, BackupNotFoundException, CorruptPayloadException,
            DriveUnauthorizedException, TransientProviderException,
            ConcurrencyConflictException (from the gate)
        """
        owner_id = validate_owner_id(owner_id)
        if (backup_id is None) == (file_id is None):
            raise ValidationException("source", "Exactly one of backup_id or file_id is required")

        if backup_id is not None:
            backup_id = validate_backup_id(backup_id)
            with gate or nullcontext():
                snapshot = self._read(self.load_local, backup_id, owner_id)
                return self.apply(snapshot, owner_id, source=f"backup {backup_id}")

        snapshot = self._read(self.load_remote, file_id, owner_id)
        with gate or nullcontext():
            return self.apply(snapshot, owner_id, source=f"Drive file {file_id}")
