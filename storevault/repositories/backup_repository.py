"""
Backup repository - Data access layer for Backup and BackupMirror models.
"""
from typing import List, Optional

from sqlalchemy.orm import Session

from storevault.constants import BACKUP_STATUS_COMPLETED
from storevault.models import Backup, BackupMirror


class BackupRepository:
    """Repository for Backup data access"""

    @staticmethod
    def get_by_backup_id(db: Session, backup_id: str) -> Optional[Backup]:
        """Get backup by its public id"""
        return db.query(Backup).filter(Backup.backup_id == backup_id).first()

    @staticmethod
    def get_all(db: Session, limit: int, status: Optional[str] = None) -> List[Backup]:
        """Get backups ordered by creation date (newest first)"""
        query = db.query(Backup)
        if status:
            query = query.filter(Backup.status == status)
        return query.order_by(Backup.created_at.desc(), Backup.id.desc()).limit(limit).all()

    @staticmethod
    def get_latest_completed(db: Session) -> Optional[Backup]:
        """Get the most recently completed backup"""
        return db.query(Backup).filter(
            Backup.status == BACKUP_STATUS_COMPLETED
        ).order_by(Backup.completed_at.desc(), Backup.id.desc()).first()

    @staticmethod
    def get_oldest(db: Session) -> Optional[Backup]:
        return db.query(Backup).order_by(Backup.created_at.asc(), Backup.id.asc()).first()

    @staticmethod
    def count(db: Session, status: Optional[str] = None,
              backup_type: Optional[str] = None) -> int:
        query = db.query(Backup)
        if status:
            query = query.filter(Backup.status == status)
        if backup_type:
            query = query.filter(Backup.backup_type == backup_type)
        return query.count()

    @staticmethod
    def create(db: Session, backup: Backup) -> Backup:
        """Create new backup record"""
        db.add(backup)
        db.commit()
        db.refresh(backup)
        return backup

    @staticmethod
    def update(db: Session, backup: Backup) -> Backup:
        """Update existing backup record"""
        db.commit()
        db.refresh(backup)
        return backup


class BackupMirrorRepository:
    """Repository for BackupMirror data access"""

    @staticmethod
    def get_for_backup(db: Session, backup_id: str) -> List[BackupMirror]:
        return db.query(BackupMirror).filter(BackupMirror.backup_id == backup_id).all()

    @staticmethod
    def get_for_owner(db: Session, backup_id: str, user_id: str) -> Optional[BackupMirror]:
        return db.query(BackupMirror).filter(
            BackupMirror.backup_id == backup_id,
            BackupMirror.user_id == user_id
        ).first()

    @staticmethod
    def create(db: Session, mirror: BackupMirror) -> BackupMirror:
        db.add(mirror)
        db.commit()
        db.refresh(mirror)
        return mirror
