from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, JSON, ForeignKey, UniqueConstraint
)
from storevault.services.date_service import utcnow
from storevault.database import Base


class Document(Base):
    """One document of a live collection"""
    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint("collection", "doc_id", name="uq_documents_collection_doc_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    collection = Column(String, nullable=False, index=True)
    doc_id = Column(String, nullable=False)  # Value of the document's "_id"
    owner_id = Column(String, nullable=True, index=True)  # Value of "user_id", NULL for global documents
    body = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Backup(Base):
    __tablename__ = "backups"

    id = Column(Integer, primary_key=True, index=True)
    backup_id = Column(String, nullable=False, unique=True, index=True)  # e.g. "backup_1700000000000_3fa4c1b2e"
    created_at = Column(DateTime, nullable=False, index=True)  # Set once at export start
    completed_at = Column(DateTime, nullable=True, index=True)  # Set when the payload is durable

    # Local payload
    filename = Column(String, nullable=True)
    filepath = Column(String, nullable=True)
    size_bytes = Column(Integer, default=0)

    # Contents
    collections = Column(JSON, default=list)  # Ordered collection names
    document_counts = Column(JSON, default=dict)  # {collection: count}
    total_documents = Column(Integer, default=0)

    backup_type = Column(String, default="automatic")  # "automatic" or "manual"

    # Status
    status = Column(String, default="pending")  # "pending", "completed", "failed"
    error_message = Column(String, nullable=True)


class BackupMirror(Base):
    """Remote copy of a backup in one owner's Google Drive"""
    __tablename__ = "backup_mirrors"
    __table_args__ = (
        UniqueConstraint("backup_id", "user_id", name="uq_backup_mirrors_backup_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    backup_id = Column(String, ForeignKey("backups.backup_id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    remote_file_id = Column(String, nullable=False)
    remote_file_name = Column(String, nullable=True)
    uploaded_at = Column(DateTime, default=utcnow)


class DriveCredential(Base):
    """Google Drive OAuth tokens for one user (written by the sign-in flow)"""
    __tablename__ = "drive_credentials"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, unique=True, index=True)
    access_token = Column(String, nullable=True)
    refresh_token = Column(String, nullable=True)
    token_expiry_date = Column(DateTime, nullable=True)
    folder_id = Column(String, nullable=True)
    spreadsheet_id = Column(String, nullable=True)
    connected = Column(Boolean, default=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
