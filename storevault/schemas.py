from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime


# Backup schemas
class BackupBase(BaseModel):
    backup_id: str
    backup_type: str = "automatic"
    status: str = "completed"


class BackupResponse(BackupBase):
    created_at: datetime
    completed_at: Optional[datetime] = None
    filename: Optional[str] = None
    size_bytes: int = 0
    collections: List[str] = []
    document_counts: Dict[str, int] = {}
    total_documents: int = 0
    error_message: Optional[str] = None

    class Config:
        from_attributes = True


class OperationResult(BaseModel):
    success: bool
    message: str
    error_kind: Optional[str] = None


class BackupCreateResponse(OperationResult):
    backup: Optional[BackupResponse] = None
    mirrored_to: List[str] = []
    mirror_errors: Dict[str, str] = {}


class DeleteBackupResponse(OperationResult):
    remote_copies: int = 0
    remote_errors: int = 0


# Restore schemas
class RestoreRequest(BaseModel):
    backup_id: str = Field(..., min_length=1, max_length=128)


class RemoteRestoreRequest(BaseModel):
    file_id: str = Field(..., min_length=1)


class RestoreResponse(OperationResult):
    restored_count: int = 0
    source: Optional[str] = None
    completed_collections: List[str] = []
    failed_collection: Optional[str] = None
    pending_collections: List[str] = []


class RemoteRestoreResponse(RestoreResponse):
    restored: int = 0
    error: Optional[str] = None


class RemoteBackupResponse(BaseModel):
    file_id: str
    name: str
    size_bytes: int = 0
    created_time: Optional[str] = None


class RemoteBackupListResponse(OperationResult):
    backups: List[RemoteBackupResponse] = []


# Scheduler schemas
class SchedulerStatusResponse(BaseModel):
    is_running: bool
    next_backup_in: int


class SchedulerDetailResponse(BaseModel):
    running: bool
    in_progress: bool
    state: str
    last_backup_time: Optional[datetime] = None
    next_backup_time: Optional[datetime] = None
    minutes_until_next: int
    interval_minutes: int


class BackupTimingResponse(BaseModel):
    now: datetime
    last_backup_time: Optional[datetime] = None
    last_backup_id: Optional[str] = None
    minutes_since_last_backup: Optional[int] = None
    is_backup_needed: bool
    minutes_until_next: int
    interval_minutes: int
    in_progress: bool


class BackupStatsResponse(BaseModel):
    total_backups: int
    completed_backups: int
    failed_backups: int
    automatic_backups: int
    manual_backups: int
    oldest_backup_time: Optional[datetime] = None
    last_backup_time: Optional[datetime] = None
    documents_in_last_backup: int = 0
    scheduler: SchedulerStatusResponse
    connected_drive_users: int = 0


class DownloadLinkResponse(BaseModel):
    url: str
