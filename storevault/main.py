from contextlib import asynccontextmanager
from typing import List
import logging

from fastapi import FastAPI, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from storevault.database import engine, Base
from storevault import models  # Import all models to register them with Base
from storevault.schemas import (
    BackupResponse, BackupCreateResponse, DeleteBackupResponse,
    RestoreRequest, RestoreResponse, RemoteRestoreRequest, RemoteRestoreResponse,
    RemoteBackupListResponse, DownloadLinkResponse,
    SchedulerStatusResponse, SchedulerDetailResponse, BackupTimingResponse, BackupStatsResponse,
    OperationResult,
)
from storevault.auth import verify_api_key, get_owner_id
from storevault.constants import (
    DEFAULT_LIST_LIMIT,
    ERROR_KIND_BUSY, ERROR_KIND_DATA_PROBLEM, ERROR_KIND_NOT_FOUND,
    ERROR_KIND_RECONNECT, ERROR_KIND_RETRY_LATER, ERROR_KIND_VALIDATION,
)
from storevault.exceptions import StoreVaultException
from storevault.logging_config import setup_logging
from storevault.services.scheduler_service import GlobalBackupManager, get_backup_manager

logger = logging.getLogger("storevault.api")

ERROR_STATUS_CODES = {
    ERROR_KIND_VALIDATION: status.HTTP_400_BAD_REQUEST,
    ERROR_KIND_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ERROR_KIND_RECONNECT: status.HTTP_401_UNAUTHORIZED,
    ERROR_KIND_RETRY_LATER: status.HTTP_503_SERVICE_UNAVAILABLE,
    ERROR_KIND_DATA_PROBLEM: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ERROR_KIND_BUSY: status.HTTP_409_CONFLICT,
}


def status_code_for(error_kind: str) -> int:
    return ERROR_STATUS_CODES.get(error_kind, status.HTTP_500_INTERNAL_SERVER_ERROR)


def raise_for_result(result: dict) -> dict:
    """Turn a failed engine result into an HTTP error"""
    if not result.get("success"):
        raise HTTPException(status_code=status_code_for(result.get("error_kind")), detail=result)
    return result


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_path = setup_logging()
    Base.metadata.create_all(bind=engine)
    manager = get_backup_manager()
    manager.start()
    logger.info(f"StoreVault API started. Logging to: {log_path}")
    yield
    logger.info("Shutting down StoreVault API")
    manager.stop()


app = FastAPI(
    title="StoreVault API",
    description="Backup and restore orchestration for store data",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(StoreVaultException)
async def storevault_exception_handler(request: Request, exc: StoreVaultException):
    return JSONResponse(
        status_code=status_code_for(exc.kind),
        content={"success": False, "message": str(exc), "error_kind": exc.kind},
    )


def get_manager() -> GlobalBackupManager:
    return get_backup_manager()


# Health check (no auth required)
@app.get("/")
async def root():
    return {"message": "StoreVault API", "status": "active"}


# ===== BACKUP ENDPOINTS =====

@app.get("/api/backups", response_model=List[BackupResponse], dependencies=[Depends(verify_api_key)])
def get_backups_endpoint(limit: int = DEFAULT_LIST_LIMIT,
                         manager: GlobalBackupManager = Depends(get_manager)):
    """Get backups (newest first)"""
    return manager.list_backups(limit)


@app.post("/api/backups/create", response_model=BackupCreateResponse, dependencies=[Depends(verify_api_key)])
def create_backup_endpoint(manager: GlobalBackupManager = Depends(get_manager)):
    """Create a backup now, regardless of the schedule"""
    return raise_for_result(manager.force_backup_now())


@app.delete("/api/backups/{backup_id}", response_model=DeleteBackupResponse, dependencies=[Depends(verify_api_key)])
def delete_backup_endpoint(backup_id: str, manager: GlobalBackupManager = Depends(get_manager)):
    """Delete a backup and its Drive copies"""
    return raise_for_result(manager.delete_backup(backup_id))


@app.post("/api/backups/restore", response_model=RestoreResponse, dependencies=[Depends(verify_api_key)])
def restore_backup_endpoint(request: RestoreRequest,
                            owner_id: str = Depends(get_owner_id),
                            manager: GlobalBackupManager = Depends(get_manager)):
    """Restore the caller's data from a local backup"""
    return raise_for_result(manager.restore_from_backup(request.backup_id, owner_id))


@app.post("/api/backups/restore-remote", response_model=RemoteRestoreResponse,
          dependencies=[Depends(verify_api_key)])
def restore_remote_endpoint(request: RemoteRestoreRequest,
                            owner_id: str = Depends(get_owner_id),
                            manager: GlobalBackupManager = Depends(get_manager)):
    """Restore the caller's data from a backup file in their Google Drive"""
    return raise_for_result(manager.restore_from_remote(request.file_id, owner_id))


@app.get("/api/backups/remote", response_model=RemoteBackupListResponse, dependencies=[Depends(verify_api_key)])
def list_remote_backups_endpoint(owner_id: str = Depends(get_owner_id),
                                 manager: GlobalBackupManager = Depends(get_manager)):
    """List backups in the caller's Google Drive"""
    return raise_for_result(manager.list_remote_backups(owner_id))


@app.get("/api/backups/remote/{file_id}/download-link", response_model=DownloadLinkResponse,
         dependencies=[Depends(verify_api_key)])
def remote_download_link_endpoint(file_id: str,
                                  owner_id: str = Depends(get_owner_id),
                                  manager: GlobalBackupManager = Depends(get_manager)):
    """Download link for a backup file in the caller's Google Drive"""
    return {"url": manager.mirror_client.get_download_url(owner_id, file_id)}


@app.get("/api/backups/spreadsheet/download-link", response_model=DownloadLinkResponse,
         dependencies=[Depends(verify_api_key)])
def spreadsheet_download_link_endpoint(owner_id: str = Depends(get_owner_id),
                                       manager: GlobalBackupManager = Depends(get_manager)):
    """Export link for the caller's invoice spreadsheet"""
    return {"url": manager.mirror_client.get_spreadsheet_download_url(owner_id)}


@app.get("/api/backups/health", response_model=BackupTimingResponse, dependencies=[Depends(verify_api_key)])
def backup_health_endpoint(manager: GlobalBackupManager = Depends(get_manager)):
    """Backup timing detail"""
    return manager.get_backup_status()


@app.get("/api/backups/stats", response_model=BackupStatsResponse, dependencies=[Depends(verify_api_key)])
def backup_stats_endpoint(manager: GlobalBackupManager = Depends(get_manager)):
    return manager.get_backup_stats()


@app.get("/api/drive/status", dependencies=[Depends(verify_api_key)])
def drive_status_endpoint(owner_id: str = Depends(get_owner_id),
                          manager: GlobalBackupManager = Depends(get_manager)):
    """Google Drive connection state of the caller"""
    return manager.mirror_client.connection_status(owner_id)


# ===== SCHEDULER ENDPOINTS =====

@app.get("/api/scheduler/status", response_model=SchedulerStatusResponse, dependencies=[Depends(verify_api_key)])
def scheduler_status_endpoint(manager: GlobalBackupManager = Depends(get_manager)):
    return manager.get_scheduler_status()


@app.get("/api/scheduler/detail", response_model=SchedulerDetailResponse, dependencies=[Depends(verify_api_key)])
def scheduler_detail_endpoint(manager: GlobalBackupManager = Depends(get_manager)):
    return manager.get_status()


@app.post("/api/scheduler/start", response_model=OperationResult, dependencies=[Depends(verify_api_key)])
def scheduler_start_endpoint(manager: GlobalBackupManager = Depends(get_manager)):
    manager.start()
    return {"success": True, "message": "Scheduler started"}


@app.post("/api/scheduler/stop", response_model=OperationResult, dependencies=[Depends(verify_api_key)])
def scheduler_stop_endpoint(manager: GlobalBackupManager = Depends(get_manager)):
    manager.stop()
    return {"success": True, "message": "Scheduler stopped"}


@app.post("/api/scheduler/hard-reset", response_model=SchedulerDetailResponse,
          dependencies=[Depends(verify_api_key)])
def scheduler_hard_reset_endpoint(manager: GlobalBackupManager = Depends(get_manager)):
    """Stop, reload the last backup time and start again"""
    return manager.hard_reset()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("storevault.main:app", host="0.0.0.0", port=8000)
