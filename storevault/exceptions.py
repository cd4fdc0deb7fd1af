"""
Custom exceptions for the backup engine.
Each exception carries a ``kind`` so callers can tell "retry later" from
"reconnect required" from "data problem".
"""
from storevault.constants import (
    ERROR_KIND_BACKUP_FAILED,
    ERROR_KIND_BUSY,
    ERROR_KIND_DATA_PROBLEM,
    ERROR_KIND_NOT_FOUND,
    ERROR_KIND_RECONNECT,
    ERROR_KIND_RETRY_LATER,
    ERROR_KIND_VALIDATION,
)


class StoreVaultException(Exception):
    """Base exception for the backup engine"""
    kind = ERROR_KIND_BACKUP_FAILED


class ValidationException(StoreVaultException):
    """Raised when request data is missing or malformed"""
    kind = ERROR_KIND_VALIDATION

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Validation error for {field}: {message}")


class BackupNotFoundException(StoreVaultException):
    """Raised when a backup id is unknown"""
    kind = ERROR_KIND_NOT_FOUND

    def __init__(self, backup_id: str):
        self.backup_id = backup_id
        super().__init__(f"Backup {backup_id} not found")


class DriveUnauthorizedException(StoreVaultException):
    """Raised when the Drive credential is missing or cannot be refreshed"""
    kind = ERROR_KIND_RECONNECT

    def __init__(self, user_id: str, reason: str = "Google Drive not connected"):
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"{reason}. Please reconnect Google Drive.")


class TransientProviderException(StoreVaultException):
    """Raised on network errors, timeouts and rate limits from Google Drive"""
    kind = ERROR_KIND_RETRY_LATER

    def __init__(self, operation: str, details: str):
        self.operation = operation
        self.details = details
        super().__init__(f"Google Drive {operation} failed: {details}")


class CorruptPayloadException(StoreVaultException):
    """Raised when a backup payload cannot be decoded"""
    kind = ERROR_KIND_DATA_PROBLEM

    def __init__(self, details: str):
        self.details = details
        super().__init__(f"Backup payload is corrupted: {details}")


class ConcurrencyConflictException(StoreVaultException):
    """Raised when another export or restore holds the backup gate"""
    kind = ERROR_KIND_BUSY

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Cannot {operation}: another backup or restore is in progress")


class BackupException(StoreVaultException):
    """Raised when backup operations fail"""
    kind = ERROR_KIND_BACKUP_FAILED

    def __init__(self, message: str):
        super().__init__(f"Backup operation failed: {message}")
