"""
Fixed values shared across the backup engine.
"""

# Backup status values
BACKUP_STATUS_PENDING = "pending"
BACKUP_STATUS_COMPLETED = "completed"
BACKUP_STATUS_FAILED = "failed"

# Backup types
BACKUP_TYPE_AUTOMATIC = "automatic"
BACKUP_TYPE_MANUAL = "manual"

# Collections included in every export, in export order
BACKUP_COLLECTIONS = (
    "invoices",
    "invoice_settings",
    "stores",
    "invoice_blacklist",
    "users",
)

# Document fields
DOCUMENT_ID_KEY = "_id"
OWNER_KEY = "user_id"

# Payload format
PAYLOAD_FORMAT_VERSION = 2
PAYLOAD_MIME_TYPE = "application/json"
PAYLOAD_FILE_PREFIX = "StoreVault_Backup_"
PAYLOAD_FILE_SUFFIX = ".json"
TOMBSTONE_SUFFIX = ".deleting"

# Listing
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 500

# Scheduler states
SCHEDULER_STOPPED = "stopped"
SCHEDULER_IDLE = "idle"
SCHEDULER_RUNNING = "running"

# Error kinds surfaced to callers
ERROR_KIND_VALIDATION = "validation"
ERROR_KIND_NOT_FOUND = "not_found"
ERROR_KIND_RECONNECT = "reconnect_required"
ERROR_KIND_RETRY_LATER = "retry_later"
ERROR_KIND_DATA_PROBLEM = "data_problem"
ERROR_KIND_BUSY = "busy"
ERROR_KIND_BACKUP_FAILED = "backup_failed"

# Google Drive
DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive.file"]
DRIVE_TOKEN_URI = "https://oauth2.googleapis.com/token"
DRIVE_FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
SPREADSHEET_EXPORT_URL = "https://docs.google.com/spreadsheets/d/{spreadsheet_id}/export?format=xlsx"
# Drive error reasons that mean "slow down" rather than "forbidden"
RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})
