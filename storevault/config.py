"""
Runtime configuration read from environment variables.
"""
import os
from pathlib import Path

# Database
DATABASE_URL = os.getenv("STOREVAULT_DATABASE_URL", "sqlite:///./storevault.db")

# Backup directory
BACKUP_DIR = os.getenv("STOREVAULT_BACKUP_DIR", "/var/lib/storevault/backups")

try:
    Path(BACKUP_DIR).mkdir(parents=True, exist_ok=True)
except PermissionError:
    # Fallback to local directory
    BACKUP_DIR = "./backups"
    Path(BACKUP_DIR).mkdir(parents=True, exist_ok=True)

# Logging
LOG_DIR = os.getenv("STOREVAULT_LOG_DIR", "/var/log/storevault")
LOG_FILE = os.getenv("STOREVAULT_LOG_FILE", "storevault.log")

# Scheduling
BACKUP_INTERVAL_MINUTES = int(os.getenv("STOREVAULT_BACKUP_INTERVAL_MINUTES", "30"))
CHECK_INTERVAL_SECONDS = int(os.getenv("STOREVAULT_CHECK_INTERVAL_SECONDS", "60"))

# External provider
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("STOREVAULT_PROVIDER_TIMEOUT", "60"))
REFRESH_LOCK_TIMEOUT_SECONDS = float(os.getenv("STOREVAULT_REFRESH_LOCK_TIMEOUT", "30"))
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
DRIVE_FOLDER_NAME = os.getenv("STOREVAULT_DRIVE_FOLDER_NAME", "StoreVault Backups")

# API key for request handlers (set a real secret in production)
API_KEY = os.getenv("STOREVAULT_API_KEY", "your-secret-key-change-me")
