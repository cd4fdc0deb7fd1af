"""
Logging setup for the API process.
"""
import logging
from pathlib import Path

from storevault import config

DEFAULT_LOG_DIRECTORY_DEV = "./logs"


def setup_logging(level: int = logging.INFO) -> Path:
    """
    Configure root logging with a file handler and a console handler.

    Returns:
        Path of the log file in use
    """
    log_dir = config.LOG_DIR

    # Create log directory if it doesn't exist (for development)
    try:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        log_path = Path(log_dir) / config.LOG_FILE
    except PermissionError:
        # Fallback to local directory if no permissions for /var/log
        log_dir = DEFAULT_LOG_DIRECTORY_DEV
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        log_path = Path(log_dir) / config.LOG_FILE

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_path),
            logging.StreamHandler()  # Also log to console
        ]
    )

    # Reduce noise from the Google client libraries
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    return log_path
