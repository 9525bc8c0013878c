from pathlib import Path
import dotenv
import logging
import os
from typing import Optional
from dataclasses import dataclass


ROOT = Path(__file__).parent.parent

dotenv.load_dotenv(ROOT / '.env')

# Logging configuration
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Scheduling defaults (seconds)
DEFAULT_CHECK_INTERVAL_SECONDS = 60 * 60
DEFAULT_FORCE_INTERVAL_SECONDS = 24 * 60 * 60
DEFAULT_MAX_BACKOFF_SECONDS = 4 * 60 * 60

# Metadata store defaults
METADATA_SCHEMA_VERSION = 1
MAX_HISTORY_ENTRIES = 100
DEFAULT_CACHE_TTL_SECONDS = 60 * 60
DEFAULT_STATE_DIRECTORY = './.docsync'
DEFAULT_METADATA_FILENAME = 'docs-metadata.json'

# Query defaults
DEFAULT_STALENESS_THRESHOLD_SECONDS = 12 * 60 * 60
DEFAULT_HOSTED_TIMEOUT_SECONDS = 10
DEFAULT_SEARCH_LIMIT = 10
MAX_SEARCH_LIMIT = 50

VALID_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def _env_flag(value: Optional[str]) -> bool:
    return (value or '').strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class DocsyncSettings:
    """Process-level settings read from the environment (and .env). Unset fields leave the SyncConfig value in place."""
    state_directory: Optional[str] = None
    hosted_api_url: Optional[str] = None
    local_only: bool = False
    log_level: Optional[str] = None
    log_file: Optional[str] = None

    @classmethod
    def from_environment(cls) -> 'DocsyncSettings':
        """
        Create settings from environment variables.

        Returns:
            DocsyncSettings instance

        Raises:
            ValueError: If any variable holds an invalid value
        """
        state_directory = os.getenv('DOCSYNC_STATE_DIR') or None
        hosted_api_url = os.getenv('DOCSYNC_HOSTED_API_URL') or None
        local_only = _env_flag(os.getenv('DOCSYNC_LOCAL'))
        log_level = (os.getenv('DOCSYNC_LOG_LEVEL') or '').upper() or None
        log_file = os.getenv('DOCSYNC_LOG_FILE') or None

        invalid_vars = []
        if log_level and log_level not in VALID_LOG_LEVELS:
            invalid_vars.append('DOCSYNC_LOG_LEVEL')
        if hosted_api_url and not hosted_api_url.startswith(('http://', 'https://')):
            invalid_vars.append('DOCSYNC_HOSTED_API_URL')

        if invalid_vars:
            raise ValueError(f"Invalid docsync environment variables: {', '.join(invalid_vars)}")

        return cls(
            state_directory=state_directory,
            hosted_api_url=None if local_only else hosted_api_url,
            local_only=local_only,
            log_level=log_level,
            log_file=log_file,
        )
