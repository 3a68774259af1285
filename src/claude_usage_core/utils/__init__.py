# src/claude_usage_core/utils/__init__.py

from .headless_detection import is_headless_environment, get_headless_indicators
from .machine_id import get_machine_id, get_raw_machine_id
from .paths import (
    get_default_root,
    get_default_storage_path,
    get_cli_credentials_file,
)
from .reauth_coordinator import ReauthCoordinator
from .resilient_io import safe_write_text, safe_read_text

__all__ = [
    "is_headless_environment",
    "get_headless_indicators",
    "get_machine_id",
    "get_raw_machine_id",
    "get_default_root",
    "get_default_storage_path",
    "get_cli_credentials_file",
    "ReauthCoordinator",
    "safe_write_text",
    "safe_read_text",
]
