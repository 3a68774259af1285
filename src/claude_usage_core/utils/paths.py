# src/claude_usage_core/utils/paths.py
"""
Centralized path management for the usage library.

Nothing here creates directories eagerly; the account store creates its
parent directory on first save. Library users override any of these by
passing explicit paths to ClaudeUsageClient.
"""

import os
from pathlib import Path
from typing import Optional, Union

STORE_DIR_NAME = ".claude-usage"
STORE_FILE_NAME = "accounts.enc"


def get_default_root() -> Path:
    """
    Get the default root directory for library data.

    Returns:
        ~/.claude-usage
    """
    return Path.home() / STORE_DIR_NAME


def get_default_storage_path(root: Optional[Union[Path, str]] = None) -> Path:
    """
    Get the path of the encrypted account store.

    Args:
        root: Optional root directory. If None, uses get_default_root().

    Returns:
        Path to accounts.enc (does not create the file)
    """
    base = Path(root) if root else get_default_root()
    return base / STORE_FILE_NAME


def get_cli_credentials_file(platform: str) -> Path:
    """
    Get the path where the desktop CLI keeps its plaintext credentials file.

    Args:
        platform: One of "linux", "windows", "macos"

    Returns:
        Path to .credentials.json for that platform (may not exist)
    """
    if platform == "windows":
        appdata = os.getenv("APPDATA")
        if not appdata:
            profile = os.getenv("USERPROFILE", r"C:\Users\Default")
            appdata = str(Path(profile) / "AppData" / "Roaming")
        return Path(appdata) / "Claude" / ".credentials.json"
    return Path.home() / ".claude" / ".credentials.json"
