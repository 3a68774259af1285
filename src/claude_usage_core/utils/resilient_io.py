# src/claude_usage_core/utils/resilient_io.py
"""
Resilient I/O utilities for the encrypted account store.

Provides:
1. safe_write_text - atomic (tempfile + move) write with optional 0o600
   permissions. Never raises; returns False and logs on failure so the
   caller decides how loud to be.
2. safe_read_text - read that distinguishes "file absent" (None) from
   every other failure (raised).

Failed credential writes are never buffered for later replay; the refresh
token they carry may already be rotated by the time a retry would run.
"""

import os
import shutil
import tempfile
import logging
from pathlib import Path
from typing import Optional, Union


def safe_write_text(
    path: Union[str, Path],
    content: str,
    logger: logging.Logger,
    atomic: bool = True,
    secure_permissions: bool = False,
) -> bool:
    """
    Write text to a file with error handling.

    Args:
        path: File path to write to
        content: Text to write (UTF-8)
        logger: Logger for warnings
        atomic: Use atomic write pattern (tempfile in the same dir + move)
        secure_permissions: Set file permissions to 0o600 (default: False)

    Returns:
        True on success, False on failure (never raises)
    """
    path = Path(path)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)

        if atomic:
            tmp_fd = None
            tmp_path = None
            try:
                tmp_fd, tmp_path = tempfile.mkstemp(
                    dir=path.parent, prefix=".tmp_", suffix=path.suffix, text=True
                )
                with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                    f.write(content)
                    tmp_fd = None

                # Set secure permissions before the move so the file is never world-readable
                if secure_permissions:
                    try:
                        os.chmod(tmp_path, 0o600)
                    except (OSError, AttributeError):
                        # Windows may not support chmod, ignore
                        pass

                shutil.move(tmp_path, path)
                tmp_path = None
            finally:
                if tmp_fd is not None:
                    try:
                        os.close(tmp_fd)
                    except OSError:
                        pass
                if tmp_path and os.path.exists(tmp_path):
                    try:
                        os.unlink(tmp_path)
                    except OSError:
                        pass
        else:
            with open(path, "w", encoding="utf-8") as f:
                f.write(content)

            if secure_permissions:
                try:
                    os.chmod(path, 0o600)
                except (OSError, AttributeError):
                    pass

        return True

    except (OSError, PermissionError, IOError, TypeError, ValueError) as e:
        logger.warning(f"Failed to write {path}: {e}")
        return False


def safe_read_text(path: Union[str, Path]) -> Optional[str]:
    """
    Read a UTF-8 text file.

    Returns:
        The file content, or None if the file does not exist

    Raises:
        OSError / UnicodeDecodeError: For any failure other than a missing file
    """
    try:
        return Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None

