# src/claude_usage_core/secret_store.py

"""
Readers for the credential blob the desktop CLI keeps in the OS secret store.

Each reader exposes one coroutine, read(), returning the raw credential JSON
or None. Readers never raise: a missing entry, a missing helper binary and a
failing helper all read as "no credentials".
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .utils.paths import get_cli_credentials_file
from .utils.resilient_io import safe_read_text

lib_logger = logging.getLogger("claude_usage_core")

KEYCHAIN_SERVICE = "Claude Code-credentials"
SUBPROCESS_TIMEOUT = 10.0

PLATFORMS = ("auto", "macos", "linux", "windows")


async def _run_helper(args: List[str], timeout: float = SUBPROCESS_TIMEOUT) -> Optional[str]:
    """Runs a helper binary and returns its trimmed stdout, or None on any failure."""
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        lib_logger.debug(f"Credential helper '{args[0]}' unavailable: {e}")
        return None

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        lib_logger.warning(f"Credential helper '{args[0]}' timed out after {timeout}s")
        return None

    if process.returncode != 0:
        lib_logger.debug(
            f"Credential helper '{args[0]}' exited {process.returncode}: "
            f"{stderr.decode('utf-8', 'replace').strip()}"
        )
        return None

    output = stdout.decode("utf-8", "replace").strip()
    return output or None


class CredentialReader:
    """Base class for platform secret-store readers."""

    platform: str = ""

    async def read(self) -> Optional[str]:
        raise NotImplementedError


class FileFirstCredentialReader(CredentialReader):
    """Tries the CLI's plaintext credentials file before a helper binary."""

    def __init__(self, credentials_file: Optional[Path] = None):
        self.credentials_file = credentials_file or get_cli_credentials_file(self.platform)

    async def _read_file(self) -> Optional[str]:
        try:
            content = safe_read_text(self.credentials_file)
        except (OSError, UnicodeDecodeError) as e:
            lib_logger.warning(f"Could not read '{self.credentials_file}': {e}")
            return None
        if content is None:
            return None
        return content.strip() or None

    async def _read_helper(self) -> Optional[str]:
        raise NotImplementedError

    async def read(self) -> Optional[str]:
        content = await self._read_file()
        if content is not None:
            lib_logger.debug(f"Read CLI credentials from '{self.credentials_file}'")
            return content
        return await self._read_helper()


class MacOSCredentialReader(CredentialReader):
    """Reads the generic password entry from the login keychain."""

    platform = "macos"

    async def read(self) -> Optional[str]:
        return await _run_helper(
            ["security", "find-generic-password", "-s", KEYCHAIN_SERVICE, "-w"]
        )


class LinuxCredentialReader(FileFirstCredentialReader):
    """~/.claude/.credentials.json, then the Secret Service via secret-tool."""

    platform = "linux"

    async def _read_helper(self) -> Optional[str]:
        return await _run_helper(
            ["secret-tool", "lookup", "service", KEYCHAIN_SERVICE]
        )


class WindowsCredentialReader(FileFirstCredentialReader):
    """%APPDATA%\\Claude\\.credentials.json, then the Credential Manager."""

    platform = "windows"

    async def _read_helper(self) -> Optional[str]:
        return await _run_helper(
            [
                "powershell",
                "-NoProfile",
                "-Command",
                f"(Get-StoredCredential -Target '{KEYCHAIN_SERVICE}').Password",
            ]
        )


def detect_platform() -> str:
    if sys.platform == "darwin":
        return "macos"
    if sys.platform == "win32":
        return "windows"
    return "linux"


def create_credential_reader(platform: str = "auto") -> CredentialReader:
    """
    Returns the reader for `platform` ("auto" resolves from sys.platform).

    Raises:
        ValueError: For an unknown platform name
    """
    if platform not in PLATFORMS:
        raise ValueError(f"Unknown platform '{platform}', expected one of {PLATFORMS}")
    resolved = detect_platform() if platform == "auto" else platform
    if resolved == "macos":
        return MacOSCredentialReader()
    if resolved == "windows":
        return WindowsCredentialReader()
    return LinuxCredentialReader()
