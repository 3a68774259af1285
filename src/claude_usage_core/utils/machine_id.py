# src/claude_usage_core/utils/machine_id.py

import hashlib
import logging
import re
import socket
import subprocess
import sys
from pathlib import Path
from typing import Optional

lib_logger = logging.getLogger("claude_usage_core")

LINUX_MACHINE_ID_FILES = ("/var/lib/dbus/machine-id", "/etc/machine-id")
WINDOWS_CRYPTOGRAPHY_KEY = r"SOFTWARE\Microsoft\Cryptography"

_IOPLATFORM_UUID_RE = re.compile(r'"IOPlatformUUID"\s*=\s*"([^"]+)"')


def _normalize(raw: str) -> str:
    return re.sub(r"\s+", "", raw).lower()


def _read_linux_machine_id() -> Optional[str]:
    for candidate in LINUX_MACHINE_ID_FILES:
        try:
            content = Path(candidate).read_text(encoding="utf-8").strip()
        except OSError:
            continue
        if content:
            return content
    # Minimal containers often ship without a machine-id
    hostname = socket.gethostname()
    lib_logger.debug("No machine-id file found, falling back to hostname")
    return hostname or None


def _read_macos_machine_id() -> Optional[str]:
    try:
        output = subprocess.run(
            ["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"],
            capture_output=True,
            text=True,
            check=True,
            timeout=10,
        ).stdout
    except (OSError, subprocess.SubprocessError) as e:
        lib_logger.warning(f"Failed to query IOPlatformUUID: {e}")
        return None
    match = _IOPLATFORM_UUID_RE.search(output)
    return match.group(1) if match else None


def _read_windows_machine_id() -> Optional[str]:
    import winreg

    try:
        with winreg.OpenKey(
            winreg.HKEY_LOCAL_MACHINE,
            WINDOWS_CRYPTOGRAPHY_KEY,
            0,
            winreg.KEY_READ | winreg.KEY_WOW64_64KEY,
        ) as key:
            value, _ = winreg.QueryValueEx(key, "MachineGuid")
            return str(value)
    except OSError as e:
        lib_logger.warning(f"Failed to read MachineGuid from registry: {e}")
        return None


def get_raw_machine_id(platform: Optional[str] = None) -> str:
    """
    Reads the platform-provided machine identifier.

    - Linux:   /var/lib/dbus/machine-id, then /etc/machine-id, then hostname
    - macOS:   IOPlatformUUID from `ioreg`
    - Windows: HKLM\\SOFTWARE\\Microsoft\\Cryptography\\MachineGuid

    Args:
        platform: sys.platform-style override ("linux", "darwin", "win32")

    Returns:
        The identifier, whitespace-stripped and lower-cased

    Raises:
        RuntimeError: If no identifier can be obtained
    """
    platform = platform or sys.platform
    if platform == "darwin":
        raw = _read_macos_machine_id()
    elif platform == "win32":
        raw = _read_windows_machine_id()
    else:
        raw = _read_linux_machine_id()

    if not raw:
        raise RuntimeError(f"Unable to determine a machine identifier on '{platform}'")
    return _normalize(raw)


def get_machine_id(platform: Optional[str] = None) -> str:
    """Returns the SHA-256 hex digest of the raw machine identifier."""
    return hashlib.sha256(get_raw_machine_id(platform).encode("utf-8")).hexdigest()
