# src/claude_usage_core/utils/headless_detection.py

import os
import sys
import logging
from typing import List

lib_logger = logging.getLogger("claude_usage_core")

CI_ENV_VARS = (
    "CI",
    "GITHUB_ACTIONS",
    "GITLAB_CI",
    "JENKINS_URL",
    "CIRCLECI",
    "BUILDKITE",
    "TF_BUILD",
)


def get_headless_indicators() -> List[str]:
    """
    Collects the reasons the current environment looks headless.

    - Linux: no DISPLAY / WAYLAND_DISPLAY
    - SSH sessions
    - CI runners
    - Containers (/.dockerenv, /run/.containerenv)

    Returns:
        Human-readable reasons; empty when a browser can probably be opened
    """
    indicators: List[str] = []

    # DISPLAY is an X11 concept; macOS and Windows have a GUI without it
    if os.name != "nt" and sys.platform != "darwin":
        if not os.getenv("DISPLAY", "").strip() and not os.getenv(
            "WAYLAND_DISPLAY", ""
        ).strip():
            indicators.append("No DISPLAY or WAYLAND_DISPLAY variable")

    if os.getenv("SSH_CONNECTION") or os.getenv("SSH_CLIENT") or os.getenv("SSH_TTY"):
        indicators.append("SSH connection detected")

    for var in CI_ENV_VARS:
        if os.getenv(var):
            indicators.append(f"CI environment detected ({var})")
            break

    if os.path.exists("/.dockerenv") or os.path.exists("/run/.containerenv"):
        indicators.append("Container environment detected")

    return indicators


def is_headless_environment() -> bool:
    """
    Detects if the current environment is headless (no browser available).

    Returns:
        True if any headless indicator is present
    """
    indicators = get_headless_indicators()
    if indicators:
        lib_logger.info(f"Headless environment detected: {'; '.join(indicators)}")
        return True
    lib_logger.debug("GUI environment detected, browser auto-open will be attempted")
    return False
