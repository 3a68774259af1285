# src/claude_usage_core/usage_api.py

import logging
from typing import Any, Dict, Optional

import httpx

from .auth_flow import DEFAULT_BETA_VERSION
from .error_handler import ApiError, raise_for_api_status
from .models import ExtraUsage, UsageWindow, parse_timestamp

lib_logger = logging.getLogger("claude_usage_core")

USAGE_URL = "https://api.anthropic.com/api/oauth/usage"
PROFILE_URL = "https://api.anthropic.com/api/oauth/profile"
USER_AGENT = "claude-usage-core/0.1.0"


def _oauth_headers(access_token: str, beta_version: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {access_token}",
        "Accept": "application/json",
        "anthropic-beta": beta_version,
        "User-Agent": USER_AGENT,
    }


async def _get_json(url: str, headers: Dict[str, str], label: str, timeout: float) -> Any:
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(url, headers=headers)
    except httpx.RequestError as e:
        raise ApiError(f"{label} request failed: {e}") from e

    raise_for_api_status(response, label=label)
    try:
        return response.json()
    except ValueError as e:
        raise ApiError(f"{label} returned invalid JSON: {e}") from e


async def fetch_usage(
    access_token: str,
    beta_version: str = DEFAULT_BETA_VERSION,
    timeout: float = 30.0,
) -> Dict[str, Any]:
    """
    Fetches the raw rate-limit utilization payload for an OAuth token.

    Raises:
        AuthenticationError: On HTTP 401 (the caller may refresh and retry)
        ApiError: On any other HTTP or transport failure
    """
    return await _get_json(
        USAGE_URL, _oauth_headers(access_token, beta_version), "API", timeout
    )


async def fetch_profile(
    access_token: str,
    beta_version: str = DEFAULT_BETA_VERSION,
    timeout: float = 30.0,
) -> Dict[str, Any]:
    """Fetches the account profile (`account.email`, organization, ...)."""
    return await _get_json(
        PROFILE_URL, _oauth_headers(access_token, beta_version), "Profile API", timeout
    )


async def fetch_account_email(
    access_token: str,
    beta_version: str = DEFAULT_BETA_VERSION,
    timeout: float = 30.0,
) -> Optional[str]:
    """Best-effort email lookup; returns None instead of raising."""
    try:
        profile = await fetch_profile(access_token, beta_version, timeout)
    except Exception as e:
        lib_logger.debug(f"Profile lookup failed, continuing without email: {e}")
        return None
    account = profile.get("account") if isinstance(profile, dict) else None
    if isinstance(account, dict) and account.get("email"):
        return str(account["email"])
    return None


def _parse_window(window: Any) -> Optional[UsageWindow]:
    if not isinstance(window, dict):
        return None
    return UsageWindow(
        percent=float(window.get("utilization") or 0),
        resets_at=parse_timestamp(window.get("resets_at")),
    )


def _parse_extra_usage(extra: Any) -> ExtraUsage:
    if not isinstance(extra, dict):
        return ExtraUsage()
    return ExtraUsage(
        is_enabled=bool(extra.get("is_enabled")),
        monthly_limit=extra.get("monthly_limit"),
        used_credits=extra.get("used_credits"),
        utilization=extra.get("utilization"),
    )


def transform_usage_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Maps the usage payload onto AccountUsage fields.

    five_hour -> session, seven_day -> weekly, seven_day_opus -> opus,
    seven_day_sonnet -> sonnet. Missing session/weekly windows read as 0%
    with no reset time; missing model windows are None.
    """
    empty = UsageWindow(percent=0, resets_at=None)
    return {
        "session": _parse_window(data.get("five_hour")) or empty,
        "weekly": _parse_window(data.get("seven_day")) or empty,
        "opus": _parse_window(data.get("seven_day_opus")),
        "sonnet": _parse_window(data.get("seven_day_sonnet")),
        "extra_usage": _parse_extra_usage(data.get("extra_usage")),
    }
