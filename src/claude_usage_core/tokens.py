# src/claude_usage_core/tokens.py

import logging
import math
from datetime import timedelta

import httpx

from .auth_flow import DEFAULT_EXPIRES_IN, OAUTH_CLIENT_ID, OAUTH_TOKEN_URL
from .error_handler import mask_credential
from .models import (
    OAuthCredential,
    RefreshResult,
    TokenValidation,
    format_timestamp,
    parse_credential,
    parse_timestamp,
    utc_now,
)

lib_logger = logging.getLogger("claude_usage_core")

# Proactive refresh window used by the usage path
REFRESH_LEAD_MINUTES = 5

_INVALID = TokenValidation(
    is_valid=False, is_expired=False, expires_at=None, minutes_until_expiry=None
)


def validate_token(credentials: str) -> TokenValidation:
    """
    Inspects an OAuth blob for expiry without touching the network.

    A blob that is not JSON, is not OAuth-shaped, or carries no parseable
    expiry yields an all-null/False result; nothing here raises.
    """
    try:
        credential = parse_credential(credentials, account_type="oauth")
    except ValueError:
        return _INVALID

    expires_at = parse_timestamp(credential.expires_at)
    if expires_at is None:
        return _INVALID

    remaining = (expires_at - utc_now()).total_seconds()
    is_expired = remaining <= 0
    return TokenValidation(
        is_valid=not is_expired,
        is_expired=is_expired,
        expires_at=expires_at,
        minutes_until_expiry=math.floor(remaining / 60),
    )


def needs_refresh(credentials: str, lead_minutes: int = REFRESH_LEAD_MINUTES) -> bool:
    """True when the token is expired or expires within `lead_minutes`."""
    validation = validate_token(credentials)
    if validation.expires_at is None:
        return False
    return validation.is_expired or validation.minutes_until_expiry < lead_minutes


async def refresh_token(
    credentials: str,
    token_url: str = OAUTH_TOKEN_URL,
    client_id: str = OAUTH_CLIENT_ID,
    timeout: float = 30.0,
) -> RefreshResult:
    """
    Exchanges the stored refresh token for a fresh access token.

    Failures are reported in the result, never raised. Fields of the old blob
    other than the token triple are carried into the new one, and the old
    refresh token is kept if the server does not rotate it.

    Args:
        credentials: Serialized OAuth credential blob
        token_url: OAuth token endpoint
        client_id: OAuth client id
        timeout: HTTP timeout in seconds

    Returns:
        RefreshResult with the new blob on success, or an error string
    """
    try:
        credential = parse_credential(credentials, account_type="oauth")
    except ValueError as e:
        return RefreshResult(success=False, error=f"Invalid credentials: {e}")

    if not credential.refresh_token:
        return RefreshResult(success=False, error="No refresh token")

    payload = {
        "grant_type": "refresh_token",
        "refresh_token": credential.refresh_token,
        "client_id": client_id,
    }
    lib_logger.debug(
        f"Refreshing OAuth token {mask_credential(credential.access_token)}"
    )

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(token_url, json=payload)
    except httpx.RequestError as e:
        lib_logger.warning(f"Token refresh request failed: {e}")
        return RefreshResult(success=False, error=f"Refresh request failed: {e}")

    if not response.is_success:
        error = f"HTTP {response.status_code}: {response.text}".strip()
        lib_logger.warning(f"Token refresh rejected: {error}")
        return RefreshResult(success=False, error=error)

    try:
        token_data = response.json()
        access_token = token_data.get("access_token")
        expires_in = token_data.get("expires_in")
        expires_in = DEFAULT_EXPIRES_IN if expires_in is None else int(expires_in)
    except (ValueError, TypeError, AttributeError) as e:
        lib_logger.warning(f"Token refresh returned an unusable body: {e}")
        return RefreshResult(success=False, error=f"Invalid token response: {e}")

    if not access_token:
        return RefreshResult(success=False, error="Missing access_token in refresh response")

    refreshed = OAuthCredential(
        access_token=access_token,
        refresh_token=token_data.get("refresh_token") or credential.refresh_token,
        expires_at=format_timestamp(utc_now() + timedelta(seconds=expires_in)),
        extra=credential.extra,
    )
    lib_logger.info(f"OAuth token refreshed, expires in {expires_in}s")
    return RefreshResult(success=True, new_credentials=refreshed.to_blob())
