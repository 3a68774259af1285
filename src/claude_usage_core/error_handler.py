# src/claude_usage_core/error_handler.py

import json
import logging
from typing import Optional

import httpx

lib_logger = logging.getLogger("claude_usage_core")


class ClaudeUsageError(Exception):
    """Base class for every error raised by this library."""

    pass


class AccountNotFoundError(ClaudeUsageError):
    """Raised when an account lookup by name misses."""

    def __init__(self, account_name: str):
        self.account_name = account_name
        super().__init__(f"Account not found: {account_name}")


class AccountExistsError(ClaudeUsageError):
    """Raised when a rename would collide with an existing account name."""

    def __init__(self, account_name: str):
        self.account_name = account_name
        super().__init__(f"Account already exists: {account_name}")


class StorageError(ClaudeUsageError):
    """
    Raised when the encrypted account store cannot be read or written.

    A missing store file is NOT an error (it loads as an empty store);
    everything else (bad ciphertext, failed tag check, malformed payload,
    unwritable directory) surfaces as this exception.
    """

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Storage error: {detail}")


class DecryptError(ClaudeUsageError):
    """Raised when an envelope fails to decode, split or authenticate."""

    pass


class AuthenticationError(ClaudeUsageError):
    """
    Raised for OAuth flow failures, admin key rejections and HTTP 401s.

    Attributes:
        status_code: HTTP status when the failure came from a response, else None
    """

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        self.status_code = status_code
        if not message:
            message = (
                f"Authentication failed (HTTP {status_code})"
                if status_code is not None
                else "Authentication failed"
            )
        super().__init__(message)


class ApiError(ClaudeUsageError):
    """Raised for non-auth HTTP failures from the remote usage/admin APIs."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def mask_credential(credential: str) -> str:
    """
    Masks a token or API key for safe display in logs.

    Keeps the first 8 and last 4 characters for long values so two keys can
    still be told apart, and hides short values completely.
    """
    if not credential:
        return "<empty>"
    if len(credential) <= 16:
        return "****"
    return f"{credential[:8]}...{credential[-4:]}"


def extract_error_message(response: httpx.Response) -> str:
    """
    Pulls a human-readable message out of an API error response.

    Handles the `{"error": {"message": ...}}` envelope used by the API,
    OAuth-style `{"error": ..., "error_description": ...}` bodies, and falls
    back to the raw text.
    """
    try:
        body = response.json()
    except (json.JSONDecodeError, ValueError):
        return response.text.strip()

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if body.get("error_description"):
            return str(body["error_description"])
        if isinstance(error, str) and error:
            return error
        if body.get("message"):
            return str(body["message"])
    return response.text.strip()


def raise_for_api_status(response: httpx.Response, label: str = "API") -> None:
    """
    Translates a non-2xx response into the library's exception types.

    401 becomes AuthenticationError so callers can trigger a refresh-and-retry;
    everything else becomes ApiError with the server's message when present.
    """
    if response.is_success:
        return

    status_code = response.status_code
    if status_code == 401:
        raise AuthenticationError(status_code=401)

    detail = extract_error_message(response) or response.reason_phrase or ""
    lib_logger.debug(f"{label} request failed with HTTP {status_code}: {detail}")
    raise ApiError(
        f"{label} error: {status_code} {detail}".strip(), status_code=status_code
    )
