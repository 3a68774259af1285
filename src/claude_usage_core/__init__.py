from .client import ClaudeUsageClient
from .account_store import AccountStore
from .auth_flow import AuthorizationFlow, OAuthCallbackServer, generate_pkce
from .background_refresher import BackgroundRefresher
from .crypto_box import CryptoBox
from .error_handler import (
    ClaudeUsageError,
    AccountNotFoundError,
    AccountExistsError,
    StorageError,
    DecryptError,
    AuthenticationError,
    ApiError,
)
from .models import (
    AccountInfo,
    AccountUsage,
    AdminAccountUsage,
    AdminCredential,
    ActorUsage,
    ExtraUsage,
    ModelUsage,
    OAuthCredential,
    RefreshResult,
    TokenValidation,
    UsageWindow,
)
from .secret_store import CredentialReader, create_credential_reader
from .tokens import refresh_token, validate_token

__all__ = [
    "ClaudeUsageClient",
    "AccountStore",
    "AuthorizationFlow",
    "OAuthCallbackServer",
    "generate_pkce",
    "BackgroundRefresher",
    "CryptoBox",
    "ClaudeUsageError",
    "AccountNotFoundError",
    "AccountExistsError",
    "StorageError",
    "DecryptError",
    "AuthenticationError",
    "ApiError",
    "AccountInfo",
    "AccountUsage",
    "AdminAccountUsage",
    "AdminCredential",
    "ActorUsage",
    "ExtraUsage",
    "ModelUsage",
    "OAuthCredential",
    "RefreshResult",
    "TokenValidation",
    "UsageWindow",
    "CredentialReader",
    "create_credential_reader",
    "refresh_token",
    "validate_token",
]
