# src/claude_usage_core/models.py

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

# Admin keys are issued with this prefix; anything else is rejected locally.
ADMIN_KEY_PREFIX = "sk-ant-admin"

OAUTH_BLOB_KEY = "claudeAiOauth"
ADMIN_BLOB_KEY = "adminApiKey"

AccountType = Literal["oauth", "admin"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parses an expiry/reset timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (with or without a trailing 'Z') and numeric
    epoch values. Numbers above 1e12 are treated as milliseconds, which is
    what the desktop CLI writes into its credentials file.

    Returns:
        The parsed datetime, or None if the value is empty or unparseable.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        text = value.strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            try:
                return parse_timestamp(float(text))
            except ValueError:
                return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    return None


def format_timestamp(value: datetime) -> str:
    """Formats an aware datetime as ISO-8601 with a 'Z' suffix and millisecond precision."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


# =============================================================================
# CREDENTIALS
# =============================================================================


@dataclass
class OAuthCredential:
    """OAuth bearer credential with its refresh token and expiry."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[str] = None
    # Fields written by other tools (scopes, subscriptionType, ...) survive a refresh
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    account_type: AccountType = field(default="oauth", init=False)

    def to_blob(self) -> str:
        payload = dict(self.extra)
        payload["accessToken"] = self.access_token
        payload["refreshToken"] = self.refresh_token
        payload["expiresAt"] = self.expires_at
        return json.dumps({OAUTH_BLOB_KEY: payload}, separators=(",", ":"))


@dataclass
class AdminCredential:
    """Static, non-expiring organization admin API key."""

    api_key: str

    account_type: AccountType = field(default="admin", init=False)

    def to_blob(self) -> str:
        return json.dumps({ADMIN_BLOB_KEY: self.api_key}, separators=(",", ":"))


Credential = Union[OAuthCredential, AdminCredential]


def parse_credential(
    blob: str, account_type: Optional[AccountType] = None
) -> Credential:
    """
    Parses a serialized credential blob into its tagged variant.

    When `account_type` is known (from account metadata) it decides the
    variant. Otherwise the shape decides: an `adminApiKey` field means admin,
    and an OAuth-shaped blob whose access token carries the admin prefix but
    no refresh token is also read as admin.

    Raises:
        ValueError: If the blob is not JSON or has neither shape.
    """
    try:
        data = json.loads(blob)
    except (json.JSONDecodeError, TypeError) as e:
        raise ValueError(f"Credential blob is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Credential blob must be a JSON object")

    oauth = data.get(OAUTH_BLOB_KEY)
    admin_key = data.get(ADMIN_BLOB_KEY)

    if account_type == "admin" or (account_type is None and admin_key):
        if admin_key:
            return AdminCredential(api_key=admin_key)
        if isinstance(oauth, dict) and oauth.get("accessToken"):
            return AdminCredential(api_key=oauth["accessToken"])
        raise ValueError("Admin credential blob has no API key")

    if not isinstance(oauth, dict) or not oauth.get("accessToken"):
        raise ValueError("Credential blob has no OAuth access token")

    access_token = oauth["accessToken"]
    refresh_token = oauth.get("refreshToken") or None
    if (
        account_type is None
        and refresh_token is None
        and access_token.startswith(ADMIN_KEY_PREFIX)
    ):
        return AdminCredential(api_key=access_token)

    expires_at = oauth.get("expiresAt")
    extra = {
        k: v
        for k, v in oauth.items()
        if k not in ("accessToken", "refreshToken", "expiresAt")
    }
    return OAuthCredential(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at,
        extra=extra,
    )


def infer_account_type(blob: str) -> AccountType:
    """Returns the variant tag for a blob, defaulting to 'oauth' when unparseable."""
    try:
        return parse_credential(blob).account_type
    except ValueError:
        return "oauth"


# =============================================================================
# PERSISTED STATE
# =============================================================================


@dataclass
class SavedAccount:
    """One entry of the encrypted store."""

    name: str
    credentials: str
    saved_at: str
    email: Optional[str] = None
    account_type: AccountType = "oauth"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "accountType": self.account_type,
            "credentials": self.credentials,
            "savedAt": self.saved_at,
        }
        if self.email:
            data["email"] = self.email
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SavedAccount":
        credentials = data["credentials"]
        account_type = data.get("accountType") or infer_account_type(credentials)
        return SavedAccount(
            name=data["name"],
            credentials=credentials,
            saved_at=data.get("savedAt") or format_timestamp(utc_now()),
            email=data.get("email") or None,
            account_type=account_type,
        )


@dataclass
class AccountsData:
    """The whole persisted document: ordered accounts plus the active pointer."""

    accounts: List[SavedAccount] = field(default_factory=list)
    active_account_name: Optional[str] = None

    def find(self, name: str) -> Optional[SavedAccount]:
        for account in self.accounts:
            if account.name == name:
                return account
        return None

    def index_of(self, name: str) -> int:
        for i, account in enumerate(self.accounts):
            if account.name == name:
                return i
        return -1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accounts": [a.to_dict() for a in self.accounts],
            "activeAccountName": self.active_account_name,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "AccountsData":
        if not isinstance(data, dict) or not isinstance(data.get("accounts"), list):
            raise ValueError("Accounts payload must contain an 'accounts' list")
        accounts = [SavedAccount.from_dict(a) for a in data["accounts"]]
        active = data.get("activeAccountName")
        if active is not None and not any(a.name == active for a in accounts):
            active = None
        return AccountsData(accounts=accounts, active_account_name=active)


@dataclass(frozen=True)
class AccountInfo:
    """Public listing view of a stored account (never exposes credentials)."""

    name: str
    email: Optional[str]
    account_type: AccountType
    is_active: bool
    saved_at: Optional[datetime]


# =============================================================================
# TOKEN LIFECYCLE RESULTS
# =============================================================================


@dataclass(frozen=True)
class TokenValidation:
    is_valid: bool
    is_expired: bool
    expires_at: Optional[datetime]
    minutes_until_expiry: Optional[int]


@dataclass(frozen=True)
class RefreshResult:
    success: bool
    new_credentials: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class PKCEPair:
    code_verifier: str
    code_challenge: str


# =============================================================================
# USAGE RESULTS
# =============================================================================


@dataclass(frozen=True)
class UsageWindow:
    percent: float
    resets_at: Optional[datetime]


@dataclass(frozen=True)
class ExtraUsage:
    is_enabled: bool = False
    monthly_limit: Optional[float] = None
    used_credits: Optional[float] = None
    utilization: Optional[float] = None


@dataclass
class AccountUsage:
    """Usage for an OAuth account. `error` is set instead of raising."""

    account_name: str
    email: Optional[str] = None
    session: UsageWindow = field(default_factory=lambda: UsageWindow(0, None))
    weekly: UsageWindow = field(default_factory=lambda: UsageWindow(0, None))
    opus: Optional[UsageWindow] = None
    sonnet: Optional[UsageWindow] = None
    extra_usage: ExtraUsage = field(default_factory=ExtraUsage)
    error: Optional[str] = None

    account_type: AccountType = field(default="oauth", init=False)


@dataclass
class ModelUsage:
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    def add(self, input_tokens: int, output_tokens: int, cache_creation: int, cache_read: int):
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.cache_creation_tokens += cache_creation
        self.cache_read_tokens += cache_read


@dataclass
class ActorUsage:
    actor_type: str
    actor_name: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    model_breakdown: List[ModelUsage] = field(default_factory=list)


@dataclass
class AdminAccountUsage:
    """Organization usage for an admin-key account. `error` is set instead of raising."""

    account_name: str
    email: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost_cents: Optional[float] = None
    model_breakdown: List[ModelUsage] = field(default_factory=list)
    actors: List[ActorUsage] = field(default_factory=list)
    error: Optional[str] = None

    account_type: AccountType = field(default="admin", init=False)


UsageResult = Union[AccountUsage, AdminAccountUsage]
