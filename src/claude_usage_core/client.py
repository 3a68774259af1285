# src/claude_usage_core/client.py

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .account_store import AccountStore
from .admin_api import (
    fetch_cost_report,
    fetch_messages_usage,
    probe_admin_key,
    transform_cost_report,
    transform_messages_usage,
    validate_admin_key_format,
)
from .auth_flow import (
    DEFAULT_AUTH_TIMEOUT,
    DEFAULT_BETA_VERSION,
    AuthorizationFlow,
    BrowserOpener,
)
from .crypto_box import CryptoBox
from .error_handler import (
    AccountNotFoundError,
    AuthenticationError,
    ClaudeUsageError,
)
from .models import (
    AccountInfo,
    AccountUsage,
    AdminAccountUsage,
    AdminCredential,
    OAuthCredential,
    RefreshResult,
    SavedAccount,
    UsageResult,
    parse_credential,
    parse_timestamp,
)
from .secret_store import CredentialReader, create_credential_reader
from .tokens import REFRESH_LEAD_MINUTES, needs_refresh, refresh_token, validate_token
from .usage_api import fetch_account_email, fetch_usage, transform_usage_data
from .utils.paths import get_default_storage_path
from .utils.reauth_coordinator import ReauthCoordinator

lib_logger = logging.getLogger("claude_usage_core")
lib_logger.propagate = False

TOKEN_EXPIRED_ERROR = "Token expired — refresh failed"
AUTH_FAILED_ERROR = "Authentication failed"
NO_ACCESS_TOKEN_ERROR = "No access token"


def _access_token(credentials: Optional[str]) -> Optional[str]:
    if not credentials:
        return None
    try:
        credential = parse_credential(credentials, account_type="oauth")
    except ValueError:
        return None
    return credential.access_token


class ClaudeUsageClient:
    """
    Manages named accounts and fetches their usage.

    Accounts are either OAuth accounts (browser authorization, refreshable
    tokens, per-user rate-limit windows) or admin accounts (a static
    organization admin key, organization-wide usage reports). All account
    state lives in one encrypted store file.

    Usage fetches never raise per account: every failure ends up in the
    result's `error` field, so one broken account cannot hide the others.
    Account management calls raise on failure.
    """

    def __init__(
        self,
        storage_path: Optional[Union[str, Path]] = None,
        beta_version: str = DEFAULT_BETA_VERSION,
        platform: str = "auto",
        auth_timeout: float = DEFAULT_AUTH_TIMEOUT,
        http_timeout: float = 30.0,
        credential_reader: Optional[CredentialReader] = None,
        crypto_box: Optional[CryptoBox] = None,
        browser_opener: Optional[BrowserOpener] = None,
        configure_logging: bool = True,
    ):
        """
        Args:
            storage_path: Encrypted store file. Defaults to ~/.claude-usage/accounts.enc
            beta_version: Value of the `anthropic-beta` header for OAuth endpoints
            platform: Secret-store platform: "auto", "macos", "linux" or "windows"
            auth_timeout: Seconds to wait for the browser authorization callback
            http_timeout: Timeout in seconds for every outbound HTTP request
            credential_reader: Overrides the platform secret-store reader
            crypto_box: Overrides the machine-keyed store encryption
            browser_opener: Receives the authorization URL instead of the
                default rich panel + system browser
            configure_logging: Whether to configure library logging
        """
        if configure_logging:
            # Let the host application's handlers and levels decide
            lib_logger.propagate = True
            if lib_logger.hasHandlers():
                lib_logger.handlers.clear()
                lib_logger.addHandler(logging.NullHandler())
        else:
            lib_logger.propagate = False

        self.storage_path = Path(storage_path) if storage_path else get_default_storage_path()
        self.beta_version = beta_version
        self.platform = platform
        self.auth_timeout = auth_timeout
        self.http_timeout = http_timeout

        self._store = AccountStore(self.storage_path, crypto_box=crypto_box)
        self._credential_reader = credential_reader or create_credential_reader(platform)
        self._auth_flow = AuthorizationFlow(
            beta_version=beta_version, http_timeout=http_timeout
        )
        self._browser_opener = browser_opener
        self._reauth = ReauthCoordinator()

    @property
    def store(self) -> AccountStore:
        return self._store

    # =========================================================================
    # SYSTEM CREDENTIALS
    # =========================================================================

    async def get_system_token(self) -> Optional[str]:
        """Returns the access token the desktop CLI has stored, or None."""
        raw = await self._credential_reader.read()
        if not raw:
            return None
        try:
            credential = parse_credential(raw, account_type="oauth")
        except ValueError as e:
            lib_logger.debug(f"System credentials are not usable: {e}")
            return None
        return credential.access_token

    # =========================================================================
    # ACCOUNT MANAGEMENT
    # =========================================================================

    async def list_accounts(self) -> List[AccountInfo]:
        data = await self._store.load()
        return [
            AccountInfo(
                name=account.name,
                email=account.email,
                account_type=account.account_type,
                is_active=account.name == data.active_account_name,
                saved_at=parse_timestamp(account.saved_at),
            )
            for account in data.accounts
        ]

    async def _get_account(self, name: str) -> SavedAccount:
        data = await self._store.load()
        account = data.find(name)
        if account is None:
            raise AccountNotFoundError(name)
        return account

    async def _run_authorization(self, name: str, require_long_lived: bool) -> str:
        async def _authorize() -> str:
            return await self._auth_flow.authorize(
                timeout=self.auth_timeout,
                opener=self._browser_opener,
                require_long_lived=require_long_lived,
            )

        return await self._reauth.execute(name, _authorize)

    async def authenticate(self, name: str, require_long_lived: bool = False) -> None:
        """
        Runs the browser authorization flow and stores the result as `name`.

        An existing account with the same name is replaced in place.

        Raises:
            AuthenticationError: If the flow fails or times out
            StorageError: If the store cannot be written
        """
        credentials = await self._run_authorization(name, require_long_lived)
        email = await fetch_account_email(
            _access_token(credentials), self.beta_version, self.http_timeout
        )
        await self._store.save_account(
            name, credentials, email=email, account_type="oauth"
        )
        lib_logger.info(f"Authenticated account '{name}'" + (f" ({email})" if email else ""))

    async def save_account(self, name: str, credentials: Optional[str] = None) -> None:
        """
        Stores a credential blob under `name`.

        Args:
            name: Account name (an existing account is replaced in place)
            credentials: Serialized credential blob; defaults to what the
                desktop CLI has in the platform secret store

        Raises:
            ClaudeUsageError: If no credentials are available or the blob is unusable
        """
        if credentials is None:
            credentials = await self._credential_reader.read()
        if not credentials:
            raise ClaudeUsageError("No credentials available to save")

        try:
            credential = parse_credential(credentials)
        except ValueError as e:
            raise ClaudeUsageError(f"Invalid credentials: {e}") from e

        email = None
        if isinstance(credential, OAuthCredential):
            email = await fetch_account_email(
                credential.access_token, self.beta_version, self.http_timeout
            )

        await self._store.save_account(
            name, credentials, email=email, account_type=credential.account_type
        )
        lib_logger.info(f"Saved {credential.account_type} account '{name}'")

    async def save_admin_account(self, name: str, api_key: str) -> None:
        """
        Verifies an organization admin key and stores it under `name`.

        The key prefix is checked locally first; a key that passes is probed
        with one usage report request, and nothing is stored unless the probe
        succeeds.

        Raises:
            AuthenticationError: Bad prefix, or the key was rejected
            ApiError: The probe failed for another reason
        """
        validate_admin_key_format(api_key)
        api_key = api_key.strip()
        await probe_admin_key(api_key, timeout=self.http_timeout)
        await self._store.save_account(
            name, AdminCredential(api_key=api_key).to_blob(), account_type="admin"
        )
        lib_logger.info(f"Saved admin account '{name}'")

    async def switch_account(self, name: str) -> None:
        """Marks `name` as the active account. Raises AccountNotFoundError."""
        await self._store.set_active_account(name)

    async def delete_account(self, name: str) -> None:
        if not await self._store.delete_account(name):
            raise AccountNotFoundError(name)
        lib_logger.info(f"Deleted account '{name}'")

    async def rename_account(self, old_name: str, new_name: str) -> None:
        """
        Raises:
            AccountNotFoundError: If `old_name` does not exist
            AccountExistsError: If `new_name` is taken
        """
        if not await self._store.rename_account(old_name, new_name):
            raise AccountNotFoundError(old_name)

    async def refresh_token(self, name: str, require_long_lived: bool = False) -> None:
        """
        Re-authorizes an existing OAuth account through the browser.

        Raises:
            AccountNotFoundError: Unknown account
            ClaudeUsageError: The account holds an admin key
            AuthenticationError: The flow failed
        """
        account = await self._get_account(name)
        if account.account_type == "admin":
            raise ClaudeUsageError(
                f"Account '{name}' uses an admin API key, which cannot be re-authorized"
            )
        credentials = await self._run_authorization(name, require_long_lived)
        await self._store.save_account(name, credentials, account_type="oauth")
        lib_logger.info(f"Re-authorized account '{name}'")

    def get_auth_status(self) -> Dict[str, Any]:
        """Status of interactive authorizations (current, queued, counts)."""
        return self._reauth.get_status()

    # =========================================================================
    # TOKEN MAINTENANCE
    # =========================================================================

    async def _refresh_and_store(self, name: str, credentials: str) -> RefreshResult:
        result = await refresh_token(credentials, timeout=self.http_timeout)
        if result.success and result.new_credentials:
            await self._store.save_account(name, result.new_credentials)
            lib_logger.info(f"Refreshed token for account '{name}'")
        else:
            lib_logger.warning(f"Token refresh failed for account '{name}': {result.error}")
        return result

    async def refresh_expiring_tokens(
        self, lead_minutes: int = REFRESH_LEAD_MINUTES
    ) -> Dict[str, RefreshResult]:
        """
        Refreshes every OAuth account that is expired or within `lead_minutes`
        of expiry. Non-interactive; never opens a browser.

        Returns:
            Refresh outcome per account name, for the accounts that were due
        """
        data = await self._store.load()
        due = [
            account
            for account in data.accounts
            if account.account_type == "oauth"
            and needs_refresh(account.credentials, lead_minutes)
        ]
        if not due:
            return {}

        lib_logger.info(f"Proactively refreshing {len(due)} account(s)")
        results = await asyncio.gather(
            *(self._refresh_and_store(a.name, a.credentials) for a in due),
            return_exceptions=True,
        )

        outcomes: Dict[str, RefreshResult] = {}
        for account, result in zip(due, results):
            if isinstance(result, Exception):
                lib_logger.error(f"Refresh for '{account.name}' raised: {result}")
                result = RefreshResult(success=False, error=str(result))
            outcomes[account.name] = result
        return outcomes

    # =========================================================================
    # USAGE
    # =========================================================================

    async def get_account_usage(self, name: str) -> UsageResult:
        """Raises AccountNotFoundError; every other failure is in `error`."""
        account = await self._get_account(name)
        return await self._fetch_account_usage(account)

    async def get_all_accounts_usage(self) -> List[UsageResult]:
        """
        Fetches usage for every stored account concurrently.

        Returns:
            One result per account, in store order
        """
        data = await self._store.load()
        tasks = [self._fetch_account_usage(account) for account in data.accounts]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        usage: List[UsageResult] = []
        for account, result in zip(data.accounts, results):
            if isinstance(result, Exception):
                lib_logger.error(f"Usage fetch for '{account.name}' raised: {result}")
                result = self._error_result(account, str(result))
            usage.append(result)
        return usage

    def _error_result(self, account: SavedAccount, error: str) -> UsageResult:
        if account.account_type == "admin":
            return AdminAccountUsage(
                account_name=account.name, email=account.email, error=error
            )
        return AccountUsage(account_name=account.name, email=account.email, error=error)

    async def _fetch_account_usage(self, account: SavedAccount) -> UsageResult:
        if account.account_type == "admin":
            return await self._fetch_admin_usage(account)
        return await self._fetch_oauth_usage(account)

    async def _fetch_oauth_usage(self, account: SavedAccount) -> AccountUsage:
        """
        Expired -> refresh or fail; under 5 minutes left -> best-effort
        refresh; then fetch. A 401 gets exactly one refresh-and-retry.
        """
        name, email = account.name, account.email
        credentials = account.credentials

        try:
            validation = validate_token(credentials)
            if validation.is_expired:
                lib_logger.info(f"Token for '{name}' has expired, refreshing")
                refreshed = await self._refresh_and_store(name, credentials)
                if not refreshed.success:
                    return AccountUsage(account_name=name, email=email, error=TOKEN_EXPIRED_ERROR)
                credentials = refreshed.new_credentials
            elif (
                validation.minutes_until_expiry is not None
                and validation.minutes_until_expiry < REFRESH_LEAD_MINUTES
            ):
                refreshed = await self._refresh_and_store(name, credentials)
                if refreshed.success:
                    credentials = refreshed.new_credentials

            access_token = _access_token(credentials)
            if not access_token:
                return AccountUsage(account_name=name, email=email, error=NO_ACCESS_TOKEN_ERROR)

            try:
                payload = await fetch_usage(access_token, self.beta_version, self.http_timeout)
            except AuthenticationError:
                lib_logger.info(f"Usage request for '{name}' got 401, refreshing once")
                refreshed = await self._refresh_and_store(name, credentials)
                retry_token = _access_token(refreshed.new_credentials) if refreshed.success else None
                if not retry_token:
                    return AccountUsage(account_name=name, email=email, error=AUTH_FAILED_ERROR)
                try:
                    payload = await fetch_usage(retry_token, self.beta_version, self.http_timeout)
                except AuthenticationError:
                    return AccountUsage(account_name=name, email=email, error=AUTH_FAILED_ERROR)

            return AccountUsage(account_name=name, email=email, **transform_usage_data(payload))

        except Exception as e:
            lib_logger.warning(f"Usage fetch for '{name}' failed: {e}")
            return AccountUsage(account_name=name, email=email, error=str(e))

    async def _fetch_admin_usage(self, account: SavedAccount) -> AdminAccountUsage:
        name, email = account.name, account.email
        try:
            credential = parse_credential(account.credentials, account_type="admin")
            buckets = await fetch_messages_usage(credential.api_key, timeout=self.http_timeout)

            cost_cents = None
            try:
                cost_cents = transform_cost_report(
                    await fetch_cost_report(credential.api_key, timeout=self.http_timeout)
                )
            except Exception as e:
                lib_logger.debug(f"Cost report for '{name}' unavailable: {e}")

            return AdminAccountUsage(
                email=email,
                cost_cents=cost_cents,
                **transform_messages_usage(buckets, name),
            )
        except AuthenticationError:
            return AdminAccountUsage(account_name=name, email=email, error=AUTH_FAILED_ERROR)
        except Exception as e:
            lib_logger.warning(f"Admin usage fetch for '{name}' failed: {e}")
            return AdminAccountUsage(account_name=name, email=email, error=str(e))
