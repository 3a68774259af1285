# src/claude_usage_core/account_store.py

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional, Union

from .crypto_box import CryptoBox
from .error_handler import (
    AccountExistsError,
    AccountNotFoundError,
    DecryptError,
    StorageError,
)
from .models import (
    AccountsData,
    AccountType,
    SavedAccount,
    format_timestamp,
    infer_account_type,
    utc_now,
)
from .utils.resilient_io import safe_read_text, safe_write_text

lib_logger = logging.getLogger("claude_usage_core")


class AccountStore:
    """
    Encrypted, single-file persistence for named accounts.

    The whole AccountsData document is loaded, mutated in memory, re-encrypted
    and rewritten on every change. Mutations are serialized with an
    asyncio.Lock so concurrent writers inside one process (for example
    parallel token refreshes) never lose each other's updates. Nothing
    coordinates across processes.
    """

    def __init__(
        self,
        file_path: Union[str, Path],
        crypto_box: Optional[CryptoBox] = None,
    ):
        self.file_path = Path(file_path)
        self._crypto = crypto_box or CryptoBox()
        self._write_lock = asyncio.Lock()

    async def load(self) -> AccountsData:
        """
        Reads, decrypts and parses the store.

        Returns:
            The stored document, or an empty one if the file does not exist

        Raises:
            StorageError: For every other failure (unreadable file, bad
                ciphertext, tag mismatch, malformed JSON)
        """
        try:
            raw = safe_read_text(self.file_path)
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(f"Failed to load accounts: {e}") from e

        if raw is None:
            lib_logger.debug(f"No account store at '{self.file_path}', starting empty")
            return AccountsData()

        try:
            plaintext = self._crypto.decrypt(raw.strip())
            return AccountsData.from_dict(json.loads(plaintext))
        except DecryptError as e:
            raise StorageError(f"Failed to load accounts: {e}") from e
        except (json.JSONDecodeError, ValueError, KeyError, TypeError) as e:
            raise StorageError(f"Failed to load accounts: malformed payload ({e})") from e

    async def _save(self, data: AccountsData) -> None:
        try:
            envelope = self._crypto.encrypt(
                json.dumps(data.to_dict(), separators=(",", ":"))
            )
        except Exception as e:
            raise StorageError(f"Failed to save accounts: {e}") from e

        if not safe_write_text(
            self.file_path, envelope, lib_logger, secure_permissions=True
        ):
            raise StorageError(f"Failed to save accounts to '{self.file_path}'")

    async def save_account(
        self,
        name: str,
        credentials: str,
        email: Optional[str] = None,
        account_type: Optional[AccountType] = None,
    ) -> None:
        """
        Upserts an account by name.

        An existing entry is replaced in place (its position is kept). Email
        and account type that were recorded earlier survive when not
        re-supplied, e.g. when only refreshed credentials are written back.
        """
        async with self._write_lock:
            data = await self.load()
            index = data.index_of(name)
            existing = data.accounts[index] if index >= 0 else None

            if account_type is None:
                account_type = (
                    existing.account_type
                    if existing
                    else infer_account_type(credentials)
                )

            account = SavedAccount(
                name=name,
                credentials=credentials,
                saved_at=format_timestamp(utc_now()),
                email=email or (existing.email if existing else None),
                account_type=account_type,
            )
            if existing:
                data.accounts[index] = account
                lib_logger.debug(f"Updated stored account '{name}'")
            else:
                data.accounts.append(account)
                lib_logger.debug(f"Added stored account '{name}'")
            await self._save(data)

    async def delete_account(self, name: str) -> bool:
        """
        Removes an account, clearing the active pointer if it referenced it.

        Returns:
            False if no account has that name (nothing is written)
        """
        async with self._write_lock:
            data = await self.load()
            index = data.index_of(name)
            if index < 0:
                return False
            del data.accounts[index]
            if data.active_account_name == name:
                data.active_account_name = None
            await self._save(data)
            lib_logger.debug(f"Deleted stored account '{name}'")
            return True

    async def rename_account(self, old_name: str, new_name: str) -> bool:
        """
        Renames an account in place, following the active pointer.

        Returns:
            False if `old_name` does not exist

        Raises:
            AccountExistsError: If `new_name` is already taken
        """
        async with self._write_lock:
            data = await self.load()
            account = data.find(old_name)
            if account is None:
                return False
            if old_name == new_name:
                return True
            if data.find(new_name) is not None:
                raise AccountExistsError(new_name)
            account.name = new_name
            if data.active_account_name == old_name:
                data.active_account_name = new_name
            await self._save(data)
            lib_logger.debug(f"Renamed stored account '{old_name}' -> '{new_name}'")
            return True

    async def set_active_account(self, name: Optional[str]) -> None:
        """Points the active marker at `name`, or clears it with None."""
        async with self._write_lock:
            data = await self.load()
            if name is not None and data.find(name) is None:
                raise AccountNotFoundError(name)
            data.active_account_name = name
            await self._save(data)
