"""
Tests for the encrypted single-file account store.
"""
import asyncio
import json
import os
import sys

import pytest

from claude_usage_core.account_store import AccountStore
from claude_usage_core.error_handler import (
    AccountExistsError,
    AccountNotFoundError,
    StorageError,
)
from claude_usage_core.models import AccountsData


@pytest.fixture
def store(store_path, crypto_box):
    return AccountStore(store_path, crypto_box=crypto_box)


class TestLoad:
    @pytest.mark.asyncio
    async def test_missing_file_is_empty_store(self, store):
        data = await store.load()
        assert data.accounts == []
        assert data.active_account_name is None
        assert not store.file_path.exists()

    @pytest.mark.asyncio
    async def test_corrupt_ciphertext_raises(self, store):
        store.file_path.parent.mkdir(parents=True)
        store.file_path.write_text("definitely not an envelope")
        with pytest.raises(StorageError):
            await store.load()

    @pytest.mark.asyncio
    async def test_malformed_payload_raises(self, store, crypto_box):
        store.file_path.parent.mkdir(parents=True)
        store.file_path.write_text(crypto_box.encrypt('{"no_accounts": true}'))
        with pytest.raises(StorageError, match="malformed"):
            await store.load()

    @pytest.mark.asyncio
    async def test_file_is_encrypted_on_disk(self, store, oauth_blob):
        await store.save_account("Work", oauth_blob(access_token="very-secret-token"))
        raw = store.file_path.read_text()
        assert "very-secret-token" not in raw
        assert "Work" not in raw

    @pytest.mark.asyncio
    async def test_on_disk_document_is_camel_case(self, store, crypto_box, oauth_blob):
        await store.save_account("Work", oauth_blob(), email="me@example.com")
        await store.set_active_account("Work")
        document = json.loads(crypto_box.decrypt(store.file_path.read_text()))
        assert document["activeAccountName"] == "Work"
        entry = document["accounts"][0]
        assert set(entry) == {"name", "email", "accountType", "credentials", "savedAt"}
        assert entry["accountType"] == "oauth"


class TestSaveAccount:
    @pytest.mark.asyncio
    async def test_creates_parent_directory(self, store, oauth_blob):
        assert not store.file_path.parent.exists()
        await store.save_account("Work", oauth_blob())
        assert store.file_path.exists()

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    @pytest.mark.asyncio
    async def test_store_file_is_private(self, store, oauth_blob):
        await store.save_account("Work", oauth_blob())
        assert os.stat(store.file_path).st_mode & 0o777 == 0o600

    @pytest.mark.asyncio
    async def test_upsert_replaces_in_place(self, store, oauth_blob):
        await store.save_account("A", oauth_blob(access_token="a1"))
        await store.save_account("B", oauth_blob(access_token="b1"))
        await store.save_account("A", oauth_blob(access_token="a2"))

        data = await store.load()
        assert [a.name for a in data.accounts] == ["A", "B"]
        assert "a2" in data.find("A").credentials

    @pytest.mark.asyncio
    async def test_upsert_preserves_email_and_type(self, store, oauth_blob):
        await store.save_account("A", oauth_blob(), email="a@example.com", account_type="oauth")
        await store.save_account("A", oauth_blob(access_token="refreshed"))

        account = (await store.load()).find("A")
        assert account.email == "a@example.com"
        assert account.account_type == "oauth"
        assert "refreshed" in account.credentials

    @pytest.mark.asyncio
    async def test_account_type_inferred_from_blob(self, store):
        await store.save_account("Org", json.dumps({"adminApiKey": "sk-ant-admin01-abc"}))
        assert (await store.load()).find("Org").account_type == "admin"

    @pytest.mark.asyncio
    async def test_names_are_case_sensitive(self, store, oauth_blob):
        await store.save_account("work", oauth_blob())
        await store.save_account("Work", oauth_blob())
        assert len((await store.load()).accounts) == 2

    @pytest.mark.asyncio
    async def test_concurrent_saves_do_not_lose_updates(self, store, oauth_blob):
        await asyncio.gather(
            *(store.save_account(f"acct-{i}", oauth_blob()) for i in range(10))
        )
        data = await store.load()
        assert sorted(a.name for a in data.accounts) == sorted(f"acct-{i}" for i in range(10))

    @pytest.mark.asyncio
    async def test_unwritable_location_raises(self, tmp_path, crypto_box, oauth_blob):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        store = AccountStore(blocker / "accounts.enc", crypto_box=crypto_box)
        with pytest.raises(StorageError):
            await store.save_account("A", oauth_blob())


class TestDeleteAccount:
    @pytest.mark.asyncio
    async def test_delete_unknown_is_noop(self, store, oauth_blob):
        await store.save_account("A", oauth_blob())
        before = store.file_path.read_bytes()

        assert await store.delete_account("missing") is False
        assert store.file_path.read_bytes() == before

    @pytest.mark.asyncio
    async def test_delete_active_clears_pointer(self, store, oauth_blob):
        await store.save_account("A", oauth_blob())
        await store.save_account("B", oauth_blob())
        await store.set_active_account("A")

        assert await store.delete_account("A") is True
        data = await store.load()
        assert [a.name for a in data.accounts] == ["B"]
        assert data.active_account_name is None

    @pytest.mark.asyncio
    async def test_delete_other_keeps_pointer(self, store, oauth_blob):
        await store.save_account("A", oauth_blob())
        await store.save_account("B", oauth_blob())
        await store.set_active_account("A")

        await store.delete_account("B")
        assert (await store.load()).active_account_name == "A"


class TestRenameAccount:
    @pytest.mark.asyncio
    async def test_rename_follows_active_pointer(self, store, oauth_blob):
        await store.save_account("A", oauth_blob(), email="a@example.com")
        await store.save_account("B", oauth_blob())
        await store.set_active_account("A")

        assert await store.rename_account("A", "Alpha") is True
        data = await store.load()
        assert [a.name for a in data.accounts] == ["Alpha", "B"]
        assert data.active_account_name == "Alpha"
        assert data.find("Alpha").email == "a@example.com"

    @pytest.mark.asyncio
    async def test_rename_missing_returns_false(self, store):
        assert await store.rename_account("missing", "other") is False

    @pytest.mark.asyncio
    async def test_rename_collision_raises(self, store, oauth_blob):
        await store.save_account("A", oauth_blob())
        await store.save_account("B", oauth_blob())
        with pytest.raises(AccountExistsError):
            await store.rename_account("A", "B")
        assert [a.name for a in (await store.load()).accounts] == ["A", "B"]


class TestActiveAccount:
    @pytest.mark.asyncio
    async def test_set_and_clear(self, store, oauth_blob):
        await store.save_account("A", oauth_blob())
        await store.set_active_account("A")
        assert (await store.load()).active_account_name == "A"
        await store.set_active_account(None)
        assert (await store.load()).active_account_name is None

    @pytest.mark.asyncio
    async def test_unknown_name_rejected(self, store):
        with pytest.raises(AccountNotFoundError):
            await store.set_active_account("missing")

    def test_dangling_pointer_is_dropped_on_parse(self):
        data = AccountsData.from_dict({"accounts": [], "activeAccountName": "ghost"})
        assert data.active_account_name is None
