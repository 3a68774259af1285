"""
Tests for the utils package: machine identity, headless detection, paths,
resilient file writes and the interactive authorization coordinator.
"""
import asyncio
import hashlib
import logging
from pathlib import Path
from unittest.mock import patch

import pytest

from claude_usage_core.utils import (
    ReauthCoordinator,
    get_cli_credentials_file,
    get_default_storage_path,
    get_headless_indicators,
    get_machine_id,
    get_raw_machine_id,
    is_headless_environment,
    safe_read_text,
    safe_write_text,
)
from claude_usage_core.utils import machine_id


class TestMachineId:
    def test_linux_is_normalized(self):
        with patch.object(machine_id, "_read_linux_machine_id", return_value="  ABCDEF0123\n"):
            assert get_raw_machine_id("linux") == "abcdef0123"

    def test_macos_parses_ioreg(self):
        output = '  | "IOPlatformUUID" = "1A2B3C4D-0000-1111-2222-333344445555"\n'
        with patch.object(machine_id.subprocess, "run") as run:
            run.return_value.stdout = output
            assert get_raw_machine_id("darwin") == "1a2b3c4d-0000-1111-2222-333344445555"

    def test_missing_identifier_raises(self):
        with patch.object(machine_id, "_read_macos_machine_id", return_value=None):
            with pytest.raises(RuntimeError):
                get_raw_machine_id("darwin")

    def test_digest(self):
        with patch.object(machine_id, "_read_linux_machine_id", return_value="abc"):
            assert get_machine_id("linux") == hashlib.sha256(b"abc").hexdigest()

    def test_linux_prefers_machine_id_file(self, tmp_path, monkeypatch):
        id_file = tmp_path / "machine-id"
        id_file.write_text("feedface\n")
        monkeypatch.setattr(machine_id, "LINUX_MACHINE_ID_FILES", (str(tmp_path / "absent"), str(id_file)))
        assert machine_id._read_linux_machine_id() == "feedface"


class TestHeadlessDetection:
    @pytest.fixture
    def clean_env(self, monkeypatch):
        for var in ("DISPLAY", "WAYLAND_DISPLAY", "SSH_CONNECTION", "SSH_CLIENT", "SSH_TTY",
                    "CI", "GITHUB_ACTIONS", "GITLAB_CI", "JENKINS_URL", "CIRCLECI",
                    "BUILDKITE", "TF_BUILD"):
            monkeypatch.delenv(var, raising=False)
        monkeypatch.setattr("os.path.exists", lambda path: False)
        return monkeypatch

    def test_ssh_is_headless(self, clean_env):
        clean_env.setenv("DISPLAY", ":0")
        clean_env.setenv("SSH_CONNECTION", "1.2.3.4 5 6.7.8.9 22")
        assert "SSH connection detected" in get_headless_indicators()
        assert is_headless_environment() is True

    def test_ci_is_headless(self, clean_env):
        clean_env.setenv("DISPLAY", ":0")
        clean_env.setenv("GITHUB_ACTIONS", "true")
        assert any("CI environment" in i for i in get_headless_indicators())

    def test_desktop_session(self, clean_env):
        clean_env.setenv("DISPLAY", ":0")
        clean_env.setenv("WAYLAND_DISPLAY", "wayland-0")
        assert get_headless_indicators() == []
        assert is_headless_environment() is False


class TestPaths:
    def test_default_storage_path(self, monkeypatch, tmp_path):
        monkeypatch.setattr(Path, "home", lambda: tmp_path)
        assert get_default_storage_path() == tmp_path / ".claude-usage" / "accounts.enc"
        assert get_default_storage_path(tmp_path / "custom") == tmp_path / "custom" / "accounts.enc"

    def test_cli_credentials_file(self, monkeypatch, tmp_path):
        monkeypatch.setattr(Path, "home", lambda: tmp_path)
        monkeypatch.setenv("APPDATA", str(tmp_path / "Roaming"))
        assert get_cli_credentials_file("linux") == tmp_path / ".claude" / ".credentials.json"
        assert get_cli_credentials_file("windows") == tmp_path / "Roaming" / "Claude" / ".credentials.json"


class TestResilientIO:
    def test_write_then_read(self, tmp_path):
        target = tmp_path / "nested" / "file.txt"
        assert safe_write_text(target, "content", logging.getLogger("test"), secure_permissions=True)
        assert safe_read_text(target) == "content"
        assert list(target.parent.glob(".tmp_*")) == []

    def test_missing_file_reads_none(self, tmp_path):
        assert safe_read_text(tmp_path / "missing.txt") is None

    def test_failed_write_returns_false(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file")
        assert safe_write_text(blocker / "child.txt", "x", logging.getLogger("test")) is False


class TestReauthCoordinator:
    @pytest.mark.asyncio
    async def test_flows_never_overlap(self):
        coordinator = ReauthCoordinator()
        active = 0
        peak = 0

        async def flow():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return "ok"

        results = await asyncio.gather(
            *(coordinator.execute(f"acct-{i}", flow) for i in range(5))
        )
        assert results == ["ok"] * 5
        assert peak == 1
        status = coordinator.get_status()
        assert status["stats"] == {"total": 5, "successful": 5, "failed": 0}
        assert status["pending_count"] == 0
        assert coordinator.is_in_progress() is False

    @pytest.mark.asyncio
    async def test_same_account_requests_are_queued_separately(self):
        coordinator = ReauthCoordinator()
        releases = [asyncio.Event() for _ in range(3)]
        started = []

        def flow_for(index):
            async def flow():
                started.append(index)
                await releases[index].wait()
                return index

            return flow

        tasks = [
            asyncio.create_task(coordinator.execute("Work", flow_for(i))) for i in range(3)
        ]
        while not started:
            await asyncio.sleep(0)
        for _ in range(5):
            await asyncio.sleep(0)

        status = coordinator.get_status()
        assert status["current"] == "Work"
        assert status["pending_count"] == 2
        assert status["pending"] == ["Work", "Work"]

        releases[0].set()
        while len(started) < 2:
            await asyncio.sleep(0)
        assert coordinator.get_status()["pending_count"] == 1

        releases[1].set()
        releases[2].set()
        assert await asyncio.gather(*tasks) == [0, 1, 2]
        assert coordinator.get_status()["pending_count"] == 0
        assert coordinator.is_in_progress() is False

    @pytest.mark.asyncio
    async def test_failures_propagate_and_are_counted(self):
        coordinator = ReauthCoordinator()

        async def flow():
            raise ValueError("denied")

        with pytest.raises(ValueError, match="denied"):
            await coordinator.execute("acct", flow)
        assert coordinator.get_status()["stats"]["failed"] == 1
