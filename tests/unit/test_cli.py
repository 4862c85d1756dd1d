"""
Unit tests for the command line interface
"""

import asyncio
import json
from unittest.mock import Mock, patch

import httpx
import pytest
from rich.console import Console

from regflow import cli
from regflow.cli import CLIHandler
from regflow.models import RecordStatus, RegistrationRecord
from regflow.services.api_client import AccountServiceClient
from regflow.services.automation.registration_state_machine import (
    STATE_STORAGE_KEY, RegistrationState, RegistrationStateMachine,
)
from regflow.services.persistence_service import RecordCache
from regflow.services.state_store import FileStateStore


@pytest.fixture
def workspace(tmp_path):
    config_path = tmp_path / "regflow.json"
    config_path.write_text(json.dumps({
        "engine": {
            "state_dir": str(tmp_path / "state"),
            "cache_dir": str(tmp_path / "cache"),
            "lock_settle_delay": 0,
        },
    }), encoding="utf-8")
    return tmp_path, config_path


def make_handler():
    handler = CLIHandler(console=Console(record=True, width=140))
    handler.setup_logging = Mock()
    return handler


def run(handler, config_path, *argv):
    return handler.run(["--config", str(config_path), *argv])


def mock_client_factory(handler_fn):
    def factory(config):
        return AccountServiceClient(config, transport=httpx.MockTransport(handler_fn))
    return factory


def save_state(state_dir, *states, metadata=None):
    async def save():
        store = FileStateStore(state_dir)
        fsm = RegistrationStateMachine(store=store)
        for i, state in enumerate(states):
            fsm.transition(state, metadata if i == 0 else None)
        await fsm.save_to_storage()
        await store.close()

    asyncio.run(save())


class TestArgumentParser:

    def setup_method(self):
        self.parser = CLIHandler().create_argument_parser()

    def test_command_required(self):
        with pytest.raises(SystemExit):
            self.parser.parse_args([])

    def test_accounts_options(self):
        args = self.parser.parse_args(["--verbose", "accounts", "--status", "verified", "--export", "out.csv"])

        assert args.verbose is True
        assert args.command == "accounts"
        assert args.status == "verified"
        assert args.export == "out.csv"

    def test_start_options(self):
        args = self.parser.parse_args(["--state-dir", "/tmp/s", "start", "--url", "https://x.test", "--headless"])

        assert args.state_dir == "/tmp/s"
        assert args.url == "https://x.test"
        assert args.headless is True

    def test_invalid_status_rejected(self):
        with pytest.raises(SystemExit):
            self.parser.parse_args(["accounts", "--status", "banana"])


class TestCommands:

    def test_status_without_state(self, workspace):
        tmp_path, config_path = workspace
        handler = make_handler()

        assert run(handler, config_path, "status") == 0
        assert "No saved registration" in handler.console.export_text()

    def test_status_with_state(self, workspace):
        tmp_path, config_path = workspace
        save_state(tmp_path / "state", RegistrationState.PREPARING, RegistrationState.DETECTING_PAGE,
                   metadata={"email": "reg-abc123@example.com", "password": "hidden"})
        handler = make_handler()

        assert run(handler, config_path, "status") == 0
        output = handler.console.export_text()
        assert "detecting_page" in output
        assert "reg-abc123@example.com" in output
        assert "hidden" not in output

    def test_state_dir_flag_wins(self, workspace, tmp_path):
        _, config_path = workspace
        other = tmp_path / "other-state"
        save_state(other, RegistrationState.PREPARING)
        handler = make_handler()

        assert run(handler, config_path, "--state-dir", str(other), "status") == 0
        assert "preparing" in handler.console.export_text()

    def test_reset_clears_state(self, workspace):
        tmp_path, config_path = workspace
        save_state(tmp_path / "state", RegistrationState.PREPARING)

        assert run(make_handler(), config_path, "reset") == 0
        assert not (tmp_path / "state" / f"{STATE_STORAGE_KEY}.json").exists()

    def test_accounts_list_and_export(self, workspace):
        tmp_path, config_path = workspace
        cache = RecordCache(tmp_path / "cache")
        cache.save_record(RegistrationRecord(email="a@example.com", username="user_a"))
        cache.save_record(RegistrationRecord(email="b@example.com", username="user_b"))
        cache.update_status("b@example.com", RecordStatus.VERIFIED, "482913")

        handler = make_handler()
        assert run(handler, config_path, "accounts") == 0
        output = handler.console.export_text()
        assert "a@example.com" in output and "482913" in output
        assert "Total: 2" in output

        target = tmp_path / "verified.csv"
        assert run(make_handler(), config_path, "accounts", "--status", "verified", "--export", str(target)) == 0
        assert "b@example.com" in target.read_text(encoding="utf-8")
        assert "a@example.com" not in target.read_text(encoding="utf-8")

    def test_health(self, workspace):
        _, config_path = workspace
        handler = make_handler()
        factory = mock_client_factory(lambda request: httpx.Response(200, json={"status": "ok"}))

        with patch.object(cli, "AccountServiceClient", side_effect=factory):
            assert run(handler, config_path, "health") == 0
        assert "healthy" in handler.console.export_text()

    def test_health_fails_when_everything_is_down(self, workspace):
        _, config_path = workspace
        handler = make_handler()
        factory = mock_client_factory(lambda request: httpx.Response(500))

        with patch.object(cli, "AccountServiceClient", side_effect=factory):
            # local + sync healthy, remote error: warning, still exit 0
            assert run(handler, config_path, "health") == 0
        assert "Account service unreachable" in handler.console.export_text()

    def test_validate(self, workspace):
        tmp_path, config_path = workspace
        save_state(tmp_path / "state", RegistrationState.PREPARING, metadata={
            "email": "reg-abc123@example.com", "password": "p", "session_id": "s-1",
        })
        handler = make_handler()

        def remote(request):
            if request.url.path == "/api/accounts":
                return httpx.Response(200, json=[{"status": "verified"}])
            return httpx.Response(200, json={"success": False})

        with patch.object(cli, "AccountServiceClient", side_effect=mock_client_factory(remote)):
            assert run(handler, config_path, "validate") == 0

        output = handler.console.export_text()
        assert "verified" in output and "clear" in output
        # validate never changes the saved state
        assert (tmp_path / "state" / f"{STATE_STORAGE_KEY}.json").exists()

    def test_restore_clears_stale_state(self, workspace):
        tmp_path, config_path = workspace
        save_state(tmp_path / "state", RegistrationState.PREPARING, metadata={
            "email": "reg-abc123@example.com", "password": "p", "session_id": "s-1",
        })
        handler = make_handler()

        def remote(request):
            if request.url.path == "/api/accounts":
                return httpx.Response(200, json=[{"status": "verified"}])
            return httpx.Response(200, json={"success": False})

        with patch.object(cli, "AccountServiceClient", side_effect=mock_client_factory(remote)):
            assert run(handler, config_path, "restore") == 0

        assert "cleared" in handler.console.export_text()
        assert not (tmp_path / "state" / f"{STATE_STORAGE_KEY}.json").exists()

    def test_start_requires_url(self, workspace):
        _, config_path = workspace
        handler = make_handler()

        assert run(handler, config_path, "start") == 1
        assert "No registration URL" in handler.console.export_text()

    def test_invalid_config(self, tmp_path):
        config_path = tmp_path / "broken.json"
        config_path.write_text("{broken", encoding="utf-8")
        handler = make_handler()

        assert run(handler, config_path, "status") == 1
        assert "Invalid configuration" in handler.console.export_text()


class TestMain:

    def test_exit_code(self):
        with patch.object(CLIHandler, "run", return_value=1):
            with pytest.raises(SystemExit) as exc_info:
                cli.main()
        assert exc_info.value.code == 1

    def test_keyboard_interrupt(self):
        with patch.object(CLIHandler, "run", side_effect=KeyboardInterrupt):
            with pytest.raises(SystemExit) as exc_info:
                cli.main()
        assert exc_info.value.code == 1
