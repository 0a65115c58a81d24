"""Tests for CLI module."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from tiktok_streamkey.cli import main, resolve_category
from tiktok_streamkey.oauth.flow import (
    AcquisitionTimeoutError,
    ExchangeParseError,
    WindowClosedByUser,
)
from tiktok_streamkey.oauth.manager import AuthManager
from tiktok_streamkey.stream_api import StreamAPIError, StreamCategory, StreamInfo


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def data_dir(tmp_path: Path, clean_env: pytest.MonkeyPatch) -> Path:
    """An empty data directory, with the working directory moved there too."""
    clean_env.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def logged_in(data_dir: Path) -> Path:
    """A data directory with a cached token."""
    (data_dir / "tokens.json").write_text(json.dumps({"oauth_token": "TOKEN-1234567890"}))
    return data_dir


@pytest.fixture
def mock_api():
    """Patch StreamAPI in the CLI and yield the client the commands receive."""
    api = AsyncMock()
    with patch("tiktok_streamkey.cli.StreamAPI") as api_cls:
        api_cls.return_value.__aenter__.return_value = api
        api.api_cls = api_cls
        yield api


def invoke(runner: CliRunner, data_dir: Path, *args: str):
    return runner.invoke(main, ["--data-dir", str(data_dir), *args])


class TestMainGroup:
    """Tests for the main CLI group."""

    def test_version(self, runner: CliRunner):
        """Test --version flag."""
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "version" in result.output.lower()

    def test_help(self, runner: CliRunner):
        """Test --help flag."""
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "TikTok Streamkey" in result.output
        for command in ("login", "logout", "status", "token", "search", "start", "end"):
            assert command in result.output

    def test_invalid_environment_is_config_error(self, runner: CliRunner, data_dir: Path):
        """Test that malformed settings produce a ConfigError."""
        result = runner.invoke(
            main,
            ["--json", "--data-dir", str(data_dir), "status"],
            env={"STREAMKEY_AUTH_TIMEOUT": "soon"},
        )
        assert result.exit_code == 1
        error = json.loads(result.output)["error"]
        assert error["type"] == "ConfigError"
        assert "STREAMKEY_AUTH_TIMEOUT" in error["message"]


class TestLoginCommand:
    """Tests for the login command."""

    def test_login_success(self, runner: CliRunner, logged_in: Path):
        """Test a successful login reports the cached status."""
        with patch.object(
            AuthManager, "retrieve_auth_data", new=AsyncMock(return_value={"oauth_token": "TOKEN-1234567890"})
        ) as retrieve:
            result = invoke(runner, logged_in, "--json", "login")

        assert result.exit_code == 0
        data = json.loads(result.output)["data"]
        assert data["authenticated"] is True
        assert data["token_preview"] == "TOKE...7890"
        retrieve.assert_awaited_once_with(force=False)

    def test_login_force(self, runner: CliRunner, logged_in: Path):
        """Test that --force is passed through."""
        with patch.object(
            AuthManager, "retrieve_auth_data", new=AsyncMock(return_value={"oauth_token": "TOKEN-1234567890"})
        ) as retrieve:
            result = invoke(runner, logged_in, "login", "--force")

        assert result.exit_code == 0
        assert "Token retrieved successfully" in result.output
        retrieve.assert_awaited_once_with(force=True)

    def test_login_window_closed(self, runner: CliRunner, data_dir: Path):
        """Test the JSON error for a closed window."""
        error = WindowClosedByUser("Window closed by user", {"success": False, "error": "Window closed by user"})
        with patch.object(AuthManager, "retrieve_auth_data", new=AsyncMock(side_effect=error)):
            result = invoke(runner, data_dir, "--json", "login")

        assert result.exit_code == 1
        output = json.loads(result.output)
        assert output["success"] is False
        assert output["error"]["type"] == "WindowClosedByUser"
        assert output["error"]["payload"] == {"success": False, "error": "Window closed by user"}
        assert "closed" in output["error"]["help"]

    def test_login_parse_error_keeps_body(self, runner: CliRunner, data_dir: Path):
        """Test that the raw exchange body is part of the error output."""
        error = ExchangeParseError(
            "Token exchange returned a non-JSON response",
            {"success": False, "error": "JSON Parse Error", "body": "<html>"},
        )
        with patch.object(AuthManager, "retrieve_auth_data", new=AsyncMock(side_effect=error)):
            result = invoke(runner, data_dir, "--json", "login")

        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["payload"]["body"] == "<html>"

    def test_login_timeout_human(self, runner: CliRunner, data_dir: Path):
        """Test the human error output for a timeout."""
        with patch.object(
            AuthManager, "retrieve_auth_data", new=AsyncMock(side_effect=AcquisitionTimeoutError("Timed out"))
        ):
            result = invoke(runner, data_dir, "login")

        assert result.exit_code == 1
        assert "Error: Timed out" in result.output
        assert "STREAMKEY_AUTH_TIMEOUT" in result.output


class TestTokenCommands:
    """Tests for token, status, and logout."""

    def test_token_prints_token(self, runner: CliRunner, data_dir: Path):
        """Test that the token command prints only the token."""
        with patch.object(AuthManager, "retrieve_token", new=AsyncMock(return_value="TOKEN-1")):
            result = invoke(runner, data_dir, "token")

        assert result.exit_code == 0
        assert result.output.strip() == "TOKEN-1"

    def test_token_uses_cache(self, runner: CliRunner, logged_in: Path):
        """Test the token command against a real cache."""
        result = invoke(runner, logged_in, "--json", "token")
        assert result.exit_code == 0
        assert json.loads(result.output)["data"] == {"oauth_token": "TOKEN-1234567890"}

    def test_status_logged_out(self, runner: CliRunner, data_dir: Path):
        """Test status with no cached token."""
        result = invoke(runner, data_dir, "status")
        assert result.exit_code == 0
        assert "Not logged in" in result.output

    def test_status_json(self, runner: CliRunner, logged_in: Path):
        """Test JSON status with a cached token."""
        result = invoke(runner, logged_in, "--json", "status")
        data = json.loads(result.output)["data"]
        assert data["authenticated"] is True
        assert data["tokens_path"] == str(logged_in / "tokens.json")

    def test_logout(self, runner: CliRunner, logged_in: Path):
        """Test that logout removes the cached token."""
        result = invoke(runner, logged_in, "logout")
        assert result.exit_code == 0
        assert "Logged out." in result.output
        assert not (logged_in / "tokens.json").exists()

        again = invoke(runner, logged_in, "--json", "logout")
        assert json.loads(again.output)["data"] == {"logged_out": False}


class TestStreamCommands:
    """Tests for commands that call the stream API."""

    @pytest.mark.parametrize("args", [["info"], ["search", "Minecraft"], ["start", "Minecraft"], ["end", "1"]])
    def test_requires_login(self, runner: CliRunner, data_dir: Path, mock_api, args: list[str]):
        """Test that stream commands need a cached token."""
        result = invoke(runner, data_dir, "--json", *args)

        assert result.exit_code == 1
        error = json.loads(result.output)["error"]
        assert error["type"] == "NotLoggedIn"
        assert "streamkey login" in error["help"]
        mock_api.api_cls.assert_not_called()

    def test_search_table(self, runner: CliRunner, logged_in: Path, mock_api):
        """Test the human search table."""
        mock_api.search.return_value = [StreamCategory(id="1", full_name="Minecraft")]

        result = invoke(runner, logged_in, "search", "Minecraft")

        assert result.exit_code == 0
        assert "ID" in result.output and "NAME" in result.output
        assert "Minecraft" in result.output
        mock_api.api_cls.assert_called_once_with("TOKEN-1234567890")

    def test_search_json(self, runner: CliRunner, logged_in: Path, mock_api):
        """Test JSON search output."""
        mock_api.search.return_value = [StreamCategory(id="1", full_name="Minecraft", game_mask_id="mc")]

        result = invoke(runner, logged_in, "--json", "search", "Minecraft")

        assert json.loads(result.output)["data"] == [{"id": "1", "full_name": "Minecraft", "game_mask_id": "mc"}]

    def test_search_no_results(self, runner: CliRunner, logged_in: Path, mock_api):
        """Test the empty search message."""
        mock_api.search.return_value = []
        result = invoke(runner, logged_in, "search", "zzz")
        assert "No categories found for 'zzz'" in result.output

    def test_start_prints_key(self, runner: CliRunner, logged_in: Path, mock_api):
        """Test that start resolves the category and prints ingest details."""
        mock_api.search.return_value = [
            StreamCategory(id="2", full_name="Minecraft Dungeons"),
            StreamCategory(id="1", full_name="Minecraft"),
        ]
        mock_api.start.return_value = StreamInfo(rtmp_url="rtmp://ingest", stream_key="sk_1", id="99")

        result = invoke(runner, logged_in, "start", "minecraft", "--title", "Hello")

        assert result.exit_code == 0
        assert "Server: rtmp://ingest" in result.output
        assert "Key:    sk_1" in result.output
        mock_api.start.assert_awaited_once_with("Hello", "1", "0")

    def test_start_failure(self, runner: CliRunner, logged_in: Path, mock_api):
        """Test that a failed start exits with an error."""
        mock_api.search.return_value = []
        mock_api.start.return_value = None

        result = invoke(runner, logged_in, "--json", "start", "123")

        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["message"] == "Failed to start stream"
        mock_api.start.assert_awaited_once_with("TikTok Stream", "123", "0")

    def test_end(self, runner: CliRunner, logged_in: Path, mock_api):
        """Test ending a stream."""
        mock_api.end.return_value = True
        result = invoke(runner, logged_in, "--json", "end", "99")
        assert json.loads(result.output)["data"] == {"id": "99", "ended": True}
        mock_api.end.assert_awaited_once_with("99")

    def test_end_failure(self, runner: CliRunner, logged_in: Path, mock_api):
        """Test that a failed end exits with an error."""
        mock_api.end.return_value = False
        result = invoke(runner, logged_in, "end", "99")
        assert result.exit_code == 1
        assert "Failed to end stream 99" in result.output

    def test_info(self, runner: CliRunner, logged_in: Path, mock_api):
        """Test account info output."""
        mock_api.get_info.return_value = {"user": {"username": "someone"}}
        result = invoke(runner, logged_in, "--json", "info")
        assert json.loads(result.output)["data"] == {"user": {"username": "someone"}}

    def test_info_failure(self, runner: CliRunner, logged_in: Path, mock_api):
        """Test that info failures are reported."""
        mock_api.get_info.side_effect = StreamAPIError("Failed to get info: HTTP 401: nope")
        result = invoke(runner, logged_in, "--json", "info")
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["type"] == "StreamAPIError"


class TestResolveCategory:
    """Tests for resolve_category."""

    def test_exact_match_wins(self):
        """Test a case-insensitive exact name match."""
        categories = [
            StreamCategory(id="2", full_name="Minecraft Dungeons"),
            StreamCategory(id="1", full_name="Minecraft"),
        ]
        assert resolve_category(" MINECRAFT ", categories).id == "1"

    def test_first_result_fallback(self):
        """Test that the first result is used without an exact match."""
        categories = [StreamCategory(id="2", full_name="Minecraft Dungeons")]
        assert resolve_category("mine", categories).id == "2"

    def test_no_results(self):
        """Test that no categories resolve to None."""
        assert resolve_category("x", []) is None


def test_json_mode_suppresses_progress(runner: CliRunner, logged_in: Path, mock_api):
    """Test that progress messages are suppressed in JSON mode."""
    mock_api.search.return_value = []
    mock_api.start.return_value = StreamInfo(rtmp_url="r", stream_key="k", id="1")

    result = invoke(runner, logged_in, "--json", "start", "x")

    assert "Searching for category" not in result.output
    assert json.loads(result.output)["data"]["id"] == "1"
