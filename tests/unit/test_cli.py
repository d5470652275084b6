"""Tests for the command line entry point."""

from unittest.mock import patch

import pytest

from storefront_billing.__main__ import build_parser, check_config, main


@pytest.fixture(autouse=True)
def restore_environment(monkeypatch):
    """main() exports its options for the app factory; undo that after each test."""
    for key in ("LOG_LEVEL", "LOG_FORMAT", "CONFIG_PATH"):
        monkeypatch.delenv(key, raising=False)


class TestCheckConfig:
    """Test validating a configuration file."""

    def test_shipped_config_is_valid(self):
        assert check_config("config/billing.yaml") == 0

    def test_missing_file_fails(self, tmp_path):
        assert check_config(str(tmp_path / "absent.yaml")) == 1

    def test_command_returns_exit_code(self, tmp_path):
        assert main(["--config", str(tmp_path / "absent.yaml"), "check-config"]) == 1


class TestServe:
    """Test starting the API server."""

    def test_serve_is_the_default_command(self):
        with patch("storefront_billing.__main__.uvicorn.run") as run:
            assert main(["--log-format", "console"]) == 0

        kwargs = run.call_args.kwargs
        assert kwargs["factory"] is True
        assert kwargs["port"] == 8080
        assert kwargs["reload"] is False

    def test_serve_options(self):
        args = build_parser().parse_args(["serve", "--port", "9090", "--reload"])

        assert (args.command, args.port, args.reload) == ("serve", 9090, True)
