"""Tests for the command line interface."""

from __future__ import annotations

import pytest
from click.testing import CliRunner

from agent_session_runtime import cli
from agent_session_runtime.cli import main


@pytest.fixture
def runner(monkeypatch) -> CliRunner:
    for name in ("SESSION_FACTORY", "PORT", "HOST", "TOKEN", "REQUEST_TIMEOUT"):
        monkeypatch.delenv(f"AGENT_RUNTIME_{name}", raising=False)
    return CliRunner()


class TestCli:
    """Command wiring and error reporting."""

    def test_help_lists_commands(self, runner):
        """The group exposes serve, rpc and health."""
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        for command in ("serve", "rpc", "health"):
            assert command in result.output

    def test_rpc_without_factory(self, runner):
        """Missing factory configuration is a clean CLI error."""
        result = runner.invoke(main, ["rpc"])

        assert result.exit_code == 1
        assert "No session factory configured" in result.output

    def test_serve_with_unknown_factory(self, runner):
        """An unimportable factory is reported, not raised."""
        result = runner.invoke(main, ["serve", "--session-factory", "definitely_not_a_module_xyz:create"])

        assert result.exit_code == 1
        assert "Cannot import" in result.output

    def test_invalid_environment(self, runner, monkeypatch):
        """Unparseable environment values are usage errors."""
        monkeypatch.setenv("AGENT_RUNTIME_PORT", "eighty")

        result = runner.invoke(main, ["rpc"])

        assert result.exit_code == 2
        assert "AGENT_RUNTIME_" in result.output

    def test_health_unreachable(self, runner):
        """An unreachable server exits non-zero."""
        result = runner.invoke(main, ["health", "--url", "http://127.0.0.1:9"])

        assert result.exit_code == 1
        assert "Cannot connect" in result.output

    def test_health_uses_configured_address_and_timeout(self, runner, monkeypatch):
        """Without --url, health dials the configured host with the request timeout."""
        checks: list[tuple[str, float]] = []
        monkeypatch.setattr(cli, "_do_health_check", lambda url, timeout: checks.append((url, timeout)))
        monkeypatch.setenv("AGENT_RUNTIME_HOST", "0.0.0.0")
        monkeypatch.setenv("AGENT_RUNTIME_PORT", "8080")
        monkeypatch.setenv("AGENT_RUNTIME_REQUEST_TIMEOUT", "2.5")

        result = runner.invoke(main, ["health"])

        assert result.exit_code == 0
        assert checks == [("http://localhost:8080", 2.5)]

    def test_health_explicit_url_keeps_timeout(self, runner, monkeypatch):
        """--url replaces the address but not the timeout."""
        checks: list[tuple[str, float]] = []
        monkeypatch.setattr(cli, "_do_health_check", lambda url, timeout: checks.append((url, timeout)))
        monkeypatch.setenv("AGENT_RUNTIME_REQUEST_TIMEOUT", "7")

        result = runner.invoke(main, ["health", "--url", "http://example.test:9000/"])

        assert result.exit_code == 0
        assert checks == [("http://example.test:9000", 7.0)]
