"""Integration tests for CLI commands.

The operator commands are invoked through Typer's CliRunner against an
operator API mocked with respx, checking the rendered output and the exit
code contract (0 success, 1 error, 2 in progress, 3 fatal).
"""

from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest
import respx
from typer.testing import CliRunner

from rollwright.cli.client import (
    EXIT_ERROR,
    EXIT_FATAL,
    EXIT_IN_PROGRESS,
    EXIT_SUCCESS,
    ApiError,
    RollwrightApiClient,
    exit_code_for,
)
from rollwright.main import app
from rollwright.web.routes.webhooks import SIGNATURE_HEADER, sign_payload

API = "http://rollwright.test"


def _status(outcome: str = "success", **overrides) -> dict:
    status = {
        "unit": "shop",
        "outcome": outcome,
        "state": "healthy",
        "release_id": "r1",
        "commit_id": "c1",
        "revision_seq": 1,
        "head_seq": 1,
        "last_health": "healthy",
        "last_error": None,
        "blocked": False,
        "queued": 0,
        "reconcile_phase": "converged",
        "last_sync": None,
    }
    status.update(overrides)
    return status


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Typer CLI runner.

    Returns:
        CliRunner instance for invoking CLI commands
    """
    return CliRunner()


@pytest.fixture
def config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A configuration file pointing the CLI at the mocked API."""
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "rollwright.toml"
    path.write_text(
        f'[web]\napi_url = "{API}"\nwebhook_secret = "cli-secret"\n\n'
        '[logging]\nlevel = "WARNING"\n',
        encoding="utf-8",
    )
    return path


def _invoke(runner: CliRunner, config_file: Path, *args: str):
    return runner.invoke(app, ["--config", str(config_file), *args])


class TestExitCodes:
    """Tests for the outcome to exit code mapping."""

    @pytest.mark.parametrize(
        "outcome,code",
        [
            ("success", EXIT_SUCCESS),
            ("failed", EXIT_ERROR),
            ("in_progress", EXIT_IN_PROGRESS),
            ("fatal", EXIT_FATAL),
            ("something-new", EXIT_ERROR),
        ],
    )
    def test_exit_code_for(self, outcome: str, code: int) -> None:
        assert exit_code_for(outcome) == code


class TestApiClient:
    """Tests for the HTTP client."""

    @respx.mock
    def test_fatal_status_is_answered(self) -> None:
        respx.get(f"{API}/units/shop").mock(
            return_value=httpx.Response(423, json=_status("fatal", blocked=True))
        )
        with RollwrightApiClient(API) as client:
            assert client.unit_status("shop")["blocked"] is True

    @respx.mock
    def test_error_detail_raised(self) -> None:
        respx.post(f"{API}/units/shop/rollback").mock(
            return_value=httpx.Response(409, json={"detail": "No prior healthy release for shop"})
        )
        with RollwrightApiClient(API) as client:
            with pytest.raises(ApiError) as exc_info:
                client.rollback("shop")

        assert exc_info.value.status_code == 409
        assert "No prior healthy release" in str(exc_info.value)

    @respx.mock
    def test_unreachable(self) -> None:
        respx.get(f"{API}/units/").mock(side_effect=httpx.ConnectError("refused"))
        with RollwrightApiClient(API) as client:
            with pytest.raises(ApiError) as exc_info:
                client.list_units()
        assert exc_info.value.status_code is None

    @respx.mock
    def test_trigger_is_signed(self) -> None:
        route = respx.post(f"{API}/webhooks/commit").mock(
            return_value=httpx.Response(202, json={"commit_id": "c1", "units": {"shop": "queued"}})
        )
        with RollwrightApiClient(API, webhook_secret="s3cret") as client:
            client.trigger("c1", ["shop"], author="dana")

        request = route.calls.last.request
        assert json.loads(request.content) == {
            "commit_id": "c1",
            "changed_units": ["shop"],
            "author": "dana",
        }
        assert request.headers[SIGNATURE_HEADER] == sign_payload(request.content, "s3cret")


class TestStatusCommand:
    """Tests for `rollwright status`."""

    @respx.mock
    def test_healthy(self, cli_runner: CliRunner, config_file: Path) -> None:
        respx.get(f"{API}/units/shop").mock(return_value=httpx.Response(200, json=_status()))

        result = _invoke(cli_runner, config_file, "status", "shop")

        assert result.exit_code == EXIT_SUCCESS
        assert "Unit shop" in result.stdout
        assert "healthy" in result.stdout

    @respx.mock
    def test_in_progress(self, cli_runner: CliRunner, config_file: Path) -> None:
        respx.get(f"{API}/units/shop").mock(
            return_value=httpx.Response(202, json=_status("in_progress", state="syncing"))
        )

        result = _invoke(cli_runner, config_file, "status", "shop")

        assert result.exit_code == EXIT_IN_PROGRESS

    @respx.mock
    def test_fatal(self, cli_runner: CliRunner, config_file: Path) -> None:
        respx.get(f"{API}/units/shop").mock(
            return_value=httpx.Response(
                423,
                json=_status(
                    "fatal", state="fatal", blocked=True, last_error="rollback release degraded"
                ),
            )
        )

        result = _invoke(cli_runner, config_file, "status", "shop")

        assert result.exit_code == EXIT_FATAL
        assert "rollwright clear" in result.stdout
        assert "rollback release degraded" in result.stdout

    @respx.mock
    def test_unknown_unit(self, cli_runner: CliRunner, config_file: Path) -> None:
        respx.get(f"{API}/units/billing").mock(
            return_value=httpx.Response(404, json={"detail": "Unknown unit: billing"})
        )

        result = _invoke(cli_runner, config_file, "status", "billing")

        assert result.exit_code == EXIT_ERROR
        assert "HTTP 404" in result.stdout

    @respx.mock
    def test_all_units_worst_outcome_wins(self, cli_runner: CliRunner, config_file: Path) -> None:
        respx.get(f"{API}/units/").mock(
            return_value=httpx.Response(
                200,
                json=[
                    _status(),
                    _status("in_progress", unit="billing"),
                    _status("fatal", unit="search", blocked=True),
                ],
            )
        )

        result = _invoke(cli_runner, config_file, "status")

        assert result.exit_code == EXIT_FATAL
        assert "billing" in result.stdout
        assert "search" in result.stdout


class TestOperatorCommands:
    """Tests for sync-now, rollback, clear, trigger and events."""

    @respx.mock
    def test_sync_now(self, cli_runner: CliRunner, config_file: Path) -> None:
        respx.post(f"{API}/units/shop/sync").mock(
            return_value=httpx.Response(
                200,
                json={
                    "operation": {
                        "outcome": "converged",
                        "target_seq": 1,
                        "unchanged": 2,
                        "changes": [
                            {
                                "ref": {"kind": "Service", "name": "backend", "namespace": "shop"},
                                "action": "create",
                            }
                        ],
                    },
                    "status": _status(),
                },
            )
        )

        result = _invoke(cli_runner, config_file, "sync-now", "shop")

        assert result.exit_code == EXIT_SUCCESS
        assert "create" in result.stdout
        assert "Service/backend" in result.stdout
        assert "2 unchanged" in result.stdout

    @respx.mock
    def test_rollback_refused(self, cli_runner: CliRunner, config_file: Path) -> None:
        respx.post(f"{API}/units/shop/rollback").mock(
            return_value=httpx.Response(409, json={"detail": "No prior healthy release for shop"})
        )

        result = _invoke(cli_runner, config_file, "rollback", "shop")

        assert result.exit_code == EXIT_ERROR
        assert "HTTP 409" in result.stdout

    @respx.mock
    def test_clear(self, cli_runner: CliRunner, config_file: Path) -> None:
        respx.post(f"{API}/units/shop/clear").mock(
            return_value=httpx.Response(200, json=_status(state="fatal", outcome="failed"))
        )

        result = _invoke(cli_runner, config_file, "clear", "shop")

        assert "Cleared shop" in result.stdout
        assert result.exit_code == EXIT_ERROR

    @respx.mock
    def test_trigger_uses_configured_secret(
        self, cli_runner: CliRunner, config_file: Path
    ) -> None:
        route = respx.post(f"{API}/webhooks/commit").mock(
            return_value=httpx.Response(
                202, json={"commit_id": "c9", "units": {"shop": "queued", "billing": "duplicate"}}
            )
        )

        result = _invoke(cli_runner, config_file, "trigger", "c9", "shop", "billing/worker")

        assert result.exit_code == EXIT_IN_PROGRESS
        request = route.calls.last.request
        assert json.loads(request.content)["changed_units"] == ["shop", "billing/worker"]
        assert request.headers[SIGNATURE_HEADER] == sign_payload(request.content, "cli-secret")
        assert "duplicate" in result.stdout

    @respx.mock
    def test_trigger_blocked(self, cli_runner: CliRunner, config_file: Path) -> None:
        respx.post(f"{API}/webhooks/commit").mock(
            return_value=httpx.Response(423, json={"commit_id": "c9", "units": {"shop": "blocked"}})
        )

        result = _invoke(cli_runner, config_file, "trigger", "c9", "shop")

        assert result.exit_code == EXIT_FATAL

    @respx.mock
    def test_events(self, cli_runner: CliRunner, config_file: Path) -> None:
        route = respx.get(f"{API}/units/shop/events").mock(
            return_value=httpx.Response(
                200,
                json=[
                    {
                        "release_id": "r3",
                        "commit_id": "c1",
                        "revision_seq": 3,
                        "state": "rolling_back",
                        "previous_state": None,
                        "is_rollback": True,
                        "error": None,
                        "occurred_at": "2026-03-01T12:00:00Z",
                    }
                ],
            )
        )

        result = _invoke(cli_runner, config_file, "events", "shop", "-n", "5")

        assert result.exit_code == EXIT_SUCCESS
        assert route.calls.last.request.url.params["limit"] == "5"
        assert "rolling_back" in result.stdout
        assert "rollback" in result.stdout

    def test_missing_config_file(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        result = cli_runner.invoke(app, ["--config", str(tmp_path / "nope.toml"), "status"])
        assert result.exit_code != EXIT_SUCCESS
