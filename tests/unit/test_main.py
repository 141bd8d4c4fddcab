import pytest

from ensdeploy.main import parse_args, run


@pytest.mark.unit
def test_cli_returns_non_zero_for_invalid_role(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = run(["--role", "bad-role", "--dry-run-startup"])
    captured = capsys.readouterr()

    assert exit_code == 2
    assert "ERROR:" in captured.err
    assert "Try one of: api, finalizer" in captured.err


@pytest.mark.unit
@pytest.mark.parametrize("role", ["api", "finalizer"])
def test_cli_dry_run_succeeds_for_valid_role(role: str) -> None:
    exit_code = run(["--role", role, "--dry-run-startup"])
    assert exit_code == 0


@pytest.mark.unit
def test_cli_host_defaults_to_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_HOST", "127.0.0.1")

    args = parse_args(["--role", "api"])

    assert args.host == "127.0.0.1"
    assert args.port is None
    assert args.reload is False
