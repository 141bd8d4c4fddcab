import json
import os
import subprocess
import sys

import pytest


ROLES = [
    "api",
    "finalizer",
]


def _env_without_database() -> dict[str, str]:
    env = dict(os.environ)
    env.pop("DATABASE_URL", None)
    return env


@pytest.mark.integration
@pytest.mark.parametrize("role", ROLES)
def test_role_starts_in_empty_mode_via_dry_run(role: str) -> None:
    proc = subprocess.run(
        [sys.executable, "-m", "ensdeploy.main", "--role", role, "--dry-run-startup"],
        capture_output=True,
        text=True,
        check=False,
        env=_env_without_database(),
    )
    assert proc.returncode == 0, proc.stderr

    lines = [json.loads(line) for line in proc.stdout.splitlines() if line.strip()]
    messages = [line["message"] for line in lines]
    assert "runtime initialized" in messages
    assert "dry-run startup complete" in messages
    assert all(line["role"] == role for line in lines)


@pytest.mark.integration
def test_unknown_role_exits_with_usage_error() -> None:
    proc = subprocess.run(
        [sys.executable, "-m", "ensdeploy.main", "--role", "worker-build", "--dry-run-startup"],
        capture_output=True,
        text=True,
        check=False,
        env=_env_without_database(),
    )
    assert proc.returncode == 2
    assert "Unsupported role 'worker-build'" in proc.stderr
