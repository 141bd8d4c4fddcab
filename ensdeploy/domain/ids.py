from __future__ import annotations

import importlib

ulid_module = importlib.import_module("ulid")


def new_deployment_id() -> str:
    return f"dep_{ulid_module.new().str}"
