from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

_PROVIDER_ENV_KEYS = (
    "ANTHROPIC_API_KEY",
    "OPENROUTER_API_KEY",
    "OPENAI_API_KEY",
    "INTAKE_SUMMARY_PROVIDER",
)


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "intake-test.sqlite"
    monkeypatch.setenv("INTAKE_DB_PATH", str(db_path))
    monkeypatch.setenv("ALLOW_ANON", "false")
    monkeypatch.setenv("INTAKE_PUBLIC_BASE_URL", "https://intake.test")
    # Summary generation is opt-in per test; no test talks to a real provider.
    monkeypatch.setenv("INTAKE_AUTO_SUMMARY", "false")
    for key in _PROVIDER_ENV_KEYS:
        monkeypatch.setenv(key, "")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def container(backend_module):
    return backend_module.app.state.container


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _make(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {user_id}"}

    return _make
