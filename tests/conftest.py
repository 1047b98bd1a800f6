from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture(scope="session")
def app():
    # Sessions opened in tests must never reach the real ElevenLabs or Twilio APIs.
    for name in [
        "ELEVENLABS_API_KEY",
        "ELEVENLABS_AGENT_ID",
        "TWILIO_ACCOUNT_SID",
        "TWILIO_AUTH_TOKEN",
        "PUBLIC_BASE_URL",
    ]:
        os.environ.pop(name, None)
    os.environ["CALL_HISTORY_SIZE"] = "10"
    os.environ["LOG_LEVEL"] = "WARNING"

    import importlib

    from config.settings import get_settings

    get_settings.cache_clear()
    sys.modules.pop("main", None)

    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def client(app):
    # Each TestClient context runs the lifespan, so every test gets a fresh store.
    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
