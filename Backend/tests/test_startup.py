import sys

import pytest
import uvicorn

import chatrelay
import chatrelay.config
from chatrelay.__main__ import main


@pytest.fixture
def launches(monkeypatch, tmp_path):
    """Record uvicorn.run calls and force a fresh settings import."""
    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda *args, **kwargs: calls.append((args, kwargs)))
    monkeypatch.setattr(chatrelay, "config", chatrelay.config)
    monkeypatch.delitem(sys.modules, "chatrelay.config")
    # No .env file in the working directory.
    monkeypatch.chdir(tmp_path)
    return calls


@pytest.mark.parametrize("missing", [
    ("IDENTITY_PROVIDER_URL",),
    ("IDENTITY_SERVICE_KEY",),
    ("IDENTITY_PROVIDER_URL", "IDENTITY_SERVICE_KEY"),
])
def test_refuses_to_start_without_identity_credentials(launches, monkeypatch, missing):
    for name in missing:
        monkeypatch.delenv(name, raising=False)

    with pytest.raises(SystemExit) as exc_info:
        main()

    assert exc_info.value.code == 1
    assert launches == []


def test_starts_with_identity_credentials(launches, monkeypatch):
    monkeypatch.setenv("IDENTITY_PROVIDER_URL", "https://identity.example.test")
    monkeypatch.setenv("IDENTITY_SERVICE_KEY", "test-service-key")
    monkeypatch.setenv("PORT", "9001")

    main()

    assert len(launches) == 1
    args, kwargs = launches[0]
    assert args == ("chatrelay.main:app",)
    assert kwargs["port"] == 9001
