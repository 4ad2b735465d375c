"""Test configuration for pytest."""

import sys
from pathlib import Path

import pytest
import pytest_asyncio

from opencode_controller.process_manager import ProcessManager
from opencode_controller.settings import ServerSettings

FAKE_OPENCODE = Path(__file__).parent / "fixtures" / "fake_opencode.py"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Keep the developer's environment out of the tests."""
    for var in (
        "OPENCODE_PORT",
        "OPENCODE_PATH",
        "TELEGRAM_BOT_TOKEN",
        "TELEGRAM_CHAT_ID",
        "TELEGRAM_THREAD_ID",
        "TELEGRAM_UPDATES_URL",
        "TELEGRAM_SEND_URL",
        "FAKE_OPENCODE_MODE",
        "FAKE_OPENCODE_EXIT_CODE",
        "FAKE_OPENCODE_RECORD_DIR",
        "FAKE_OPENCODE_STDERR",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("OPENCODE_CONTROLLER_LOG_DIR", str(tmp_path / "logs"))
    yield


@pytest.fixture
def fake_opencode(tmp_path):
    """Executable that behaves like `opencode serve --port N`."""
    script = tmp_path / "bin" / "opencode"
    script.parent.mkdir()
    script.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_OPENCODE}" "$@"\n')
    script.chmod(0o755)
    return script


@pytest.fixture
def project_dir(tmp_path):
    """A readable project directory."""
    directory = tmp_path / "proj"
    directory.mkdir()
    return directory


@pytest.fixture
def record_dir(tmp_path, monkeypatch):
    """Directory where the fake server records how it was launched."""
    directory = tmp_path / "records"
    directory.mkdir()
    monkeypatch.setenv("FAKE_OPENCODE_RECORD_DIR", str(directory))
    return directory


@pytest_asyncio.fixture
async def manager(fake_opencode):
    """ProcessManager wired to the fake binary with fast probing."""
    pm = ProcessManager(
        settings=ServerSettings(path=str(fake_opencode)),
        startup_attempts=100,
        startup_interval=0.1,
        probe_timeout=1.0,
    )
    yield pm
    await pm.shutdown()
