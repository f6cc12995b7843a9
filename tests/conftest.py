"""
Test configuration and shared fixtures for vmmanage tests.
"""

import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from vmmanage.channel import CommandChannel
from vmmanage.config import Settings
from vmmanage.inventory import Record, RecordStore
from vmmanage.session import SessionSupervisor

TESTS_DIR = Path(__file__).resolve().parent
ROOT_DIR = TESTS_DIR.parent
FAKE_WORKER = TESTS_DIR / "fake_worker.py"

# Short intervals so real worker processes make the suite fast
FAST_SETTINGS = {
    "open_attempts": 150,
    "open_interval": 0.1,
    "poll_interval": 0.05,
    "worker_poll_interval": 0.02,
    "command_timeout": 10,
    "close_grace": 3.0,
    "terminate_grace": 1.0,
    "kill_grace": 2.0,
    "worker_command": [sys.executable, str(FAKE_WORKER)],
}


@pytest.fixture
def temp_state_dir() -> Generator[Path, None, None]:
    """Create a temporary state directory for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def worker_env(monkeypatch):
    """
    Make the fake worker importable in child processes.

    Returns a function that sets the fake backend scenario for workers
    started afterwards.
    """
    paths = [str(ROOT_DIR), str(TESTS_DIR)]
    if os.environ.get("PYTHONPATH"):
        paths.append(os.environ["PYTHONPATH"])
    monkeypatch.setenv("PYTHONPATH", os.pathsep.join(paths))
    monkeypatch.delenv("VMMANAGE_FAKE_SCENARIO", raising=False)
    monkeypatch.delenv("VMMANAGE_USERNAME", raising=False)
    monkeypatch.delenv("VMMANAGE_PASSWORD", raising=False)

    def _scenario(**scenario):
        monkeypatch.setenv("VMMANAGE_FAKE_SCENARIO", json.dumps(scenario))

    return _scenario


@pytest.fixture
def fast_settings(temp_state_dir: Path) -> Settings:
    return Settings(temp_state_dir, **FAST_SETTINGS)


@pytest.fixture
def supervisor(fast_settings: Settings, worker_env) -> Generator[SessionSupervisor, None, None]:
    """Supervisor that spawns tests/fake_worker.py; closes leftovers afterwards."""
    sup = SessionSupervisor(fast_settings)
    yield sup
    sup.close_active()


@pytest.fixture
def channel_pair():
    """Connected controller and worker channel ends."""
    controller, worker_sock = CommandChannel.pair("test-channel")
    worker = CommandChannel(worker_sock, "test-channel")
    yield controller, worker
    controller.close()
    worker.close()


@pytest.fixture
def sample_records():
    return [
        Record("web-01", "poweredOn", "esx01.example.com", "vc01.example.com"),
        Record("web-02", "poweredOff", "esx02.example.com", "vc01.example.com"),
        Record("db-01", "poweredOn", "esx03.example.com", "vc02.example.com"),
        Record("WebProxy", "poweredOn", "esx03.example.com", "vc02.example.com"),
    ]


@pytest.fixture
def populated_cache(temp_state_dir: Path, sample_records) -> RecordStore:
    store = RecordStore(temp_state_dir / "vm_cache.txt")
    store.write(sample_records)
    return store


def write_config(state_dir: Path, **settings) -> Path:
    """Write {state_dir}/config.json."""
    config_file = state_dir / "config.json"
    with config_file.open('w') as f:
        json.dump(settings, f, indent=2)
    return config_file


# Test markers for organizing tests
pytest_markers = [
    pytest.mark.unit,
    pytest.mark.integration,
    pytest.mark.slow,
]


def pytest_configure(config):
    """Configure pytest with custom markers."""
    for marker in pytest_markers:
        config.addinivalue_line("markers", f"{marker.name}: {marker.name} tests")
