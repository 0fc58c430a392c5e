"""Shared fixtures for BeoSound 5c Cast bridge unit tests."""

import json
import sys
from pathlib import Path

import pytest

# Add services/ to sys.path so `import beocast` works without installing
SERVICES_DIR = Path(__file__).resolve().parents[3] / "services"
sys.path.insert(0, str(SERVICES_DIR))
sys.path.insert(0, str(Path(__file__).resolve().parent))


@pytest.fixture(autouse=True)
def _reset_config_cache(monkeypatch):
    """Reset the config module's cache before each test."""
    import beocast.config as config_mod
    monkeypatch.delenv("BEOCAST_CONFIG", raising=False)
    config_mod._config = None
    yield
    config_mod._config = None


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Provide a temp config file path and patch _SEARCH_PATHS to use it.

    Returns the Path object — write JSON to it with write_text() or use
    the write_config fixture for convenience.
    """
    import beocast.config as config_mod

    path = tmp_path / "config.json"
    monkeypatch.setattr(config_mod, "_SEARCH_PATHS", [str(path)])
    return path


@pytest.fixture
def write_config(config_file):
    """Write a dict as JSON to the temp config file.

    Usage:
        def test_something(write_config):
            write_config({"hub": {"port": 9000}})
            assert cfg("hub", "port") == 9000
    """
    import beocast.config as config_mod

    def _write(data: dict):
        config_file.write_text(json.dumps(data))
        config_mod._config = None  # force re-read
        return config_file

    return _write


@pytest.fixture
def mock_config(monkeypatch):
    """Directly set the config dict without file I/O."""
    import beocast.config as config_mod

    def _mock(data: dict):
        monkeypatch.setattr(config_mod, "_config", data)

    return _mock


# --- Fakes ---


@pytest.fixture
def hub():
    from fakes import FakeHub
    return FakeHub()


@pytest.fixture
def transports():
    """Every FakeTransport created by the factory, in creation order."""
    return []


@pytest.fixture
def transport_factory(transports):
    """Factory handing out FakeTransports.

    Pre-seed behaviour by appending to ``factory.plan`` a callable that
    configures each new transport before it is returned.
    """
    from fakes import FakeTransport

    def factory():
        transport = FakeTransport()
        if factory.plan:
            factory.plan.pop(0)(transport)
        transports.append(transport)
        return transport

    factory.plan = []
    return factory


@pytest.fixture
def service():
    from beocast.discovery import ServiceDescriptor
    return ServiceDescriptor(
        fullname="Kitchen-abc123._googlecast._tcp.local.",
        addresses=("192.168.1.40",),
        txt={"fn": "Kitchen", "md": "Chromecast Audio"},
        port=8009,
    )
