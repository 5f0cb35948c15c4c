import logging
import shutil
import tempfile

import pytest

from lb_sync.core.config import build_config, build_haproxy_options
from lb_sync.core.context import SyncContext
from lb_sync.models.schemas import Backend, WatcherView


def _make_view(name="svc", backends=(), config=None, revision=1):
    return WatcherView(
        name=name,
        backends=tuple(Backend(**b) if isinstance(b, dict) else b for b in backends),
        generator_config=dict(config or {}),
        revision=revision,
    )


def _make_options(**overrides):
    data = {
        "global": ["daemon", "maxconn 4096"],
        "defaults": ["mode http", "timeout connect 5s"],
        "do_writes": False,
        "do_socket": False,
        "do_reloads": False,
    }
    data.update(overrides)
    return build_haproxy_options(data)


@pytest.fixture
def ctx():
    return SyncContext(log=logging.getLogger("lb_sync.test"))


@pytest.fixture
def make_view():
    return _make_view


@pytest.fixture
def make_options():
    return _make_options


@pytest.fixture
def short_tmp():
    """A directory with a short path; AF_UNIX socket paths are length-limited."""
    path = tempfile.mkdtemp(prefix="lbs", dir="/tmp")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def app_config():
    """One static service and a generator that neither writes nor reloads."""
    return build_config({
        "services": {
            "svc": {
                "discovery": {"method": "static"},
                "default_servers": [{"host": "10.0.0.1", "port": 80}],
                "haproxy": {"port": 3213, "listen": ["mode http"]},
            },
        },
        "haproxy": {
            "global": ["daemon"],
            "defaults": ["mode http"],
            "do_writes": False,
            "do_socket": False,
            "do_reloads": False,
        },
    })


@pytest.fixture
def anyio_backend():
    return "asyncio"
