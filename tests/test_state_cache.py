import json

from lb_sync.models.schemas import Backend
from lb_sync.services.server_ids import ServerIdAllocator
from lb_sync.services.state_cache import GENERATOR_CONFIG_KEY, StateCache, plain_config


def test_missing_state_file_starts_empty(ctx, tmp_path):
    cache = StateCache(ctx, str(tmp_path / "state.json"))
    assert cache.services() == []
    assert cache.backends("svc") == {}
    assert cache.generator_config("svc") is None


def test_corrupt_state_file_starts_empty(ctx, tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json")
    cache = StateCache(ctx, str(path))
    assert cache.services() == []

    path.write_text("[1, 2]")
    assert StateCache(ctx, str(path)).services() == []


def test_refresh_records_backends_ids_and_config(ctx, tmp_path, make_view):
    path = tmp_path / "state.json"
    cache = StateCache(ctx, str(path))
    ids = ServerIdAllocator(ctx)
    backend = Backend(host="10.0.0.1", port=8080, name="web")
    ids.id_for("svc", backend.backend_name, backend)
    view = make_view(backends=[backend], config={"port": 80, "listen": ("mode http",)})

    cache.refresh([view], 1000.0, ids)
    assert cache.flush() is True

    data = json.loads(path.read_text())
    assert data["svc"]["web_10.0.0.1:8080"] == {
        "host": "10.0.0.1",
        "port": 8080,
        "name": "web",
        "timestamp": 1000,
        "haproxy_server_id": 1,
    }
    assert data["svc"][GENERATOR_CONFIG_KEY] == {"port": 80, "listen": ["mode http"]}
    assert not (tmp_path / "state.json.tmp").exists()

    reloaded = StateCache(ctx, str(path))
    assert list(reloaded.backends("svc")) == ["web_10.0.0.1:8080"]
    assert reloaded.generator_config("svc") == {"port": 80, "listen": ["mode http"]}


def test_refresh_expires_old_entries_and_empty_services(ctx, tmp_path):
    path = tmp_path / "state.json"
    path.write_text(json.dumps({
        "svc": {
            "old:80": {"host": "old", "port": 80, "timestamp": 0},
            "new:80": {"host": "new", "port": 80, "timestamp": 950},
            GENERATOR_CONFIG_KEY: {},
        },
        "gone": {
            "x:80": {"host": "x", "port": 80, "timestamp": 0},
            GENERATOR_CONFIG_KEY: {},
        },
    }))
    cache = StateCache(ctx, str(path), ttl=100)
    cache.refresh([], 1000.0, ServerIdAllocator(ctx))

    assert list(cache.backends("svc")) == ["new:80"]
    assert "gone" not in cache.services()


def test_refresh_keeps_cached_id_when_allocator_has_none(ctx, make_view):
    cache = StateCache(ctx)
    ids = ServerIdAllocator(ctx)
    backend = Backend(host="h", port=1)
    cache.refresh([make_view(backends=[backend])], 10.0, ids)
    cache.backends("svc")["h:1"]["haproxy_server_id"] = 4

    cache.refresh([make_view(backends=[backend])], 20.0, ids)
    assert cache.backends("svc")["h:1"]["haproxy_server_id"] == 4
    assert cache.backends("svc")["h:1"]["timestamp"] == 20


def test_cache_without_path_is_memory_only(ctx, make_view):
    cache = StateCache(ctx)
    cache.refresh([make_view(backends=[Backend(host="h", port=1)])], 1.0, ServerIdAllocator(ctx))
    assert cache.flush() is False
    assert list(cache.backends("svc")) == ["h:1"]


def test_flush_failure_is_logged_not_raised(ctx, tmp_path):
    cache = StateCache(ctx, str(tmp_path / "missing-dir" / "state.json"))
    assert cache.flush() is False
    assert ctx.metrics.state_file_writes.labels(result="error")._value.get() == 1


def test_plain_config_converts_tuples_and_mappings():
    assert plain_config({"a": ("x", {"b": (1,)})}) == {"a": ["x", {"b": [1]}]}
