import json
import logging
import random

import pytest

from lb_sync.services.generator import HaproxyGenerator, normalize_generator_config, structural_lines
from lb_sync.services.state_cache import GENERATOR_CONFIG_KEY

BASE = ["global", "\tdaemon", "\tmaxconn 4096", "defaults", "\tmode http", "\ttimeout connect 5s"]


@pytest.fixture
def make_generator(ctx, make_options):
    def _make(**overrides):
        return HaproxyGenerator(ctx, make_options(**overrides), rng=random.Random(0), clock=lambda: 1000.0)
    return _make


def _body(config):
    header, blank, *rest = config.split("\n")
    assert header.startswith("# auto-generated by lb-sync at ")
    assert blank == ""
    return rest


def test_generate_config_layout(make_generator, make_view):
    gen = make_generator(extra_sections={"listen stats": ["bind :1936", "stats enable"]})
    view = make_view(backends=[{"host": "h1", "port": 80}], config={"port": 3213, "listen": ["mode http"]})

    assert _body(gen.generate_config([view])) == BASE + [
        "",
        "listen stats",
        "\tbind :1936",
        "\tstats enable",
        "",
        "frontend svc",
        "\tmode http",
        "\tbind localhost:3213",
        "\tdefault_backend svc",
        "",
        "backend svc",
        "\tmode http",
        "\tserver h1:80 h1:80 id 1 cookie h1:80",
    ]


def test_disabled_services_are_skipped(make_generator, make_view):
    gen = make_generator()
    view = make_view(backends=[{"host": "h1", "port": 80}], config={"port": 80, "disabled": True})
    assert _body(gen.generate_config([view])) == BASE


def test_shared_frontend(make_generator, make_view):
    gen = make_generator(shared_frontend=["bind :80"])
    view = make_view(config={"shared_frontend": ["acl is_svc hdr(host) svc", "use_backend svc if is_svc"]})

    assert _body(gen.generate_config([view]))[-5:] == [
        "",
        "frontend shared-frontend",
        "\tbind :80",
        "\tacl is_svc hdr(host) svc",
        "\tuse_backend svc if is_svc",
    ]


def test_service_shared_frontend_without_global_one_is_skipped(make_generator, make_view, caplog):
    gen = make_generator()
    view = make_view(config={"shared_frontend": ["bind :80"]})
    with caplog.at_level(logging.WARNING):
        body = _body(gen.generate_config([view]))
    assert "shared-frontend" not in "\n".join(body)
    assert "does not! skipping" in caplog.text


def test_generator_config_change_requires_restart(ctx, make_generator, make_view):
    gen = make_generator()
    backends = [{"host": "h1", "port": 80}]
    gen.generate_config([make_view(backends=backends, config={"port": 80})])
    gen.restart_state.restart_required = False

    gen.generate_config([make_view(backends=backends, config={"port": 80})])
    assert gen.restart_state.restart_required is False

    gen.generate_config([make_view(backends=backends, config={"port": 81})])
    assert gen.restart_state.restart_required is True
    assert "bind localhost:81" in gen.service_config_text("svc")
    assert ctx.metrics.stanza_renders._value.get() == 2


def test_config_change_since_last_run_requires_restart(make_generator, make_view):
    gen = make_generator()
    gen.state_cache.load()
    gen.state_cache._data["svc"] = {GENERATOR_CONFIG_KEY: {"port": 80}}
    gen.restart_state.restart_required = False

    gen.generate_config([make_view(config={"port": 8080})])
    assert gen.restart_state.restart_required is True


def test_write_config_only_restarts_on_structural_change(make_generator, tmp_path):
    gen = make_generator(do_writes=True, config_file_path=str(tmp_path / "haproxy.cfg"))
    gen.restart_state.restart_required = False

    assert gen.write_config("# 1\nbackend svc\n\tserver a a:1 disabled\n\tserver b b:1") is True
    assert gen.restart_state.restart_required is False
    # enable/disable and reordering is left to the stats socket
    assert gen.write_config("# 2\nbackend svc\n\tserver b b:1\n\tserver a a:1") is True
    assert gen.restart_state.restart_required is False

    assert gen.write_config("# 3\nbackend svc\n\tserver b b:1\n\tserver c c:1") is True
    assert gen.restart_state.restart_required is True


def test_failed_config_check_requires_restart(make_generator, tmp_path):
    path = tmp_path / "haproxy.cfg"
    gen = make_generator(do_writes=True, config_file_path=str(path), check_command="false")
    gen.restart_state.restart_required = False

    assert gen.write_config("# 1\nglobal") is False
    assert gen.restart_state.restart_required is True
    assert not path.exists()


def test_update_config_writes_and_reloads(ctx, make_generator, make_view, tmp_path):
    path = tmp_path / "haproxy.cfg"
    gen = make_generator(
        do_writes=True, config_file_path=str(path), do_reloads=True, reload_command="true"
    )
    view = make_view(backends=[{"host": "h1", "port": 80}], config={"port": 80})

    text = gen.update_config([view])

    assert path.read_text() == text
    assert gen.restart_state.restart_required is False
    assert ctx.metrics.restarts.labels(result="ok")._value.get() == 1


def test_tick_flushes_state_file_and_retries_restart(ctx, make_generator, make_view, tmp_path):
    state_path = tmp_path / "state.json"
    gen = make_generator(state_file_path=str(state_path), do_reloads=True, reload_command="true")
    view = make_view(backends=[{"host": "h1", "port": 80}], config={"port": 80})
    gen.generate_config([view])

    gen.tick([view])

    data = json.loads(state_path.read_text())
    assert data["svc"]["h1:80"]["timestamp"] == 1000
    assert data["svc"]["h1:80"]["haproxy_server_id"] == 1
    assert gen.restart_state.time == 1
    assert gen.restart_state.restart_required is False


def test_update_config_without_socket_requires_restart(make_generator, make_view):
    gen = make_generator()
    gen.restart_state.restart_required = False
    gen.update_config([make_view()])
    assert gen.restart_state.restart_required is True


def test_service_config_text(make_generator, make_view):
    gen = make_generator()
    assert gen.service_config_text("svc") is None
    gen.generate_config([make_view(backends=[{"host": "h1", "port": 80}])])
    assert gen.service_config_text("svc") == "\nbackend svc\n\tserver h1:80 h1:80 id 1 cookie h1:80"


def test_normalize_generator_config(caplog):
    log = logging.getLogger("lb_sync.test")
    with caplog.at_level(logging.WARNING):
        config = normalize_generator_config("svc", {"backend": ["balance first"]}, log)
    assert config == {
        "server_options": "",
        "server_port_override": None,
        "backend": ["balance first"],
        "frontend": [],
        "listen": [],
    }
    assert "does not include a port" in caplog.text


def test_structural_lines():
    config = "# header\nbackend svc\n\tserver b b:1 disabled\n\tserver a a:1\n\nbackend other"
    assert structural_lines(config) == ["backend svc", "\tserver a a:1", "\tserver b b:1", "", "backend other"]


def test_server_ids_survive_a_restart(ctx, make_options, make_view, tmp_path):
    options = make_options(state_file_path=str(tmp_path / "state.json"))
    config = {"backend_order": "asc"}
    first = HaproxyGenerator(ctx, options, clock=lambda: 1000.0)
    first.generate_config([make_view(backends=[{"host": "a", "port": 1}, {"host": "b", "port": 1}], config=config)])
    first.update_state_file([make_view(backends=[{"host": "a", "port": 1}, {"host": "b", "port": 1}], config=config)])

    second = HaproxyGenerator(ctx, options, clock=lambda: 1001.0)
    second.generate_config([make_view(backends=[{"host": "b", "port": 1}, {"host": "c", "port": 1}], config=config)])

    assert second.service_config_text("svc").split("\n")[2:] == [
        "\tserver a:1 a:1 id 1 cookie a:1 disabled",
        "\tserver b:1 b:1 id 2 cookie b:1",
        "\tserver c:1 c:1 id 3 cookie c:1",
    ]


def test_vanished_backend_is_disabled_until_ttl(ctx, make_options, make_view):
    now = [1000.0]
    gen = HaproxyGenerator(ctx, make_options(state_file_ttl=10), clock=lambda: now[0])
    config = {"backend_order": "asc"}
    both = make_view(backends=[{"host": "a", "port": 1}, {"host": "b", "port": 1}], config=config, revision=1)
    gen.generate_config([both])
    gen.update_state_file([both])

    only_b = make_view(backends=[{"host": "b", "port": 1}], config=config, revision=2)
    gen.generate_config([only_b])
    assert gen.service_config_text("svc").split("\n")[2] == "\tserver a:1 a:1 id 1 cookie a:1 disabled"

    now[0] = 1011.0
    gen.update_state_file([only_b])
    gen.generate_config([make_view(backends=[{"host": "b", "port": 1}], config=config, revision=3)])
    assert gen.service_config_text("svc").split("\n")[2:] == ["\tserver b:1 b:1 id 2 cookie b:1"]


def test_stable_backends_render_identically(make_generator, make_view):
    gen = make_generator()
    backends = [{"host": "a", "port": 1}, {"host": "b", "port": 1}]
    gen.generate_config([make_view(backends=backends, config={"backend_order": "asc"}, revision=1)])
    first = gen.service_config_text("svc")
    gen.generate_config([make_view(backends=backends, config={"backend_order": "asc"}, revision=2)])
    assert gen.service_config_text("svc") == first


def test_backend_without_free_id_is_rendered_without_one(ctx, make_options, make_view, caplog):
    gen = HaproxyGenerator(ctx, make_options(max_server_id=2), clock=lambda: 1000.0)
    view = make_view(
        backends=[{"host": h, "port": 80} for h in ("a", "b", "c")],
        config={"backend_order": "no_shuffle"},
    )
    with caplog.at_level(logging.ERROR):
        gen.generate_config([view])

    assert gen.service_config_text("svc").split("\n")[2:] == [
        "\tserver a:80 a:80 id 1 cookie a:80",
        "\tserver b:80 b:80 id 2 cookie b:80",
        "\tserver c:80 c:80 cookie c:80",
    ]
    assert "ran out of server ids" in caplog.text
