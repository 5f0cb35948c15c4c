from lb_sync.models.schemas import Backend
from lb_sync.services.server_ids import ServerIdAllocator, options_id


def _backend(host, port=80, **kw):
    return Backend(host=host, port=port, **kw)


def test_ids_are_allocated_lowest_first_and_stay_stable(ctx):
    ids = ServerIdAllocator(ctx)
    a, b = _backend("a"), _backend("b")

    assert ids.id_for("svc", a.backend_name, a) == 1
    assert ids.id_for("svc", b.backend_name, b) == 2
    # asking again keeps the id
    assert ids.id_for("svc", a.backend_name, a) == 1
    assert ids.assignments("svc") == {"a:80": 1, "b:80": 2}


def test_services_have_independent_id_spaces(ctx):
    ids = ServerIdAllocator(ctx)
    a = _backend("a")
    assert ids.id_for("one", a.backend_name, a) == 1
    assert ids.id_for("two", a.backend_name, a) == 1


def test_released_ids_are_reused(ctx):
    ids = ServerIdAllocator(ctx)
    a, b, c = _backend("a"), _backend("b"), _backend("c")
    ids.id_for("svc", a.backend_name, a)
    ids.id_for("svc", b.backend_name, b)

    ids.release_absent("svc", ["b:80"])
    assert ids.get("svc", "a:80") is None
    assert ids.id_for("svc", c.backend_name, c) == 1
    assert ids.get("svc", "b:80") == 2


def test_explicit_id_from_discovery_wins(ctx):
    ids = ServerIdAllocator(ctx)
    pinned = _backend("a", haproxy_server_id=7)
    assert ids.id_for("svc", pinned.backend_name, pinned) == 7


def test_explicit_id_from_options(ctx):
    ids = ServerIdAllocator(ctx)
    pinned = _backend("a", haproxy_server_options="check id 12 inter 2s")
    assert ids.explicit_id(pinned) == 12
    assert ids.id_for("svc", pinned.backend_name, pinned) == 12


def test_explicit_id_evicts_previous_owner(ctx, caplog):
    ids = ServerIdAllocator(ctx)
    a = _backend("a")
    ids.id_for("svc", a.backend_name, a)  # a -> 1
    pinned = _backend("b", haproxy_server_id=1)

    assert ids.id_for("svc", pinned.backend_name, pinned) == 1
    assert ids.get("svc", "a:80") is None
    assert "claims server id 1" in caplog.text
    # the evicted backend gets a fresh, different id
    assert ids.id_for("svc", a.backend_name, a) == 2


def test_remember_does_not_steal_or_override(ctx):
    ids = ServerIdAllocator(ctx)
    a = _backend("a")
    ids.id_for("svc", a.backend_name, a)  # a -> 1

    ids.remember("svc", "b:80", 1)
    assert ids.get("svc", "b:80") is None

    ids.remember("svc", "a:80", 5)
    assert ids.get("svc", "a:80") == 1

    ids.remember("svc", "c:80", 9)
    assert ids.get("svc", "c:80") == 9

    ids.remember("svc", "d:80", "garbage")
    ids.remember("svc", "e:80", 0)
    assert ids.get("svc", "d:80") is None
    assert ids.get("svc", "e:80") is None


def test_exhausted_id_space_returns_none(ctx):
    ids = ServerIdAllocator(ctx, max_server_id=2)
    backends = [_backend(h) for h in ("a", "b", "c")]
    got = [ids.id_for("svc", b.backend_name, b) for b in backends]

    assert got == [1, 2, None]
    assert ctx.metrics.server_id_exhausted._value.get() == 1


def test_options_id_parsing():
    assert options_id("check id 3") == 3
    assert options_id("check") is None
    assert options_id("id") is None
    assert options_id("id x") is None
    assert options_id(None) is None
