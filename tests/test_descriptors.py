import pytest

from svcgw.descriptors import (
    CyclicDependency,
    DuplicateService,
    InvalidConfig,
    RestartPolicy,
    UnknownDependency,
    load,
)


def _svc(port, *deps, **extra):
    return {"port": port, "depends_on": list(deps), **extra}


@pytest.mark.parametrize(
    "raw",
    [
        {"a": _svc(1)},
        {"b": _svc(2, "a"), "a": _svc(1)},
        {"http-api": _svc(8777, "git-server"), "git-server": _svc(8778), "caddy": _svc(80, "http-api", "git-server")},
        {"d": _svc(4, "b", "c"), "c": _svc(3, "a"), "b": _svc(2, "a"), "a": _svc(1), "e": _svc(5)},
    ],
)
def test_topological_order_puts_dependencies_first(raw):
    ds = load(raw)
    order = [d.name for d in ds.topological_order()]

    assert sorted(order) == sorted(raw)
    for d in ds:
        for dep in d.depends_on:
            assert order.index(dep) < order.index(d.name)


def test_topological_order_breaks_ties_by_declaration_order():
    ds = load({"z": _svc(1), "y": _svc(2), "x": _svc(3, "z"), "w": _svc(4)})
    assert [d.name for d in ds.topological_order()] == ["z", "y", "x", "w"]


def test_topological_order_is_restartable():
    ds = load({"b": _svc(2, "a"), "a": _svc(1)})
    first = ds.topological_order()
    assert next(first).name == "a"
    # A new call starts over and does not disturb the first generator.
    assert [d.name for d in ds.topological_order()] == ["a", "b"]
    assert next(first).name == "b"


@pytest.mark.parametrize(
    "raw,members",
    [
        ({"a": _svc(1, "a")}, {"a"}),
        ({"a": _svc(1, "b"), "b": _svc(2, "a")}, {"a", "b"}),
        ({"x": _svc(9), "a": _svc(1, "c"), "b": _svc(2, "a"), "c": _svc(3, "b")}, {"a", "b", "c"}),
    ],
)
def test_cycle_fails_load_naming_participants(raw, members):
    with pytest.raises(CyclicDependency) as ei:
        load(raw)
    assert set(ei.value.cycle) <= members
    assert set(ei.value.cycle) & members
    assert ei.value.cycle[0] in str(ei.value)


def test_unknown_dependency_names_both_sides():
    with pytest.raises(UnknownDependency) as ei:
        load({"http-api": _svc(8777, "git-server")})
    assert ei.value.service == "http-api"
    assert ei.value.dependency == "git-server"


def test_duplicate_names_in_list_form():
    with pytest.raises(DuplicateService):
        load([{"name": "a", "port": 1}, {"name": "a", "port": 2}])


def test_invalid_service_name_and_schema():
    with pytest.raises(InvalidConfig):
        load({"Bad_Name": _svc(1)})
    with pytest.raises(InvalidConfig):
        load({"a": {"port": 0}})
    with pytest.raises(InvalidConfig):
        load({"a": {"port": 1, "restart": "always"}})
    with pytest.raises(InvalidConfig):
        load({"a": {"port": 1, "health_path": "http://evil/"}})


def test_compose_style_fields_are_parsed():
    ds = load(
        {
            "git-server": {
                "image": "git-server:latest",
                "command": "/usr/local/bin/radicle-git-server.sh --debug",
                "port": 8778,
                "restart": "unless-stopped",
                "volumes": ["/var/opt/radicle:/app/radicle"],
                "environment": ["RUST_LOG=hyper=warn,debug"],
            },
            "http-api": {
                "port": 8777,
                "depends_on": ["git-server"],
                "volumes": [{"host_path": "/var/opt/radicle", "container_path": "/app/radicle", "read_only": True}],
                "environment": {"RUST_LOG": "info"},
            },
        }
    )
    git = ds.get("git-server")
    assert git.command == ("/usr/local/bin/radicle-git-server.sh", "--debug")
    assert git.restart is RestartPolicy.UNLESS_STOPPED
    assert git.environment == {"RUST_LOG": "hyper=warn,debug"}
    assert git.mounts[0].read_only is False
    assert git.endpoint == "git-server:8778"
    assert git.base_url == "http://git-server:8778"

    api = ds.get("http-api")
    assert api.mounts[0].read_only is True
    assert api.restart is RestartPolicy.NEVER
    assert ds.dependents("git-server") == ["http-api"]
    assert ds.shared_volumes() == {"/var/opt/radicle": ["git-server", "http-api"]}


def test_bad_volume_string():
    with pytest.raises(InvalidConfig):
        load({"a": {"port": 1, "volumes": ["/only-one-part"]}})


@pytest.mark.parametrize(
    "policy,exit_code,expected",
    [
        (RestartPolicy.UNLESS_STOPPED, 0, True),
        (RestartPolicy.UNLESS_STOPPED, 1, True),
        (RestartPolicy.ON_FAILURE, 0, False),
        (RestartPolicy.ON_FAILURE, 3, True),
        (RestartPolicy.ON_FAILURE, None, True),
        (RestartPolicy.NEVER, 1, False),
        (RestartPolicy.NEVER, None, False),
    ],
)
def test_restart_policy(policy, exit_code, expected):
    assert policy.should_restart(exit_code) is expected
