import pytest

from svcgw.routes import AmbiguousMatch, AmbiguousRoute, NoMatch, RouteRule, RouteTable, normalize_host


def _table():
    return RouteTable(
        [
            RouteRule(target="web", port=443),
            RouteRule(target="http-api", port=443, path_prefix="/api"),
            RouteRule(target="api-v2", port=443, path_prefix="/api/v2/"),
            RouteRule(target="git-server", port=443, host="git.example.com"),
            RouteRule(target="tenant", port=443, host="*.example.com"),
            RouteRule(target="metrics", port=8086, path_prefix="/"),
        ]
    )


@pytest.mark.parametrize(
    "host,path,port,target",
    [
        ("example.org", "/", 443, "web"),
        ("example.org", "/api", 443, "http-api"),
        ("example.org", "/api/projects", 443, "http-api"),
        ("example.org", "/api/v2/projects", 443, "api-v2"),
        ("example.org", "/apix", 443, "web"),
        ("git.example.com", "/repo.git", 443, "git-server"),
        ("GIT.example.com:443", "/", 443, "git-server"),
        ("a.example.com", "/", 443, "tenant"),
        ("a.example.com", "/api/x", 443, "http-api"),
        ("example.org", "/api", 8086, "metrics"),
    ],
)
def test_longest_prefix_then_host_specificity(host, path, port, target):
    assert _table().resolve(host, path, port).target == target


def test_no_match():
    table = RouteTable([RouteRule(target="http-api", port=443, path_prefix="/api")])
    with pytest.raises(NoMatch):
        table.resolve("example.org", "/other", 443)
    with pytest.raises(NoMatch):
        table.resolve("example.org", "/api", 80)


def test_wildcard_does_not_match_bare_domain():
    table = RouteTable([RouteRule(target="tenant", port=80, host="*.example.com")])
    with pytest.raises(NoMatch):
        table.resolve("example.com", "/", 80)


def test_equally_specific_overlapping_rules_fail_at_load():
    with pytest.raises(AmbiguousRoute):
        RouteTable(
            [
                RouteRule(target="a", port=443, host="example.com", path_prefix="/api"),
                RouteRule(target="b", port=443, host="EXAMPLE.com", path_prefix="/api/"),
            ]
        )


def test_same_rule_on_different_ports_is_fine():
    table = RouteTable([RouteRule(target="a", port=80), RouteRule(target="b", port=8777)])
    assert table.resolve(None, "/", 80).target == "a"
    assert table.resolve(None, "/", 8777).target == "b"
    assert table.ports == [80, 8777]
    # Without a port both rules apply equally.
    with pytest.raises(AmbiguousMatch):
        table.resolve(None, "/", None)


def test_strip_prefix():
    rule = RouteRule(target="api", port=80, path_prefix="/api", strip_prefix=True)
    assert rule.upstream_path("/api") == "/"
    assert rule.upstream_path("/api/projects") == "/projects"
    assert RouteRule(target="api", port=80, path_prefix="/api").upstream_path("/api/x") == "/api/x"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Example.COM", "example.com"),
        ("example.com:8443", "example.com"),
        ("[::1]:443", "[::1]"),
        ("example.com.", "example.com"),
        ("", None),
        (None, None),
    ],
)
def test_normalize_host(raw, expected):
    assert normalize_host(raw) == expected
