import pytest

from gatewayproxy.router import (
    HostType,
    HttpRouter,
    PathType,
    RouterAgent,
    RouterConfigError,
    RouterHost,
    RouterParam,
    RouterPath,
    RouterResult,
)

UPSTREAM = "backend:8080"
PROXY_NO_PATH = "http://" + UPSTREAM
PROXY_WITH_PATH = "http://" + UPSTREAM + "/api"


@pytest.mark.parametrize(
    "server_name, expected",
    [
        ("", HostType.DEFAULT),
        ("*.example.com", HostType.PREWCMATCH),
        ("www.*", HostType.SUFWCMATCH),
        ("~^api", HostType.REGMATCH),
        ("*", HostType.FULL),
        ("example.com", HostType.FULL),
    ],
)
def test_host_type(server_name, expected):
    assert RouterHost.host_type(server_name) == expected


@pytest.mark.parametrize(
    "location, expected",
    [
        ("/", PathType.DEFAULT),
        ("= /login", PathType.FULL),
        ("~ x", PathType.REGSUCC),
        ("~* x", PathType.REGSUCC),
        ("!~ x", PathType.REGFAIL),
        ("!~* x", PathType.REGFAIL),
        ("^~ /static/", PathType.STARTWITH),
        ("/api", PathType.COMMPATH),
    ],
)
def test_init_path_types(location, expected):
    rp = RouterPath()
    assert rp.init_path(1, location, PROXY_NO_PATH, "s") == expected
    assert rp.path_type == expected


def test_init_path_rejects_bad_location():
    with pytest.raises(RouterConfigError):
        RouterPath().init_path(1, "login", PROXY_NO_PATH, "s")


@pytest.mark.parametrize("proxy_pass", ["ftp://host/x", "http://", "https://host.example.com/x"])
def test_init_path_rejects_bad_proxy_pass(proxy_pass):
    with pytest.raises(RouterConfigError):
        RouterPath().init_path(1, "/svc", proxy_pass, "s")


def test_init_path_rejects_bad_regex():
    with pytest.raises(RouterConfigError):
        RouterPath().init_path(1, "~ [abc", PROXY_NO_PATH, "s")


def test_proxy_pass_split():
    rp = RouterPath()
    rp.init_path(1, "/svc", PROXY_WITH_PATH, "s")
    assert rp.proxy_host == UPSTREAM
    assert rp.proxy_path == "/api"


def test_order_key_format():
    rp = RouterPath()
    rp.init_path(7, "/svc", PROXY_NO_PATH, "s")
    assert rp.order_key() == "00007-/svc"


def test_uninitialised_path_never_matches():
    assert RouterPath().match("/x") is None


def test_obj_upstream_listener_called():
    seen = []
    router = HttpRouter(on_obj_upstream=seen.append)
    router.add_router(1, "", "/", "http://App.Server.HelloObj", "s")
    router.add_router(2, "", "/other", PROXY_NO_PATH, "s")
    assert seen == ["App.Server.HelloObj"]


def test_path_rewrite_with_proxy_path():
    router = HttpRouter()
    router.add_router(1, "example.com", "/svc", PROXY_WITH_PATH, "station-a")
    suffix = "/users/1"
    result = router.parse("example.com", "/svc" + suffix)
    assert result == RouterResult(
        upstream=UPSTREAM,
        path="/api" + suffix,
        station_id="station-a",
        func_path="/svc/users",
    )


def test_path_passes_through_without_proxy_path():
    router = HttpRouter()
    router.add_router(1, "example.com", "/svc", PROXY_NO_PATH, "station-a")
    request = "/svc/users/1"
    result = router.parse("example.com", request)
    assert result.path == request
    assert result.upstream == UPSTREAM
    assert result.func_path == "/svc"


def test_full_path_needs_exact_match():
    router = HttpRouter()
    router.add_router(1, "example.com", "= /login", PROXY_NO_PATH, "auth")
    assert router.parse("example.com", "/login").station_id == "auth"
    assert router.parse("example.com", "/login/x") is None


def test_start_with_checked_before_common_prefix():
    router = HttpRouter()
    router.add_router(1, "example.com", "^~ /static/", PROXY_NO_PATH, "s1")
    router.add_router(2, "example.com", "/static", PROXY_NO_PATH, "s2")
    assert router.parse("example.com", "/static/a.png").station_id == "s1"
    assert router.parse("example.com", "/staticfile").station_id == "s2"


def test_longer_common_prefix_wins():
    router = HttpRouter()
    router.add_router(1, "example.com", "/a", PROXY_NO_PATH, "short")
    router.add_router(2, "example.com", "/a/b", PROXY_NO_PATH, "long")
    assert router.parse("example.com", "/a/b/c").station_id == "long"
    assert router.parse("example.com", "/a/x").station_id == "short"


def test_regex_is_posix_basic():
    router = HttpRouter()
    router.add_router(1, "example.com", r"~ \.(gif|png)$", PROXY_NO_PATH, "img")
    assert router.parse("example.com", "/x.gif") is None
    assert router.parse("example.com", "/x.(gif|png)").station_id == "img"

    grouped = HttpRouter()
    grouped.add_router(1, "example.com", r"~ \.\(gif\|png\)$", PROXY_NO_PATH, "img")
    result = grouped.parse("example.com", "/x.gif")
    assert result.station_id == "img"
    assert result.path == "/x.gif"


def test_tilde_regex_ignores_case():
    router = HttpRouter()
    router.add_router(1, "example.com", r"~ \.PNG$", PROXY_NO_PATH, "img")
    assert router.parse("example.com", "/a.png").station_id == "img"


def test_tilde_star_regex_is_case_sensitive():
    router = HttpRouter()
    router.add_router(1, "example.com", r"~* \.PNG$", PROXY_NO_PATH, "img")
    assert router.parse("example.com", "/a.png") is None
    assert router.parse("example.com", "/a.PNG").station_id == "img"


def test_regex_must_not_match():
    router = HttpRouter()
    router.add_router(1, "example.com", r"!~ \.xhtml$", PROXY_NO_PATH, "page")
    assert router.parse("example.com", "/page.html").station_id == "page"
    assert router.parse("example.com", "/page.xhtml") is None


def test_default_path_catches_everything():
    router = HttpRouter()
    router.add_router(1, "example.com", "/api", PROXY_NO_PATH, "api")
    router.add_router(2, "example.com", "/", PROXY_NO_PATH, "fallback")
    request = "/anything/x"
    result = router.parse("example.com", request)
    assert result.station_id == "fallback"
    assert result.path == request
    assert router.parse("example.com", "/api/v1").station_id == "api"


def test_host_matching_order():
    router = HttpRouter()
    router.add_router(1, "*.example.com", "/", PROXY_NO_PATH, "pre")
    router.add_router(2, "*.api.example.com", "/", PROXY_NO_PATH, "longpre")
    router.add_router(3, "www.example.com", "/", PROXY_NO_PATH, "full")
    router.add_router(4, "www.*", "/", PROXY_NO_PATH, "suf")
    assert router.parse("www.example.com", "/").station_id == "full"
    assert router.parse("v1.api.example.com", "/").station_id == "longpre"
    assert router.parse("m.example.com", "/").station_id == "pre"
    assert router.parse("www.other.org", "/").station_id == "suf"
    assert router.parse("other.org", "/") is None


def test_regex_host_and_default_host():
    router = HttpRouter()
    router.add_router(1, r"~^api\.", "/", PROXY_NO_PATH, "api")
    router.add_router(2, "", "/", PROXY_NO_PATH, "default")
    assert router.parse("api.example.com", "/").station_id == "api"
    assert router.parse("www.api.example.com", "/").station_id == "default"


def test_matched_host_without_matching_path_stops_search():
    router = HttpRouter()
    router.add_router(1, "example.com", "/only", PROXY_NO_PATH, "only")
    router.add_router(2, "", "/", PROXY_NO_PATH, "default")
    assert router.parse("example.com", "/elsewhere") is None


def test_add_path_reports_bad_location():
    host = RouterHost("example.com")
    assert host.add_path(1, "nope", PROXY_NO_PATH, "s") is False
    assert host.add_path(2, "/ok", PROXY_NO_PATH, "s") is True
    assert host.match_path("/ok/1").station_id == "s"


def test_add_router_ignores_bad_location_but_rejects_bad_host_regex():
    router = HttpRouter()
    assert router.add_router(1, "example.com", "nope", PROXY_NO_PATH, "s") is True
    assert router.add_router(2, "~[bad", "/", PROXY_NO_PATH, "s") is False


def test_match_host_kinds():
    assert RouterHost("*.example.com").match_host("a.example.com") is True
    assert RouterHost("*.example.com").match_host("example.org") is False
    assert RouterHost("www.*").match_host("www.example.com") is True
    assert RouterHost("").match_host("anything") is True
    assert RouterHost("example.com").match_host("example.com") is True


def test_agent_before_reload_returns_none():
    assert RouterAgent().parse("example.com", "/") is None


def test_agent_reload_and_keep_old_on_failure():
    agent = RouterAgent()
    good = [RouterParam(1, "example.com", "/svc", PROXY_WITH_PATH, "station-a")]
    assert agent.reload(good) is True
    assert agent.parse("example.com", "/svc/x").station_id == "station-a"

    bad = [
        RouterParam(1, "example.com", "/other", PROXY_NO_PATH, "station-b"),
        RouterParam(2, "~[bad", "/", PROXY_NO_PATH, "station-c"),
    ]
    assert agent.reload(bad) is False
    assert agent.parse("example.com", "/svc/x").station_id == "station-a"
    assert agent.parse("example.com", "/other") is None