# gatewayproxy

The building blocks of an HTTP/TUP API gateway. The package needs only the standard library.

- **Routing** (`gatewayproxy.router`). `HttpRouter` and `RouterAgent` match rules made of
  `server_name`, `location` and `proxy_pass`, in the style of nginx.
  - Hosts are tried in this order: exact name, leading wildcard (`*.example.com`),
    trailing wildcard (`api.*`), regular expression (`~expr`), and then the default
    (empty name).
  - Within a host, locations are tried in this order: exact (`= /path`), then `^~`, then
    `~` / `~*`, then `!~` / `!~*`, then plain prefixes, and finally `/`.
  - Regular expressions are POSIX basic regular expressions. `~` and `!~` ignore case;
    `~*` and `!~*` are case-sensitive.
  - When a `proxy_pass` ends in an `Obj` name, the optional `on_obj_upstream` callback
    receives that name.
- **Upstream selection** (`gatewayproxy.upstream`).
  - `HttpProxy` does weighted round-robin over its `AddrProxy` nodes.
  - `AddrProxy.do_finish` records the outcome of each call and marks a node as timed out
    when it fails too often. A timed-out node is retried every ten seconds.
  - `AddrCheckThread` probes inactive nodes, over HTTP or with a TCP connect, until they
    recover.
  - `HttpProxyFactory` gives out one `HttpProxy` for each upstream name.
- **Configuration** (`gatewayproxy.config`).
  - `parse_tc_config` and `load_config` read the nested `<main> key = value </main>` format
    into a `TcConfig`.
  - `TcConfig.get("/main/base<key>", default)` looks up a single value, and `domain_map`
    returns all parameters of a domain.
  - `GatewayConfig.from_config` takes the gateway settings from a `TcConfig`: TUP hosts and
    paths, the JSON path, the monitor URL, the response size limit, and the
    inactive/timeout return codes.
- **Responses** (`gatewayproxy.responses`). `error_response`, `monitor_response` and
  `HttpResponse` produce encoded HTTP/1.1 responses as `bytes`.
- **Statistics** (`gatewayproxy.report`). `StatReporter` records call statistics
  (`report_stat`) and property counters (`report_property`) in memory.
- **WebSocket sessions** (`gatewayproxy.wsusers`). `WSUserManager` keeps the WebSocket users
  for each connection id. `StateIdManager` maps state ids to endpoints.

## Installation

```
pip install .
```

## Routing

```python
from gatewayproxy.router import RouterAgent, RouterParam

agent = RouterAgent()
agent.reload([
    RouterParam(1, "api.example.com", "/user/", "http://UserServer.UserObj/v1/", "user"),
    RouterParam(2, "", "/", "http://127.0.0.1:8080", "default"),
])

result = agent.parse("api.example.com", "/user/info")
print(result.upstream, result.path, result.station_id)
# UserServer.UserObj /v1/info user
```

`parse` returns a `RouterResult`, or `None` when no rule matches. `reload` returns `False`,
and keeps the previous rules, when a host pattern cannot be compiled. If a single location
is malformed, it is logged and skipped.

## Upstream selection

```python
from gatewayproxy.upstream import HttpProxyFactory, UpstreamInfo

factory = HttpProxyFactory()
proxy = factory.get("UserServer.UserObj")
proxy.set_addr([UpstreamInfo("10.0.0.1:8080", weight=2), UpstreamInfo("10.0.0.2:8080")], "v1")

node = proxy.get_proxy()
print(node.addr)
node.do_finish(failed=False)
```

## Configuration

```python
from gatewayproxy.config import GatewayConfig, parse_tc_config

conf = parse_tc_config("""
<main>
  <base>
    tup_path = /tup
    tup_host = gw.example.com|*.example.com
  </base>
</main>
""")
settings = GatewayConfig.from_config(conf, "Base.GatewayServer")
print(settings.is_tup_host("api.example.com"))  # True
```

## Error pages

```python
from gatewayproxy.responses import error_response

raw = error_response(404)   # a complete HTTP response as bytes
```

## What the package does not do

The package has no server and no command. It does not:

- accept connections;
- forward requests to upstreams;
- perform the WebSocket handshake;
- load routing rules from a database;
- enforce per-station request limits.

A program that embeds the package does this work itself and calls the router, the upstream
selection and the response builders described above. Statistics stay in memory in
`StatReporter` and are not sent anywhere.

## Running the tests

```
pip install .[test]
pytest
```