"""Routing of HTTP requests to upstreams, in the manner of nginx.

Hosts are matched first (exact name, leading wildcard, trailing wildcard,
regular expression, default), then the paths configured for that host:

* ``= /login``        exact path
* ``^~ /static/``     path prefix, checked before the regular expressions
* ``~ expr``          regular expression must match (ignores case)
* ``~* expr``         regular expression must match (case-sensitive)
* ``!~ expr``         regular expression must not match (ignores case)
* ``!~* expr``        regular expression must not match (case-sensitive)
* ``/prefix``         plain path prefix, longer prefixes win
* ``/``               matches every request

Regular expressions are POSIX basic regular expressions.

``proxy_pass`` without a path forwards the request path unchanged; with a
path (even a bare ``/``) the matched location prefix is replaced by it.
"""

from __future__ import annotations

import enum
import logging
import re
import string
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

logger = logging.getLogger(__name__)

ObjUpstreamListener = Callable[[str], None]

_TRIM_CHARS = " \r\n\t"


class RouterConfigError(ValueError):
    """A location, proxy_pass or host pattern that cannot be used."""


@dataclass
class RouterResult:
    """Where a request goes: upstream address, rewritten path and station."""

    upstream: str = ""
    path: str = ""
    station_id: str = ""
    func_path: str = ""


@dataclass
class RouterParam:
    """One routing rule as loaded from configuration."""

    order_id: int
    server_name: str
    location: str
    proxy_pass: str
    station_id: str


class PathType(enum.IntEnum):
    NULL = 0
    FULL = 1
    STARTWITH = 2
    REGSUCC = 3
    REGFAIL = 4
    COMMPATH = 5
    DEFAULT = 99


class HostType(enum.IntEnum):
    NULL = 0
    FULL = 1
    PREWCMATCH = 2
    SUFWCMATCH = 3
    REGMATCH = 4
    DEFAULT = 99


# --------------------------------------------------------------------------
# POSIX basic regular expressions

_POSIX_CLASSES = {
    "alpha": "a-zA-Z",
    "digit": "0-9",
    "alnum": "a-zA-Z0-9",
    "upper": "A-Z",
    "lower": "a-z",
    "space": r" \t\n\r\f\v",
    "blank": r" \t",
    "punct": "".join("\\" + c for c in string.punctuation),
    "xdigit": "0-9A-Fa-f",
    "cntrl": r"\x00-\x1f\x7f",
    "print": r"\x20-\x7e",
    "graph": r"\x21-\x7e",
}

_SET_SPECIALS = set("\\[]^&~|")


def _translate_bracket(pattern: str, start: int) -> tuple[str, int]:
    i = start + 1
    negate = False
    if i < len(pattern) and pattern[i] == "^":
        negate = True
        i += 1
    items: list[str] = []
    first = True
    while True:
        if i >= len(pattern):
            raise re.error("unmatched [", pattern, start)
        c = pattern[i]
        if c == "]" and not first:
            i += 1
            break
        first = False
        if c == "[" and pattern.startswith(":", i + 1):
            end = pattern.find(":]", i + 2)
            if end == -1:
                raise re.error("unterminated character class", pattern, i)
            name = pattern[i + 2:end]
            if name not in _POSIX_CLASSES:
                raise re.error(f"unknown character class {name!r}", pattern, i)
            items.append(_POSIX_CLASSES[name])
            i = end + 2
            continue
        items.append("\\" + c if c in _SET_SPECIALS else c)
        i += 1
    return ("[^" if negate else "[") + "".join(items) + "]", i


def _bre_to_python(pattern: str) -> str:
    out: list[str] = []
    i = 0
    n = len(pattern)
    at_start = True
    while i < n:
        c = pattern[i]
        if c == "\\":
            if i + 1 >= n:
                raise re.error("trailing backslash", pattern, i)
            nxt = pattern[i + 1]
            i += 2
            if nxt in "(|":
                out.append(nxt)
                at_start = True
                continue
            if nxt in "){}+?":
                out.append(nxt)
            elif nxt.isdigit() and nxt != "0":
                out.append("\\" + nxt)
            elif nxt in "wWsSbB":
                out.append("\\" + nxt)
            elif nxt in "<>":
                out.append(r"\b")
            elif nxt == "`":
                out.append(r"\A")
            elif nxt == "'":
                out.append(r"\Z")
            else:
                out.append(re.escape(nxt))
            at_start = False
            continue
        if c == "[":
            translated, i = _translate_bracket(pattern, i)
            out.append(translated)
            at_start = False
            continue
        if c == "^" and at_start:
            out.append("^")
            i += 1
            continue
        if c == "*" and at_start:
            out.append(r"\*")
        elif c == "$" and (i + 1 == n or pattern.startswith(("\\)", "\\|"), i + 1)):
            out.append(r"\Z")
        elif c in ".*":
            out.append(c)
        else:
            out.append(re.escape(c))
        at_start = False
        i += 1
    return "".join(out)


def _compile(pattern: str, ignore_case: bool) -> re.Pattern[str]:
    flags = re.DOTALL | (re.IGNORECASE if ignore_case else 0)
    try:
        return re.compile(_bre_to_python(pattern), flags)
    except re.error as exc:
        raise RouterConfigError(f"bad regular expression {pattern!r}: {exc}") from exc


def _length_first(key: str) -> tuple[int, str]:
    return (-len(key), key)


# --------------------------------------------------------------------------


class RouterPath:
    """One location of a host together with its proxy_pass target."""

    def __init__(self, on_obj_upstream: Optional[ObjUpstreamListener] = None) -> None:
        self.path_type = PathType.NULL
        self.path = ""
        self.station_id = ""
        self.order_id = 0
        self.ignore_case = False
        self.proxy_host = ""
        self.proxy_path = ""
        self._regex: Optional[re.Pattern[str]] = None
        self._on_obj_upstream = on_obj_upstream

    def init_path(self, order_id: int, path: str, proxy_pass: str, station_id: str) -> PathType:
        """Parse a location and its proxy_pass; raise RouterConfigError if invalid."""
        self.order_id = order_id
        pos = 0
        if path == "/":
            path_type = PathType.DEFAULT
        elif len(path) > 2 and path.startswith("= "):
            path_type, pos = PathType.FULL, 2
        elif len(path) > 2 and path.startswith("~ "):
            path_type, pos = PathType.REGSUCC, 2
            self.ignore_case = True
        elif len(path) > 3 and path.startswith("~* "):
            path_type, pos = PathType.REGSUCC, 3
            self.ignore_case = False
        elif len(path) > 3 and path.startswith("!~ "):
            path_type, pos = PathType.REGFAIL, 3
            self.ignore_case = True
        elif len(path) > 4 and path.startswith("!~* "):
            path_type, pos = PathType.REGFAIL, 4
            self.ignore_case = False
        elif len(path) > 3 and path.startswith("^~ "):
            path_type, pos = PathType.STARTWITH, 3
        elif path.startswith("/"):
            path_type = PathType.COMMPATH
        else:
            raise RouterConfigError(f"bad location: {path!r}")

        self.path_type = path_type
        self.path = path[pos:].strip(_TRIM_CHARS)

        if path_type in (PathType.REGSUCC, PathType.REGFAIL):
            self._regex = _compile(self.path, self.ignore_case)

        if len(proxy_pass) < 8 or not proxy_pass.startswith("http://"):
            raise RouterConfigError(f"bad proxy_pass {proxy_pass!r} for {path!r}")
        slash = proxy_pass.find("/", 8)
        if slash != -1:
            self.proxy_host = proxy_pass[7:slash]
            self.proxy_path = proxy_pass[slash:]
        else:
            self.proxy_host = proxy_pass[7:]
            self.proxy_path = ""
        self.station_id = station_id

        if (
            len(self.proxy_host) > 3
            and self.proxy_host.endswith("Obj")
            and self._on_obj_upstream is not None
        ):
            self._on_obj_upstream(self.proxy_host)

        logger.debug(
            "location %s -> %s|%s|%s|%s",
            path, proxy_pass, path_type.name, self.proxy_host, self.proxy_path,
        )
        return path_type

    def order_key(self) -> str:
        return f"{self.order_id:05d}-{self.path}"

    def match(self, path: str) -> Optional[RouterResult]:
        """Return the routing result if the request path matches, else None."""
        kind = self.path_type
        if kind == PathType.FULL:
            if path != self.path:
                return None
        elif kind in (PathType.STARTWITH, PathType.COMMPATH):
            if not path.startswith(self.path):
                return None
        elif kind == PathType.REGSUCC:
            if self._regex is None or self._regex.search(path) is None:
                return None
        elif kind == PathType.REGFAIL:
            if self._regex is None or self._regex.search(path) is not None:
                return None
        elif kind != PathType.DEFAULT:
            return None
        return self._result(path)

    def _result(self, path: str) -> RouterResult:
        pos = 0
        if self.path_type in (PathType.REGSUCC, PathType.REGFAIL) or not self.proxy_path:
            new_path = path
        elif len(path) >= len(self.path):
            new_path = self.proxy_path + path[len(self.path):]
            pos = len(self.path)
        else:
            new_path = path

        if len(path) > pos + 1:
            slash = path.find("/", pos + 1)
            func_path = path if slash == -1 else path[:slash]
        else:
            func_path = path

        return RouterResult(
            upstream=self.proxy_host,
            path=new_path,
            station_id=self.station_id,
            func_path=func_path,
        )


class RouterHost:
    """A server_name pattern and the locations configured under it."""

    def __init__(
        self,
        server_name: Optional[str] = None,
        on_obj_upstream: Optional[ObjUpstreamListener] = None,
    ) -> None:
        self.host_kind = HostType.NULL
        self.host = ""
        self._regex: Optional[re.Pattern[str]] = None
        self._on_obj_upstream = on_obj_upstream
        self._full_path: dict[str, RouterPath] = {}
        self._start_with_path: list[RouterPath] = []
        self._reg_succ_path: list[RouterPath] = []
        self._reg_fail_path: list[RouterPath] = []
        self._comm_path: list[RouterPath] = []
        self._default_path: Optional[RouterPath] = None
        if server_name is not None:
            self.init_host(server_name)

    @staticmethod
    def host_type(server_name: str) -> HostType:
        if not server_name:
            return HostType.DEFAULT
        if len(server_name) > 1 and server_name.startswith("*"):
            return HostType.PREWCMATCH
        if len(server_name) > 1 and server_name.endswith("*"):
            return HostType.SUFWCMATCH
        if len(server_name) > 2 and server_name.startswith("~"):
            return HostType.REGMATCH
        return HostType.FULL

    @property
    def order_key(self) -> str:
        return self.host

    def init_host(self, server_name: str) -> None:
        """Set up host matching; raise RouterConfigError on a bad pattern."""
        kind = self.host_type(server_name)
        self.host_kind = kind
        if kind == HostType.PREWCMATCH:
            self.host = server_name[1:]
        elif kind == HostType.SUFWCMATCH:
            self.host = server_name[:-1]
        elif kind == HostType.REGMATCH:
            self.host = server_name[1:]
            self._regex = _compile(self.host, False)
        else:
            self.host = server_name

    def add_path(self, order_id: int, location: str, proxy_pass: str, station_id: str) -> bool:
        """Add a location; return False if it could not be parsed."""
        rp = RouterPath(self._on_obj_upstream)
        try:
            kind = rp.init_path(order_id, location, proxy_pass, station_id)
        except RouterConfigError as exc:
            logger.error("%s", exc)
            return False
        if kind == PathType.FULL:
            self._full_path[rp.path] = rp
        elif kind == PathType.DEFAULT:
            self._default_path = rp
        else:
            bucket = {
                PathType.STARTWITH: self._start_with_path,
                PathType.REGSUCC: self._reg_succ_path,
                PathType.REGFAIL: self._reg_fail_path,
                PathType.COMMPATH: self._comm_path,
            }[kind]
            bucket.append(rp)
            bucket.sort(key=lambda p: _length_first(p.order_key()))
        return True

    def match_host(self, host: str) -> bool:
        kind = self.host_kind
        if kind == HostType.FULL:
            return host == self.host
        if kind == HostType.PREWCMATCH:
            return host.endswith(self.host)
        if kind == HostType.SUFWCMATCH:
            return host.startswith(self.host)
        if kind == HostType.REGMATCH:
            return self._regex is not None and self._regex.search(host) is not None
        return kind == HostType.DEFAULT

    def match_path(self, path: str) -> Optional[RouterResult]:
        exact = self._full_path.get(path)
        if exact is not None:
            return exact.match(path)
        for bucket in (
            self._start_with_path,
            self._reg_succ_path,
            self._reg_fail_path,
            self._comm_path,
        ):
            for rp in bucket:
                result = rp.match(path)
                if result is not None:
                    return result
        if self._default_path is not None:
            return self._default_path.match(path)
        return None


class HttpRouter:
    """All hosts with their locations; picks a host, then a location."""

    def __init__(self, on_obj_upstream: Optional[ObjUpstreamListener] = None) -> None:
        self._lock = threading.RLock()
        self._on_obj_upstream = on_obj_upstream
        self._full_host: dict[str, RouterHost] = {}
        self._pre_wc_host: dict[str, RouterHost] = {}
        self._suf_wc_host: dict[str, RouterHost] = {}
        self._reg_host: dict[str, RouterHost] = {}
        self._default_host: Optional[RouterHost] = None

    def add_router(
        self, order_id: int, server_name: str, location: str, proxy_pass: str, station_id: str
    ) -> bool:
        """Add a rule; False only when the host pattern itself is unusable."""
        kind = RouterHost.host_type(server_name)
        with self._lock:
            if kind == HostType.DEFAULT:
                if self._default_host is None:
                    self._default_host = RouterHost(server_name, self._on_obj_upstream)
                host = self._default_host
            elif kind == HostType.REGMATCH:
                host = self._reg_host.get(server_name)
                if host is None:
                    host = RouterHost(on_obj_upstream=self._on_obj_upstream)
                    try:
                        host.init_host(server_name)
                    except RouterConfigError as exc:
                        logger.error("init host %s failed: %s", server_name, exc)
                        return False
                    self._reg_host[server_name] = host
            else:
                table = {
                    HostType.FULL: self._full_host,
                    HostType.PREWCMATCH: self._pre_wc_host,
                    HostType.SUFWCMATCH: self._suf_wc_host,
                }[kind]
                host = table.get(server_name)
                if host is None:
                    host = table[server_name] = RouterHost(server_name, self._on_obj_upstream)
            added = host.add_path(order_id, location, proxy_pass, station_id)
        logger.debug("%s|%s|%s|%s|%s", order_id, server_name, location, proxy_pass, added)
        return True

    @staticmethod
    def _by_length(table: dict[str, RouterHost]) -> Iterable[RouterHost]:
        for key in sorted(table, key=_length_first):
            yield table[key]

    def parse(self, host: str, path: str) -> Optional[RouterResult]:
        """Route a request; None when no host or location matches."""
        with self._lock:
            exact = self._full_host.get(host)
            if exact is not None:
                return exact.match_path(path)
            for table in (self._pre_wc_host, self._suf_wc_host, self._reg_host):
                for candidate in self._by_length(table):
                    if candidate.match_host(host):
                        return candidate.match_path(path)
            if self._default_host is not None:
                return self._default_host.match_path(path)
        return None


class RouterAgent:
    """Holds the current router and swaps in a freshly built one on reload."""

    def __init__(self, on_obj_upstream: Optional[ObjUpstreamListener] = None) -> None:
        self._on_obj_upstream = on_obj_upstream
        self._router: Optional[HttpRouter] = None

    def reload(self, params: Iterable[RouterParam]) -> bool:
        """Build a new router; keep the old one and return False on failure."""
        router = HttpRouter(self._on_obj_upstream)
        count = 0
        for p in params:
            if not router.add_router(p.order_id, p.server_name, p.location, p.proxy_pass, p.station_id):
                logger.error(
                    "reload failed: %s|%s|%s|%s", p.order_id, p.server_name, p.location, p.station_id
                )
                return False
            count += 1
        self._router = router
        logger.debug("router reloaded, total rules: %d", count)
        return True

    def parse(self, host: str, path: str) -> Optional[RouterResult]:
        router = self._router
        if router is None:
            logger.error("router is not loaded")
            return None
        return router.parse(host, path)