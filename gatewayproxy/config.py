"""Reading of the nested tag configuration format and the gateway's settings."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

_INT_RE = re.compile(r"\s*([+-]?\d+)")


class ConfigError(ValueError):
    """Malformed configuration text or lookup path."""


@dataclass
class TcConfig:
    """A configuration domain: its parameters and its sub-domains."""

    params: dict[str, str] = field(default_factory=dict)
    domains: dict[str, "TcConfig"] = field(default_factory=dict)

    def _domain(self, path: str) -> Optional["TcConfig"]:
        node: Optional[TcConfig] = self
        for part in (p for p in path.split("/") if p):
            node = node.domains.get(part) if node is not None else None
            if node is None:
                return None
        return node

    def get(self, path: str, default: str = "") -> str:
        """Look up ``/domain/sub<key>``; the default when absent."""
        lt = path.find("<")
        if lt == -1 or not path.endswith(">") or path.find(">") != len(path) - 1:
            raise ConfigError(f"bad config path: {path!r}")
        domain = self._domain(path[:lt])
        key = path[lt + 1:-1]
        if domain is None or key not in domain.params:
            return default
        return domain.params[key]

    def domain_map(self, path: str) -> dict[str, str]:
        """All parameters of a domain; empty when it does not exist."""
        domain = self._domain(path)
        return dict(domain.params) if domain is not None else {}


def parse_tc_config(text: str) -> TcConfig:
    """Parse ``<domain> key = value </domain>`` configuration text."""
    root = TcConfig()
    stack: list[tuple[str, TcConfig]] = [("", root)]
    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("</") and line.endswith(">"):
            name = line[2:-1].strip()
            if len(stack) == 1 or stack[-1][0] != name:
                raise ConfigError(f"line {lineno}: unexpected closing tag {name!r}")
            stack.pop()
        elif line.startswith("<") and line.endswith(">"):
            name = line[1:-1].strip()
            if not name or any(c in name for c in "<>/"):
                raise ConfigError(f"line {lineno}: bad domain tag {line!r}")
            child = stack[-1][1].domains.setdefault(name, TcConfig())
            stack.append((name, child))
        else:
            key, _, value = line.partition("=")
            stack[-1][1].params[key.strip()] = value.strip()
    if len(stack) > 1:
        raise ConfigError(f"domain {stack[-1][0]!r} is not closed")
    return root


def load_config(path: Union[str, Path]) -> TcConfig:
    return parse_tc_config(Path(path).read_text(encoding="utf-8"))


def _to_int(text: str) -> int:
    m = _INT_RE.match(text)
    return int(m.group(1)) if m else 0


def _split(text: str) -> list[str]:
    return [item for item in text.split("|") if item]


def _strip_slash(path: str) -> str:
    return path[:-1] if path.endswith("/") else path


@dataclass
class GatewayConfig:
    """Settings of the gateway taken from the ``<main>`` domain."""

    local_server_name: str = ""
    rsp_size_limit: int = 5242880
    tup_full_host: set[str] = field(default_factory=set)
    tup_pre_host: list[str] = field(default_factory=list)
    tup_path: str = "/tup"
    json_path: str = "/json"
    json_path_ex: str = "/json/"
    monitor_url: str = "/monitor/monitor.html"
    admin_auth_obj: str = ""
    inactive_ret_codes: set[int] = field(default_factory=set)
    timeout_ret_codes: set[int] = field(default_factory=set)

    @classmethod
    def from_config(cls, conf: TcConfig, server_name: str) -> "GatewayConfig":
        full_host: set[str] = set()
        pre_host: list[str] = []
        for item in _split(conf.get("/main/base<tup_host>", "").strip()):
            if item.startswith("*"):
                pre_host.append(item[1:].strip())
            else:
                full_host.add(item.strip())

        json_path = _strip_slash(conf.get("/main/base<json_path>", "/json").strip())
        cfg = cls(
            local_server_name=server_name,
            rsp_size_limit=_to_int(conf.get("/main/base<rspsize>", "5242880")),
            tup_full_host=full_host,
            tup_pre_host=pre_host,
            tup_path=_strip_slash(conf.get("/main/base<tup_path>", "/tup").strip()),
            json_path=json_path,
            json_path_ex=json_path + "/",
            monitor_url=conf.get("/main/base<monitor_url>", "/monitor/monitor.html").strip(),
            admin_auth_obj=conf.get("/main<admin_auth_obj>", "").strip(),
            inactive_ret_codes={_to_int(v) for v in _split(conf.get("/main/http_retcode<inactive>", ""))},
            timeout_ret_codes={_to_int(v) for v in _split(conf.get("/main/http_retcode<timeout>", ""))},
        )
        logger.debug("gateway config: %s", cfg)
        return cfg

    def is_tup_host(self, host: str) -> bool:
        """True if requests to this host may carry tup traffic."""
        if not self.tup_full_host and not self.tup_pre_host:
            return True
        if host in self.tup_full_host:
            return True
        return any(len(host) > len(pre) and host.endswith(pre) for pre in self.tup_pre_host)

    def is_inactive_code(self, code: int) -> bool:
        return code in self.inactive_ret_codes

    def is_timeout_code(self, code: int) -> bool:
        return code in self.timeout_ret_codes