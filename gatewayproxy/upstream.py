"""Upstream address selection with weights, timeout fusing and recovery checks.

Each upstream name owns a set of addresses. An address is taken out of
rotation when calls to it time out too often:

* five failures in a row, the first one at least five seconds ago, or
* within a sixty-second window, at least two failures that make up at
  least half of all calls.

A timed-out address is retried once every ten seconds. An address marked
inactive (for instance after connection errors) is checked in the
background, over HTTP if the upstream has a monitor URL and by a plain TCP
connect otherwise, and comes back once a check succeeds.
"""

from __future__ import annotations

import enum
import http.client
import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], int]
MonitorUrlLookup = Callable[[str], str]

MIN_TIMEOUT_INVOKE = 2
CHECK_TIMEOUT_INTERVAL = 60
FREQUENCE_FAIL_INVOKE = 5
MIN_FREQUENCE_FAIL_TIME = 5
RADIO_100 = 50
TRY_TIME_INTERVAL = 10

MONITOR_USER_AGENT = "Mozilla/4.0 (TupProxy Monitor Check)"
MONITOR_TIMEOUT = 3


def _now() -> int:
    return int(time.time())


def _no_monitor_url(upstream: str) -> str:
    return ""


class AddrStatus(enum.IntEnum):
    """Availability of an address; lower values are better candidates."""

    SUCC = 0
    WEIGHT = 1
    TIMEOUT = 2
    TIMEOUT_WEIGHT = 3
    INACTIVE = 4
    INACTIVE_WEIGHT = 5
    FAIL = 99


@dataclass
class UpstreamInfo:
    """One address of an upstream with its weight and fusing switch."""

    addr: str
    weight: int = 1
    fusing_on_off: bool = True


def check_connect(host: str, port: int, timeout: float) -> bool:
    """Return True if a TCP connection to host:port can be opened."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            sock.connect((host, port))
    except socket.timeout:
        logger.debug("connect %s:%s timeout.", host, port)
        return False
    except (OSError, OverflowError, ValueError) as exc:
        logger.debug("%s:%s connect error: %s", host, port, exc)
        return False
    logger.debug("%s:%s connect succ.", host, port)
    return True


class AddrProxy:
    """One backend address: weighted selection, fusing and recovery."""

    def __init__(
        self,
        upstream: str,
        addr: str,
        weight: int,
        fusing_on_off: bool,
        *,
        monitor_url: Optional[MonitorUrlLookup] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.upstream = upstream
        self.addr = addr
        self.weight = weight
        self.fusing_on_off = fusing_on_off
        self._monitor_url = monitor_url or _no_monitor_url
        self._clock = clock or _now
        self._lock = threading.Lock()

        self._count = 0
        self._next_check_time = 0
        self._last_interval = 0
        self._last_req_time = 0
        self._is_valid = True
        self._is_active = True
        self._is_timeout = False

        self._timeout_invoke = 0
        self._total_invoke = 0
        self._frequence_fail_invoke = 0
        self._next_finish_invoke_time = 0
        self._frequence_fail_time = 0

    @property
    def id(self) -> str:
        return f"{self.upstream}@{self.addr}"

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._is_active

    @property
    def is_valid(self) -> bool:
        with self._lock:
            return self._is_valid

    @property
    def is_timeout(self) -> bool:
        with self._lock:
            return self._is_timeout

    def update(self, weight: int, fusing_on_off: bool) -> None:
        self.weight = weight
        self.fusing_on_off = fusing_on_off

    def set_active(self, active: bool) -> bool:
        """Set the active flag; return True only if it changed."""
        with self._lock:
            if self._is_active == active:
                return False
            self._is_active = active
            return True

    def destroy(self) -> None:
        """Mark the address as removed from its upstream."""
        with self._lock:
            self._is_valid = False

    def available(self) -> AddrStatus:
        """Report whether the address may take the next request, counting it if so."""
        t = self._clock()
        with self._lock:
            below_weight = self._count < self.weight
            if self._is_active and (
                not self._is_timeout or t > self._last_req_time + TRY_TIME_INTERVAL
            ):
                self._last_req_time = t
                if below_weight:
                    self._count += 1
                    return AddrStatus.SUCC
                self._count = 0
                return AddrStatus.WEIGHT
            if self._is_active:
                return AddrStatus.TIMEOUT if below_weight else AddrStatus.TIMEOUT_WEIGHT
            return AddrStatus.INACTIVE if below_weight else AddrStatus.INACTIVE_WEIGHT

    def inc_count(self) -> None:
        with self._lock:
            if self._count >= self.weight:
                self._count = 0
            else:
                self._count += 1

    def do_finish(self, failed: bool) -> None:
        """Record the outcome of a call and update the timeout state."""
        t = self._clock()
        with self._lock:
            self._total_invoke += 1
            if failed:
                self._timeout_invoke += 1
                if self._frequence_fail_invoke == 0:
                    self._frequence_fail_time = t + MIN_FREQUENCE_FAIL_TIME
                self._frequence_fail_invoke += 1
                if (
                    self._frequence_fail_invoke >= FREQUENCE_FAIL_INVOKE
                    and t >= self._frequence_fail_time
                ):
                    self._is_timeout = True
                    logger.error(
                        "%s,%s,disable frequenceFail,freqtimeout:%d,timeout:%d,total:%d",
                        self.upstream, self.addr, self._frequence_fail_invoke,
                        self._timeout_invoke, self._total_invoke,
                    )
                    return
            else:
                self._frequence_fail_invoke = 0
                self._is_timeout = False

            if t > self._next_finish_invoke_time:
                self._next_finish_invoke_time = t + CHECK_TIMEOUT_INTERVAL
                if (
                    failed
                    and self._timeout_invoke >= MIN_TIMEOUT_INVOKE
                    and self._timeout_invoke * 100 >= RADIO_100 * self._total_invoke
                ):
                    self._is_timeout = True
                    logger.error(
                        "%s,%s,disable radioFail,freqtimeout:%d,timeout:%d,total:%d",
                        self.upstream, self.addr, self._frequence_fail_invoke,
                        self._timeout_invoke, self._total_invoke,
                    )
                else:
                    self._total_invoke = 0
                    self._timeout_invoke = 0
                    self._is_timeout = False

    def check(self) -> bool:
        """Probe an inactive address; True once it is usable (or no longer ours)."""
        with self._lock:
            if self._is_active or not self._is_valid:
                return True

        logger.debug("%s", self.id)
        t = self._clock()
        if t < self._next_check_time:
            return False
        if self._last_interval < 10:
            self._last_interval += 1
        elif self._last_interval < 120:
            self._last_interval += 10
        self._next_check_time = t + self._last_interval

        url = self._monitor_url(self.upstream)
        ok = self._tcp_monitor(self.addr) if not url else self._http_monitor(url)
        if ok:
            self.set_active(True)
        return ok

    @staticmethod
    def _tcp_monitor(addr: str) -> bool:
        parts = [p for p in addr.split(":") if p]
        if len(parts) != 2:
            return False
        host, port_text = parts
        try:
            port = int(port_text)
        except ValueError:
            port = 0
        return check_connect(host, port, MONITOR_TIMEOUT)

    def _http_monitor(self, url: str) -> bool:
        start = 7 if url.startswith("http://") else 0
        slash = url.find("/", start)
        if slash == -1:
            logger.error("parse monitor url error: %s", url)
            return self._tcp_monitor(self.addr)

        host = url[start:slash]
        path = url[slash:]
        req_url = f"http://{self.addr}{path}"
        conn = http.client.HTTPConnection(self.addr, timeout=MONITOR_TIMEOUT)
        try:
            conn.request(
                "GET",
                path,
                headers={
                    "Host": host,
                    "Cache-Control": "no-cache",
                    "User-Agent": MONITOR_USER_AGENT,
                },
            )
            status = conn.getresponse().status
        except (OSError, http.client.HTTPException, ValueError) as exc:
            logger.error("%s, exception: %s", url, exc)
            return False
        finally:
            conn.close()

        if status == 200:
            logger.debug("%s|%s do monitor succ.", self.upstream, req_url)
            return True
        logger.debug("%s|%s|%s", self.upstream, req_url, status)
        return False


class HttpProxy:
    """The addresses of one upstream and round-robin selection among them."""

    def __init__(
        self,
        upstream: str,
        *,
        monitor_url: Optional[MonitorUrlLookup] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.upstream = upstream
        self._monitor_url = monitor_url
        self._clock = clock
        self._lock = threading.RLock()
        self._version: Optional[str] = None
        self._addr_list: list[str] = []
        self._proxies: dict[str, AddrProxy] = {}
        self._position = 0

    def __contains__(self, addr: str) -> bool:
        with self._lock:
            return addr in self._proxies

    def set_addr(self, infos: Iterable[UpstreamInfo], version: str) -> None:
        """Replace the address list; nothing happens if the version is unchanged."""
        if version == self._version:
            return
        with self._lock:
            new_list: list[str] = []
            for info in infos:
                proxy = self._proxies.get(info.addr)
                if proxy is None:
                    self._proxies[info.addr] = AddrProxy(
                        self.upstream, info.addr, info.weight, info.fusing_on_off,
                        monitor_url=self._monitor_url, clock=self._clock,
                    )
                    logger.info(
                        "add_proxy|%s|%s|%s|%s",
                        self.upstream, info.addr, info.weight, info.fusing_on_off,
                    )
                else:
                    proxy.update(info.weight, info.fusing_on_off)
                new_list.append(info.addr)

            for addr in self._addr_list:
                if addr not in new_list:
                    removed = self._proxies.pop(addr, None)
                    if removed is not None:
                        removed.destroy()
                    logger.info("del_proxy|%s|%s", self.upstream, addr)

            self._addr_list = new_list
            self._version = version
            self._position = 0

    def get_proxy(self) -> Optional[AddrProxy]:
        """Pick the next address by weight, or the least bad one if none is free."""
        with self._lock:
            proxies = list(self._proxies.values())
            total = len(proxies)
            if total == 1:
                return proxies[0]

            chosen: Optional[AddrProxy] = None
            best = AddrStatus.FAIL
            for _ in range(total):
                if self._position >= total:
                    self._position = 0
                candidate = proxies[self._position]
                status = candidate.available()
                logger.debug("select_proxy %s|%s", candidate.id, status.name)
                if status == AddrStatus.SUCC:
                    return candidate
                if status < best:
                    chosen, best = candidate, status
                self._position += 1

            if chosen is not None:
                chosen.inc_count()
                logger.debug("select_proxy return proxy: %s", chosen.id)
            return chosen


class HttpProxyFactory:
    """Creates one HttpProxy per upstream name and hands out the same one again."""

    def __init__(
        self,
        *,
        monitor_url: Optional[MonitorUrlLookup] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._monitor_url = monitor_url
        self._clock = clock
        self._lock = threading.RLock()
        self._proxies: dict[str, HttpProxy] = {}

    def get(self, upstream: str) -> HttpProxy:
        with self._lock:
            proxy = self._proxies.get(upstream)
            if proxy is None:
                proxy = self._proxies[upstream] = HttpProxy(
                    upstream, monitor_url=self._monitor_url, clock=self._clock
                )
            return proxy


class AddrCheckThread(threading.Thread):
    """Background probing of inactive addresses until they recover."""

    def __init__(self, interval: float = 60.0) -> None:
        super().__init__(name="addr-check", daemon=True)
        self.interval = interval
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._slots: tuple[dict[str, AddrProxy], dict[str, AddrProxy]] = ({}, {})
        self._index = 0

    def add_addr(self, proxy: AddrProxy) -> None:
        with self._lock:
            self._slots[self._index][proxy.id] = proxy

    def run_once(self) -> None:
        """Check the addresses of the current slot and drop those that recovered."""
        with self._lock:
            pos = self._index
            self._index = (self._index + 1) % 2
        slot = self._slots[pos]
        for key, proxy in list(slot.items()):
            if proxy.check():
                slot.pop(key, None)

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("address check failed")
            self._stop_event.wait(self.interval)

    def terminate(self) -> None:
        self._stop_event.set()