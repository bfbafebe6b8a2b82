"""In-process collection of call statistics and named property counters."""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from typing import Union

TIMEOUT_RET = -7


class StatStatus(enum.IntEnum):
    """Outcome class of a reported call."""

    SUCC = 0
    TIMEOUT = 1
    EXCE = 2


class PropertyKind(enum.IntEnum):
    """How values reported to a property are combined."""

    COUNT = 0
    SUM = 1
    AVG = 2


@dataclass(frozen=True)
class StatRecord:
    """One reported call from a master service to a slave service."""

    master: str
    master_ip: str
    slave: str
    slave_ip: str
    ret: int
    interface: str
    status: StatStatus
    total_time: int


@dataclass
class PropertyReport:
    """Accumulated values of one property."""

    key: str
    kind: PropertyKind
    count: int = 0
    total: int = 0

    def add(self, value: int) -> None:
        self.count += 1
        self.total += value

    @property
    def value(self) -> float:
        if self.kind == PropertyKind.COUNT:
            return self.count
        if self.kind == PropertyKind.SUM:
            return self.total
        return self.total / self.count if self.count else 0


def _status_for(ret: int) -> StatStatus:
    if ret == TIMEOUT_RET:
        return StatStatus.TIMEOUT
    if ret == 0:
        return StatStatus.SUCC
    return StatStatus.EXCE


def _kind_for(kind: Union[int, PropertyKind]) -> PropertyKind:
    try:
        return PropertyKind(kind)
    except ValueError:
        return PropertyKind.COUNT


class StatReporter:
    """Records call statistics and property values under the server's names."""

    def __init__(self, application: str = "", server_name: str = "", local_ip: str = "") -> None:
        self.application = application
        self.server_name = server_name
        self.local_ip = local_ip
        self.stats: list[StatRecord] = []
        self.properties: dict[str, PropertyReport] = {}
        self._lock = threading.Lock()

    def report_stat(
        self,
        master: str,
        slave: str,
        interface: str,
        ret: int = 0,
        total_time: int = 0,
        slave_ip: str = "",
    ) -> StatRecord:
        """Record one call; a return code of -7 counts as a timeout."""
        record = StatRecord(
            master=master,
            master_ip=self.local_ip,
            slave=f"{self.application}.{slave}",
            slave_ip=slave_ip or self.local_ip,
            ret=ret,
            interface=interface,
            status=_status_for(ret),
            total_time=total_time,
        )
        with self._lock:
            self.stats.append(record)
        return record

    def report_property(
        self, name: str, value: int = 1, kind: Union[int, PropertyKind] = PropertyKind.COUNT
    ) -> PropertyReport:
        """Add a value to a property, creating it with the given kind on first use."""
        key = f"{self.application}.{self.server_name}.{name}"
        with self._lock:
            prop = self.properties.get(key)
            if prop is None:
                prop = self.properties[key] = PropertyReport(key, _kind_for(kind))
            prop.add(value)
        return prop