"""Registries of WebSocket users and of state ids bound to endpoints."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class WSUser:
    """A client that upgraded its connection to WebSocket."""

    connection: Any = None
    real_ip: str = ""
    uid: int = 0


class WSUserManager:
    """WebSocket users keyed by connection id."""

    def __init__(self) -> None:
        self._users: dict[int, WSUser] = {}
        self._lock = threading.Lock()

    def add_user(self, connection_id: int, connection: Any, ip: str) -> WSUser:
        """Register or refresh the user on a connection and return it."""
        with self._lock:
            user = self._users.get(connection_id)
            if user is None:
                user = self._users[connection_id] = WSUser()
            user.connection = connection
            user.real_ip = ip
            return user

    def del_user(self, connection_id: int) -> None:
        with self._lock:
            self._users.pop(connection_id, None)

    def is_ws(self, connection_id: int) -> bool:
        with self._lock:
            return connection_id in self._users

    def get_user(self, connection_id: int) -> Optional[WSUser]:
        with self._lock:
            return self._users.get(connection_id)


class StateIdManager:
    """Which endpoint holds a given state id."""

    def __init__(self) -> None:
        self._rooms: dict[str, str] = {}
        self._lock = threading.Lock()

    def add_state_id(self, state_id: str, endpoint: str) -> None:
        with self._lock:
            self._rooms[state_id] = endpoint

    def get_endpoint(self, state_id: str) -> str:
        """The endpoint for the state id, or an empty string when unknown."""
        with self._lock:
            return self._rooms.get(state_id, "")