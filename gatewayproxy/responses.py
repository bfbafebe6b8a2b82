"""Encoded HTTP responses the gateway produces itself: errors and monitoring."""

from __future__ import annotations

from dataclasses import dataclass, field
from email.utils import formatdate
from typing import Optional

SERVER_NAME = "TarsGateway-Server"
MONITOR_CONTENT = "<html>hello TupMonitor! [version:1.0]</html>"

_ERRORS: dict[int, str] = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    429: "Too Many Request",
    500: "Server Interval Error",
    501: "Not Implemented",
    502: "Bad Gateway",
    503: "Service Unavailable",
    504: "Gateway Timeout",
}
_DEFAULT_INFO = "Server Interval Error"


def _error_page(title: str) -> str:
    return (
        f"<html> <head><title>{title}</title></head> <body> "
        f"<center><h1>{title}</h1></center> </body> </html>"
    )


@dataclass
class HttpResponse:
    """A minimal HTTP/1.1 response with case-insensitive headers."""

    status: int = 200
    reason: str = "OK"
    content: str = ""
    _headers: dict[str, tuple[str, str]] = field(default_factory=dict, init=False, repr=False)

    def set_header(self, name: str, value: str) -> None:
        self._headers[name.lower()] = (name, value)

    def header(self, name: str) -> Optional[str]:
        entry = self._headers.get(name.lower())
        return entry[1] if entry else None

    def set_response(self, status: int, reason: str, content: str) -> None:
        self.status = status
        self.reason = reason
        self.content = content
        self.set_header("Content-Length", str(len(content.encode("utf-8"))))

    def encode(self) -> bytes:
        body = self.content.encode("utf-8")
        self.set_header("Content-Length", str(len(body)))
        head = [f"HTTP/1.1 {self.status} {self.reason}"]
        head.extend(f"{name}: {value}" for name, value in self._headers.values())
        return ("\r\n".join(head) + "\r\n\r\n").encode("utf-8") + body


def add_response_headers(response: HttpResponse, kind: str) -> None:
    """Set the gateway's standard headers; ``json`` adds CORS headers."""
    response.set_header("Date", formatdate(usegmt=True))
    response.set_header("Server", SERVER_NAME)
    if kind == "json":
        response.set_header("Content-Type", "application/json")
        response.set_header("Access-Control-Allow-Origin", "*")
        response.set_header("Access-Control-Allow-Methods", "POST, GET")
    else:
        response.set_header("Content-Type", "application/octet-stream")
    response.set_header("Cache-Control", "no-cache")


def error_status_info(status_code: int) -> tuple[str, str]:
    """Reason phrase and HTML body for an error status."""
    info = _ERRORS.get(status_code)
    if info is None:
        return _DEFAULT_INFO, _error_page(_DEFAULT_INFO)
    return info, _error_page(f"{status_code} {info}")


def error_response(status_code: int) -> bytes:
    info, content = error_status_info(status_code)
    response = HttpResponse()
    add_response_headers(response, "json")
    response.set_response(status_code, info, content)
    return response.encode()


def monitor_response() -> bytes:
    response = HttpResponse()
    response.set_response(200, "OK", MONITOR_CONTENT)
    response.set_header("Content-Type", "text/html;charset=utf-8")
    response.set_header("Connection", "close")
    return response.encode()