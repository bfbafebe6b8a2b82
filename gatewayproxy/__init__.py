"""Routing, upstream selection, configuration, error responses, statistics and WebSocket session registries for an HTTP/TUP API gateway."""

__version__ = "0.1.0"