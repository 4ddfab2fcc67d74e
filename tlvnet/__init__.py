"""Length-prefixed TCP messaging with echo, HTTP and WebSocket servers."""

__version__ = "0.1.0"

__all__ = [
    "protocol",
    "logic",
    "pool",
    "server",
    "client",
    "echo",
    "sockutil",
    "http_server",
    "websocket_server",
]