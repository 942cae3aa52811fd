"""HTTP/WebSocket transport and command-line interface for infinite-canvas."""
