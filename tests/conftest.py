from __future__ import annotations

import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest


class _ProbeTargetHandler(BaseHTTPRequestHandler):
    requests: list[dict] = []

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def _reply(self, status: int) -> None:
        body = b"ok" if status < 400 else b"nope"
        self.send_response(status)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _handle(self) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else b""
        type(self).requests.append(
            {
                "method": self.command,
                "path": self.path,
                "headers": dict(self.headers.items()),
                "body": body.decode("utf-8"),
            }
        )

        if self.path == "/ok":
            self._reply(200)
        elif self.path == "/created":
            self._reply(201)
        elif self.path == "/slow":
            time.sleep(1.0)
            self._reply(200)
        elif self.path == "/hold":
            time.sleep(0.3)
            self._reply(200)
        elif self.path == "/error":
            self._reply(500)
        else:
            self._reply(404)

    def do_GET(self) -> None:  # noqa: N802
        self._handle()

    def do_POST(self) -> None:  # noqa: N802
        self._handle()

    def do_PUT(self) -> None:  # noqa: N802
        self._handle()


class _ProbeTargetServer(ThreadingHTTPServer):
    request_queue_size = 256


@pytest.fixture
def local_server_base_url():
    _ProbeTargetHandler.requests = []
    httpd = _ProbeTargetServer(("127.0.0.1", 0), _ProbeTargetHandler)
    host, port = httpd.server_address[:2]
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


@pytest.fixture
def received_requests(local_server_base_url: str) -> list[dict]:
    return _ProbeTargetHandler.requests


@pytest.fixture
def closed_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port
