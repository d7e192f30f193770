"""
tests/conftest.py — shared helpers for driving SocketDumper over loopback.

Every test binds to an ephemeral port (listen_port = 0) so the suite never
collides with a real dumpsock on 9999.
"""

from __future__ import annotations

import io
import socket
import threading
from typing import Any, Dict, Optional

import pytest

from dumpsock import SocketDumper

WAIT_S = 5.0


class DumperThread:
    """Runs SocketDumper.run() on a daemon thread and exposes its sinks."""

    def __init__(self, **overrides: Any) -> None:
        config: Dict[str, Any] = {"listen_port": 0, "runs_log": None}
        config.update(overrides)
        self.out = io.BytesIO()
        self.err = io.StringIO()
        self.dumper = SocketDumper(config, out=self.out, err=self.err)
        self.code: Optional[int] = None
        self.listener: Optional[socket.socket] = None
        self.thread = threading.Thread(target=self._run, name="dumper", daemon=True)

    def _run(self) -> None:
        self.code = self.dumper.run()

    def start(self) -> "DumperThread":
        self.thread.start()
        assert self.dumper.listening.wait(WAIT_S), "listener never came up"
        self.listener = self.dumper.sock
        return self

    @property
    def port(self) -> int:
        port = self.dumper.bound_port
        assert port
        return port

    def connect(self) -> socket.socket:
        return socket.create_connection(("127.0.0.1", self.port), timeout=WAIT_S)

    def join(self) -> int:
        self.thread.join(WAIT_S)
        assert not self.thread.is_alive(), "dumper did not finish"
        assert self.code is not None
        return self.code


@pytest.fixture
def dumper_thread():
    started = []

    def factory(**overrides: Any) -> DumperThread:
        dt = DumperThread(**overrides).start()
        started.append(dt)
        return dt

    yield factory

    # unblock anything a failing test left sitting in accept()
    for dt in started:
        if dt.thread.is_alive():
            try:
                socket.create_connection(("127.0.0.1", dt.port), timeout=1).close()
            except (OSError, AssertionError):
                pass
            dt.thread.join(WAIT_S)


def send_and_close(sock: socket.socket, payload: bytes) -> None:
    with sock:
        if payload:
            sock.sendall(payload)
        sock.shutdown(socket.SHUT_WR)
