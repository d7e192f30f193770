#!/usr/bin/env python3
import socket
import sys
import json
import time
import argparse
import threading
import functools

from enum import Enum
from pathlib import Path
from typing import Optional, Tuple, Dict, Any, BinaryIO, TextIO, Callable
from datetime import datetime, timezone

CONFIG_PATH = Path(__file__).with_name("config.json")

DEFAULTS: Dict[str, Any] = {
    "listen_host": "0.0.0.0",
    "listen_port": 9999,
    "backlog": 1,
    "chunk_size": 4096,
    "reuse_address": True,
    "print_stats": False,
    "runs_log": None,  # path of a JSON Lines run log; None writes nothing
}

def _now_iso():
    return datetime.now(timezone.utc).isoformat()

def load_config(path: Path = CONFIG_PATH) -> Dict[str, Any]:
    cfg = dict(DEFAULTS)
    try:
        with open(path, "r", encoding="utf-8") as f:
            overlay = json.load(f)
        cfg.update(overlay or {})
    except FileNotFoundError:
        pass
    except Exception as e:
        # stdout carries the payload, so config noise goes to stderr
        print(f"[CONFIG] Failed to load {path}: {e}. Using defaults.", file=sys.stderr)
    return cfg

# ---- errors ----
class DumpError(Exception):
    kind = "DumpError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

class TransportInitError(DumpError):
    kind = "TransportInitError"

class SocketCreateError(DumpError):
    kind = "SocketCreateError"

class BindError(DumpError):
    kind = "BindError"

class ListenError(DumpError):
    kind = "ListenError"

class AcceptError(DumpError):
    kind = "AcceptError"

class ReadError(DumpError):
    kind = "ReadError"

class EmitError(DumpError):
    kind = "EmitError"

class Stage(Enum):
    FRESH = "fresh"
    INITIALIZED = "initialized"
    SOCKET_READY = "socket_ready"
    BOUND = "bound"
    LISTENING = "listening"
    ACCEPTED = "accepted"
    DRAINED = "drained"
    ERRORED = "errored"

def guarded(step: Callable) -> Callable:
    """
    Skip the step once the run holds a terminal error, and turn a DumpError
    raised by the step into that terminal error.
    """
    @functools.wraps(step)
    def wrapper(self: "SocketDumper", *args, **kwargs):
        if self.error is not None:
            return None
        try:
            return step(self, *args, **kwargs)
        except DumpError as e:
            self.error = e
            self.failed_step = step.__name__
            self.last_stage = self.stage
            self.stage = Stage.ERRORED
            return None
    return wrapper

def reuse_option() -> int:
    """
    Socket option for rebinding the port quickly. On Windows SO_REUSEADDR
    lets a second socket steal a port that is already listening, so there
    the exclusive option is used instead.
    """
    if sys.platform == "win32":
        return socket.SO_EXCLUSIVEADDRUSE
    return socket.SO_REUSEADDR

# ---- pipeline ----
class SocketDumper:
    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 out: Optional[BinaryIO] = None, err: Optional[TextIO] = None):
        self.config = dict(DEFAULTS)
        self.config.update(config or {})
        self.out = out if out is not None else getattr(sys.stdout, "buffer", sys.stdout)
        self.err = err if err is not None else sys.stderr

        self.stage = Stage.FRESH
        self.error: Optional[DumpError] = None
        # where the run was when the terminal error hit
        self.failed_step: Optional[str] = None
        self.last_stage: Optional[Stage] = None
        self.sock: Optional[socket.socket] = None
        self.addr: Optional[Tuple[str, int]] = None
        self.conn: Optional[socket.socket] = None
        self.peer: Optional[Tuple[str, int]] = None
        self.received = bytearray()
        self.stats: Dict[str, float] = {"bytes": 0, "seconds": 0.0}
        # set once the listener is up; lets another thread find bound_port
        self.listening = threading.Event()

    def __enter__(self) -> "SocketDumper":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def bound_port(self) -> Optional[int]:
        """Port actually bound, which differs from the configured one for port 0."""
        if self.sock is None or self.stage in (Stage.FRESH, Stage.INITIALIZED, Stage.SOCKET_READY):
            return None
        try:
            return self.sock.getsockname()[1]
        except OSError:
            return None

    @guarded
    def init_transport(self) -> None:
        # CPython brings the network stack up at import; what is left to check
        # is that IPv4 exists and the endpoint we were given is usable.
        if not hasattr(socket, "AF_INET"):
            raise TransportInitError("transport startup failed: AF_INET unavailable")
        host = str(self.config["listen_host"])
        try:
            socket.inet_aton(host)
        except OSError:
            raise TransportInitError(f"transport startup failed: bad IPv4 listen host {host!r}")
        try:
            port = int(self.config["listen_port"])
        except (TypeError, ValueError):
            raise TransportInitError(f"transport startup failed: bad port {self.config['listen_port']!r}")
        if not 0 <= port <= 65535:
            raise TransportInitError(f"transport startup failed: port {port} out of range")
        for key in ("backlog", "chunk_size"):
            value = self.config[key]
            # recv(0) returns b"" at once and would end the drain as a clean EOF
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise TransportInitError(f"transport startup failed: {key} must be a positive integer, got {value!r}")
        self.stage = Stage.INITIALIZED

    @guarded
    def create_socket(self) -> None:
        try:
            self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP)
        except OSError as e:
            raise SocketCreateError(f"Couldn't create a tcp socket: {e}") from e
        self.stage = Stage.SOCKET_READY

    @guarded
    def build_address(self) -> None:
        self.addr = (str(self.config["listen_host"]), int(self.config["listen_port"]))

    @guarded
    def bind_socket(self) -> None:
        try:
            if self.config.get("reuse_address"):
                self.sock.setsockopt(socket.SOL_SOCKET, reuse_option(), 1)
            self.sock.bind(self.addr)
        except OSError as e:
            raise BindError(f"socket bind error on {self.addr[0]}:{self.addr[1]}: {e}") from e
        self.stage = Stage.BOUND

    @guarded
    def listen_socket(self) -> None:
        try:
            self.sock.listen(int(self.config["backlog"]))
        except OSError as e:
            raise ListenError(f"socket listen error: {e}") from e
        self.stage = Stage.LISTENING
        self.listening.set()

    @guarded
    def accept_connection(self) -> None:
        try:
            self.conn, self.peer = self.sock.accept()
        except OSError as e:
            raise AcceptError(f"socket accept error: {e}") from e
        self.stage = Stage.ACCEPTED

    @guarded
    def drain(self) -> None:
        chunk_size = int(self.config["chunk_size"])
        started = time.monotonic()
        try:
            while True:
                try:
                    chunk = self.conn.recv(chunk_size)
                except OSError as e:
                    raise ReadError(f"socket error during read: {e}") from e
                if not chunk:
                    break
                self.received += chunk
        finally:
            self.stats["bytes"] = len(self.received)
            self.stats["seconds"] = time.monotonic() - started
        self.stage = Stage.DRAINED
        if self.config.get("print_stats"):
            print(f"[STATS] {format_stats(self.stats)}", file=self.err)

    @guarded
    def emit(self) -> None:
        try:
            self.out.write(bytes(self.received))
            self.out.flush()
        except OSError as e:
            raise EmitError(f"failed writing to stdout: {e}") from e

    def report(self) -> None:
        if self.error is not None:
            print(self.error.message, file=self.err)
            try:
                self.err.flush()
            except (OSError, ValueError):
                pass

    def exit_code(self) -> int:
        return 1 if self.error is not None else 0

    def close(self) -> None:
        for s in (self.conn, self.sock):
            if s is None:
                continue
            try:
                s.close()
            except OSError:
                pass
        self.conn = None
        self.sock = None

    def run(self) -> int:
        try:
            self.init_transport()
            self.create_socket()
            self.build_address()
            self.bind_socket()
            self.listen_socket()
            self.accept_connection()
            self.drain()
            self.emit()
        finally:
            self.close()
        self.report()
        log_run(self.config.get("runs_log"), self.summary())
        return self.exit_code()

    def summary(self) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "status": "FAILED" if self.error is not None else "OK",
            "stage": (self.last_stage or self.stage).value,
            "bytes": int(self.stats["bytes"]),
            "seconds": round(self.stats["seconds"], 6),
        }
        if self.peer:
            entry["peer"] = f"{self.peer[0]}:{self.peer[1]}"
        if self.error is not None:
            entry["failed_step"] = self.failed_step
            entry["error_kind"] = self.error.kind
            entry["error"] = self.error.message
        return entry

# ---- diagnostics ----
def format_stats(stats: Dict[str, float]) -> str:
    n = int(stats["bytes"])
    seconds = stats["seconds"]
    mibps = (n / seconds / (1024 * 1024)) if seconds > 0 else 0.0
    return f"{n} bytes in {seconds:.3f}s for {mibps:.2f} MiB/s"

def log_run(path: Optional[str], entry: Dict[str, Any]) -> None:
    if not path:
        return
    try:
        entry = dict(entry)
        entry["ts"] = _now_iso()
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")
    except Exception:
        pass

def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Accept one TCP connection and dump everything it sends to stdout.")
    p.add_argument("-c", "--config", default=str(CONFIG_PATH), help="Path to config.json (default: next to this script)")
    p.add_argument("-p", "--port", type=int, default=None, help="Override listen_port (default: 9999)")
    p.add_argument("--stats", action="store_true", help="Print drain throughput to stderr")
    p.add_argument("--log", default=None, metavar="PATH", help="Append a JSON line per run to PATH")
    p.add_argument("--no-log", action="store_true", help="Do not write the runs log, even if config.json names one")
    return p.parse_args(argv)

def main(argv=None) -> int:
    args = parse_args(argv)
    config = load_config(Path(args.config))
    if args.port is not None:
        config["listen_port"] = args.port
    if args.stats:
        config["print_stats"] = True
    if args.log:
        config["runs_log"] = args.log
    if args.no_log:
        config["runs_log"] = None
    return SocketDumper(config).run()

if __name__ == "__main__":
    sys.exit(main())
