import socket
import sys
import threading
from pathlib import Path

import pytest

# Add root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from sstunnel.config import ProxyConfig


class EchoTarget:
    """Loopback TCP server that records what each connection sent and echoes it."""

    def __init__(self) -> None:
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(8)
        self._sock.settimeout(0.2)
        self.address = self._sock.getsockname()
        self.received = []
        self.connected = threading.Event()
        self.closed = threading.Event()
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._thread.start()

    def data(self, index: int = 0) -> bytes:
        with self._lock:
            return bytes(self.received[index]) if index < len(self.received) else b""

    def _accept_loop(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            with self._lock:
                self.received.append(bytearray())
                index = len(self.received) - 1
            self.connected.set()
            threading.Thread(target=self._echo, args=(conn, index), daemon=True).start()

    def _echo(self, conn: socket.socket, index: int) -> None:
        with conn:
            while True:
                try:
                    data = conn.recv(65536)
                except OSError:
                    break
                if not data:
                    break
                with self._lock:
                    self.received[index] += data
                try:
                    conn.sendall(data)
                except OSError:
                    break
        self.closed.set()

    def stop(self) -> None:
        self._stop.set()
        self._sock.close()
        self._thread.join(timeout=1.0)


@pytest.fixture
def echo_target():
    target = EchoTarget()
    yield target
    target.stop()


@pytest.fixture
def make_config():
    def _make(**overrides) -> ProxyConfig:
        values = dict(
            server_mode=False,
            server_host="127.0.0.1",
            server_port=0,
            local_host="127.0.0.1",
            local_port=0,
            password="test-password",
            method="aes-256-cfb",
            one_time_auth=False,
            timeout=5.0,
            connect_timeout=2.0,
            poll_interval=0.05,
        )
        values.update(overrides)
        return ProxyConfig(**values)

    return _make


def recv_exactly(sock: socket.socket, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return bytes(buf)
