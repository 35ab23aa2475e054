"""Accepts TCP connections and runs one RelayEngine per connection thread."""

from __future__ import annotations

import socket
import threading
from typing import Optional, Set, Tuple

from sstunnel.config import ProxyConfig
from sstunnel.logging_utils import get_logger
from sstunnel.relay import Connector, RelayEngine, RoleFactory, default_connector
from sstunnel.roles import build_role

_logger = get_logger("sstunnel")


class TcpListener:
    """Threaded acceptor; connections share nothing but the config snapshot."""

    def __init__(
        self,
        config: ProxyConfig,
        *,
        role_factory: RoleFactory = build_role,
        connector: Connector = default_connector,
        backlog: int = 128,
    ) -> None:
        self._cfg = config
        self._role_factory = role_factory
        self._connector = connector
        self._backlog = backlog
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._sock: Optional[socket.socket] = None
        self._engines: Set[RelayEngine] = set()
        self._engines_lock = threading.Lock()
        self.accepted = 0

    @property
    def address(self) -> Tuple[str, int]:
        if self._sock is None:
            raise RuntimeError("listener not started")
        return self._sock.getsockname()[:2]

    @property
    def active_connections(self) -> int:
        with self._engines_lock:
            return len(self._engines)

    def start(self) -> Tuple[str, int]:
        if self._thread and self._thread.is_alive():
            return self.address
        host, port = self._cfg.listen_address
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        srv = socket.socket(family, socket.SOCK_STREAM)
        try:
            srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            srv.bind((host, port))
            srv.listen(self._backlog)
            srv.settimeout(0.5)
        except OSError:
            srv.close()
            raise
        self._sock = srv
        self._stop.clear()

        self._thread = threading.Thread(target=self._accept_loop, name=f"sstunnel-{self._cfg.role}-accept", daemon=True)
        self._thread.start()
        _logger.info(
            f"{self._cfg.role} listening on {self.address[0]}:{self.address[1]}",
            extra={"role": self._cfg.role},
        )
        return self.address

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._sock is not None:
            self._sock.close()
        with self._engines_lock:
            engines = list(self._engines)
        for engine in engines:
            engine.interrupt()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)

    def serve_forever(self) -> None:
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def _accept_loop(self) -> None:
        if self._sock is None:
            raise RuntimeError("listener not started")
        while not self._stop.is_set():
            try:
                conn, addr = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            conn.settimeout(None)
            self.accepted += 1
            engine = RelayEngine(conn, self._cfg, self._role_factory, connector=self._connector)
            with self._engines_lock:
                self._engines.add(engine)
            _logger.debug(
                f"{engine.session.id}: accepted {addr[0]}:{addr[1]}",
                extra={"session": engine.session.id, "role": self._cfg.role},
            )
            t = threading.Thread(target=self._run_engine, args=(engine,), daemon=True)
            t.start()

    def _run_engine(self, engine: RelayEngine) -> None:
        try:
            engine.run()
        finally:
            with self._engines_lock:
                self._engines.discard(engine)
