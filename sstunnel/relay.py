"""
Selectors-based per-connection relay engine.

One RelayEngine owns one accepted initiator socket for its whole life:

1. PARSE_HEADER: the role reads the protocol header from the initiator and
   names the endpoint to connect to.
2. BEFORE_TCP_RELAY: the engine connects to that endpoint (bounded by the
   connect timeout) and the role sends anything it owes the target.
3. The I/O loop multiplexes both sockets with a per-connection selector,
   polling every POLL_INTERVAL seconds. A poll with no events is an idle tick:
   it ends the loop once the session is idle for longer than TIMEOUT,
   otherwise it retries any parked (pending) writes. While a direction has
   parked bytes its source is not read and its destination is watched for
   writability instead. On EOF parked bytes are flushed (bounded by
   CONNECT_TIMEOUT) before the sockets close.
4. AFTER_TCP_RELAY: role reporting hook; failures are logged only.

Every failure is confined to the connection: it is logged with the session id
and both sockets are closed and the session destroyed on every exit path.
The role (local or server) is injected; the engine never looks at payloads.
"""

from __future__ import annotations

import selectors
import socket
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, List, Optional, Protocol, Tuple

from sstunnel.config import ProxyConfig
from sstunnel.crypto import CipherEngine
from sstunnel.exceptions import (
    AuthError,
    ConfigError,
    ConnectError,
    CryptoError,
    ProtocolError,
    TransportError,
)
from sstunnel.logging_utils import get_logger
from sstunnel.session import Session

logger = get_logger("sstunnel")

UPSTREAM = "up"      # initiator -> target
DOWNSTREAM = "down"  # target -> initiator

Endpoint = Tuple[str, int]
Connector = Callable[[Endpoint, float], socket.socket]


class Stage(IntEnum):
    PARSE_HEADER = 0
    BEFORE_TCP_RELAY = 1
    AFTER_TCP_RELAY = 2


@dataclass
class RelayContext:
    """What a role may touch during the stage hooks."""

    config: ProxyConfig
    session: Session
    cipher: CipherEngine
    initiator: socket.socket
    send: Callable[[str, bytes], None]
    endpoint: Optional[Endpoint] = None


class RelayRole(Protocol):
    def parse_header(self, ctx: RelayContext) -> Endpoint: ...

    def before_relay(self, ctx: RelayContext) -> None: ...

    def after_relay(self, ctx: RelayContext) -> None: ...

    def transform(self, direction: str, data: bytes) -> bytes: ...


RoleFactory = Callable[[ProxyConfig, CipherEngine], RelayRole]


def default_connector(endpoint: Endpoint, timeout: float) -> socket.socket:
    return socket.create_connection(endpoint, timeout=timeout)


@dataclass
class RelayStats:
    stages: List[Stage] = field(default_factory=list)
    idle_ticks: int = 0
    resends: int = 0
    outcome: str = "pending"


class RelayEngine:
    """Runs one connection from header parsing to teardown."""

    def __init__(
        self,
        initiator: socket.socket,
        config: ProxyConfig,
        role_factory: RoleFactory,
        *,
        connector: Connector = default_connector,
    ) -> None:
        self.initiator = initiator
        self.config = config
        self._role_factory = role_factory
        self._connector = connector
        self._interrupted = threading.Event()
        self.session = Session(config.timeout)
        self.target: Optional[socket.socket] = None
        self.stats = RelayStats()

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------
    def interrupt(self) -> None:
        """Ask the run to stop at its next suspension point."""
        self._interrupted.set()

    def run(self) -> None:
        session = self.session
        try:
            with self.initiator:
                self._run_stages()
            self.stats.outcome = "finished"
        except ConnectError as exc:
            self.stats.outcome = "connect_failed"
            logger.warning(
                f"{session.id}: connect {session.target or '?'} failed: {exc}",
                extra={"session": session.id, "role": self.config.role},
            )
        except InterruptedError:
            self.stats.outcome = "interrupted"
            logger.debug(f"{session.id}: interrupted", extra={"session": session.id})
        except (TransportError, OSError, CryptoError, AuthError, ProtocolError, ConfigError) as exc:
            self.stats.outcome = type(exc).__name__
            session.log_failure(logger, exc)
        except Exception as exc:
            self.stats.outcome = "error"
            logger.exception(
                f"{session.id}: unexpected relay failure",
                extra={"session": session.id, "error": str(exc)},
            )
        finally:
            session.destroy()

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def _check_interrupted(self) -> None:
        if self._interrupted.is_set():
            raise InterruptedError("relay interrupted")

    def _enter(self, stage: Stage) -> None:
        self._check_interrupted()
        self.stats.stages.append(stage)

    def _run_stages(self) -> None:
        cfg = self.config
        cipher = CipherEngine(cfg.method, cfg.password)
        role = self._role_factory(cfg, cipher)
        ctx = RelayContext(
            config=cfg,
            session=self.session,
            cipher=cipher,
            initiator=self.initiator,
            send=self.send,
        )

        self.initiator.settimeout(cfg.timeout)
        self._enter(Stage.PARSE_HEADER)
        ctx.endpoint = role.parse_header(ctx)

        self._enter(Stage.BEFORE_TCP_RELAY)
        try:
            self._open_target(ctx.endpoint)
            self.initiator.setblocking(False)
            role.before_relay(ctx)
            self._relay_loop(role)
        finally:
            if self.target is not None:
                self.target.close()

        self.stats.stages.append(Stage.AFTER_TCP_RELAY)
        try:
            role.after_relay(ctx)
        except Exception as exc:
            logger.warning(
                f"{self.session.id}: after-relay hook failed: {exc}",
                extra={"session": self.session.id, "error": type(exc).__name__},
            )

    def _open_target(self, endpoint: Endpoint) -> None:
        session = self.session
        if self.config.log_targets:
            logger.info(
                f"{session.id}: connecting {session.target or endpoint[0]} via {endpoint[0]}:{endpoint[1]}",
                extra={"session": session.id, "role": self.config.role},
            )
        try:
            sock = self._connector(endpoint, self.config.connect_timeout)
        except socket.timeout as exc:
            raise ConnectError(f"{endpoint[0]}:{endpoint[1]} timed out") from exc
        except OSError as exc:
            raise ConnectError(f"{endpoint[0]}:{endpoint[1]}: {exc}") from exc
        self.target = sock
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass
        sock.setblocking(False)

    # ------------------------------------------------------------------
    # I/O loop
    # ------------------------------------------------------------------
    def _relay_loop(self, role: RelayRole) -> None:
        session = self.session
        with selectors.DefaultSelector() as selector:
            self._watch(selector)
            finished = False
            while not finished:
                events = selector.select(timeout=self.config.poll_interval)
                self._check_interrupted()
                if not events:
                    if self._idle_tick():
                        logger.debug(f"{session.id}: close timeout worker", extra={"session": session.id})
                        return
                for key, mask in events:
                    session.touch()
                    if mask & selectors.EVENT_WRITE:
                        # writable initiator flushes downstream, writable target upstream
                        self.send(DOWNSTREAM if key.data == UPSTREAM else UPSTREAM, b"")
                    if mask & selectors.EVENT_READ and self._pump(key.data, role):
                        finished = True
                self._watch(selector)
        self._drain_pending()

    def _watch(self, selector: selectors.BaseSelector) -> None:
        """Read a socket only while its direction has nothing parked.

        A socket whose outgoing direction has parked bytes is watched for
        writability instead, so each direction holds at most one unflushed
        segment.
        """
        session = self.session
        for sock, direction, blocked, backlog in (
            (self.initiator, UPSTREAM, session.has_pending_up(), session.has_pending_down()),
            (self.target, DOWNSTREAM, session.has_pending_down(), session.has_pending_up()),
        ):
            mask = (0 if blocked else selectors.EVENT_READ) | (selectors.EVENT_WRITE if backlog else 0)
            try:
                key = selector.get_key(sock)
            except KeyError:
                key = None
            if key is None:
                if mask:
                    selector.register(sock, mask, data=direction)
            elif not mask:
                selector.unregister(sock)
            elif key.events != mask:
                selector.modify(sock, mask, data=direction)

    def _drain_pending(self) -> None:
        """After EOF, flush parked bytes within CONNECT_TIMEOUT before teardown."""
        session = self.session
        deadline = time.monotonic() + self.config.connect_timeout
        for direction, has_pending, dest in (
            (UPSTREAM, session.has_pending_up, self.target),
            (DOWNSTREAM, session.has_pending_down, self.initiator),
        ):
            try:
                while has_pending():
                    remaining = deadline - time.monotonic()
                    if remaining <= 0 or not self._wait_writable(dest, remaining):
                        break
                    self.send(direction, b"")
            except TransportError as exc:
                logger.debug(
                    f"{session.id}: peer gone while draining {direction}: {exc}",
                    extra={"session": session.id},
                )
            if has_pending():
                logger.warning(
                    f"{session.id}: dropped unflushed {direction} data at close",
                    extra={"session": session.id, "pending": session.pending_sizes()},
                )

    def _idle_tick(self) -> bool:
        """Return True when the connection has been idle too long."""
        self.stats.idle_ticks += 1
        session = self.session
        if session.is_timed_out():
            return True
        for direction, has_pending in (
            (UPSTREAM, session.has_pending_up),
            (DOWNSTREAM, session.has_pending_down),
        ):
            if has_pending():
                logger.debug(
                    f"{session.id}: resend stream {direction} data",
                    extra={"session": session.id},
                )
                self.stats.resends += 1
                self.send(direction, b"")
        return False

    def _pump(self, direction: str, role: RelayRole) -> bool:
        """Move one read from the ready socket to its peer. True when finished."""
        source = self.initiator if direction == UPSTREAM else self.target
        try:
            data = source.recv(self.config.buffer_size)
        except (BlockingIOError, InterruptedError):
            return False
        except OSError as exc:
            raise TransportError(f"recv ({direction}) failed: {exc}") from exc
        if not data:
            return True
        out = role.transform(direction, data)
        if direction == UPSTREAM:
            self.session.bytes_up += len(data)
        else:
            self.session.bytes_down += len(data)
        self.send(direction, out)
        return False

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    def send(self, direction: str, data: bytes) -> None:
        """Write data toward the peer of `direction`, parking what cannot be flushed.

        Parked bytes of the same direction always go out before `data`.
        """
        session = self.session
        if direction == UPSTREAM:
            dest, pending, record = self.target, session.take_pending_up(), session.record_pending_up
        else:
            dest, pending, record = self.initiator, session.take_pending_down(), session.record_pending_down
        payload = pending + data if pending else data
        if not payload:
            return
        remaining = self._write(dest, payload)
        if remaining:
            record(remaining)

    def _write(self, sock: socket.socket, data: bytes) -> bytes:
        """Send as much as possible; return the unsent tail."""
        view = memoryview(data)
        while view:
            try:
                sent = sock.send(view)
            except BlockingIOError:
                if not self._wait_writable(sock):
                    return bytes(view)
                continue
            except OSError as exc:
                raise TransportError(f"send failed: {exc}") from exc
            view = view[sent:]
        return b""

    def _wait_writable(self, sock: socket.socket, timeout: Optional[float] = None) -> bool:
        wait = self.config.write_wait if timeout is None else timeout
        if wait <= 0:
            return False
        with selectors.DefaultSelector() as waiter:
            waiter.register(sock, selectors.EVENT_WRITE)
            return bool(waiter.select(timeout=wait))
