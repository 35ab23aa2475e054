"""
Local and server strategies plugged into RelayEngine.

Topology: app -- local -- server -- target.

* LocalRole faces the application (SOCKS5) and the server. Upstream bytes are
  (chunk-wrapped and) encrypted, downstream bytes decrypted (and unwrapped).
* ServerRole faces the local end and the real target. It decrypts the address
  header, connects to the target and mirrors the transforms.

When one-time auth is active both directions are chunked: each direction has
its own ChunkAuth keyed with that direction's IV.
"""

from __future__ import annotations

import socket
from typing import Optional

from sstunnel.auth import TAG_LEN, ChunkAuth, ChunkReader
from sstunnel.config import ProxyConfig
from sstunnel.crypto import CipherEngine
from sstunnel.exceptions import AuthError, ProtocolError
from sstunnel.header import (
    AddressHeader,
    parse_address,
    set_ota_flag,
    socks5_accept,
    socks5_reply_success,
)
from sstunnel.logging_utils import get_logger
from sstunnel.relay import (
    UPSTREAM,
    Connector,
    Endpoint,
    RelayContext,
    RelayEngine,
    RoleFactory,
    default_connector,
)

logger = get_logger("sstunnel")

# atyp + longest domain (1 + 255) + port + header tag
_MAX_HEADER_LEN = 1 + 256 + 2 + TAG_LEN


class _StreamDecryptor:
    """Feeds the decrypt pipeline, holding bytes back until the IV is complete."""

    def __init__(self, cipher: CipherEngine) -> None:
        self._cipher = cipher
        self._head = bytearray()

    def feed(self, data: bytes) -> bytes:
        if self._cipher.decrypt_iv is None:
            self._head += data
            if len(self._head) < self._cipher.iv_length:
                return b""
            data, self._head = bytes(self._head), bytearray()
        return self._cipher.decrypt(data)


def _report(ctx: RelayContext) -> None:
    logger.info(
        f"{ctx.session.id}: relay finished",
        extra=ctx.session.to_dict() | {"role": ctx.config.role},
    )


class ServerRole:
    def __init__(self, config: ProxyConfig, cipher: CipherEngine) -> None:
        self._config = config
        self._cipher = cipher
        self._decryptor = _StreamDecryptor(cipher)
        self.ota = False
        self._up_reader: Optional[ChunkReader] = None
        self._down_auth: Optional[ChunkAuth] = None
        self._early = b""

    def parse_header(self, ctx: RelayContext) -> Endpoint:
        buf = bytearray()
        header: Optional[AddressHeader] = None
        while True:
            header = parse_address(buf)
            if header is not None and (not header.ota or len(buf) >= header.length + TAG_LEN):
                break
            if len(buf) > _MAX_HEADER_LEN:
                raise ProtocolError("address header too long")
            data = ctx.initiator.recv(self._config.buffer_size)
            if not data:
                raise ProtocolError(f"peer closed before address header ({len(buf)} bytes)")
            buf += self._decryptor.feed(data)

        if self._config.one_time_auth and not header.ota:
            raise AuthError("one-time auth required but not requested by client")
        self.ota = header.ota
        rest = bytes(buf[header.length:])
        if self.ota:
            up_auth = ChunkAuth(self._cipher.key, self._cipher.decrypt_iv, self._config.max_chunk_size)
            up_auth.verify_header(header.raw, rest[:TAG_LEN])
            self._up_reader = ChunkReader(up_auth)
            self._early = self._up_reader.feed(rest[TAG_LEN:])
        else:
            self._early = rest

        ctx.session.target = str(header)
        return header.endpoint

    def before_relay(self, ctx: RelayContext) -> None:
        if self._early:
            ctx.send(UPSTREAM, self._early)
            self._early = b""

    def after_relay(self, ctx: RelayContext) -> None:
        _report(ctx)

    def transform(self, direction: str, data: bytes) -> bytes:
        if direction == UPSTREAM:
            plain = self._decryptor.feed(data)
            if self._up_reader is not None:
                plain = self._up_reader.feed(plain)
            return plain
        if self.ota:
            if self._down_auth is None:
                self._down_auth = ChunkAuth(self._cipher.key, self._cipher.encrypt_iv, self._config.max_chunk_size)
            data = self._down_auth.wrap_stream(data)
        return self._cipher.encrypt(data)


class LocalRole:
    def __init__(self, config: ProxyConfig, cipher: CipherEngine) -> None:
        self._config = config
        self._cipher = cipher
        self._decryptor = _StreamDecryptor(cipher)
        self.ota = config.one_time_auth
        self._header: Optional[AddressHeader] = None
        self._up_auth: Optional[ChunkAuth] = None
        self._down_reader: Optional[ChunkReader] = None

    def parse_header(self, ctx: RelayContext) -> Endpoint:
        self._header = socks5_accept(ctx.initiator)
        socks5_reply_success(ctx.initiator)
        ctx.session.target = str(self._header)
        return self._config.server_address

    def before_relay(self, ctx: RelayContext) -> None:
        raw = self._header.raw
        if self.ota:
            raw = set_ota_flag(raw)
            self._up_auth = ChunkAuth(self._cipher.key, self._cipher.encrypt_iv, self._config.max_chunk_size)
            raw += self._up_auth.header_tag(raw)
        ctx.send(UPSTREAM, self._cipher.encrypt(raw))

    def after_relay(self, ctx: RelayContext) -> None:
        _report(ctx)

    def transform(self, direction: str, data: bytes) -> bytes:
        if direction == UPSTREAM:
            if self._up_auth is not None:
                data = self._up_auth.wrap_stream(data)
            return self._cipher.encrypt(data)
        plain = self._decryptor.feed(data)
        if self.ota and plain:
            if self._down_reader is None:
                self._down_reader = ChunkReader(
                    ChunkAuth(self._cipher.key, self._cipher.decrypt_iv, self._config.max_chunk_size)
                )
            plain = self._down_reader.feed(plain)
        return plain


def build_role(config: ProxyConfig, cipher: CipherEngine):
    if config.server_mode:
        return ServerRole(config, cipher)
    return LocalRole(config, cipher)


def run_connection(
    initiator: socket.socket,
    config: ProxyConfig,
    *,
    role_factory: RoleFactory = build_role,
    connector: Connector = default_connector,
) -> None:
    """Relay one accepted socket to completion. Never raises; failures are logged."""
    RelayEngine(initiator, config, role_factory, connector=connector).run()
