"""
Address header codec and the SOCKS5 front end used by the local role.

Address header (first plaintext bytes of the upstream cipher stream):

    atyp (1) || address || port (2, big-endian)

atyp 0x01 = IPv4 (4 bytes), 0x03 = domain (1-byte length + name),
0x04 = IPv6 (16 bytes). Bit 0x10 of atyp requests one-time auth; the header is
then followed by a 10-byte header tag.
"""

from __future__ import annotations

import socket
import struct
from dataclasses import dataclass
from ipaddress import ip_address
from typing import Optional, Tuple

from sstunnel.exceptions import ProtocolError

ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04
ATYP_MASK = 0x0F
OTA_FLAG = 0x10

PORT_STRUCT = struct.Struct("!H")

SOCKS_VERSION = 0x05
SOCKS_CMD_CONNECT = 0x01
SOCKS_METHOD_NO_AUTH = 0x00
SOCKS_METHOD_UNACCEPTABLE = 0xFF
SOCKS_REP_SUCCEEDED = 0x00
SOCKS_REP_CMD_NOT_SUPPORTED = 0x07
SOCKS_REP_ATYP_NOT_SUPPORTED = 0x08


@dataclass(frozen=True)
class AddressHeader:
    host: str
    port: int
    ota: bool
    length: int
    raw: bytes

    @property
    def endpoint(self) -> Tuple[str, int]:
        return (self.host, self.port)

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def pack_address(host: str, port: int, *, ota: bool = False) -> bytes:
    if not (0 <= port <= 0xFFFF):
        raise ProtocolError(f"port out of range: {port}")
    flag = OTA_FLAG if ota else 0
    try:
        addr = ip_address(host)
    except ValueError:
        name = host.encode("idna")
        if not (1 <= len(name) <= 255):
            raise ProtocolError(f"domain name length must be 1..255, got {len(name)}")
        return bytes([ATYP_DOMAIN | flag, len(name)]) + name + PORT_STRUCT.pack(port)
    atyp = ATYP_IPV4 if addr.version == 4 else ATYP_IPV6
    return bytes([atyp | flag]) + addr.packed + PORT_STRUCT.pack(port)


def _address_length(atyp: int, data: bytes) -> Optional[int]:
    """Length of the address field for atyp, None if data is too short to tell."""
    kind = atyp & ATYP_MASK
    if kind == ATYP_IPV4:
        return 4
    if kind == ATYP_IPV6:
        return 16
    if kind == ATYP_DOMAIN:
        if len(data) < 2:
            return None
        if data[1] == 0:
            raise ProtocolError("empty domain name in address header")
        return 1 + data[1]
    raise ProtocolError(f"unsupported address type 0x{atyp:02x}")


def parse_address(data: bytes) -> Optional[AddressHeader]:
    """Parse an address header from the start of data; None if more bytes are needed."""
    if not data:
        return None
    atyp = data[0]
    if atyp & ~(ATYP_MASK | OTA_FLAG):
        raise ProtocolError(f"unsupported address type 0x{atyp:02x}")
    addr_len = _address_length(atyp, data)
    if addr_len is None:
        return None
    length = 1 + addr_len + PORT_STRUCT.size
    if len(data) < length:
        return None

    kind = atyp & ATYP_MASK
    field = bytes(data[1:1 + addr_len])
    if kind == ATYP_IPV4:
        host = socket.inet_ntop(socket.AF_INET, field)
    elif kind == ATYP_IPV6:
        host = socket.inet_ntop(socket.AF_INET6, field)
    else:
        try:
            host = field[1:].decode("idna")
        except UnicodeError as exc:
            raise ProtocolError(f"invalid domain name in address header: {exc}")
    (port,) = PORT_STRUCT.unpack_from(data, 1 + addr_len)
    return AddressHeader(
        host=host,
        port=port,
        ota=bool(atyp & OTA_FLAG),
        length=length,
        raw=bytes(data[:length]),
    )


def set_ota_flag(header: bytes) -> bytes:
    return bytes([header[0] | OTA_FLAG]) + header[1:]


# ---------------------------------------------------------------------------
# SOCKS5 (RFC 1928), CONNECT with no authentication only
# ---------------------------------------------------------------------------

def recv_exact(sock: socket.socket, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            raise ProtocolError(f"peer closed after {len(buf)} of {n} bytes")
        buf += chunk
    return bytes(buf)


def _socks_reply(rep: int) -> bytes:
    return bytes([SOCKS_VERSION, rep, 0x00, ATYP_IPV4]) + b"\x00\x00\x00\x00" + PORT_STRUCT.pack(0)


def socks5_accept(sock: socket.socket) -> AddressHeader:
    """Run the SOCKS5 greeting and CONNECT request on a blocking socket.

    Returns the requested target as an address header (OTA flag clear). The
    success reply is sent by the caller via socks5_reply_success().
    """
    ver, nmethods = recv_exact(sock, 2)
    if ver != SOCKS_VERSION:
        raise ProtocolError(f"unsupported SOCKS version {ver}")
    methods = recv_exact(sock, nmethods) if nmethods else b""
    if SOCKS_METHOD_NO_AUTH not in methods:
        sock.sendall(bytes([SOCKS_VERSION, SOCKS_METHOD_UNACCEPTABLE]))
        raise ProtocolError("SOCKS client offers no acceptable auth method")
    sock.sendall(bytes([SOCKS_VERSION, SOCKS_METHOD_NO_AUTH]))

    ver, cmd, _rsv, atyp = recv_exact(sock, 4)
    if ver != SOCKS_VERSION:
        raise ProtocolError(f"unsupported SOCKS version {ver} in request")
    if atyp not in (ATYP_IPV4, ATYP_DOMAIN, ATYP_IPV6):
        sock.sendall(_socks_reply(SOCKS_REP_ATYP_NOT_SUPPORTED))
        raise ProtocolError(f"unsupported SOCKS address type 0x{atyp:02x}")

    if atyp == ATYP_DOMAIN:
        name_len = recv_exact(sock, 1)
        rest = name_len + recv_exact(sock, name_len[0] + PORT_STRUCT.size)
    else:
        rest = recv_exact(sock, (4 if atyp == ATYP_IPV4 else 16) + PORT_STRUCT.size)

    if cmd != SOCKS_CMD_CONNECT:
        sock.sendall(_socks_reply(SOCKS_REP_CMD_NOT_SUPPORTED))
        raise ProtocolError(f"unsupported SOCKS command 0x{cmd:02x}")

    header = parse_address(bytes([atyp]) + rest)
    if header is None:
        raise ProtocolError("truncated SOCKS request")
    return header


def socks5_reply_success(sock: socket.socket) -> None:
    sock.sendall(_socks_reply(SOCKS_REP_SUCCEEDED))


def socks5_connect_request(host: str, port: int) -> bytes:
    """Client side of the exchange: greeting plus CONNECT request bytes."""
    return bytes([SOCKS_VERSION, 1, SOCKS_METHOD_NO_AUTH]) + bytes(
        [SOCKS_VERSION, SOCKS_CMD_CONNECT, 0x00]
    ) + pack_address(host, port)
