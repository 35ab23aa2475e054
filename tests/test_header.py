import socket
import threading

import pytest

from sstunnel.exceptions import ProtocolError
from sstunnel.header import (
    OTA_FLAG,
    pack_address,
    parse_address,
    set_ota_flag,
    socks5_accept,
    socks5_connect_request,
    socks5_reply_success,
)

from conftest import recv_exactly


@pytest.mark.parametrize(
    "host, port, length",
    [
        ("127.0.0.1", 80, 7),
        ("::1", 443, 19),
        ("example.com", 8080, 1 + 1 + 11 + 2),
    ],
)
def test_pack_then_parse(host, port, length):
    raw = pack_address(host, port)
    header = parse_address(raw + b"trailing")

    assert header.endpoint == (host, port)
    assert header.length == length
    assert header.raw == raw
    assert not header.ota


def test_ota_flag_round_trip():
    raw = pack_address("example.com", 80, ota=True)
    assert raw[0] & OTA_FLAG
    assert parse_address(raw).ota
    assert set_ota_flag(pack_address("example.com", 80)) == raw


def test_incomplete_header_needs_more_bytes():
    raw = pack_address("example.com", 80)
    for cut in range(len(raw)):
        assert parse_address(raw[:cut]) is None


@pytest.mark.parametrize("data", [b"\x02abcdef", b"\x83\x05hello\x00\x50", b"\x03\x00\x00\x50"])
def test_malformed_header_raises(data):
    with pytest.raises(ProtocolError):
        parse_address(data)


def test_str_formats_ipv6_with_brackets():
    assert str(parse_address(pack_address("::1", 53))) == "[::1]:53"


def test_socks5_connect_exchange():
    server, client = socket.socketpair()
    result = {}

    def serve():
        result["header"] = socks5_accept(server)
        socks5_reply_success(server)

    t = threading.Thread(target=serve)
    t.start()
    client.sendall(socks5_connect_request("example.com", 80))
    t.join(timeout=2)

    assert recv_exactly(client, 2) == b"\x05\x00"
    assert recv_exactly(client, 10)[:2] == b"\x05\x00"
    assert result["header"].endpoint == ("example.com", 80)
    server.close()
    client.close()


def test_socks5_rejects_non_connect_command():
    server, client = socket.socketpair()
    client.sendall(b"\x05\x01\x00" + b"\x05\x02\x00" + pack_address("10.0.0.1", 21))

    with pytest.raises(ProtocolError):
        socks5_accept(server)

    assert recv_exactly(client, 2) == b"\x05\x00"
    assert recv_exactly(client, 10)[1] == 0x07
    server.close()
    client.close()


def test_socks5_rejects_when_no_acceptable_method():
    server, client = socket.socketpair()
    client.sendall(b"\x05\x01\x02")

    with pytest.raises(ProtocolError):
        socks5_accept(server)

    assert recv_exactly(client, 2) == b"\x05\xff"
    server.close()
    client.close()
