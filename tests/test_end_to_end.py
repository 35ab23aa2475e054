import os
import socket
import time

import pytest

from sstunnel.auth import ChunkAuth
from sstunnel.crypto import CipherEngine
from sstunnel.header import pack_address, socks5_connect_request
from sstunnel.listener import TcpListener

from conftest import recv_exactly

TARGET = ("example.com", 80)


def wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def target_connector(echo_target):
    def connect(endpoint, timeout):
        if endpoint == TARGET:
            endpoint = echo_target.address
        return socket.create_connection(endpoint, timeout=timeout)

    return connect


@pytest.fixture
def tunnel(make_config, echo_target):
    listeners = []

    def _start(local_auth=False, server_auth=False, method="aes-256-cfb"):
        server = TcpListener(
            make_config(server_mode=True, one_time_auth=server_auth, method=method),
            connector=target_connector(echo_target),
        )
        server_addr = server.start()
        local = TcpListener(make_config(server_port=server_addr[1], one_time_auth=local_auth, method=method))
        local_addr = local.start()
        listeners.extend([local, server])
        return local_addr, server_addr, server

    yield _start
    for listener in listeners:
        listener.stop()


def socks_connect(local_addr):
    client = socket.create_connection(local_addr, timeout=3)
    client.sendall(socks5_connect_request(*TARGET))
    assert recv_exactly(client, 2) == b"\x05\x00"
    assert recv_exactly(client, 10)[:2] == b"\x05\x00"
    return client


@pytest.mark.parametrize("auth", [False, True])
@pytest.mark.parametrize("method", ["aes-256-cfb", "chacha20-ietf"])
def test_socks_client_reaches_target_through_tunnel(tunnel, echo_target, auth, method):
    local_addr, _, _ = tunnel(local_auth=auth, server_auth=auth, method=method)
    payload = os.urandom(4096)

    with socks_connect(local_addr) as client:
        client.sendall(payload)
        assert recv_exactly(client, len(payload)) == payload

    assert echo_target.data(0) == payload


def test_large_transfer_spans_many_chunks(tunnel, echo_target):
    local_addr, _, _ = tunnel(local_auth=True, server_auth=True)
    payload = os.urandom(100_000)

    with socks_connect(local_addr) as client:
        client.sendall(payload)
        assert recv_exactly(client, len(payload)) == payload


def test_server_requiring_auth_rejects_plain_client(tunnel, echo_target):
    local_addr, _, _ = tunnel(local_auth=False, server_auth=True)

    with socks_connect(local_addr) as client:
        assert client.recv(16) == b""

    assert not echo_target.connected.is_set()


def test_tampered_chunk_closes_connection(tunnel, echo_target, make_config):
    _, server_addr, _ = tunnel(server_auth=True)
    config = make_config()
    cipher = CipherEngine(config.method, config.password)
    auth = ChunkAuth(cipher.key, cipher.encrypt_iv, config.max_chunk_size)
    header = pack_address(*TARGET, ota=True)

    with socket.create_connection(server_addr, timeout=3) as client:
        client.sendall(cipher.encrypt(header + auth.header_tag(header) + auth.wrap(b"good")))
        assert wait_for(lambda: echo_target.data(0) == b"good")

        bad = bytearray(cipher.encrypt(auth.wrap(b"evil!")))
        bad[-1] ^= 0x01
        client.sendall(bytes(bad))

        received = bytearray()
        while True:
            data = client.recv(4096)
            if not data:
                break
            received += data

    # at most the echo of the authenticated chunk came back
    assert len(received) < 100
    assert wait_for(echo_target.closed.is_set)
    assert echo_target.data(0) == b"good"


def test_stop_interrupts_live_connections(tunnel, echo_target):
    local_addr, _, server = tunnel()

    with socks_connect(local_addr) as client:
        client.sendall(b"ping")
        assert recv_exactly(client, 4) == b"ping"
        assert server.active_connections == 1

        server.stop()

        assert wait_for(lambda: server.active_connections == 0)
        assert client.recv(16) == b""


def test_accept_loop_requires_start(make_config):
    with pytest.raises(RuntimeError):
        TcpListener(make_config())._accept_loop()
