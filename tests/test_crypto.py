import hashlib
import os

import pytest

from sstunnel.crypto import METHODS, CipherEngine, derive_key, list_methods, method_info
from sstunnel.exceptions import ConfigError, CryptoError, UnsupportedMethodError


@pytest.mark.parametrize("method", sorted(METHODS))
def test_round_trip_every_method(method):
    sender = CipherEngine(method, "secret")
    receiver = CipherEngine(method, "secret")
    payload = os.urandom(4096)

    frame = sender.encrypt(payload)

    assert len(frame) == sender.iv_length + len(payload)
    assert receiver.decrypt(frame) == payload
    assert receiver.decrypt_iv == sender.encrypt_iv


def test_iv_sent_only_once():
    engine = CipherEngine("aes-256-cfb", "secret")
    first = engine.encrypt(b"hello")
    second = engine.encrypt(b"world")

    assert first[:16] == engine.encrypt_iv
    assert len(first) == 16 + 5
    assert len(second) == 5


def test_stream_survives_arbitrary_resegmentation():
    sender = CipherEngine("chacha20-ietf", "secret")
    receiver = CipherEngine("chacha20-ietf", "secret")
    pieces = [os.urandom(n) for n in (1, 17, 300, 4096, 3)]
    wire = b"".join(sender.encrypt(p) for p in pieces)

    out = receiver.decrypt(wire[:20]) + receiver.decrypt(wire[20:21]) + receiver.decrypt(wire[21:])

    assert out == b"".join(pieces)


def test_directions_are_independent():
    a = CipherEngine("aes-128-ctr", "pw")
    b = CipherEngine("aes-128-ctr", "pw")

    a_to_b = a.encrypt(b"ping")
    b_to_a = b.encrypt(b"pong")

    assert b.decrypt(a_to_b) == b"ping"
    assert a.decrypt(b_to_a) == b"pong"
    assert a.encrypt_iv != b.encrypt_iv


def test_wrong_password_does_not_decrypt():
    frame = CipherEngine("aes-256-cfb", "right").encrypt(b"attack at dawn")
    assert CipherEngine("aes-256-cfb", "wrong").decrypt(frame) != b"attack at dawn"


def test_truncated_first_frame_raises():
    engine = CipherEngine("aes-256-cfb", "secret")
    with pytest.raises(CryptoError):
        engine.decrypt(b"\x00" * 15)
    assert engine.decrypt_iv is None


def test_unknown_method_is_config_and_crypto_error():
    with pytest.raises(UnsupportedMethodError) as info:
        CipherEngine("rot13", "secret")
    assert isinstance(info.value, ConfigError)
    assert isinstance(info.value, CryptoError)


def test_method_names_are_case_insensitive():
    assert CipherEngine("AES-256-CFB", "pw").method == "aes-256-cfb"
    assert method_info("ChaCha20-IETF") == (32, 12)
    assert "aes-256-cfb" in list_methods()


def test_derive_key_matches_evp_bytes_to_key():
    d1 = hashlib.md5(b"foobar").digest()
    d2 = hashlib.md5(d1 + b"foobar").digest()

    assert derive_key("foobar", 16, 16) == d1
    assert derive_key("foobar", 32, 16) == d1 + d2
    assert derive_key(b"foobar", 24, 16) == (d1 + d2)[:24]


def test_derive_key_rejects_zero_length():
    with pytest.raises(UnsupportedMethodError):
        derive_key("foobar", 0, 16)
