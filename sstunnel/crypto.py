"""
Stream-cipher framing for the sstunnel wire protocol.

Each direction of a connection is one cipher stream:

    IV (iv_length bytes, plaintext) || ciphertext-stream

The IV is sent exactly once, as the first bytes of that direction. Both
directions share the key derived from the password but have independent IVs
and cipher contexts.
"""

from __future__ import annotations

import hashlib
import os
import threading
from typing import Callable, Dict, Optional, Tuple

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from sstunnel.exceptions import CryptoError, UnsupportedMethodError


def _aes_cfb(key: bytes, iv: bytes) -> Cipher:
    return Cipher(algorithms.AES(key), modes.CFB(iv))


def _aes_ctr(key: bytes, iv: bytes) -> Cipher:
    return Cipher(algorithms.AES(key), modes.CTR(iv))


def _camellia_cfb(key: bytes, iv: bytes) -> Cipher:
    return Cipher(algorithms.Camellia(key), modes.CFB(iv))


def _chacha20_ietf(key: bytes, iv: bytes) -> Cipher:
    # cryptography takes a 16-byte nonce: 4-byte little-endian block counter || 12-byte IV.
    return Cipher(algorithms.ChaCha20(key, b"\x00\x00\x00\x00" + iv), mode=None)


# method -> (key_length, iv_length, factory)
METHODS: Dict[str, Tuple[int, int, Callable[[bytes, bytes], Cipher]]] = {
    "aes-128-cfb": (16, 16, _aes_cfb),
    "aes-192-cfb": (24, 16, _aes_cfb),
    "aes-256-cfb": (32, 16, _aes_cfb),
    "aes-128-ctr": (16, 16, _aes_ctr),
    "aes-192-ctr": (24, 16, _aes_ctr),
    "aes-256-ctr": (32, 16, _aes_ctr),
    "camellia-128-cfb": (16, 16, _camellia_cfb),
    "camellia-192-cfb": (24, 16, _camellia_cfb),
    "camellia-256-cfb": (32, 16, _camellia_cfb),
    "chacha20-ietf": (32, 12, _chacha20_ietf),
}

DEFAULT_METHOD = "aes-256-cfb"


def list_methods() -> Tuple[str, ...]:
    return tuple(sorted(METHODS))


def method_info(method: str) -> Tuple[int, int]:
    """Return (key_length, iv_length) for `method`."""
    normalized = method.lower()
    if normalized not in METHODS:
        raise UnsupportedMethodError(f"Unsupported method: {method}")
    key_length, iv_length, _ = METHODS[normalized]
    return key_length, iv_length


def derive_key(password: str | bytes, key_length: int, iv_length: int) -> bytes:
    """OpenSSL EVP_BytesToKey (MD5, one round, no salt) truncated to key_length.

    iv_length is part of the derivation contract but the derived IV bytes are
    discarded; every stream carries its own random IV.
    """
    if key_length <= 0:
        raise UnsupportedMethodError(f"derived key length must be positive, got {key_length}")
    if isinstance(password, str):
        password = password.encode("utf-8")

    blocks = []
    produced = 0
    previous = b""
    while produced < key_length + iv_length:
        previous = hashlib.md5(previous + password).digest()
        blocks.append(previous)
        produced += len(previous)
    return b"".join(blocks)[:key_length]


class _Direction:
    """One cipher stream (encrypt or decrypt) with its own IV and context."""

    __slots__ = ("iv", "context", "lock")

    def __init__(self) -> None:
        self.iv: Optional[bytes] = None
        self.context = None
        self.lock = threading.Lock()


class CipherEngine:
    """Per-connection stream cipher with lazy IV negotiation in both directions."""

    def __init__(self, method: str, password: str | bytes) -> None:
        self.method = method.lower()
        self.key_length, self.iv_length = method_info(self.method)
        self._factory = METHODS[self.method][2]
        self.key = derive_key(password, self.key_length, self.iv_length)
        self._enc = _Direction()
        self._dec = _Direction()

    @property
    def encrypt_iv(self) -> bytes:
        """IV the encrypt stream uses; generated on first access."""
        with self._enc.lock:
            return self._encrypt_iv_locked()

    @property
    def decrypt_iv(self) -> Optional[bytes]:
        """IV read from the first received frame, None before it arrives."""
        return self._dec.iv

    def _encrypt_iv_locked(self) -> bytes:
        if self._enc.iv is None:
            self._enc.iv = os.urandom(self.iv_length)
        return self._enc.iv

    def _new_context(self, iv: bytes, encrypt: bool):
        try:
            cipher = self._factory(self.key, iv)
        except ValueError as exc:
            raise CryptoError(f"{self.method}: cannot initialise cipher: {exc}")
        return cipher.encryptor() if encrypt else cipher.decryptor()

    def encrypt(self, plaintext: bytes) -> bytes:
        """Encrypt plaintext; the first call prepends the encrypt IV."""
        with self._enc.lock:
            prefix = b""
            if self._enc.context is None:
                iv = self._encrypt_iv_locked()
                self._enc.context = self._new_context(iv, encrypt=True)
                prefix = iv
            return prefix + self._enc.context.update(plaintext)

    def decrypt(self, frame: bytes) -> bytes:
        """Decrypt frame; the first call consumes the leading IV."""
        with self._dec.lock:
            if self._dec.context is None:
                if len(frame) < self.iv_length:
                    raise CryptoError(
                        f"first frame too short for IV: {len(frame)} < {self.iv_length}"
                    )
                iv = bytes(frame[:self.iv_length])
                self._dec.context = self._new_context(iv, encrypt=False)
                self._dec.iv = iv
                frame = frame[self.iv_length:]
            return self._dec.context.update(frame)
