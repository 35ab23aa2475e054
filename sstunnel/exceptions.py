"""Project-specific exception types for clearer error semantics."""

class ConfigError(ValueError):
    """Configuration validation errors."""
    pass

class CryptoError(Exception):
    """Stream cipher framing errors (bad IV framing, cipher failures)."""
    pass

class UnsupportedMethodError(ConfigError, CryptoError):
    """Unknown cipher method or unusable derived key (raised at connection setup)."""
    pass

class AuthError(Exception):
    """One-time auth tag mismatch or malformed authenticated chunk."""
    pass

class ProtocolError(Exception):
    """Malformed address header or SOCKS5 exchange."""
    pass

class ConnectError(Exception):
    """Outbound connection to the target endpoint failed or timed out."""
    pass

class TransportError(OSError):
    """I/O failure on either socket of a relayed connection."""
    pass
