"""sstunnel: encrypted TCP tunnel with local (SOCKS5) and server ends."""

__version__ = "0.1.0"
