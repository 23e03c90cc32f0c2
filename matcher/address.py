"""
Server address list encoding.

An address list travels twice in every connect token: inside the sealed
private block and in the cleartext trailer.

Format:
┌──────────────┬──────────┬─────────────────────┬───────────┐
│ Count        │ Type     │ Host                │ Port      │
│ (4 bytes LE) │ (1 byte) │ (4 or 16 bytes)     │ (2 bytes) │
└──────────────┴──────────┴─────────────────────┴───────────┘
               └──────────── repeated Count times ──────────┘

Host bytes keep network byte order (exactly as ``ipaddress`` packs them),
the port is little-endian.
"""

from __future__ import annotations

import ipaddress
import struct
from dataclasses import dataclass
from typing import ClassVar, Sequence, Tuple, Union

from matcher.constants import (
    ADDRESS_COUNT_SIZE,
    ADDRESS_IPV4,
    ADDRESS_IPV6,
    IPV4_HOST_SIZE,
    IPV6_HOST_SIZE,
    MAX_SERVERS_PER_CONNECT,
)
from matcher.exceptions import DecodeError, InvalidAddressCount, TruncatedBuffer

_COUNT = struct.Struct('<I')
_PORT = struct.Struct('<H')


@dataclass(frozen=True)
class IPv4Endpoint:
    """IPv4 host (4 bytes, network order) and UDP port."""

    TYPE: ClassVar[int] = ADDRESS_IPV4
    HOST_SIZE: ClassVar[int] = IPV4_HOST_SIZE

    host: bytes
    port: int

    def __post_init__(self):
        _check_endpoint(self)

    @property
    def ip(self) -> ipaddress.IPv4Address:
        return ipaddress.IPv4Address(self.host)

    def __str__(self) -> str:
        return f"{self.ip}:{self.port}"


@dataclass(frozen=True)
class IPv6Endpoint:
    """IPv6 host (16 bytes, network order) and UDP port."""

    TYPE: ClassVar[int] = ADDRESS_IPV6
    HOST_SIZE: ClassVar[int] = IPV6_HOST_SIZE

    host: bytes
    port: int

    def __post_init__(self):
        _check_endpoint(self)

    @property
    def ip(self) -> ipaddress.IPv6Address:
        return ipaddress.IPv6Address(self.host)

    def __str__(self) -> str:
        return f"[{self.ip}]:{self.port}"


ServerAddress = Union[IPv4Endpoint, IPv6Endpoint]

_ENDPOINT_TYPES = {cls.TYPE: cls for cls in (IPv4Endpoint, IPv6Endpoint)}


def _check_endpoint(endpoint):
    if not isinstance(endpoint.host, bytes) or len(endpoint.host) != endpoint.HOST_SIZE:
        raise ValueError(
            f"{type(endpoint).__name__} host must be {endpoint.HOST_SIZE} bytes"
        )
    if not (0 <= endpoint.port <= 0xFFFF):
        raise ValueError(f"Port must be 0-65535, got {endpoint.port}")


def endpoint(ip, port: int) -> ServerAddress:
    """
    Build a ServerAddress from an IP (string or ipaddress object) and port.

    IPv4-mapped IPv6 addresses stay IPv6.
    """
    ip = ipaddress.ip_address(ip)
    if ip.version == 4:
        return IPv4Endpoint(ip.packed, port)
    return IPv6Endpoint(ip.packed, port)


def parse_address(text: str) -> ServerAddress:
    """
    Parse "a.b.c.d:port" or "[v6]:port" into a ServerAddress.

    Raises:
        ValueError: If the host or port is malformed
    """
    text = text.strip()
    host, sep, port_text = text.rpartition(':')
    if not sep or not host:
        raise ValueError(f"Address must be host:port, got {text!r}")
    if host.startswith('['):
        if not host.endswith(']'):
            raise ValueError(f"Unterminated IPv6 address: {text!r}")
        host = host[1:-1]
    elif ':' in host:
        raise ValueError(f"IPv6 address must be bracketed: {text!r}")

    try:
        port = int(port_text, 10)
    except ValueError:
        raise ValueError(f"Invalid port in address {text!r}")

    return endpoint(host, port)


def encoded_size(addresses: Sequence[ServerAddress]) -> int:
    """Number of bytes encode_addresses() will produce."""
    return ADDRESS_COUNT_SIZE + sum(1 + a.HOST_SIZE + _PORT.size for a in addresses)


def encode_addresses(addresses: Sequence[ServerAddress]) -> bytes:
    """
    Encode an address list.

    Args:
        addresses: 1 to 8 ServerAddress values

    Returns:
        bytes: count followed by one 7 or 19 byte entry per address

    Raises:
        InvalidAddressCount: If the list is empty or too long
    """
    if not (1 <= len(addresses) <= MAX_SERVERS_PER_CONNECT):
        raise InvalidAddressCount(
            f"Token must carry 1-{MAX_SERVERS_PER_CONNECT} server addresses, "
            f"got {len(addresses)}"
        )

    parts = [_COUNT.pack(len(addresses))]
    for address in addresses:
        parts.append(bytes([address.TYPE]))
        parts.append(address.host)
        parts.append(_PORT.pack(address.port))
    return b''.join(parts)


def decode_addresses(data, offset: int = 0) -> Tuple[list, int]:
    """
    Decode an address list starting at ``offset``.

    Returns:
        tuple: (list of ServerAddress, number of bytes consumed)

    Raises:
        TruncatedBuffer: If the declared entries run past the buffer
        DecodeError: If the declared count is 0 or too large, or an entry
            has an unknown type tag
    """
    data = memoryview(data)
    if len(data) - offset < ADDRESS_COUNT_SIZE:
        raise TruncatedBuffer("Buffer too short for address count")

    (count,) = _COUNT.unpack_from(data, offset)
    if not (1 <= count <= MAX_SERVERS_PER_CONNECT):
        raise DecodeError(
            f"Declared address count {count} outside 1-{MAX_SERVERS_PER_CONNECT}"
        )

    position = offset + ADDRESS_COUNT_SIZE
    addresses = []
    for index in range(count):
        if position >= len(data):
            raise TruncatedBuffer(
                f"Buffer ended before address {index + 1} of {count}"
            )
        address_type = data[position]
        cls = _ENDPOINT_TYPES.get(address_type)
        if cls is None:
            raise DecodeError(f"Unknown address type {address_type} at entry {index}")

        end = position + 1 + cls.HOST_SIZE + _PORT.size
        if end > len(data):
            raise TruncatedBuffer(
                f"Buffer ended inside address {index + 1} of {count}"
            )
        host = bytes(data[position + 1:position + 1 + cls.HOST_SIZE])
        (port,) = _PORT.unpack_from(data, position + 1 + cls.HOST_SIZE)
        addresses.append(cls(host, port))
        position = end

    return addresses, position - offset
