"""
Connect token layout for netcode.

Handles serialization (Python → bytes) and deserialization
(bytes → Python) of the private and public connect token.

Public token (2048 bytes, random nonce scheme):
┌──────────────┬─────────────┬───────────┬───────────┬───────────┐
│ Version Info │ Protocol ID │ Created   │ Expires   │ Nonce     │
│ (13 bytes)   │ (8 bytes)   │ (8 bytes) │ (8 bytes) │ (24 bytes)│
├──────────────┴─────────────┴───────────┴───────────┴───────────┤
│ Sealed private token (1024 bytes, includes 16-byte auth tag)   │
├──────────┬─────────────────┬──────────────┬──────────────┬─────┤
│ Timeout  │ Server addresses│ Client→Server│ Server→Client│ 0...│
│ (4 bytes)│ (variable)      │ key (32)     │ key (32)     │     │
└──────────┴─────────────────┴──────────────┴──────────────┴─────┘

The sequence nonce scheme carries an 8-byte nonce instead, so every field
after the nonce sits 16 bytes earlier. The version info names the scheme.

Private token (1008 bytes before sealing):
    client id (8) · timeout (4) · server addresses · client→server key (32)
    · server→client key (32) · user data (256) · zero padding
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import List

from matcher.address import ServerAddress, decode_addresses, encode_addresses, encoded_size
from matcher.constants import (
    CONNECT_TOKEN_PRIVATE_SIZE,
    CONNECT_TOKEN_SIZE,
    KEY_SIZE,
    MAX_INT32,
    MAX_UINT64,
    MIN_INT32,
    PRIVATE_PLAINTEXT_SIZE,
    RANDOM_NONCE_SIZE,
    SEQUENCE_SIZE,
    USER_DATA_SIZE,
    VERSION_INFO_SIZE,
)
from matcher.crypto import NonceScheme
from matcher.exceptions import (
    DecodeError,
    InputError,
    PrivateBlockOverflow,
    TokenOverflow,
    TruncatedBuffer,
    UserDataTooLarge,
)

_logger = logging.getLogger(__name__)


class Layout:
    """
    Ordered list of named fixed-size fields.

    Offsets are computed once; writer and reader share the same instance.
    All fields are little-endian with no padding.
    """

    def __init__(self, *fields):
        self.names = tuple(name for name, _ in fields)
        self._struct = struct.Struct('<' + ''.join(fmt for _, fmt in fields))
        self.offsets = {}
        position = 0
        for name, fmt in fields:
            self.offsets[name] = position
            position += struct.calcsize('<' + fmt)
        self.size = self._struct.size

    def __repr__(self):
        fields = ', '.join(f"{name}@{self.offsets[name]}" for name in self.names)
        return f"Layout({fields}; size={self.size})"

    def pack_into(self, buffer, offset, **values):
        """Write every field at ``offset``. Returns the offset after the layout."""
        try:
            self._struct.pack_into(buffer, offset, *(values[name] for name in self.names))
        except struct.error as e:
            raise ValueError(f"Failed to pack fields: {e}")
        return offset + self.size

    def unpack_from(self, buffer, offset=0):
        """Read every field at ``offset``. Returns a dict keyed by field name."""
        if len(buffer) - offset < self.size:
            raise TruncatedBuffer(
                f"Need {self.size} bytes at offset {offset}, "
                f"have {max(len(buffer) - offset, 0)}"
            )
        return dict(zip(self.names, self._struct.unpack_from(buffer, offset)))


# Private token: fixed head, address list, fixed tail
PRIVATE_HEAD = Layout(
    ('client_id', 'Q'),
    ('timeout_seconds', 'i'),
)
PRIVATE_TAIL = Layout(
    ('client_to_server_key', f'{KEY_SIZE}s'),
    ('server_to_client_key', f'{KEY_SIZE}s'),
    ('user_data', f'{USER_DATA_SIZE}s'),
)


def _public_header(nonce_size):
    return Layout(
        ('version_info', f'{VERSION_INFO_SIZE}s'),
        ('protocol_id', 'Q'),
        ('create_timestamp', 'Q'),
        ('expire_timestamp', 'Q'),
        ('nonce', f'{nonce_size}s'),
        ('private_data', f'{CONNECT_TOKEN_PRIVATE_SIZE}s'),
    )


PUBLIC_HEADERS = {
    NonceScheme.XCHACHA20_RANDOM: _public_header(RANDOM_NONCE_SIZE),
    NonceScheme.CHACHA20_SEQUENCE: _public_header(SEQUENCE_SIZE),
}

# Public token: header, timeout, address list, session keys
PUBLIC_TIMEOUT = Layout(
    ('timeout_seconds', 'i'),
)
PUBLIC_KEYS = Layout(
    ('client_to_server_key', f'{KEY_SIZE}s'),
    ('server_to_client_key', f'{KEY_SIZE}s'),
)


@dataclass
class PrivateTokenPayload:
    """Confidential part of a connect token, readable only with the private key."""

    client_id: int
    timeout_seconds: int
    server_addresses: List[ServerAddress]
    client_to_server_key: bytes
    server_to_client_key: bytes
    user_data: bytes = bytes(USER_DATA_SIZE)


@dataclass
class PublicToken:
    """Parsed connect token. ``private_data`` is still sealed."""

    version_info: bytes
    protocol_id: int
    create_timestamp: int
    expire_timestamp: int
    nonce: bytes
    private_data: bytes
    timeout_seconds: int
    server_addresses: List[ServerAddress] = field(default_factory=list)
    client_to_server_key: bytes = bytes(KEY_SIZE)
    server_to_client_key: bytes = bytes(KEY_SIZE)

    @property
    def scheme(self):
        return NonceScheme.from_version_info(self.version_info)


def _check_key(name, key):
    if len(key) != KEY_SIZE:
        raise ValueError(f"{name} must be {KEY_SIZE} bytes, got {len(key)}")


def check_client_id(client_id):
    if not (0 <= client_id <= MAX_UINT64):
        raise InputError(f"Client id must be 0-{MAX_UINT64}, got {client_id}")


def check_timeout(timeout_seconds):
    if not (MIN_INT32 <= timeout_seconds <= MAX_INT32):
        raise InputError(f"Timeout must fit a signed 32-bit value, got {timeout_seconds}")


def build_private_token(client_id, timeout_seconds, server_addresses, user_data,
                        client_to_server_key, server_to_client_key):
    """
    Build the private token payload.

    Args:
        client_id (int): 64-bit client identity
        timeout_seconds (int): Connection timeout, negative for none
        server_addresses (list): 1 to 8 ServerAddress values
        user_data (bytes): Up to 256 bytes, zero-padded to 256
        client_to_server_key (bytes): 32-byte session key
        server_to_client_key (bytes): 32-byte session key

    Returns:
        PrivateTokenPayload

    Raises:
        UserDataTooLarge: If user_data is longer than 256 bytes
        InputError: If client_id or timeout_seconds is out of range
        ValueError: If a key has wrong length
    """
    check_client_id(client_id)
    check_timeout(timeout_seconds)
    _check_key("Client to server key", client_to_server_key)
    _check_key("Server to client key", server_to_client_key)

    user_data = bytes(user_data or b'')
    if len(user_data) > USER_DATA_SIZE:
        raise UserDataTooLarge(
            f"User data must be at most {USER_DATA_SIZE} bytes, got {len(user_data)}"
        )

    return PrivateTokenPayload(
        client_id=client_id,
        timeout_seconds=timeout_seconds,
        server_addresses=list(server_addresses),
        client_to_server_key=bytes(client_to_server_key),
        server_to_client_key=bytes(server_to_client_key),
        user_data=user_data.ljust(USER_DATA_SIZE, b'\x00'),
    )


def write_private_token(payload):
    """
    Serialize a private token into its pre-seal plaintext block.

    Returns:
        bytes: Exactly 1008 bytes, zero-padded

    Raises:
        PrivateBlockOverflow: If the fields exceed 1008 bytes
        InvalidAddressCount: If the address list is empty or too long
    """
    _check_key("Client to server key", payload.client_to_server_key)
    _check_key("Server to client key", payload.server_to_client_key)
    if len(payload.user_data) > USER_DATA_SIZE:
        raise UserDataTooLarge(
            f"User data must be at most {USER_DATA_SIZE} bytes, got {len(payload.user_data)}"
        )
    addresses = encode_addresses(payload.server_addresses)

    used = PRIVATE_HEAD.size + len(addresses) + PRIVATE_TAIL.size
    if used > PRIVATE_PLAINTEXT_SIZE:
        raise PrivateBlockOverflow(
            f"Private token needs {used} bytes (max {PRIVATE_PLAINTEXT_SIZE})"
        )

    buffer = bytearray(PRIVATE_PLAINTEXT_SIZE)
    offset = PRIVATE_HEAD.pack_into(
        buffer, 0,
        client_id=payload.client_id,
        timeout_seconds=payload.timeout_seconds,
    )
    buffer[offset:offset + len(addresses)] = addresses
    offset += len(addresses)
    PRIVATE_TAIL.pack_into(
        buffer, offset,
        client_to_server_key=payload.client_to_server_key,
        server_to_client_key=payload.server_to_client_key,
        user_data=payload.user_data,
    )
    return bytes(buffer)


def read_private_token(plaintext):
    """
    Parse an opened private token block.

    Raises:
        DecodeError: If the block has wrong size or malformed fields
    """
    if len(plaintext) != PRIVATE_PLAINTEXT_SIZE:
        raise DecodeError(
            f"Private token must be {PRIVATE_PLAINTEXT_SIZE} bytes, got {len(plaintext)}"
        )

    head = PRIVATE_HEAD.unpack_from(plaintext, 0)
    addresses, consumed = decode_addresses(plaintext, PRIVATE_HEAD.size)
    tail = PRIVATE_TAIL.unpack_from(plaintext, PRIVATE_HEAD.size + consumed)

    return PrivateTokenPayload(
        client_id=head['client_id'],
        timeout_seconds=head['timeout_seconds'],
        server_addresses=addresses,
        client_to_server_key=tail['client_to_server_key'],
        server_to_client_key=tail['server_to_client_key'],
        user_data=tail['user_data'],
    )


def write_public_token(token):
    """
    Assemble the full connect token.

    Returns:
        bytes: Exactly 2048 bytes; unused tail is zero

    Raises:
        TokenOverflow: If the trailer does not fit
        InvalidAddressCount: If the address list is empty or too long
        ValueError: If a field has wrong length or range
    """
    try:
        scheme = token.scheme
    except ValueError as e:
        raise ValueError(f"Cannot write token: {e}")
    header = PUBLIC_HEADERS[scheme]

    if len(token.private_data) != CONNECT_TOKEN_PRIVATE_SIZE:
        raise ValueError(
            f"Sealed private token must be {CONNECT_TOKEN_PRIVATE_SIZE} bytes, "
            f"got {len(token.private_data)}"
        )
    if len(token.nonce) != scheme.nonce_size:
        raise ValueError(f"Nonce must be {scheme.nonce_size} bytes for {scheme.name}")
    _check_key("Client to server key", token.client_to_server_key)
    _check_key("Server to client key", token.server_to_client_key)

    addresses = encode_addresses(token.server_addresses)
    used = header.size + PUBLIC_TIMEOUT.size + len(addresses) + PUBLIC_KEYS.size
    if used > CONNECT_TOKEN_SIZE:
        raise TokenOverflow(f"Connect token needs {used} bytes (max {CONNECT_TOKEN_SIZE})")

    buffer = bytearray(CONNECT_TOKEN_SIZE)
    offset = header.pack_into(
        buffer, 0,
        version_info=token.version_info,
        protocol_id=token.protocol_id,
        create_timestamp=token.create_timestamp,
        expire_timestamp=token.expire_timestamp,
        nonce=token.nonce,
        private_data=token.private_data,
    )
    offset = PUBLIC_TIMEOUT.pack_into(buffer, offset, timeout_seconds=token.timeout_seconds)
    buffer[offset:offset + len(addresses)] = addresses
    offset += len(addresses)
    PUBLIC_KEYS.pack_into(
        buffer, offset,
        client_to_server_key=token.client_to_server_key,
        server_to_client_key=token.server_to_client_key,
    )
    return bytes(buffer)


def read_public_token(data):
    """
    Parse a connect token. The private block stays sealed.

    Raises:
        DecodeError: If the size or version info is wrong, or the
            trailer is malformed
    """
    if len(data) != CONNECT_TOKEN_SIZE:
        raise DecodeError(
            f"Connect token must be {CONNECT_TOKEN_SIZE} bytes, got {len(data)}"
        )

    version_info = bytes(data[:VERSION_INFO_SIZE])
    try:
        scheme = NonceScheme.from_version_info(version_info)
    except ValueError:
        raise DecodeError(f"Unsupported version info: {version_info!r}")
    header = PUBLIC_HEADERS[scheme]

    fields = header.unpack_from(data, 0)
    offset = header.size
    timeout = PUBLIC_TIMEOUT.unpack_from(data, offset)
    offset += PUBLIC_TIMEOUT.size
    addresses, consumed = decode_addresses(data, offset)
    keys = PUBLIC_KEYS.unpack_from(data, offset + consumed)

    _logger.debug(
        "Read connect token protocol=%#x expires=%d addresses=%d",
        fields['protocol_id'], fields['expire_timestamp'], len(addresses),
    )
    return PublicToken(
        server_addresses=addresses,
        timeout_seconds=timeout['timeout_seconds'],
        **fields,
        **keys,
    )


def public_token_size(scheme, server_addresses):
    """Bytes a token with these addresses actually uses before zero padding."""
    return (PUBLIC_HEADERS[scheme].size + PUBLIC_TIMEOUT.size
            + encoded_size(server_addresses) + PUBLIC_KEYS.size)
