"""Tests for connect token serialization/parsing."""
import pytest

from matcher.address import endpoint
from matcher.constants import (
    CONNECT_TOKEN_PRIVATE_SIZE,
    CONNECT_TOKEN_SIZE,
    PRIVATE_PLAINTEXT_SIZE,
    USER_DATA_SIZE,
    VERSION_INFO_RANDOM_NONCE,
    VERSION_INFO_SEQUENCE_NONCE,
)
from matcher.crypto import NonceScheme, generate_key, generate_nonce
from matcher.exceptions import (
    DecodeError,
    InputError,
    InvalidAddressCount,
    PrivateBlockOverflow,
    UserDataTooLarge,
)
from matcher.protocol import (
    PRIVATE_HEAD,
    PRIVATE_TAIL,
    PUBLIC_HEADERS,
    PrivateTokenPayload,
    PublicToken,
    build_private_token,
    public_token_size,
    read_private_token,
    read_public_token,
    write_private_token,
    write_public_token,
)

ONE_SERVER = [endpoint('127.0.0.1', 40000)]
EIGHT_SERVERS = [endpoint(f'2001:db8::{i}', 40000 + i) for i in range(8)]


def _public_token(addresses=ONE_SERVER, scheme=NonceScheme.XCHACHA20_RANDOM):
    return PublicToken(
        version_info=scheme.version_info,
        protocol_id=0x12341561,
        create_timestamp=1700000000,
        expire_timestamp=1700000045,
        nonce=generate_nonce(scheme.nonce_size),
        private_data=b'\xaa' * CONNECT_TOKEN_PRIVATE_SIZE,
        timeout_seconds=5,
        server_addresses=list(addresses),
        client_to_server_key=generate_key(),
        server_to_client_key=generate_key(),
    )


def test_public_header_offsets():
    """Header fields sit at fixed offsets for each nonce scheme."""
    random_header = PUBLIC_HEADERS[NonceScheme.XCHACHA20_RANDOM]
    assert random_header.offsets == {
        'version_info': 0,
        'protocol_id': 13,
        'create_timestamp': 21,
        'expire_timestamp': 29,
        'nonce': 37,
        'private_data': 61,
    }
    assert random_header.size == 61 + 1024

    sequence_header = PUBLIC_HEADERS[NonceScheme.CHACHA20_SEQUENCE]
    assert sequence_header.offsets['nonce'] == 37
    assert sequence_header.offsets['private_data'] == 45
    assert sequence_header.size == random_header.size - 16


def test_build_private_token_pads_user_data():
    """Short user data is zero-padded to 256 bytes."""
    payload = build_private_token(1, 5, ONE_SERVER, b'hello', generate_key(), generate_key())

    assert len(payload.user_data) == USER_DATA_SIZE
    assert payload.user_data.startswith(b'hello')
    assert payload.user_data[5:] == bytes(USER_DATA_SIZE - 5)


def test_build_private_token_rejects_large_user_data():
    """User data above 256 bytes is never silently truncated."""
    with pytest.raises(UserDataTooLarge):
        build_private_token(1, 5, ONE_SERVER, b'x' * (USER_DATA_SIZE + 1),
                            generate_key(), generate_key())


def test_build_private_token_validates_ranges():
    """Client id is u64, timeout is i32, keys are 32 bytes."""
    with pytest.raises(InputError):
        build_private_token(-1, 5, ONE_SERVER, b'', generate_key(), generate_key())
    with pytest.raises(InputError):
        build_private_token(2**64, 5, ONE_SERVER, b'', generate_key(), generate_key())
    with pytest.raises(InputError):
        build_private_token(1, 2**31, ONE_SERVER, b'', generate_key(), generate_key())
    with pytest.raises(ValueError):
        build_private_token(1, 5, ONE_SERVER, b'', b'short', generate_key())


def test_private_token_layout():
    """client id · timeout · addresses · keys · user data · zero padding."""
    c2s, s2c = generate_key(), generate_key()
    payload = build_private_token(0x0102030405060708, -1, ONE_SERVER, b'\x07' * 256, c2s, s2c)

    block = write_private_token(payload)

    assert len(block) == PRIVATE_PLAINTEXT_SIZE
    assert block[0:8] == bytes.fromhex('0807060504030201')
    assert block[8:12] == b'\xff\xff\xff\xff'
    assert block[12:23] == bytes.fromhex('01000000' '01' '7f000001' '409c')
    assert block[23:55] == c2s
    assert block[55:87] == s2c
    assert block[87:343] == b'\x07' * 256
    assert block[343:] == bytes(PRIVATE_PLAINTEXT_SIZE - 343)


@pytest.mark.parametrize('addresses', [ONE_SERVER, EIGHT_SERVERS])
def test_private_token_roundtrip(addresses):
    """read_private_token inverts write_private_token."""
    payload = build_private_token(99, 10, addresses, b'user', generate_key(), generate_key())

    assert read_private_token(write_private_token(payload)) == payload


def test_eight_ipv6_servers_fit_private_block():
    """The largest legal address list fits the 1008-byte budget."""
    fixed = PRIVATE_HEAD.size + PRIVATE_TAIL.size
    assert fixed + 4 + 8 * 19 <= PRIVATE_PLAINTEXT_SIZE


def test_private_token_overflow(monkeypatch):
    """Fields past the plaintext budget raise instead of truncating."""
    monkeypatch.setattr('matcher.protocol.PRIVATE_PLAINTEXT_SIZE', 200)
    payload = build_private_token(1, 5, EIGHT_SERVERS, b'', generate_key(), generate_key())

    with pytest.raises(PrivateBlockOverflow):
        write_private_token(payload)


def test_private_token_rejects_too_many_addresses():
    """A hand-built payload with nine addresses cannot be written."""
    payload = build_private_token(1, 5, ONE_SERVER, b'', generate_key(), generate_key())
    payload.server_addresses = EIGHT_SERVERS + ONE_SERVER

    with pytest.raises(InvalidAddressCount):
        write_private_token(payload)


def test_private_token_rejects_oversized_user_data_on_write():
    """A hand-built payload cannot smuggle more than 256 bytes of user data."""
    payload = PrivateTokenPayload(1, 5, ONE_SERVER, generate_key(), generate_key(), b'x' * 300)
    with pytest.raises(UserDataTooLarge):
        write_private_token(payload)


def test_private_block_overflow_is_an_encoding_error():
    """Overflow is a distinct error class from input validation."""
    assert not issubclass(PrivateBlockOverflow, InputError)


def test_read_private_token_rejects_wrong_size():
    """Opened private block must be exactly 1008 bytes."""
    with pytest.raises(DecodeError):
        read_private_token(b'\x00' * 100)


@pytest.mark.parametrize('scheme', list(NonceScheme))
@pytest.mark.parametrize('addresses', [ONE_SERVER, EIGHT_SERVERS])
def test_public_token_is_fixed_size(scheme, addresses):
    """Token is always 2048 bytes; bytes after the trailer are zero."""
    data = write_public_token(_public_token(addresses, scheme))

    assert len(data) == CONNECT_TOKEN_SIZE
    used = public_token_size(scheme, addresses)
    assert data[used:] == bytes(CONNECT_TOKEN_SIZE - used)


@pytest.mark.parametrize('scheme', list(NonceScheme))
def test_public_token_roundtrip(scheme):
    """read_public_token inverts write_public_token."""
    token = _public_token(EIGHT_SERVERS[:3] + ONE_SERVER, scheme)

    assert read_public_token(write_public_token(token)) == token


def test_public_token_trailer_offsets():
    """Timeout follows the sealed block, then addresses and keys."""
    token = _public_token()
    data = write_public_token(token)

    assert data[:13] == VERSION_INFO_RANDOM_NONCE
    assert data[37:61] == token.nonce
    assert data[61:1085] == token.private_data
    assert data[1085:1089] == bytes.fromhex('05000000')
    assert data[1089:1100] == bytes.fromhex('01000000' '01' '7f000001' '409c')
    assert data[1100:1132] == token.client_to_server_key
    assert data[1132:1164] == token.server_to_client_key


def test_sequence_token_shifts_offsets():
    """8-byte nonce moves every later field 16 bytes earlier."""
    token = _public_token(scheme=NonceScheme.CHACHA20_SEQUENCE)
    data = write_public_token(token)

    assert data[:13] == VERSION_INFO_SEQUENCE_NONCE
    assert data[37:45] == token.nonce
    assert data[45:1069] == token.private_data
    assert data[1069:1073] == bytes.fromhex('05000000')


def test_write_public_token_validates_fields():
    """Wrong sealed size, nonce width or version info are rejected."""
    token = _public_token()
    token.private_data = b'\x00' * 1000
    with pytest.raises(ValueError):
        write_public_token(token)

    token = _public_token()
    token.nonce = b'\x00' * 8
    with pytest.raises(ValueError):
        write_public_token(token)

    token = _public_token()
    token.version_info = b'NETCODE 9.99\x00'
    with pytest.raises(ValueError):
        write_public_token(token)


def test_read_public_token_rejects_wrong_size():
    """Anything but exactly 2048 bytes is rejected."""
    data = write_public_token(_public_token())

    with pytest.raises(DecodeError):
        read_public_token(data[:-1])
    with pytest.raises(DecodeError):
        read_public_token(data + b'\x00')


def test_read_public_token_rejects_bad_version():
    """Version info must match a known tag exactly."""
    data = bytearray(write_public_token(_public_token()))
    data[12] = ord('X')  # terminator

    with pytest.raises(DecodeError):
        read_public_token(bytes(data))


def test_read_public_token_rejects_empty_address_list():
    """Zeroed trailer is malformed, not an empty token."""
    data = bytearray(write_public_token(_public_token()))
    data[1089:1093] = b'\x00\x00\x00\x00'

    with pytest.raises(DecodeError):
        read_public_token(bytes(data))
