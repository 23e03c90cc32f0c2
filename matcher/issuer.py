"""
Connect token issuance and reading.

TokenIssuer runs on the matchmaker: it validates a request, draws fresh
session keys and a nonce, seals the private token and frames the public one.
TokenReader is the dedicated server side: it parses a token, opens the
private block with the same private key and checks expiry.
"""

import base64
import binascii
import logging
import time

from matcher.constants import (
    KEY_SIZE,
    MAX_SERVERS_PER_CONNECT,
    MAX_UINT64,
    UNBOUNDED_EXPIRY,
)
from matcher.crypto import (
    AeadSealer,
    NonceScheme,
    NonceSequence,
    build_associated_data,
    generate_key,
)
from matcher.exceptions import (
    DecodeError,
    InputError,
    InvalidAddressCount,
    InvalidExpiry,
    IssuanceError,
    TokenError,
    TokenExpired,
)
from matcher.protocol import (
    PublicToken,
    build_private_token,
    check_client_id,
    check_timeout,
    read_private_token,
    read_public_token,
    write_private_token,
    write_public_token,
)

_logger = logging.getLogger(__name__)


def _check_private_key(private_key):
    if len(private_key) != KEY_SIZE:
        raise ValueError(f"Private key must be {KEY_SIZE} bytes, got {len(private_key)}")
    return bytes(private_key)


def expire_timestamp(create_timestamp, expiry_seconds):
    """
    Compute the expire timestamp for a token created at ``create_timestamp``.

    ``expiry_seconds=None`` means the token never expires and yields
    UNBOUNDED_EXPIRY (2**64 - 1), which no finite expiry can reach.

    Raises:
        InvalidExpiry: If expiry_seconds is negative, not an int, or too large
    """
    if expiry_seconds is None:
        return UNBOUNDED_EXPIRY
    if isinstance(expiry_seconds, bool) or not isinstance(expiry_seconds, int):
        raise InvalidExpiry(f"Expiry must be whole seconds, got {expiry_seconds!r}")
    if expiry_seconds < 0:
        raise InvalidExpiry(f"Expiry must be non-negative, got {expiry_seconds}")
    expires = create_timestamp + expiry_seconds
    if expires >= UNBOUNDED_EXPIRY:
        raise InvalidExpiry(f"Expiry of {expiry_seconds} seconds overflows the timestamp")
    return expires


class TokenIssuer:
    """
    Issues connect tokens sealed with one private key.

    Holds no state about issued tokens. Under the sequence nonce scheme it
    owns (or is handed) the NonceSequence shared by every issuance.
    """

    def __init__(self, private_key, sealer=None, sequence=None, clock=time.time):
        self._private_key = _check_private_key(private_key)
        self.sealer = sealer or AeadSealer()
        if self.sealer.scheme is NonceScheme.CHACHA20_SEQUENCE and sequence is None:
            sequence = NonceSequence()
        self.sequence = sequence
        self._clock = clock

    def __repr__(self):
        return f"TokenIssuer({self.sealer!r})"

    def issue(self, client_id, protocol_id, server_addresses, expiry_seconds,
              timeout_seconds, user_data=b''):
        """
        Issue one connect token.

        Args:
            client_id (int): 64-bit client identity
            protocol_id (int): 64-bit protocol namespace
            server_addresses (list): 1 to 8 ServerAddress values
            expiry_seconds (int | None): Token lifetime, None for unbounded
            timeout_seconds (int): Connection timeout, negative for none
            user_data (bytes): Up to 256 bytes for the dedicated server

        Returns:
            bytes: 2048-byte connect token

        Raises:
            IssuanceError: Wrapping the first failure; ``cause`` keeps it.
                Argument type errors (TypeError, ValueError) are wrapped too.
        """
        try:
            return self._issue(client_id, protocol_id, server_addresses,
                               expiry_seconds, timeout_seconds, user_data)
        except (TokenError, TypeError, ValueError) as e:
            if not isinstance(e, InputError):
                _logger.error("Connect token issuance failed for client %s",
                              client_id, exc_info=True)
            else:
                _logger.info("Rejected connect token request for client %s: %s",
                             client_id, e)
            raise IssuanceError(
                f"Failed to issue connect token: {e}", cause=e
            ) from e

    def issue_base64(self, *args, **kwargs):
        """issue() encoded as standard base64 text for transport."""
        return base64.b64encode(self.issue(*args, **kwargs)).decode('ascii')

    def _issue(self, client_id, protocol_id, server_addresses, expiry_seconds,
               timeout_seconds, user_data):
        server_addresses = list(server_addresses)
        if not (1 <= len(server_addresses) <= MAX_SERVERS_PER_CONNECT):
            raise InvalidAddressCount(
                f"Token must carry 1-{MAX_SERVERS_PER_CONNECT} server addresses, "
                f"got {len(server_addresses)}"
            )
        check_client_id(client_id)
        if not (0 <= protocol_id <= MAX_UINT64):
            raise InputError(f"Protocol id must be 0-{MAX_UINT64}, got {protocol_id}")
        check_timeout(timeout_seconds)

        created = int(self._clock())
        expires = expire_timestamp(created, expiry_seconds)

        # Session keys are fresh per token, never derived from the client id
        client_to_server_key = generate_key()
        server_to_client_key = generate_key()

        payload = build_private_token(
            client_id, timeout_seconds, server_addresses, user_data,
            client_to_server_key, server_to_client_key,
        )
        plaintext = write_private_token(payload)

        version_info = self.sealer.version_info
        nonce = self.sealer.make_nonce(self.sequence)
        associated_data = build_associated_data(version_info, protocol_id, expires)
        sealed = self.sealer.seal(plaintext, associated_data, nonce, self._private_key)

        token = PublicToken(
            version_info=version_info,
            protocol_id=protocol_id,
            create_timestamp=created,
            expire_timestamp=expires,
            nonce=nonce,
            private_data=sealed,
            timeout_seconds=timeout_seconds,
            server_addresses=server_addresses,
            client_to_server_key=client_to_server_key,
            server_to_client_key=server_to_client_key,
        )
        data = write_public_token(token)
        _logger.debug("Issued connect token protocol=%#x client=%016x expires=%d",
                      protocol_id, client_id, expires)
        return data


class TokenReader:
    """
    Validates connect tokens on the dedicated server.

    Fails closed: any malformed, tampered, foreign or expired token raises
    and nothing from the private block is returned.
    """

    def __init__(self, private_key, protocol_id=None, clock=time.time):
        self._private_key = _check_private_key(private_key)
        self.protocol_id = protocol_id
        self._clock = clock

    def read(self, data):
        """
        Parse and open a connect token.

        Returns:
            tuple: (PublicToken, PrivateTokenPayload)

        Raises:
            DecodeError: Wrong size, version info or protocol id
            AuthenticationFailed: Private block or header was tampered with
            TokenExpired: Expire timestamp has passed
        """
        token = read_public_token(data)
        if self.protocol_id is not None and token.protocol_id != self.protocol_id:
            raise DecodeError(
                f"Token protocol id {token.protocol_id:#x} does not match "
                f"{self.protocol_id:#x}"
            )

        sealer = AeadSealer(token.scheme)
        associated_data = build_associated_data(
            token.version_info, token.protocol_id, token.expire_timestamp
        )
        plaintext = sealer.open(token.private_data, associated_data,
                                token.nonce, self._private_key)
        payload = read_private_token(plaintext)

        now = int(self._clock())
        if token.expire_timestamp <= now:
            raise TokenExpired(
                f"Connect token expired at {token.expire_timestamp} (now {now})"
            )
        return token, payload

    def read_base64(self, text):
        """read() for the base64 transport form."""
        try:
            data = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeError(f"Connect token is not valid base64: {e}")
        return self.read(data)
