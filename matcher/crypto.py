"""
Cryptographic primitives for connect tokens.

Uses PyNaCl (libsodium) for random bytes and XChaCha20-Poly1305, and
cryptography for ChaCha20-Poly1305-IETF under the sequence nonce scheme.
"""
import enum
import logging
import struct
import threading

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from nacl import bindings
from nacl.exceptions import CryptoError
from nacl.utils import random

from matcher.constants import (
    AUTH_TAG_SIZE,
    IETF_NONCE_SIZE,
    KEY_SIZE,
    MAX_UINT64,
    RANDOM_NONCE_SIZE,
    SEQUENCE_SIZE,
    VERSION_INFO_RANDOM_NONCE,
    VERSION_INFO_SEQUENCE_NONCE,
    VERSION_INFO_SIZE,
)
from matcher.exceptions import AuthenticationFailed, CryptoFailure, NonceExhausted

_logger = logging.getLogger(__name__)

_ASSOCIATED_DATA = struct.Struct(f'<{VERSION_INFO_SIZE}sQQ')
_SEQUENCE = struct.Struct('<Q')


def generate_key():
    """
    Generate a fresh 32-byte symmetric key from the system CSPRNG.

    Used for the per-token client-to-server and server-to-client keys,
    and by operators to create a private key.

    Returns:
        bytes: 32 random bytes
    """
    return random(KEY_SIZE)


def generate_nonce(size=RANDOM_NONCE_SIZE):
    """
    Generate a random nonce.

    Only safe at extended (24-byte) width. Short IETF nonces come from
    a NonceSequence instead.

    Returns:
        bytes: ``size`` random bytes
    """
    return random(size)


def build_associated_data(version_info, protocol_id, expire_timestamp):
    """
    Build the cleartext fields bound into the private block's auth tag.

    Format:
    ┌──────────────┬──────────────┬──────────────────┐
    │ Version Info │ Protocol ID  │ Expire Timestamp │
    │ (13 bytes)   │ (8 bytes LE) │ (8 bytes LE)     │
    └──────────────┴──────────────┴──────────────────┘
    """
    if len(version_info) != VERSION_INFO_SIZE:
        raise ValueError(f"Version info must be {VERSION_INFO_SIZE} bytes")
    return _ASSOCIATED_DATA.pack(version_info, protocol_id, expire_timestamp)


class NonceSequence:
    """
    Monotonic 64-bit nonce counter shared by all issuances under one key.

    next() increments under a lock and hands the post-increment value to
    exactly one caller. The counter never wraps.
    """

    def __init__(self, start=0):
        if not (0 <= start <= MAX_UINT64):
            raise ValueError(f"Sequence start must be 0-{MAX_UINT64}")
        self._value = start
        self._lock = threading.Lock()

    @property
    def current(self):
        """Last value handed out (or the start value)."""
        with self._lock:
            return self._value

    def next(self):
        with self._lock:
            if self._value >= MAX_UINT64:
                raise NonceExhausted("Nonce sequence exhausted; rotate the private key")
            self._value += 1
            return self._value


class NonceScheme(enum.Enum):
    """How the private block nonce is produced. One per deployment."""

    XCHACHA20_RANDOM = 'xchacha20'
    CHACHA20_SEQUENCE = 'sequence'

    @property
    def version_info(self):
        if self is NonceScheme.XCHACHA20_RANDOM:
            return VERSION_INFO_RANDOM_NONCE
        return VERSION_INFO_SEQUENCE_NONCE

    @property
    def nonce_size(self):
        """Width of the nonce as carried in the token."""
        if self is NonceScheme.XCHACHA20_RANDOM:
            return RANDOM_NONCE_SIZE
        return SEQUENCE_SIZE

    @classmethod
    def from_version_info(cls, version_info):
        for scheme in cls:
            if scheme.version_info == version_info:
                return scheme
        raise ValueError(f"Unknown version info {bytes(version_info)!r}")


class AeadSealer:
    """
    Seal and open the private token block.

    XCHACHA20_RANDOM: XChaCha20-Poly1305-IETF, 24-byte random nonce.
    CHACHA20_SEQUENCE: ChaCha20-Poly1305-IETF, 12-byte nonce built from
    four zero bytes followed by the 8-byte little-endian sequence number.
    """

    def __init__(self, scheme=NonceScheme.XCHACHA20_RANDOM):
        self.scheme = NonceScheme(scheme)

    @property
    def version_info(self):
        return self.scheme.version_info

    @property
    def nonce_size(self):
        return self.scheme.nonce_size

    def __repr__(self):
        return f"AeadSealer({self.scheme.name})"

    def make_nonce(self, sequence=None):
        """
        Produce the wire nonce for one token.

        Args:
            sequence (NonceSequence): Required for CHACHA20_SEQUENCE

        Returns:
            bytes: 24 random bytes, or the next sequence number (8 bytes LE)
        """
        if self.scheme is NonceScheme.XCHACHA20_RANDOM:
            return generate_nonce(RANDOM_NONCE_SIZE)
        if sequence is None:
            raise CryptoFailure("Sequence nonce scheme needs a NonceSequence")
        return _SEQUENCE.pack(sequence.next())

    def _check(self, nonce, key):
        if len(key) != KEY_SIZE:
            raise ValueError(f"Key must be {KEY_SIZE} bytes")
        if len(nonce) != self.nonce_size:
            raise ValueError(
                f"Nonce must be {self.nonce_size} bytes for {self.scheme.name}"
            )

    @staticmethod
    def _ietf_nonce(nonce):
        return bytes(IETF_NONCE_SIZE - SEQUENCE_SIZE) + bytes(nonce)

    def seal(self, plaintext, associated_data, nonce, key):
        """
        Encrypt and authenticate plaintext, binding associated_data.

        Returns:
            bytes: ciphertext followed by the 16-byte tag

        Raises:
            ValueError: If key or nonce has wrong length
            CryptoFailure: If the cipher rejects the input
        """
        self._check(nonce, key)
        plaintext = bytes(plaintext)
        associated_data = bytes(associated_data)
        try:
            if self.scheme is NonceScheme.XCHACHA20_RANDOM:
                return bindings.crypto_aead_xchacha20poly1305_ietf_encrypt(
                    plaintext, associated_data, bytes(nonce), bytes(key)
                )
            return ChaCha20Poly1305(bytes(key)).encrypt(
                self._ietf_nonce(nonce), plaintext, associated_data
            )
        except (CryptoError, OverflowError) as e:
            raise CryptoFailure(f"Sealing failed: {e}") from e

    def open(self, sealed, associated_data, nonce, key):
        """
        Verify and decrypt a sealed block.

        Returns:
            bytes: plaintext (sealed length minus the tag)

        Raises:
            AuthenticationFailed: On any tag mismatch; nothing is returned
        """
        self._check(nonce, key)
        if len(sealed) < AUTH_TAG_SIZE:
            raise AuthenticationFailed("Sealed block shorter than auth tag")
        try:
            if self.scheme is NonceScheme.XCHACHA20_RANDOM:
                return bindings.crypto_aead_xchacha20poly1305_ietf_decrypt(
                    bytes(sealed), bytes(associated_data), bytes(nonce), bytes(key)
                )
            return ChaCha20Poly1305(bytes(key)).decrypt(
                self._ietf_nonce(nonce), bytes(sealed), bytes(associated_data)
            )
        except (CryptoError, InvalidTag):
            _logger.debug("Private block failed authentication (%s)", self.scheme.name)
            raise AuthenticationFailed("Decryption failed: token may be tampered") from None
