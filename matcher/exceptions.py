"""Exception hierarchy for connect token issuance and reading."""

from __future__ import annotations


class TokenError(Exception):
    """Base exception for all connect token errors."""


class InputError(TokenError):
    """Caller supplied invalid input. Reported as a client error."""


class InvalidAddressCount(InputError):
    """Address list is empty or holds more than the allowed servers."""


class UserDataTooLarge(InputError):
    """User data exceeds the fixed user data size."""


class InvalidExpiry(InputError):
    """Expiry is negative or pushes the timestamp past 64 bits."""


class EncodingOverflow(TokenError):
    """Serialized fields do not fit their fixed block.

    Never a client error: the configuration or the code is wrong.
    """


class PrivateBlockOverflow(EncodingOverflow):
    """Private token fields exceed the pre-seal plaintext size."""


class TokenOverflow(EncodingOverflow):
    """Public token fields exceed the connect token size."""


class CryptoFailure(TokenError):
    """Sealing, opening or nonce generation failed."""


class AuthenticationFailed(CryptoFailure):
    """AEAD tag did not verify. No plaintext is exposed."""


class NonceExhausted(CryptoFailure):
    """Nonce sequence reached its maximum and would wrap."""


class DecodeError(TokenError):
    """Token bytes are malformed or not acceptable."""


class TruncatedBuffer(DecodeError):
    """Buffer ended before the declared fields."""


class TokenExpired(DecodeError):
    """Token expire timestamp is in the past."""


class IssuanceError(TokenError):
    """Token could not be issued.

    ``cause`` holds the underlying :class:`TokenError`, or the TypeError
    or ValueError raised by a malformed argument.
    """

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        self.cause = cause
        super().__init__(message)

    @property
    def is_input_error(self) -> bool:
        return isinstance(self.cause, InputError)


class MatcherConfigError(Exception):
    """Invalid or missing matcher configuration."""
