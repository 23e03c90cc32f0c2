"""Matcher configuration."""

from __future__ import annotations

import dataclasses
import os
import time
from pathlib import Path
from typing import Any

from matcher.address import ServerAddress, parse_address
from matcher.constants import (
    KEY_SIZE,
    MAX_INT32,
    MAX_SERVERS_PER_CONNECT,
    MIN_INT32,
    UNBOUNDED_EXPIRY,
)
from matcher.crypto import NonceScheme
from matcher.exceptions import MatcherConfigError

DEFAULT_SERVER_ADDRESS = "127.0.0.1:40000"
DEFAULT_EXPIRY_SECONDS = 45
DEFAULT_TIMEOUT_SECONDS = 5
_UNBOUNDED_WORDS = {"infinite", "never", "none", "unbounded"}


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_int(env: Any, key: str) -> int | None:
    value = env.get(key)
    if value is None:
        return None
    try:
        return int(value.strip(), 10)
    except ValueError as exc:
        raise MatcherConfigError(f"{key} must be an integer, got {value!r}") from exc


def parse_private_key(value: str | bytes, *, name: str = "private key") -> bytes:
    """Accept a raw 32-byte key or its 64-character hex form."""
    if isinstance(value, bytes) and len(value) == KEY_SIZE:
        return value
    text = value.decode("ascii", errors="replace") if isinstance(value, bytes) else value
    text = text.strip()
    if text.startswith(("0x", "0X")):
        text = text[2:]
    try:
        key = bytes.fromhex(text)
    except ValueError as exc:
        raise MatcherConfigError(f"{name} must be hex-encoded") from exc
    if len(key) != KEY_SIZE:
        raise MatcherConfigError(f"{name} must be {KEY_SIZE} bytes (got {len(key)})")
    return key


def parse_server_addresses(value: str) -> tuple[ServerAddress, ...]:
    """Parse a comma separated list of ``host:port`` entries."""
    entries = [item for item in (part.strip() for part in value.split(",")) if item]
    if not (1 <= len(entries) <= MAX_SERVERS_PER_CONNECT):
        raise MatcherConfigError(
            f"Need 1-{MAX_SERVERS_PER_CONNECT} server addresses, got {len(entries)}"
        )
    try:
        return tuple(parse_address(item) for item in entries)
    except ValueError as exc:
        raise MatcherConfigError(f"Invalid server address: {exc}") from exc


@dataclasses.dataclass(frozen=True)
class MatcherConfig:
    """Matchmaker configuration.

    Parameters
    ----------
    private_key : bytes
        32-byte key sealing every private token. Never logged.
    server_addresses : tuple of ServerAddress
        Dedicated servers every token authorizes (1 to 8).
    expiry_seconds : int or None
        Token lifetime. ``None`` issues tokens that never expire.
    timeout_seconds : int
        Connection timeout written into tokens. Negative disables it.
    nonce_scheme : NonceScheme
        Private block nonce scheme for this deployment.
    host : str
        Interface the HTTP endpoint binds.
    port : int
        Port the HTTP endpoint listens on.
    verbose_errors : bool
        Return failure details in 500 responses instead of a generic text.
    """

    private_key: bytes = dataclasses.field(repr=False)
    server_addresses: tuple[ServerAddress, ...] = dataclasses.field(
        default_factory=lambda: (parse_address(DEFAULT_SERVER_ADDRESS),)
    )
    expiry_seconds: int | None = DEFAULT_EXPIRY_SECONDS
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    nonce_scheme: NonceScheme = NonceScheme.XCHACHA20_RANDOM
    host: str = "0.0.0.0"
    port: int = 8080
    verbose_errors: bool = True

    def __post_init__(self) -> None:
        if len(self.private_key) != KEY_SIZE:
            raise MatcherConfigError(f"private key must be {KEY_SIZE} bytes")
        if not (1 <= len(self.server_addresses) <= MAX_SERVERS_PER_CONNECT):
            raise MatcherConfigError(
                f"Need 1-{MAX_SERVERS_PER_CONNECT} server addresses, "
                f"got {len(self.server_addresses)}"
            )
        if self.expiry_seconds is not None:
            if self.expiry_seconds < 0:
                raise MatcherConfigError("expiry_seconds must be non-negative or None")
            # Finite expiry must stay below the never-expires sentinel
            if int(time.time()) + self.expiry_seconds >= UNBOUNDED_EXPIRY:
                raise MatcherConfigError(
                    f"expiry_seconds {self.expiry_seconds} overflows the expire timestamp"
                )
        if not (MIN_INT32 <= self.timeout_seconds <= MAX_INT32):
            raise MatcherConfigError(
                f"timeout_seconds must fit a signed 32-bit value, got {self.timeout_seconds}"
            )

    @classmethod
    def from_env(cls, **overrides: Any) -> MatcherConfig:
        """Create configuration from environment variables.

        Reads ``MATCHER_PRIVATE_KEY`` (hex) or ``MATCHER_PRIVATE_KEY_FILE``
        and optional ``MATCHER_*`` variables. Explicit keyword arguments
        override environment values.

        Returns
        -------
        MatcherConfig
            Populated configuration.

        Raises
        ------
        MatcherConfigError
            If the key is missing or any value is malformed.
        """
        env = os.environ
        config_kwargs: dict[str, Any] = {}

        if "private_key" not in overrides:
            key_hex = env.get("MATCHER_PRIVATE_KEY")
            key_file = env.get("MATCHER_PRIVATE_KEY_FILE")
            if key_hex:
                config_kwargs["private_key"] = parse_private_key(
                    key_hex, name="MATCHER_PRIVATE_KEY"
                )
            elif key_file:
                try:
                    raw = Path(key_file).read_bytes()
                except OSError as exc:
                    raise MatcherConfigError(f"Cannot read private key file: {exc}") from exc
                config_kwargs["private_key"] = parse_private_key(
                    raw, name="MATCHER_PRIVATE_KEY_FILE"
                )
            else:
                raise MatcherConfigError(
                    "Set MATCHER_PRIVATE_KEY or MATCHER_PRIVATE_KEY_FILE"
                )

        addresses_env = env.get("MATCHER_SERVER_ADDRESSES")
        if addresses_env is not None and "server_addresses" not in overrides:
            config_kwargs["server_addresses"] = parse_server_addresses(addresses_env)

        expiry_env = env.get("MATCHER_TOKEN_EXPIRY")
        if expiry_env is not None and "expiry_seconds" not in overrides:
            if expiry_env.strip().lower() in _UNBOUNDED_WORDS:
                config_kwargs["expiry_seconds"] = None
            else:
                config_kwargs["expiry_seconds"] = _env_int(env, "MATCHER_TOKEN_EXPIRY")

        if "timeout_seconds" not in overrides:
            timeout = _env_int(env, "MATCHER_TIMEOUT")
            if timeout is not None:
                config_kwargs["timeout_seconds"] = timeout

        scheme_env = env.get("MATCHER_NONCE_SCHEME")
        if scheme_env is not None and "nonce_scheme" not in overrides:
            try:
                config_kwargs["nonce_scheme"] = NonceScheme(scheme_env.strip().lower())
            except ValueError as exc:
                choices = ", ".join(s.value for s in NonceScheme)
                raise MatcherConfigError(
                    f"MATCHER_NONCE_SCHEME must be one of {choices}"
                ) from exc

        host = env.get("MATCHER_HOST")
        if host is not None and "host" not in overrides:
            config_kwargs["host"] = host

        if "port" not in overrides:
            port = _env_int(env, "MATCHER_PORT")
            if port is not None:
                config_kwargs["port"] = port

        if "verbose_errors" not in overrides:
            config_kwargs["verbose_errors"] = _env_bool(
                env.get("MATCHER_VERBOSE_ERRORS"),
                True,
            )

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
