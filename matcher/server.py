"""
HTTP match endpoint.

GET /match/{protocol_id}/{client_id} returns a base64 connect token as
plain text. TLS is terminated in front of this process.
"""

from __future__ import annotations

import logging
import re

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from matcher.config import MatcherConfig
from matcher.constants import MAX_UINT64, USER_DATA_SIZE
from matcher.crypto import AeadSealer
from matcher.exceptions import IssuanceError, MatcherConfigError
from matcher.issuer import TokenIssuer

_logger = logging.getLogger(__name__)

_DECIMAL = re.compile(r"[0-9]+")
_GENERIC_ERROR = "An error occurred on the server while processing the request"
_NOSNIFF = {"X-Content-Type-Options": "nosniff"}


def _parse_uint64(value: str) -> int | None:
    if not _DECIMAL.fullmatch(value):
        return None
    number = int(value, 10)
    return number if number <= MAX_UINT64 else None


def _error(message: str, status_code: int) -> PlainTextResponse:
    return PlainTextResponse(message, status_code=status_code, headers=_NOSNIFF)


def create_app(config: MatcherConfig, issuer: TokenIssuer | None = None) -> FastAPI:
    """Build the matcher app around one shared issuer."""
    if issuer is None:
        issuer = TokenIssuer(config.private_key, sealer=AeadSealer(config.nonce_scheme))

    app = FastAPI(title="netcode matcher")
    app.state.config = config
    app.state.issuer = issuer
    server_list = ", ".join(str(address) for address in config.server_addresses)

    # Sync handler: FastAPI runs it in the threadpool
    @app.get("/match/{protocol_id}/{client_id}", response_class=PlainTextResponse)
    def match(protocol_id: str, client_id: str) -> PlainTextResponse:
        parsed_client_id = _parse_uint64(client_id)
        if parsed_client_id is None:
            _logger.info("Rejected match request: bad clientId %r", client_id)
            return _error(f"Unable to parse clientId: {client_id}", 400)
        parsed_protocol_id = _parse_uint64(protocol_id)
        if parsed_protocol_id is None:
            _logger.info("Rejected match request: bad protocolId %r", protocol_id)
            return _error(f"Unable to parse protocolId: {protocol_id}", 400)

        try:
            token = issuer.issue_base64(
                parsed_client_id,
                parsed_protocol_id,
                config.server_addresses,
                config.expiry_seconds,
                config.timeout_seconds,
                bytes(USER_DATA_SIZE),
            )
        except IssuanceError as exc:
            # Ids are already valid here, so any failure is on the server side
            if exc.is_input_error:
                _logger.error("Matcher configuration rejected by issuer: %s", exc)
            else:
                _logger.error("Failed to generate connect token: %s", exc)
            message = f"Failed to generate connect token: {exc}"
            return _error(message if config.verbose_errors else _GENERIC_ERROR, 500)

        _logger.info("Matched client %016x to %s", parsed_client_id, server_list)
        return PlainTextResponse(token)

    return app


def main() -> None:
    """Run the matcher from environment configuration."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )
    try:
        config = MatcherConfig.from_env()
    except MatcherConfigError as exc:
        _logger.error("Invalid configuration: %s", exc)
        raise SystemExit(2) from exc

    _logger.info(
        "Started matchmaker on %s:%d (%s nonces, %d server addresses)",
        config.host, config.port, config.nonce_scheme.value, len(config.server_addresses),
    )
    uvicorn.run(create_app(config), host=config.host, port=config.port, log_config=None)


if __name__ == "__main__":
    main()
