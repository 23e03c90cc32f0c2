"""Tests for the HTTP match endpoint."""
from __future__ import annotations

import base64

import pytest
from fastapi.testclient import TestClient

from matcher.address import endpoint
from matcher.config import MatcherConfig
from matcher.constants import CONNECT_TOKEN_SIZE
from matcher.exceptions import (
    InvalidExpiry,
    IssuanceError,
    MatcherConfigError,
    PrivateBlockOverflow,
)
from matcher.issuer import TokenReader
from matcher.server import create_app

PRIVATE_KEY = bytes.fromhex(
    "606abe6ec91910ea9a6562f66f2b30e4"
    "4371d62cd19927266b3c60f4b715aba1"
)
PROTOCOL_ID = 0x12341561


class _FailingIssuer:
    def __init__(self, cause=None):
        self.cause = cause or PrivateBlockOverflow("Private token needs 2000 bytes (max 1008)")

    def issue_base64(self, *args, **kwargs):
        raise IssuanceError(f"Failed to issue connect token: {self.cause}", cause=self.cause)


@pytest.fixture
def config() -> MatcherConfig:
    return MatcherConfig(private_key=PRIVATE_KEY)


@pytest.fixture
def client(config: MatcherConfig) -> TestClient:
    return TestClient(create_app(config))


def test_match_returns_base64_token(client: TestClient) -> None:
    response = client.get(f"/match/{PROTOCOL_ID}/1")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    data = base64.b64decode(response.text)
    assert len(data) == CONNECT_TOKEN_SIZE

    token, payload = TokenReader(PRIVATE_KEY, protocol_id=PROTOCOL_ID).read(data)
    assert token.expire_timestamp - token.create_timestamp == 45
    assert token.timeout_seconds == 5
    assert payload.client_id == 1
    assert payload.server_addresses == [endpoint("127.0.0.1", 40000)]


def test_match_accepts_max_uint64(client: TestClient) -> None:
    response = client.get(f"/match/{PROTOCOL_ID}/{2**64 - 1}")

    assert response.status_code == 200
    _, payload = TokenReader(PRIVATE_KEY).read_base64(response.text)
    assert payload.client_id == 2**64 - 1


@pytest.mark.parametrize(
    "path, detail",
    [
        (f"/match/{PROTOCOL_ID}/abc", "clientId"),
        (f"/match/{PROTOCOL_ID}/-1", "clientId"),
        (f"/match/{PROTOCOL_ID}/{2**64}", "clientId"),
        ("/match/0x10/1", "protocolId"),
    ],
)
def test_match_rejects_malformed_ids(client: TestClient, path: str, detail: str) -> None:
    response = client.get(path)

    assert response.status_code == 400
    assert f"Unable to parse {detail}" in response.text
    assert response.headers["x-content-type-options"] == "nosniff"


def test_match_reports_issuance_failure(config: MatcherConfig) -> None:
    client = TestClient(create_app(config, issuer=_FailingIssuer()))

    response = client.get(f"/match/{PROTOCOL_ID}/1")

    assert response.status_code == 500
    assert "Private token needs 2000 bytes" in response.text


def test_match_hides_details_when_not_verbose() -> None:
    config = MatcherConfig(private_key=PRIVATE_KEY, verbose_errors=False)
    client = TestClient(create_app(config, issuer=_FailingIssuer()))

    response = client.get(f"/match/{PROTOCOL_ID}/1")

    assert response.status_code == 500
    assert "Private token" not in response.text
    assert "error occurred" in response.text


def test_match_rejects_out_of_range_timeout_at_startup() -> None:
    with pytest.raises(MatcherConfigError, match="timeout_seconds"):
        MatcherConfig(private_key=PRIVATE_KEY, timeout_seconds=2**31)


def test_match_issuer_input_failure_is_server_error(config: MatcherConfig) -> None:
    cause = InvalidExpiry("Expiry of 18446744073709551615 seconds overflows the timestamp")
    client = TestClient(create_app(config, issuer=_FailingIssuer(cause)))

    response = client.get(f"/match/{PROTOCOL_ID}/1")

    assert response.status_code == 500
    assert "overflows the timestamp" in response.text


def test_match_unbounded_expiry() -> None:
    config = MatcherConfig(private_key=PRIVATE_KEY, expiry_seconds=None)
    client = TestClient(create_app(config))

    token, _ = TokenReader(PRIVATE_KEY).read_base64(client.get(f"/match/{PROTOCOL_ID}/9").text)

    assert token.expire_timestamp == 2**64 - 1
