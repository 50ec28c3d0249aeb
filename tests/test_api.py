from __future__ import annotations

import base64
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from gas_station.api import GasStationDependencies, create_app
from gas_station.payload import FeeBoundPayload, MoveCall
from gas_station.pipeline import SponsoredTransactionPipeline
from gas_station.sponsor_client import SponsorResponse, SponsorServiceError


def _client(pipeline, settings) -> TestClient:
    deps = GasStationDependencies(pipeline=pipeline, settings=settings)
    return TestClient(create_app(settings, deps=deps))


@pytest.fixture
def client(pipeline, settings) -> TestClient:
    return _client(pipeline, settings)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["mode"] == "simulated"


def test_build_sponsored_add_call(client, user_signer, gas_station):
    response = client.post(
        "/api/build-sponsored-tx",
        json={"sender": user_signer.address, "num1": 2, "num2": 40},
    )

    assert response.status_code == 200
    body = response.json()
    assert set(body) == {"txBytes", "sponsorSignature", "digest"}

    payload = FeeBoundPayload.from_base64(body["txBytes"])
    (call,) = payload.instructions
    assert isinstance(call, MoveCall)
    assert call.target.endswith("::math::add")
    assert payload.fee.owner == gas_station.address
    assert body["digest"] == payload.digest


def test_build_sponsored_hello_world(client, user_signer):
    response = client.post("/api/build-sponsored-tx", json={"sender": user_signer.address})

    assert response.status_code == 200
    payload = FeeBoundPayload.from_base64(response.json()["txBytes"])
    assert payload.instructions[0].target.endswith("::math::hello_world")


def test_build_sponsored_requires_sender(client):
    response = client.post("/api/build-sponsored-tx", json={"num1": 1, "num2": 2})

    assert response.status_code == 400
    assert response.json()["error"] == "VALIDATION_ERROR"


def test_transfer_then_execute(client, ledger, user_signer, sender_coin, recipient):
    built = client.post(
        "/api/build-transfer-tx",
        json={"sender": user_signer.address, "recipient": recipient, "amount": 100},
    )
    assert built.status_code == 200
    body = built.json()

    sender_signature = user_signer.sign_bytes(base64.b64decode(body["txBytes"]))
    executed = client.post(
        "/api/execute-sponsored-tx",
        json={
            "txBytes": body["txBytes"],
            "sponsorSignature": body["sponsorSignature"],
            "senderSignature": sender_signature,
        },
    )

    assert executed.status_code == 200
    assert executed.json()["digest"] == body["digest"]
    assert executed.json()["effects"]["status"]["status"] == "success"
    assert ledger.balance_of(recipient) == 100


def test_execute_rejected_by_ledger(client, ledger, user_signer, sender_coin, recipient):
    body = client.post(
        "/api/build-transfer-tx",
        json={"sender": user_signer.address, "recipient": recipient, "amount": 100},
    ).json()

    # sponsor signature in the sender slot
    response = client.post(
        "/api/execute-sponsored-tx",
        json={
            "txBytes": body["txBytes"],
            "sponsorSignature": body["sponsorSignature"],
            "senderSignature": body["sponsorSignature"],
        },
    )

    assert response.status_code == 422
    payload = response.json()
    assert payload["error"] == "LEDGER_REJECTED"
    assert payload["details"]["kind"] == "invalid_authorization"
    assert ledger.balance_of(recipient) == 0


def test_execute_invalid_bytes(client):
    response = client.post(
        "/api/execute-sponsored-tx",
        json={"txBytes": "bm90IGpzb24=", "sponsorSignature": "a", "senderSignature": "b"},
    )

    assert response.status_code == 400
    assert response.json()["details"]["field"] == "txBytes"


def test_execute_missing_signature(client):
    response = client.post("/api/execute-sponsored-tx", json={"txBytes": "e30=", "sponsorSignature": "a"})

    assert response.status_code == 400


def test_transfer_without_coins(client, user_signer, recipient):
    response = client.post(
        "/api/build-transfer-tx",
        json={"sender": user_signer.address, "recipient": recipient, "amount": 100},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "NO_ELIGIBLE_RESOURCE"


def test_transfer_non_positive_amount(client, user_signer, recipient):
    response = client.post(
        "/api/build-transfer-tx",
        json={"sender": user_signer.address, "recipient": recipient, "amount": 0},
    )

    assert response.status_code == 400


def test_invalid_sender_address(client):
    response = client.post("/api/build-sponsored-tx", json={"sender": "alice"})

    assert response.status_code == 400
    assert response.json()["details"]["field"] == "sender"


def test_rate_limited_sponsor(client, gas_station, user_signer):
    gas_station.rejection = SponsorServiceError("Gas station rate limit exceeded", status_code=429)

    response = client.post("/api/build-sponsored-tx", json={"sender": user_signer.address})

    assert response.status_code == 429
    assert response.json()["error"] == "SPONSORSHIP_REJECTED"


def test_sponsor_refusal(client, gas_station, user_signer):
    gas_station.rejection = SponsorServiceError("Gas station fund exhausted", status_code=503)

    response = client.post("/api/build-sponsored-tx", json={"sender": user_signer.address})

    assert response.status_code == 502


def test_tampering_sponsor(ledger, settings, user_signer):
    sponsor = AsyncMock()
    sponsor.sponsor.return_value = SponsorResponse(tx_bytes="e30=", signature="x", digest="0" * 64)
    client = _client(SponsoredTransactionPipeline(ledger, sponsor, settings), settings)

    response = client.post("/api/build-sponsored-tx", json={"sender": user_signer.address})

    assert response.status_code == 502
    assert response.json()["error"] == "SPONSOR_TAMPERED_PAYLOAD"


@pytest.mark.parametrize(
    "body",
    [
        b'{"fee":{},"instructions":["x"],"sender":"0x1","version":1}',
        b'{"fee":{},"instructions":[{"amount":1,"kind":"transfer_value","recipient":"0x2",'
        b'"source":{"digest":"d","objectId":"0x1","version":"abc"}}],"sender":"0x1","version":1}',
    ],
)
def test_execute_malformed_payload_shapes(client, body):
    response = client.post(
        "/api/execute-sponsored-tx",
        json={
            "txBytes": base64.b64encode(body).decode(),
            "sponsorSignature": "a",
            "senderSignature": "b",
        },
    )

    assert response.status_code == 400
    assert response.json()["details"]["field"] == "txBytes"
