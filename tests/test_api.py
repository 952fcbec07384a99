"""
HTTP layer through TestClient with a mocked ledger: routes, error shapes, signed transfers.
"""

from __future__ import annotations

import base64
import dataclasses
from types import SimpleNamespace

from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.hash import Hash
from solders.transaction import Transaction

from backend_presale.api_server.signing import SIGNATURE_HEADER, sign_request

from tests.fakes import now_ms, payment_effects, rpc_resp


def _signature(payer: Keypair) -> str:
    msg = Message.new_with_blockhash(
        [transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Pubkey.new_unique(), lamports=1))],
        payer.pubkey(),
        Hash.new_unique(),
    )
    return str(Transaction([payer], msg, Hash.new_unique()).signatures[0])


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
    data = client.get("/api/health").json()
    assert data["status"] == "ok"
    assert data["presale"] == "active"
    assert "X-Request-ID" in client.get("/health").headers


def test_rates(client):
    data = client.get("/api/rates").json()
    assert data["SOL"]["rate"] == 7500
    assert data["USDT"] == {"rate": 50.0, "min": 1.0, "max": 20000.0}


def test_presale_status(client):
    data = client.get("/api/presale/status").json()
    assert data["success"] is True
    assert data["status"] == "active"
    assert data["timeLeft"] > 0


def test_create_payment(client, buyer):
    r = client.post("/api/payment/create", json={"wallet": str(buyer.pubkey()), "amount": 0.1, "tokenType": "SOL"})

    assert r.status_code == 200
    data = r.json()
    assert data["expectedRewardAmount"] == 750
    tx = Transaction.from_bytes(base64.b64decode(data["transaction"]))
    assert tx.message.account_keys[0] == buyer.pubkey()


def test_create_payment_validation_errors(client, buyer, rpc_client):
    r = client.post("/api/payment/create", json={"wallet": str(buyer.pubkey()), "amount": 0.001, "tokenType": "SOL"})
    assert r.status_code == 400
    assert r.json()["success"] is False
    assert r.json()["code"] == "invalid_amount"

    r = client.post("/api/payment/create", json={"wallet": str(buyer.pubkey()), "amount": 1, "tokenType": "BTC"})
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid token type"

    r = client.post("/api/payment/create", json={"wallet": str(buyer.pubkey())})
    assert r.status_code == 400
    assert r.json()["code"] == "validation_error"
    assert rpc_client.get_latest_blockhash.call_count == 0


def test_create_payment_ledger_unavailable(client, buyer, ledger):
    for endpoint_client in (ledger._client_for(e) for e in ledger.endpoints):
        endpoint_client.get_latest_blockhash.side_effect = ConnectionError("down")

    r = client.post("/api/payment/create", json={"wallet": str(buyer.pubkey()), "amount": 1, "tokenType": "SOL"})

    assert r.status_code == 503
    assert r.json()["code"] == "ledger_unavailable"


def test_verify_payment_idempotent(client, buyer, receiver, rpc_client):
    rpc_client.get_transaction.return_value = rpc_resp(
        payment_effects(str(buyer.pubkey()), receiver, lamports=100_000_000)
    )
    body = {"signature": _signature(buyer), "wallet": str(buyer.pubkey()), "amount": 0.1, "tokenType": "SOL"}

    first = client.post("/api/payment/verify", json=body)
    second = client.post("/api/payment/verify", json=body)

    assert first.status_code == 200
    assert first.json()["success"] is True
    assert first.json()["rewardAmount"] == 750
    assert first.json()["status"] == "disbursed"
    assert second.json() == first.json()
    assert rpc_client.send_raw_transaction.call_count == 1


def test_verify_rejected_payment(client, buyer, receiver, rpc_client):
    rpc_client.get_signature_statuses.return_value = rpc_resp(
        [SimpleNamespace(err={"InstructionError": [0, "Custom"]}, confirmation_status="confirmed")]
    )
    body = {"signature": _signature(buyer), "wallet": str(buyer.pubkey()), "amount": 0.1, "tokenType": "SOL"}

    r = client.post("/api/payment/verify", json=body)

    assert r.status_code == 400
    assert r.json()["success"] is False
    assert r.json()["status"] == "rejected"


def _transfer_body(recipient: str, amount, timestamp: int) -> dict:
    return {"recipientWallet": recipient, "amount": amount, "timestamp": timestamp}


def test_transfer_requires_valid_signature(client, buyer, rpc_client):
    body = _transfer_body(str(buyer.pubkey()), 10, now_ms())

    assert client.post("/api/transfer-cgt", json=body).status_code == 403
    r = client.post("/api/transfer-cgt", json=body, headers={SIGNATURE_HEADER: "00" * 32})
    assert r.status_code == 403
    assert r.json()["code"] == "unauthorized"
    assert rpc_client.send_raw_transaction.call_count == 0


def test_signed_transfer_succeeds(client, buyer, rpc_client):
    ts = now_ms()
    body = _transfer_body(str(buyer.pubkey()), 1.5, ts)
    headers = {SIGNATURE_HEADER: sign_request("test-secret", str(buyer.pubkey()), 1.5, ts)}

    r = client.post("/api/transfer-cgt", json=body, headers=headers)

    assert r.status_code == 200
    data = r.json()
    assert data["success"] is True
    assert data["amount"] == 1.5
    assert data["recipient"] == str(buyer.pubkey())
    assert rpc_client.send_raw_transaction.call_count == 1


def test_signed_transfer_pays_out_once(client, buyer, rpc_client):
    ts = now_ms()
    body = _transfer_body(str(buyer.pubkey()), 10, ts)
    headers = {SIGNATURE_HEADER: sign_request("test-secret", str(buyer.pubkey()), 10, ts)}

    first = client.post("/api/transfer-cgt", json=body, headers=headers)
    second = client.post("/api/transfer-cgt", json=body, headers=headers)

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json() == {"success": False, "error": "Request already processed", "code": "request_replayed"}
    assert rpc_client.send_raw_transaction.call_count == 1


def test_replayed_signed_transfer_rejected(client, buyer, rpc_client):
    ts = now_ms() - 301_000
    body = _transfer_body(str(buyer.pubkey()), 10, ts)
    headers = {SIGNATURE_HEADER: sign_request("test-secret", str(buyer.pubkey()), 10, ts)}

    r = client.post("/api/transfer-cgt", json=body, headers=headers)

    assert r.status_code == 400
    assert r.json()["error"] == "Request expired"
    assert rpc_client.send_raw_transaction.call_count == 0


def test_transfer_execution_failure_is_generic_500(client, buyer, rpc_client):
    rpc_client.get_token_supply.side_effect = ValueError("mint account missing")
    ts = now_ms()
    body = _transfer_body(str(buyer.pubkey()), 10, ts)
    headers = {SIGNATURE_HEADER: sign_request("test-secret", str(buyer.pubkey()), 10, ts)}

    r = client.post("/api/transfer-cgt", json=body, headers=headers)

    assert r.status_code == 500
    assert r.json() == {"success": False, "error": "Transfer execution failed", "code": "transfer_failed"}


def test_balance(client, buyer, rpc_client):
    rpc_client.get_token_account_balance.return_value = rpc_resp(SimpleNamespace(amount="750000000000", decimals=9))

    r = client.get(f"/api/balance/{buyer.pubkey()}")

    assert r.status_code == 200
    assert r.json()["balance"] == 750
    assert client.get("/api/balance/not-a-wallet").status_code == 400


def test_api_routes_share_a_per_client_rate_limit(settings, ledger, store):
    from fastapi.testclient import TestClient

    from backend_presale.api_server.server import create_app

    app = create_app(dataclasses.replace(settings, rate_limit="3/minute"), ledger=ledger, store=store)
    with TestClient(app) as limited:
        assert limited.get("/api/rates").status_code == 200
        assert limited.get("/api/presale/status").status_code == 200
        assert limited.get("/api/health").status_code == 200

        r = limited.get("/api/rates")

        assert r.status_code == 429
        assert r.json() == {
            "success": False,
            "error": "Too many requests, please try again later",
            "code": "rate_limited",
        }
        assert limited.get("/health").status_code == 200
