import pytest
from fastapi.testclient import TestClient
from jose import jwt

from linkpay.main import app as fastapi_app
from linkpay.errors import GatewayError, GatewayFailure, StoreError
from linkpay.models import LedgerEntry, PaymentLink
from linkpay.withdrawal_gateway import get_withdrawal_gateway

CREATOR = "So11111111111111111111111111111111111111112"
RECIPIENT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


@pytest.fixture
def client(monkeypatch, session_factory):
    # Mock SessionLocal in the routes to use the test database
    monkeypatch.setattr("linkpay.routes.SessionLocal", session_factory)

    with TestClient(fastapi_app) as c:
        yield c

    # Cleanup dependencies
    fastapi_app.dependency_overrides.clear()


def test_full_link_lifecycle_integration(client, session_factory, make_gateway):
    """
    Test the full lifecycle:
    1. Create link (API -> DB)
    2. Record deposit (API -> DB + ledger)
    3. Claim fails at the relayer, lock is released (API -> Gateway Mocked -> DB)
    4. Claim retried and settled (API -> Gateway Mocked -> DB + ledger)
    """

    # --- 1. CREATE LINK ---
    response = client.post(
        "/links",
        json={"grossAmount": 1_000_000_000, "assetType": "SOL", "creatorAddress": CREATOR},
    )
    assert response.status_code == 201
    link_id = response.json()["linkId"]

    db = session_factory()
    link = db.get(PaymentLink, link_id)
    assert link is not None
    assert link.deposit_ref is None
    assert link.claimed is False
    db.close()

    # --- 2. RECORD DEPOSIT ---
    response = client.post(
        f"/links/{link_id}/deposit",
        json={"depositRef": "dep_sig_1", "grossAmount": 1_000_000_000, "depositorAddress": CREATOR},
    )
    assert response.status_code == 200
    assert response.json()["state"] == "deposited"

    # --- 3. CLAIM FAILS ---
    failing = make_gateway(error=GatewayError("Relayer pool is empty", GatewayFailure.INSUFFICIENT_POOL_BALANCE))
    fastapi_app.dependency_overrides[get_withdrawal_gateway] = lambda: failing

    response = client.post(f"/links/{link_id}/claim", json={"recipientAddress": RECIPIENT})
    assert response.status_code == 502
    assert response.json()["retryable"] is True
    assert len(failing.calls) == 1

    db = session_factory()
    link = db.get(PaymentLink, link_id)
    assert link.claimed is False
    assert link.claimed_by is None
    assert link.withdraw_ref is None
    db.close()

    # --- 4. CLAIM RETRIED ---
    working = make_gateway()
    fastapi_app.dependency_overrides[get_withdrawal_gateway] = lambda: working

    response = client.post(f"/links/{link_id}/claim", json={"recipientAddress": RECIPIENT})
    assert response.status_code == 200
    body = response.json()
    assert body["fee"] == 9_500_000
    assert body["netAmount"] == 990_500_000
    assert working.calls == [(1_000_000_000, RECIPIENT)]

    # Verify final database state
    db = session_factory()
    link = db.get(PaymentLink, link_id)
    assert link.claimed is True
    assert link.claimed_by == RECIPIENT
    assert link.withdraw_ref == body["withdrawRef"]
    entries = (
        db.query(LedgerEntry)
        .filter_by(link_id=link_id)
        .order_by(LedgerEntry.created_at)
        .all()
    )
    assert [(e.kind, e.status) for e in entries] == [
        ("deposit", "confirmed"),
        ("withdraw", "failed"),
        ("withdraw", "confirmed"),
    ]
    db.close()

    # A second claim on the settled link is refused without touching the relayer
    response = client.post(f"/links/{link_id}/claim", json={"recipientAddress": RECIPIENT})
    assert response.status_code == 409
    assert len(working.calls) == 1


def test_reconciliation_flow_integration(client, session_factory, make_gateway, mocker):
    """
    Test the manual reconciliation path:
    1. Payout succeeds but the ledger write fails, link is frozen
    2. Frozen link refuses further claims
    3. Operator confirms the payout from the reconciliation queue
    """

    gateway = make_gateway()
    fastapi_app.dependency_overrides[get_withdrawal_gateway] = lambda: gateway
    link_id = client.post("/links", json={"grossAmount": 50_000_000}).json()["linkId"]
    client.post(f"/links/{link_id}/deposit", json={"depositRef": "dep_sig_2", "grossAmount": 50_000_000})

    # --- 1. LEDGER WRITE FAILS AFTER PAYOUT ---
    mocker.patch(
        "linkpay.store.SqlLinkStore.finalize_withdrawal",
        side_effect=StoreError("database unavailable"),
    )
    response = client.post(f"/links/{link_id}/claim", json={"recipientAddress": RECIPIENT})
    assert response.status_code == 500
    assert response.json()["kind"] == "reconciliation_required"
    mocker.stopall()

    # --- 2. FROZEN LINK REFUSES CLAIMS ---
    response = client.post(f"/links/{link_id}/claim", json={"recipientAddress": RECIPIENT})
    assert response.status_code == 500
    assert len(gateway.calls) == 1

    # --- 3. OPERATOR RESOLVES ---
    token = jwt.encode({"sub": "ops"}, "test-secret", algorithm="HS256")
    headers = {"Authorization": f"Bearer {token}"}

    queue = client.get("/admin/reconciliation", headers=headers).json()
    assert len(queue) == 1
    assert "wd_tx_1" in queue[0]["reconciliationReason"]

    response = client.post(
        f"/admin/links/{link_id}/reconcile",
        json={"withdrawRef": "wd_tx_1"},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["state"] == "claimed"

    db = session_factory()
    statuses = [
        (e.kind, e.status)
        for e in db.query(LedgerEntry).filter_by(link_id=link_id).order_by(LedgerEntry.created_at)
    ]
    assert statuses[-2:] == [("reconciliation", "pending"), ("reconciliation", "confirmed")]
    db.close()
