"""
End-to-end flows over HTTP, from invoice submission to settlement.

Each flow plays the collaborators in turn: Invoicing submits, approvers
act, the scheduler submits batches, and the processor reports back.
Outbox reactions run as background tasks of the requests that raise them.
"""

import pytest
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient

pytestmark = pytest.mark.integration


def _approve_invoice(client: TestClient, invoice_id: str, amount_cents: int, approvers: list[str]) -> dict:
    approval = client.post(
        "/v1/approvals",
        json={"invoice_id": invoice_id, "payor_id": "payor_acme", "amount_cents": amount_cents},
    ).json()
    for approver in approvers:
        response = client.post(
            f"/v1/approvals/{approval['approval_id']}/actions",
            json={"approver_id": approver, "decision": "approve"},
        )
        assert response.status_code == 200
    return response.json()


def _payments(client: TestClient, invoice_id: str) -> list[dict]:
    return client.get("/v1/payments", params={"invoice_id": invoice_id}).json()


def test_small_invoice_to_settlement(client: TestClient, acme: str, processor: AsyncMock, invoicing: AsyncMock):
    """
    Scenario A: single approval by Alice, one payment, submitted and settled.
    """
    approval = _approve_invoice(client, "inv_small", 5000, ["alice"])
    assert approval["status"] == "approved"

    [payment] = _payments(client, "inv_small")
    assert payment["status"] == "originated"
    assert payment["amount_cents"] == 5000
    assert payment["batch_id"] is not None

    closed = client.post(f"/v1/batches/{payment['batch_id']}/close").json()
    assert closed["payment_count"] == 1
    assert closed["total_cents"] == 5000

    batch = client.post(f"/v1/batches/{payment['batch_id']}/submit").json()
    assert batch["status"] == "submitted"
    assert batch["external_reference"] == "ach_ref_0001"
    processor.submit_batch.assert_awaited_once()

    for status in ("processing", "settled"):
        response = client.post("/v1/gateway/status", json={"payment_id": payment["payment_id"], "status": status})
        assert response.json()["outcome"] == "applied"

    settled = client.get(f"/v1/payments/{payment['payment_id']}").json()
    assert settled["status"] == "settled"
    assert [entry["to_status"] for entry in settled["history"]] == ["originated", "submitted", "processing", "settled"]
    assert "ApprovalChainCompleted" in [call.args[0] for call in invoicing.publish.await_args_list]


def test_dual_approval_invoice(client: TestClient, acme: str):
    """
    Scenario B: Alice approves slot 0, cannot take slot 1, Bob completes.
    """
    approval = client.post(
        "/v1/approvals",
        json={"invoice_id": "inv_large", "payor_id": "payor_acme", "amount_cents": 25000},
    ).json()
    path = f"/v1/approvals/{approval['approval_id']}/actions"

    assert client.post(path, json={"approver_id": "alice", "decision": "approve"}).json()["state"] == "awaiting_slot[1]"
    assert _payments(client, "inv_large") == []

    refused = client.post(path, json={"approver_id": "alice", "decision": "approve"})
    assert refused.status_code == 409
    assert refused.json()["error"] == "DuplicateApproverError"

    done = client.post(path, json={"approver_id": "bob", "decision": "approve"}).json()
    assert done["status"] == "approved"
    assert [(a["approver_id"], a["slot_index"]) for a in done["actions"]] == [("alice", 0), ("bob", 1)]
    assert len(_payments(client, "inv_large")) == 1


def test_returned_payment_resubmitted(client: TestClient, acme: str, notifications: AsyncMock):
    """
    Scenario C: a return, then resubmission against a corrected account.
    """
    _approve_invoice(client, "inv_nsf", 5000, ["alice"])
    [original] = _payments(client, "inv_nsf")
    client.post(f"/v1/batches/{original['batch_id']}/submit")

    response = client.post(
        "/v1/gateway/returns",
        json={"payment_id": original["payment_id"], "reason_code": "insufficient_funds"},
    )
    assert response.status_code == 202
    assert response.json()["outcome"] == "applied"
    notifications.payment_returned.assert_awaited_once_with(original["payment_id"], "inv_nsf", "insufficient_funds")
    returned = client.get(f"/v1/payments/{original['payment_id']}").json()

    response = client.post(
        f"/v1/payments/{original['payment_id']}/resubmit",
        json={"bank_account_ref": "acct_acme_corrected", "requested_by": "ops_jane"},
    )
    assert response.status_code == 201
    replacement = response.json()
    assert replacement["supersedes_payment_id"] == original["payment_id"]
    assert replacement["attempt"] == 2

    original_after, replacement_after = _payments(client, "inv_nsf")
    assert original_after["status"] == "returned"
    assert original_after["return_reason_code"] == "insufficient_funds"
    assert original_after["superseded_by_payment_id"] == replacement["payment_id"]
    assert {**original_after, "superseded_by_payment_id": None} == returned
    assert replacement_after["batch_id"] not in (None, original["batch_id"])

    again = client.post(
        f"/v1/payments/{original['payment_id']}/resubmit",
        json={"bank_account_ref": "acct_other", "requested_by": "ops_jane"},
    )
    assert again.status_code == 409


def test_unknown_payment_notifications(client: TestClient, acme: str):
    """
    Scenario D: notifications for an id the engine never issued change nothing.
    """
    _approve_invoice(client, "inv_1", 5000, ["alice"])
    [before] = _payments(client, "inv_1")

    for path, body in (
        ("/v1/gateway/status", {"payment_id": "P-999", "status": "settled"}),
        ("/v1/gateway/returns", {"payment_id": "P-999", "reason_code": "account_closed"}),
    ):
        response = client.post(path, json=body)
        assert response.status_code == 202
        assert response.json()["outcome"] == "discarded_unknown"

    assert _payments(client, "inv_1") == [before]
    metrics = client.get("/metrics").text
    assert "gateway_unknown_payment_notifications_total" in metrics


def test_scheduler_submits_due_batches(client: TestClient, acme: str, processor: AsyncMock):
    _approve_invoice(client, "inv_1", 5000, ["alice"])
    _approve_invoice(client, "inv_2", 25000, ["bob", "alice"])
    [p1], [p2] = _payments(client, "inv_1"), _payments(client, "inv_2")
    assert p1["batch_id"] == p2["batch_id"]

    response = client.post("/v1/batches/submit-due", json={"as_of": p1["effective_date"]})

    assert response.json()["results"] == {p1["batch_id"]: "submitted"}
    payload = processor.submit_batch.await_args.args[0]
    assert [line.payment_id for line in payload.lines] == [p1["payment_id"], p2["payment_id"]]
    assert client.get(f"/v1/payments/{p2['payment_id']}").json()["status"] == "submitted"
