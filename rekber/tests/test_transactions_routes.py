"""HTTP surface: transactions, disputes, chat archive and health."""

from decimal import Decimal

import pytest

from rekber.services import chat_service
from rekber.database import unit_of_work
from rekber.schemas.transaction import FeeBreakdownResponse

TX_URL = "/api/v1/transactions"


async def test_create_returns_fee_breakdown_and_payment_handle(client, auth_header, escrow_parties):
    p = escrow_parties
    resp = await client.post(
        TX_URL,
        json={"product_id": p["product"].id, "quantity": 2, "payment_method": "duitku_qris"},
        headers=auth_header(p["buyer"]),
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "UNPAID"
    assert body["invoice"].startswith("TRX-")
    assert body["buyer_tier"] == "bronze"
    assert body["fees"] == {
        "subtotal": "200000",
        "platform_fee": "4000",
        "tier_discount": "0",
        "gateway_fee": "3000",
        "total": "207000",
        "net_to_merchant": "200000",
    }
    assert body["payment"]["amount"] == "207000"
    assert body["payment"]["reference"] == body["invoice"]


async def test_fractional_amounts_are_returned_as_exact_text(
    client, auth_header, escrow_parties, make_product
):
    p = escrow_parties
    product = await make_product(p["merchant"].id, price="12345678.91", stock=5)
    resp = await client.post(
        TX_URL,
        json={"product_id": product.id, "quantity": 3, "payment_method": "duitku_va"},
        headers=auth_header(p["buyer"]),
    )
    assert resp.status_code == 201
    fees = resp.json()["fees"]
    assert fees["subtotal"] == "37037036.73"
    assert fees["platform_fee"] == "740740.7346"
    assert fees["gateway_fee"] == "555555.55095"
    assert fees["total"] == "38333333.01555"
    assert resp.json()["payment"]["amount"] == fees["total"]


def test_money_fields_keep_every_digit_in_json():
    amount = Decimal("987654321012.345678")
    body = FeeBreakdownResponse(
        subtotal=amount,
        platform_fee=Decimal("0.000001"),
        tier_discount=Decimal("0"),
        gateway_fee=Decimal("1E+3"),
        total=amount,
        net_to_merchant=amount,
    ).model_dump(mode="json")
    assert body["subtotal"] == "987654321012.345678"
    assert body["platform_fee"] == "0.000001"
    assert body["tier_discount"] == "0"
    assert body["gateway_fee"] == "1000"


async def test_create_requires_buyer_role(client, auth_header, escrow_parties):
    p = escrow_parties
    resp = await client.post(
        TX_URL,
        json={"product_id": p["product"].id, "quantity": 1, "payment_method": "duitku_qris"},
        headers=auth_header(p["owner"]),
    )
    assert resp.status_code == 403


async def test_create_rejects_zero_quantity(client, auth_header, escrow_parties):
    p = escrow_parties
    resp = await client.post(
        TX_URL,
        json={"product_id": p["product"].id, "quantity": 0, "payment_method": "duitku_qris"},
        headers=auth_header(p["buyer"]),
    )
    assert resp.status_code == 422


async def test_create_out_of_stock_conflicts(client, auth_header, escrow_parties):
    p = escrow_parties
    resp = await client.post(
        TX_URL,
        json={"product_id": p["product"].id, "quantity": 11, "payment_method": "duitku_qris"},
        headers=auth_header(p["buyer"]),
    )
    assert resp.status_code == 409


async def test_routes_require_a_token(client):
    assert (await client.get(TX_URL)).status_code == 401
    resp = await client.get(TX_URL, headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


async def test_complete_route(client, auth_header, escrow_parties, make_transaction):
    p = escrow_parties
    tx = await make_transaction(p["buyer"], p["merchant"], p["product"], status="PAID")

    resp = await client.post(
        f"{TX_URL}/complete",
        json={"transaction_id": tx.invoice_number},
        headers=auth_header(p["buyer"]),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["transaction"]["status"] == "COMPLETED"
    assert body["merchant_earnings"] == "100000"

    again = await client.post(
        f"{TX_URL}/complete",
        json={"transaction_id": tx.invoice_number},
        headers=auth_header(p["buyer"]),
    )
    assert again.status_code == 409


async def test_detail_is_visible_to_parties_only(client, auth_header, escrow_parties, make_transaction, make_user):
    p = escrow_parties
    tx = await make_transaction(p["buyer"], p["merchant"], p["product"], status="PAID")
    stranger = await make_user("buyer")
    url = f"{TX_URL}/{tx.invoice_number}"

    for user in (p["buyer"], p["owner"], p["arbiter"]):
        resp = await client.get(url, headers=auth_header(user))
        assert resp.status_code == 200
        assert resp.json()["invoice"] == tx.invoice_number

    assert (await client.get(url, headers=auth_header(stranger))).status_code == 403
    missing = await client.get(f"{TX_URL}/TRX-0-00000000", headers=auth_header(p["buyer"]))
    assert missing.status_code == 404


async def test_list_scopes_by_role(client, auth_header, escrow_parties, make_transaction, make_user):
    p = escrow_parties
    await make_transaction(p["buyer"], p["merchant"], p["product"], status="PAID")
    await make_transaction(p["buyer"], p["merchant"], p["product"], status="COMPLETED")
    other = await make_user("buyer")

    mine = (await client.get(TX_URL, headers=auth_header(p["buyer"]))).json()
    assert mine["total"] == 2

    sales = (await client.get(f"{TX_URL}?status=PAID", headers=auth_header(p["owner"]))).json()
    assert sales["total"] == 1
    assert sales["transactions"][0]["status"] == "PAID"

    assert (await client.get(TX_URL, headers=auth_header(other))).json()["total"] == 0
    bad = await client.get(f"{TX_URL}?status=LOST", headers=auth_header(p["buyer"]))
    assert bad.status_code == 422


async def test_dispute_and_admin_resolution_routes(client, auth_header, escrow_parties, make_transaction):
    p = escrow_parties
    tx = await make_transaction(p["buyer"], p["merchant"], p["product"], status="PAID")
    invoice = tx.invoice_number

    opened = await client.post(
        f"{TX_URL}/{invoice}/dispute",
        json={"reason": "Item arrived broken", "evidence_image_url": "https://img.example/b.jpg"},
        headers=auth_header(p["buyer"]),
    )
    assert opened.status_code == 200
    assert opened.json()["room_type"] == "arbitrase"
    assert opened.json()["transaction"]["status"] == "DISPUTE"

    resolve_url = f"/api/v1/admin/disputes/{invoice}/resolve"
    denied = await client.post(resolve_url, json={"decision": "release"}, headers=auth_header(p["owner"]))
    assert denied.status_code == 403

    invalid = await client.post(resolve_url, json={"decision": "split"}, headers=auth_header(p["arbiter"]))
    assert invalid.status_code == 422

    resolved = await client.post(
        resolve_url, json={"decision": "refund", "note": "No tracking number"}, headers=auth_header(p["arbiter"])
    )
    assert resolved.status_code == 200
    body = resolved.json()
    assert body["decision"] == "refund"
    assert body["transaction"]["status"] == "CANCELLED"
    assert body["transaction"]["resolution_note"] == "No tracking number"


async def test_merchant_cannot_open_a_dispute(client, auth_header, escrow_parties, make_transaction):
    p = escrow_parties
    tx = await make_transaction(p["buyer"], p["merchant"], p["product"], status="PAID")
    resp = await client.post(
        f"{TX_URL}/{tx.invoice_number}/dispute", json={"reason": "x"}, headers=auth_header(p["owner"])
    )
    assert resp.status_code == 403


async def test_chat_archive_route(db, client, auth_header, escrow_parties, make_transaction, make_user):
    p = escrow_parties
    tx = await make_transaction(p["buyer"], p["merchant"], p["product"], status="PAID")
    invoice, buyer_id = tx.invoice_number, p["buyer"].id
    async with unit_of_work(db):
        for i in range(3):
            await chat_service.append_message(db, invoice, "transaction", sender_id=buyer_id, message=f"m{i}")
    stranger = await make_user("buyer")

    resp = await client.get(
        f"/api/v1/chat/{invoice}/messages?page_size=2", headers=auth_header(p["owner"])
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 3
    assert [m["message"] for m in body["messages"]] == ["m0", "m1"]
    assert body["messages"][0]["sender_role"] == "buyer"

    forbidden = await client.get(f"/api/v1/chat/{invoice}/messages", headers=auth_header(stranger))
    assert forbidden.status_code == 403

    no_dispute = await client.get(
        f"/api/v1/chat/{invoice}/messages?room_type=arbitrase", headers=auth_header(p["arbiter"])
    )
    assert no_dispute.status_code == 409


async def test_health(client, escrow_parties, make_transaction):
    p = escrow_parties
    await make_transaction(p["buyer"], p["merchant"], p["product"], status="DISPUTE")

    resp = await client.get("/api/v1/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["users_count"] == 3
    assert body["transactions_count"] == 1
    assert body["open_disputes"] == 1
    assert body["chat_connections"] == 0

    ready = await client.get("/api/v1/health/ready")
    assert ready.json() == {"status": "ready", "database": "connected"}


@pytest.mark.parametrize("header", ["Basic abc", "Bearer"])
async def test_malformed_authorization_header(client, header):
    resp = await client.get(TX_URL, headers={"Authorization": header})
    assert resp.status_code == 401
