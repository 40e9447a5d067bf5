"""Tests for the payments router and the end-to-end callback flow.

Covers:
- STK push initiation: phone normalisation, amount check, state checks.
- Successful callbacks: trade paid, invoice issued and settled, receipt
  stored, confirmation emailed, audit entry written.
- Replayed callbacks are acknowledged without side effects.
- Failed callbacks record the provider's reason.
- Malformed payloads and unknown checkout tokens.
"""

from __future__ import annotations

from typing import Any

import pytest
from conftest import make_trade

from plant_core.state.repository import AuditRepository, InvoiceRepository, ProfileRepository, TradeRepository


def stk_callback(
    token: str,
    *,
    result_code: int = 0,
    result_desc: str = "The service request is processed successfully.",
    amount: float = 1500.0,
    receipt: str = "QGH7XK2ABC",
    phone: int = 254712345678,
) -> dict[str, Any]:
    """A Daraja ``stkCallback`` envelope."""
    callback: dict[str, Any] = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": token,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20240315143022},
                {"Name": "PhoneNumber", "Value": phone},
            ]
        }
    return {"Body": {"stkCallback": callback}}


async def _pending_trade(seed, world, amount: str = "1500.00") -> str:
    async with seed() as session:
        member = await ProfileRepository(session).get(world.member_id)
        trade = await make_trade(session, member, amount)
    return trade.id


async def _initiated_trade(client, seed, world) -> tuple[str, str]:
    trade_id = await _pending_trade(seed, world)
    resp = await client.post(
        "/api/v1/payments/initiate",
        json={"trade_id": trade_id, "phone_number": "0712345678"},
        headers=world.member,
    )
    assert resp.status_code == 200
    return trade_id, resp.json()["checkout_token"]


# ---------------------------------------------------------------------------
# Initiation
# ---------------------------------------------------------------------------


class TestInitiatePayment:
    @pytest.mark.asyncio
    async def test_initiate_moves_trade_to_invoiced(self, client, world, seed, session_factory) -> None:
        trade_id = await _pending_trade(seed, world)

        resp = await client.post(
            "/api/v1/payments/initiate",
            json={"trade_id": trade_id, "phone_number": "+254 712 345 678", "amount": 1500},
            headers=world.member,
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["status"] == "invoiced"
        assert data["trade_id"] == trade_id
        assert data["checkout_token"].startswith("ws_CO_")

        async with session_factory() as session:
            trade = await TradeRepository(session).get(trade_id)
            audit = await AuditRepository(session).query(action="payment_initiated", record_id=trade_id)
        assert trade.status == "invoiced"
        assert trade.payment_reference == data["checkout_token"]
        assert trade.payment_phone == "254712345678"
        assert trade.payment_initiated_at is not None
        assert len(audit) == 1

    @pytest.mark.asyncio
    async def test_amount_mismatch_rejected(self, client, world, seed) -> None:
        trade_id = await _pending_trade(seed, world)
        resp = await client.post(
            "/api/v1/payments/initiate",
            json={"trade_id": trade_id, "phone_number": "0712345678", "amount": 999},
            headers=world.member,
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_phone_rejected(self, client, world, seed, session_factory) -> None:
        trade_id = await _pending_trade(seed, world)
        resp = await client.post(
            "/api/v1/payments/initiate",
            json={"trade_id": trade_id, "phone_number": "0612345678999"},
            headers=world.member,
        )
        assert resp.status_code == 400

        async with session_factory() as session:
            trade = await TradeRepository(session).get(trade_id)
        assert trade.status == "pending"

    @pytest.mark.asyncio
    async def test_second_initiation_is_conflict(self, client, world, seed) -> None:
        trade_id, _ = await _initiated_trade(client, seed, world)
        resp = await client.post(
            "/api/v1/payments/initiate",
            json={"trade_id": trade_id, "phone_number": "0712345678"},
            headers=world.member,
        )
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_other_members_trade_is_404(self, client, world, seed) -> None:
        trade_id = await _pending_trade(seed, world)
        resp = await client.post(
            "/api/v1/payments/initiate",
            json={"trade_id": trade_id, "phone_number": "0722000000"},
            headers=world.peer,
        )
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Callback
# ---------------------------------------------------------------------------


class TestPaymentCallback:
    @pytest.mark.asyncio
    async def test_successful_callback_settles_trade(self, client, world, seed, session_factory, outbox) -> None:
        trade_id, token = await _initiated_trade(client, seed, world)

        resp = await client.post("/api/v1/payments/callback", json=stk_callback(token))
        assert resp.status_code == 200
        assert resp.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

        async with session_factory() as session:
            trade = await TradeRepository(session).get(trade_id)
            invoice = await InvoiceRepository(session).get_by_trade(trade_id)
            audit = await AuditRepository(session).query(action="mpesa_callback_processed", record_id=trade_id)

        assert trade.status == "paid"
        assert trade.mpesa_receipt == "QGH7XK2ABC"
        assert trade.paid_at is not None
        assert invoice is not None
        assert invoice.paid_at is not None
        assert invoice.amount == trade.amount
        assert invoice.invoice_number.startswith("INV-")
        assert len(audit) == 1
        assert audit[0].actor_id is None

        [confirmation] = outbox.to(world.emails["member"])
        assert confirmation["subject"] == "PLANT Payment Confirmation - Thank You"
        assert "QGH7XK2ABC" in confirmation["html"]
        assert invoice.invoice_number in confirmation["html"]

    @pytest.mark.asyncio
    async def test_replayed_callback_is_idempotent(self, client, world, seed, session_factory, outbox) -> None:
        trade_id, token = await _initiated_trade(client, seed, world)

        first = await client.post("/api/v1/payments/callback", json=stk_callback(token))
        second = await client.post("/api/v1/payments/callback", json=stk_callback(token, receipt="OTHER"))
        assert first.status_code == 200
        assert second.status_code == 200

        async with session_factory() as session:
            trade = await TradeRepository(session).get(trade_id)
            audit = await AuditRepository(session).query(action="mpesa_callback_processed", record_id=trade_id)
            paid_invoices, all_invoices = await InvoiceRepository(session).count_paid()
        assert trade.mpesa_receipt == "QGH7XK2ABC"
        assert len(audit) == 1
        assert (paid_invoices, all_invoices) == (1, 1)
        assert len(outbox.to(world.emails["member"])) == 1

    @pytest.mark.asyncio
    async def test_failed_callback_records_reason(self, client, world, seed, session_factory) -> None:
        trade_id, token = await _initiated_trade(client, seed, world)

        resp = await client.post(
            "/api/v1/payments/callback",
            json=stk_callback(token, result_code=1032, result_desc="Request cancelled by user"),
        )
        assert resp.status_code == 200

        async with session_factory() as session:
            trade = await TradeRepository(session).get(trade_id)
            invoice = await InvoiceRepository(session).get_by_trade(trade_id)
        assert trade.status == "failed"
        assert trade.failure_reason == "Request cancelled by user"
        assert invoice is None

    @pytest.mark.asyncio
    async def test_success_after_failure_still_settles(self, client, world, seed, session_factory) -> None:
        trade_id, token = await _initiated_trade(client, seed, world)

        await client.post("/api/v1/payments/callback", json=stk_callback(token, result_code=1, result_desc="Low"))
        resp = await client.post("/api/v1/payments/callback", json=stk_callback(token))
        assert resp.status_code == 200

        async with session_factory() as session:
            trade = await TradeRepository(session).get(trade_id)
        assert trade.status == "paid"
        assert trade.failure_reason is None

    @pytest.mark.asyncio
    async def test_callback_is_public(self, client, world, seed) -> None:
        _, token = await _initiated_trade(client, seed, world)
        resp = await client.post("/api/v1/payments/callback", json=stk_callback(token))
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_unknown_token_is_404(self, client) -> None:
        resp = await client.post("/api/v1/payments/callback", json=stk_callback("ws_CO_unknown"))
        assert resp.status_code == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"Body": {}},
            {"Body": {"stkCallback": {"ResultCode": 0}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1", "ResultCode": "zero"}}},
            {
                "Body": {
                    "stkCallback": {"CheckoutRequestID": "ws_CO_1", "ResultCode": 0, "CallbackMetadata": ["Amount", 1500]}
                }
            },
            {
                "Body": {
                    "stkCallback": {
                        "CheckoutRequestID": "ws_CO_1",
                        "ResultCode": 0,
                        "CallbackMetadata": {"Item": [{"Name": "Amount", "Value": "fifteen hundred"}]},
                    }
                }
            },
        ],
    )
    async def test_malformed_payload_is_400(self, client, payload) -> None:
        resp = await client.post("/api/v1/payments/callback", json=payload)
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_callback_for_cancelled_trade_is_ignored(self, client, world, seed, session_factory) -> None:
        trade_id = await _pending_trade(seed, world)
        async with seed() as session:
            # A reference without the invoiced transition, then cancelled.
            trade = await TradeRepository(session).get(trade_id)
            trade.payment_reference = "ws_CO_cancelled"
            await session.flush()
            await TradeRepository(session).cancel(trade_id)

        resp = await client.post("/api/v1/payments/callback", json=stk_callback("ws_CO_cancelled"))
        assert resp.status_code == 200

        async with session_factory() as session:
            trade = await TradeRepository(session).get(trade_id)
            invoice = await InvoiceRepository(session).get_by_trade(trade_id)
        assert trade.status == "cancelled"
        assert invoice is None
