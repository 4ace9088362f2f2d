from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient

from contacthub.core.errors import PermanentDeliveryError, TokenError, TransientDeliveryError

PHONE = "+15550101234"


async def invite(client: AsyncClient, **payload) -> dict:
    body = {"recipientName": "Sam", "recipientPhone": PHONE, **payload}
    response = await client.post("/api/v1/invitations", json=body)
    assert response.status_code == 201, response.text
    return response.json()["data"]


@pytest.mark.anyio("asyncio")
async def test_sms_invitation_is_sent_with_seven_day_expiry(client: AsyncClient, sms) -> None:
    invitation = await invite(client)

    assert invitation["status"] == "sent"
    created_at = datetime.fromisoformat(invitation["created_at"])
    assert datetime.fromisoformat(invitation["expires_at"]) == created_at + timedelta(days=7)
    assert invitation["delivery_results"]["sms"]["success"] is True
    assert invitation["delivery_results"]["sms"]["message_id"] == "SM0001"
    assert invitation["referral_code"].startswith("JAMI")
    assert invitation["contact_id"] is not None

    body = sms.sent[0]["body"]
    assert sms.sent[0]["to"] == PHONE
    assert body.startswith("Hi Sam! Jamie Rivera has been using FixRx")
    assert f"/invite/{invitation['invite_token']}" in body
    assert body.endswith(f"Use code: {invitation['referral_code']}")

    history = (await client.get(f"/api/v1/invitations/{invitation['id']}/history")).json()["data"]
    assert [entry["action"] for entry in history] == ["created", "sent"]


@pytest.mark.anyio("asyncio")
async def test_contractor_email_invitation(client: AsyncClient, email) -> None:
    invitation = await invite(
        client,
        recipientPhone=None,
        recipientEmail="Pat@Example.com",
        deliveryMethod="email",
        invitationType="contractor",
        serviceCategory="plumbing",
        expiresInDays=3,
    )

    assert invitation["status"] == "sent"
    assert datetime.fromisoformat(invitation["expires_at"]) == datetime(2025, 1, 9, 9, 0, 0)
    sent = email.sent[0]
    assert sent["to"] == "pat@example.com"
    assert sent["subject"] == "Jamie Rivera recommends you join FixRx as a contractor"
    assert "especially for plumbing services" in sent["text"]
    assert "Get the app: https://fixrx.app/download" in sent["text"]


@pytest.mark.anyio("asyncio")
async def test_unreachable_recipient_is_rejected(client: AsyncClient, sms) -> None:
    response = await client.post(
        "/api/v1/invitations",
        json={"recipientEmail": "pat@example.com", "deliveryMethod": "both"},
    )

    assert response.status_code == 422
    assert response.json()["error"]["details"]["issues"] == ["PHONE_REQUIRED"]
    assert sms.sent == []


@pytest.mark.anyio("asyncio")
async def test_second_active_invitation_for_recipient_is_a_duplicate(client: AsyncClient) -> None:
    first = await invite(client)

    response = await client.post("/api/v1/invitations", json={"recipientPhone": "+1 (555) 010-1234"})

    assert response.status_code == 409
    assert response.json()["error"]["details"]["existing_id"] == first["id"]


@pytest.mark.anyio("asyncio")
async def test_token_is_single_use(client: AsyncClient) -> None:
    invitation = await invite(client)
    token = invitation["invite_token"]

    accepted = await client.post(f"/api/v1/invitations/accept/{token}", json={"userId": "new-user"})
    assert accepted.status_code == 200
    assert accepted.json()["data"]["status"] == "accepted"

    again = await client.post(f"/api/v1/invitations/accept/{token}")
    assert again.status_code == 400
    assert again.json()["error"]["code"] == "TOKEN_ALREADY_USED"

    stored = (await client.get(f"/api/v1/invitations/{invitation['id']}")).json()["data"]
    assert stored["status"] == "accepted"
    history = (await client.get(f"/api/v1/invitations/{invitation['id']}/history")).json()["data"]
    assert [entry["action"] for entry in history] == ["created", "sent", "clicked", "accepted"]


@pytest.mark.anyio("asyncio")
async def test_concurrent_accepts_consume_the_token_once(client: AsyncClient, services) -> None:
    from contacthub.core.db import AsyncSessionLocal

    invitation = await invite(client)

    async def accept(user_id: str) -> str:
        async with AsyncSessionLocal() as session:
            try:
                await services.invitations.accept(session, invitation["invite_token"], {"userId": user_id})
            except TokenError as exc:
                return exc.code
        return "accepted"

    outcomes = await asyncio.gather(accept("user-a"), accept("user-b"))

    assert sorted(outcomes) == ["TOKEN_ALREADY_USED", "accepted"]
    history = (await client.get(f"/api/v1/invitations/{invitation['id']}/history")).json()["data"]
    assert [entry["action"] for entry in history] == ["created", "sent", "clicked", "accepted"]
    stored = (await client.get(f"/api/v1/invitations/{invitation['id']}")).json()["data"]
    assert stored["status"] == "accepted"


@pytest.mark.anyio("asyncio")
async def test_unknown_token_is_not_found(client: AsyncClient) -> None:
    response = await client.post("/api/v1/invitations/click/no-such-token")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "INVALID_TOKEN"


@pytest.mark.anyio("asyncio")
async def test_expired_token_is_gone(client: AsyncClient, clock) -> None:
    invitation = await invite(client)
    clock.advance(days=7)

    response = await client.post(f"/api/v1/invitations/accept/{invitation['invite_token']}")

    assert response.status_code == 410
    assert response.json()["error"]["code"] == "TOKEN_EXPIRED"
    stored = (await client.get(f"/api/v1/invitations/{invitation['id']}")).json()["data"]
    assert stored["status"] == "expired"


@pytest.mark.anyio("asyncio")
async def test_expire_sweep(client: AsyncClient, clock) -> None:
    await invite(client)
    await invite(client, recipientPhone="+15550109999")
    clock.advance(days=8)

    response = await client.post("/api/v1/invitations/expire")

    assert response.json()["data"] == {"expired": 2}
    listing = await client.get("/api/v1/invitations", params={"status": "expired"})
    assert listing.json()["meta"]["total"] == 2


@pytest.mark.anyio("asyncio")
async def test_transient_failure_is_retried_before_sending(client: AsyncClient, sms) -> None:
    sms.fail_next(PHONE, TransientDeliveryError("Twilio timed out", channel="sms", provider_code="TIMEOUT"))

    invitation = await invite(client)

    assert invitation["status"] == "sent"
    assert invitation["delivery_results"]["sms"]["attempts"] == 2
    assert [entry["ok"] for entry in sms.sent] == [False, True]


@pytest.mark.anyio("asyncio")
async def test_permanent_failure_then_resend(client: AsyncClient, sms, clock) -> None:
    sms.fail_next(PHONE, PermanentDeliveryError("Invalid 'To' number", channel="sms", provider_code="21211"))

    failed = await invite(client)
    assert failed["status"] == "failed"
    assert failed["failed_at"] is not None
    assert failed["error_messages"] == ["sms: Invalid 'To' number"]
    assert failed["delivery_results"]["sms"]["error_code"] == "21211"

    clock.advance(days=2)
    response = await client.post(f"/api/v1/invitations/{failed['id']}/resend", json={"message": "Try FixRx!"})

    assert response.status_code == 200
    resent = response.json()["data"]
    assert resent["status"] == "sent"
    assert resent["invite_token"] == failed["invite_token"]
    assert resent["resent_count"] == 1
    assert datetime.fromisoformat(resent["expires_at"]) == datetime(2025, 1, 15, 9, 0, 0)
    assert sms.sent[-1]["body"].startswith("Hi Sam! Try FixRx!")

    history = (await client.get(f"/api/v1/invitations/{failed['id']}/history")).json()["data"]
    assert [entry["action"] for entry in history] == ["created", "failed", "resent", "sent"]


@pytest.mark.anyio("asyncio")
async def test_cancelled_invitation_cannot_be_used(client: AsyncClient) -> None:
    invitation = await invite(client)

    cancelled = await client.delete(f"/api/v1/invitations/{invitation['id']}")
    assert cancelled.json()["data"]["status"] == "cancelled"

    accept = await client.post(f"/api/v1/invitations/accept/{invitation['invite_token']}")
    assert accept.status_code == 410
    assert accept.json()["error"]["code"] == "INVITATION_CANCELLED"

    again = await client.delete(f"/api/v1/invitations/{invitation['id']}")
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "INVALID_TRANSITION"

    resend = await client.post(f"/api/v1/invitations/{invitation['id']}/resend")
    assert resend.status_code == 409


@pytest.mark.anyio("asyncio")
async def test_bulk_invitations_are_sent_in_order_one_sms_per_second(client: AsyncClient, sms) -> None:
    items = [{"recipientName": f"Guest {number}", "recipientPhone": f"+1555020{number:04d}"} for number in range(100)]

    response = await client.post("/api/v1/invitations/bulk", json={"items": items, "batchName": "Launch"})

    assert response.status_code == 200
    result = response.json()["data"]
    assert result["counts"] == {"total": 100, "successful": 100, "failed": 0, "duplicates": 0}

    assert [entry["to"] for entry in sms.sent] == [item["recipientPhone"] for item in items]
    moments = [entry["at"] for entry in sms.sent]
    assert moments[-1] - moments[0] >= 99 - 1e-6
    assert all(later - earlier >= 1 - 1e-6 for earlier, later in zip(moments, moments[1:]))

    batch = (await client.get(f"/api/v1/invitations/batches/{result['batch_id']}")).json()["data"]
    assert batch["status"] == "completed"
    assert (batch["total"], batch["successful"]) == (100, 100)


@pytest.mark.anyio("asyncio")
async def test_bulk_invitations_partition_every_recipient(client: AsyncClient, sms) -> None:
    existing = await invite(client)
    contact = (
        await client.post("/api/v1/contacts", json={"firstName": "Kim", "phone": "+15550103333"})
    ).json()["data"]
    sms.fail_next("+15550104444", PermanentDeliveryError("Opted out", channel="sms", provider_code="21610"))

    response = await client.post(
        "/api/v1/invitations/bulk",
        json={
            "items": [
                {"recipientPhone": "+15550102222"},
                {"recipientPhone": PHONE},
                {"recipientPhone": "not-a-number"},
                {"recipientPhone": "+1 555 010 2222"},
                {"recipientPhone": "+15550104444"},
            ],
            "contactIds": [contact["id"], 999],
            "message": "Join me on FixRx",
        },
    )

    assert response.status_code == 200
    result = response.json()["data"]
    assert result["counts"] == {"total": 7, "successful": 2, "failed": 3, "duplicates": 2}
    assert [item["index"] for item in result["successful"]] == [0, 5]

    duplicates = {item["index"]: item for item in result["duplicates"]}
    assert duplicates[1]["reason"] == "ACTIVE_INVITATION_EXISTS"
    assert duplicates[1]["existing_id"] == existing["id"]
    assert duplicates[3]["reason"] == "DUPLICATE_IN_PAYLOAD"

    failed = {item["index"]: item for item in result["failed"]}
    assert failed[2]["details"]["issues"] == ["INVALID_PHONE", "PHONE_REQUIRED"]
    assert failed[4]["reason"] == "DELIVERY_FAILED"
    assert failed[6]["reason"] == "CONTACT_NOT_FOUND"

    linked = await client.get(f"/api/v1/invitations/{result['successful'][1]['value']['invitation_id']}")
    assert linked.json()["data"]["contact_id"] == contact["id"]
    assert linked.json()["data"]["message"] == "Join me on FixRx"


@pytest.mark.anyio("asyncio")
async def test_provider_webhooks_update_delivery(client: AsyncClient) -> None:
    sms_invite = await invite(client)
    email_invite = await invite(
        client, recipientPhone=None, recipientEmail="pat@example.com", deliveryMethod="email"
    )

    delivered = await client.post(
        "/api/v1/webhooks/sms/status",
        data={"MessageSid": "SM0001", "MessageStatus": "delivered"},
    )
    assert delivered.json()["data"] == {"matched": True, "invitation_id": sms_invite["id"], "status": "delivered"}

    bounced = await client.post(
        "/api/v1/webhooks/email/events",
        json=[
            {"sg_message_id": "EM0001.filter0001.1", "event": "bounce", "reason": "Mailbox full"},
            {"sg_message_id": "unknown.filter", "event": "delivered"},
        ],
    )
    assert bounced.json()["data"] == {"received": 2, "matched": 1}

    stored = (await client.get(f"/api/v1/invitations/{email_invite['id']}")).json()["data"]
    assert stored["delivery_results"]["email"]["success"] is False
    assert stored["delivery_results"]["email"]["error_code"] == "Mailbox full"
    assert stored["error_messages"] == ["email: bounce"]


@pytest.mark.anyio("asyncio")
async def test_referral_visit_marks_matching_invitation_clicked(client: AsyncClient) -> None:
    invitation = await invite(client)
    code = (await client.get("/api/v1/referrals/code")).json()["data"]["code"]
    assert code == invitation["referral_code"]

    response = await client.post(f"/api/v1/referrals/{code.lower()}/visit", json={"phone": "+1 555 010 1234"})

    assert response.json()["data"] == {
        "code": code,
        "owner_id": "owner-1",
        "invitation_id": invitation["id"],
        "status": "clicked",
    }
    missing = await client.post("/api/v1/referrals/NOPE0000/visit")
    assert missing.status_code == 404


@pytest.mark.anyio("asyncio")
async def test_analytics_funnel(client: AsyncClient, clock) -> None:
    empty = (await client.get("/api/v1/invitations/analytics")).json()["data"]
    assert empty["acceptance_rate"] == 0.0
    assert empty["funnel"]["total"] == 0

    accepted = await invite(client)
    await invite(client, recipientPhone="+15550109999")
    clock.advance(hours=3)
    await client.post(f"/api/v1/invitations/accept/{accepted['invite_token']}")

    data = (await client.get("/api/v1/invitations/analytics")).json()["data"]
    assert data["funnel"]["total"] == 2
    assert data["funnel"]["sent"] == 2
    assert data["funnel"]["clicked"] == 1
    assert data["funnel"]["accepted"] == 1
    assert data["acceptance_rate"] == 0.5
    assert data["average_hours_to_accept"] == 3.0
    assert data["total_clicks"] == 1
