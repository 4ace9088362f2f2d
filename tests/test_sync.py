from __future__ import annotations

import pytest
from httpx import AsyncClient

ALICE = {"firstName": "Alice", "phone": "5550101234", "company": "Acme", "jobTitle": "Manager"}


async def create_contact(client: AsyncClient, payload: dict) -> dict:
    response = await client.post("/api/v1/contacts", json=payload)
    assert response.status_code == 201, response.text
    return response.json()["data"]


async def sync(client: AsyncClient, contacts: list[dict], **options) -> dict:
    response = await client.post(
        "/api/v1/contacts/sync", json={"deviceId": "iphone-1", "contacts": contacts, **options}
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


@pytest.mark.anyio("asyncio")
async def test_newer_device_field_wins_and_identical_fields_stay(client: AsyncClient, clock) -> None:
    alice = await create_contact(client, ALICE)
    clock.advance(hours=1)

    data = await sync(
        client,
        [{**ALICE, "company": "Globex", "lastModified": "2025-01-06T09:30:00Z"}],
    )

    outcome = data["result"]["successful"][0]["value"]
    assert outcome == {
        "id": alice["id"],
        "action": "updated",
        "device_fields": ["company"],
        "server_fields": [],
    }
    assert data["session"]["updated_contacts"] == 1
    assert data["session"]["conflicts"] == 1
    assert data["session"]["status"] == "completed"

    stored = (await client.get(f"/api/v1/contacts/{alice['id']}")).json()["data"]
    assert stored["company"] == "Globex"
    assert stored["job_title"] == "Manager"
    assert stored["synced_at"] == "2025-01-06T10:00:00"


@pytest.mark.anyio("asyncio")
async def test_tie_keeps_server_value(client: AsyncClient, clock) -> None:
    alice = await create_contact(client, ALICE)
    clock.advance(hours=1)

    data = await sync(client, [{**ALICE, "company": "Globex", "lastModified": "2025-01-06T09:00:00"}])

    outcome = data["result"]["successful"][0]["value"]
    assert outcome["action"] == "kept_server"
    assert outcome["server_fields"] == ["company"]
    stored = (await client.get(f"/api/v1/contacts/{alice['id']}")).json()["data"]
    assert stored["company"] == "Acme"


@pytest.mark.anyio("asyncio")
async def test_per_field_timestamps_override_record_timestamp(client: AsyncClient, clock) -> None:
    alice = await create_contact(client, ALICE)
    clock.advance(hours=1)

    data = await sync(
        client,
        [
            {
                **ALICE,
                "company": "Globex",
                "jobTitle": "Director",
                "lastModified": "2025-01-06T08:00:00Z",
                "fieldTimestamps": {"jobTitle": "2025-01-06T09:45:00Z"},
            }
        ],
    )

    outcome = data["result"]["successful"][0]["value"]
    assert outcome["device_fields"] == ["job_title"]
    assert outcome["server_fields"] == ["company"]
    stored = (await client.get(f"/api/v1/contacts/{alice['id']}")).json()["data"]
    assert (stored["company"], stored["job_title"]) == ("Acme", "Director")


@pytest.mark.anyio("asyncio")
async def test_incremental_sync_creates_new_and_skips_unchanged(client: AsyncClient, clock) -> None:
    await create_contact(client, ALICE)
    clock.advance(minutes=10)

    data = await sync(
        client,
        [
            ALICE,
            {"firstName": "Bob", "email": "bob@example.com"},
            {"firstName": "Bob", "email": "BOB@example.com"},
            {"firstName": "Nobody"},
        ],
    )

    result = data["result"]
    assert result["counts"] == {"total": 4, "successful": 1, "failed": 1, "duplicates": 2}
    reasons = {item["index"]: item["reason"] for item in result["duplicates"]}
    assert reasons == {0: "UNCHANGED", 2: "DUPLICATE_IN_PAYLOAD"}
    bob_id = result["successful"][0]["value"]["id"]
    assert result["duplicates"][1]["existing_id"] == bob_id
    assert data["session"]["new_contacts"] == 1

    listing = await client.get("/api/v1/contacts", params={"source": "synced"})
    assert [item["first_name"] for item in listing.json()["data"]] == ["Bob"]


@pytest.mark.anyio("asyncio")
async def test_full_sync_reports_and_then_deletes_missing_contacts(client: AsyncClient, clock) -> None:
    await create_contact(client, ALICE)
    bob = await create_contact(client, {"firstName": "Bob", "email": "bob@example.com"})
    clock.advance(hours=2)

    preview = await sync(client, [ALICE], syncType="full")
    assert preview["session"]["deletion_candidates"] == [bob["id"]]
    assert preview["session"]["deleted_contacts"] == 0
    assert (await client.get(f"/api/v1/contacts/{bob['id']}")).status_code == 200

    confirmed = await sync(client, [ALICE], syncType="full", confirmDeletions=True)
    assert confirmed["session"]["deleted_contacts"] == 1
    assert (await client.get(f"/api/v1/contacts/{bob['id']}")).status_code == 404

    sessions = (await client.get("/api/v1/contacts/sync-sessions")).json()["data"]
    assert len(sessions) == 2
    detail = await client.get(f"/api/v1/contacts/sync-sessions/{confirmed['session']['id']}")
    assert detail.json()["data"]["sync_type"] == "full"
