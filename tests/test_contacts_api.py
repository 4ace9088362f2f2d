from __future__ import annotations

import pytest
from httpx import AsyncClient

ALICE = {
    "firstName": "Alice",
    "lastName": "Johnson",
    "phone": "(555) 010-1234",
    "email": "Alice@Example.com",
    "company": "Acme",
    "tags": ["vip", "client", "vip"],
}

CSV_WITH_BAD_ROW = (
    "First Name,Last Name,Phone,Email\n"
    "Alice,Johnson,555-010-1234,\n"
    "Bob,Smith,not-a-phone,\n"
    "Carol,Diaz,,carol@example.com\n"
)

VCARD = (
    "BEGIN:VCARD\r\n"
    "VERSION:3.0\r\n"
    "FN:Dana Lee\r\n"
    "N:Lee;Dana;;;\r\n"
    "TEL;TYPE=CELL:+1 555 010 7777\r\n"
    "EMAIL:dana@example.com\r\n"
    "ORG:Lee Plumbing\r\n"
    "TITLE:Owner\r\n"
    "END:VCARD\r\n"
)


async def create_contact(client: AsyncClient, payload: dict) -> dict:
    response = await client.post("/api/v1/contacts", json=payload)
    assert response.status_code == 201, response.text
    return response.json()["data"]


@pytest.mark.anyio("asyncio")
async def test_create_normalizes_and_retrieves_contact(client: AsyncClient) -> None:
    created = await create_contact(client, ALICE)

    assert created["phone"] == "5550101234"
    assert created["email"] == "alice@example.com"
    assert created["tags"] == ["client", "vip"]
    assert created["source"] == "manual"

    response = await client.get(f"/api/v1/contacts/{created['id']}")
    assert response.status_code == 200
    assert response.json()["data"]["company"] == "Acme"


@pytest.mark.anyio("asyncio")
async def test_requests_without_owner_are_rejected(client: AsyncClient) -> None:
    response = await client.get("/api/v1/contacts", headers={"X-User-Id": ""})

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "MISSING_USER"


@pytest.mark.anyio("asyncio")
async def test_contacts_are_scoped_to_their_owner(client: AsyncClient) -> None:
    created = await create_contact(client, ALICE)

    response = await client.get(f"/api/v1/contacts/{created['id']}", headers={"X-User-Id": "owner-2"})

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "RESOURCE_NOT_FOUND"


@pytest.mark.anyio("asyncio")
async def test_duplicate_and_conflicting_contacts_are_rejected(client: AsyncClient) -> None:
    created = await create_contact(client, ALICE)

    duplicate = await client.post("/api/v1/contacts", json={**ALICE, "phone": "555.010.1234"})
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "DUPLICATE"
    assert duplicate.json()["error"]["details"]["existing_id"] == created["id"]

    conflict = await client.post("/api/v1/contacts", json={**ALICE, "company": "Globex"})
    assert conflict.status_code == 409
    error = conflict.json()["error"]
    assert error["code"] == "CONFLICT"
    assert error["details"]["diff"] == {"company": {"existing": "Acme", "incoming": "Globex"}}

    listing = await client.get("/api/v1/contacts")
    assert listing.json()["meta"]["total"] == 1


@pytest.mark.anyio("asyncio")
async def test_contact_without_valid_identifier_is_rejected(client: AsyncClient) -> None:
    response = await client.post("/api/v1/contacts", json={"firstName": "Nobody", "phone": "12"})

    assert response.status_code == 422
    assert response.json()["error"]["details"]["issues"] == ["INVALID_PHONE"]


@pytest.mark.anyio("asyncio")
async def test_update_search_stats_and_delete(client: AsyncClient) -> None:
    alice = await create_contact(client, ALICE)
    await create_contact(client, {"firstName": "Bob", "email": "bob@example.com"})

    updated = await client.put(f"/api/v1/contacts/{alice['id']}", json={"jobTitle": "Director", "isFavorite": True})
    assert updated.status_code == 200
    assert updated.json()["data"]["job_title"] == "Director"
    assert updated.json()["data"]["is_favorite"] is True

    invalid = await client.put(f"/api/v1/contacts/{alice['id']}", json={"email": "broken"})
    assert invalid.status_code == 422

    found = await client.get("/api/v1/contacts/search/555-010-1234")
    assert [item["id"] for item in found.json()["data"]] == [alice["id"]]

    filtered = await client.get("/api/v1/contacts", params={"search": "bob"})
    assert [item["first_name"] for item in filtered.json()["data"]] == ["Bob"]

    stats = (await client.get("/api/v1/contacts/stats")).json()["data"]
    assert stats["total"] == 2
    assert stats["favorites"] == 1
    assert stats["with_phone"] == 1
    assert stats["by_source"]["manual"] == 2

    deleted = await client.delete(f"/api/v1/contacts/{alice['id']}")
    assert deleted.status_code == 200
    assert (await client.get(f"/api/v1/contacts/{alice['id']}")).status_code == 404


@pytest.mark.anyio("asyncio")
async def test_list_contacts_paginates_with_and_without_tag(client: AsyncClient) -> None:
    for number, name in enumerate(["Cara", "Abe", "Bea", "Dov"]):
        tags = ["crew"] if name != "Bea" else []
        await create_contact(client, {"firstName": name, "phone": f"+1555011{number:04d}", "tags": tags})
    other_owner = {"X-User-Id": "owner-2"}
    await client.post("/api/v1/contacts", headers=other_owner, json={"firstName": "Eve", "email": "eve@example.com"})

    second = (await client.get("/api/v1/contacts", params={"page": 2, "size": 2})).json()
    assert [item["first_name"] for item in second["data"]] == ["Cara", "Dov"]
    assert second["meta"] == {"total": 4, "page": 2, "size": 2}

    tagged = (await client.get("/api/v1/contacts", params={"tag": "crew", "page": 1, "size": 2})).json()
    assert [item["first_name"] for item in tagged["data"]] == ["Abe", "Cara"]
    assert tagged["meta"]["total"] == 3


@pytest.mark.anyio("asyncio")
async def test_bulk_create_partitions_every_record(client: AsyncClient) -> None:
    existing = await create_contact(client, ALICE)
    records = [
        {"First Name": "Bob", "Email": "bob@example.com"},
        {"firstName": "Alice", "phone": "555-010-1234"},
        {"firstName": "Nobody", "phone": "abc"},
        {"firstName": "Bobby", "email": "BOB@example.com"},
        {"firstName": "Carol", "phone": "+1 555 010 9999"},
    ]

    response = await client.post("/api/v1/contacts/bulk", json={"contacts": records, "batchName": "Phone book"})

    assert response.status_code == 200
    result = response.json()["data"]
    assert result["counts"] == {"total": 5, "successful": 2, "failed": 1, "duplicates": 2}
    indexes = sorted(
        item["index"] for key in ("successful", "failed", "duplicates") for item in result[key]
    )
    assert indexes == list(range(5))

    assert [item["index"] for item in result["successful"]] == [0, 4]
    assert result["failed"] == [
        {"index": 2, "reason": "NO_VALID_IDENTIFIER", "item": records[2], "details": None}
    ]
    by_index = {item["index"]: item for item in result["duplicates"]}
    assert by_index[1]["existing_id"] == existing["id"]
    assert by_index[1]["reason"] == "DUPLICATE"
    bob_id = result["successful"][0]["value"]["id"]
    assert by_index[3]["reason"] == "CONFLICT"
    assert by_index[3]["existing_id"] == bob_id

    batch = (await client.get(f"/api/v1/contacts/import-batches/{result['batch_id']}")).json()["data"]
    assert batch["status"] == "completed"
    assert batch["processed"] == 5
    assert batch["name"] == "Phone book"


@pytest.mark.anyio("asyncio")
async def test_csv_import_reports_each_row(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/contacts/import",
        files={"file": ("contacts.csv", CSV_WITH_BAD_ROW.encode(), "text/csv")},
    )

    assert response.status_code == 200
    result = response.json()["data"]
    assert result["counts"] == {"total": 3, "successful": 2, "failed": 1, "duplicates": 0}
    assert result["failed"][0]["index"] == 1
    assert result["failed"][0]["reason"] == "NO_VALID_IDENTIFIER"

    batch = (await client.get(f"/api/v1/contacts/import-batches/{result['batch_id']}")).json()["data"]
    assert batch["status"] == "completed"
    assert batch["source"] == "csv"
    assert batch["name"] == "contacts.csv"
    assert (batch["total"], batch["successful"], batch["failed"], batch["duplicates"]) == (3, 2, 1, 0)
    assert batch["error_log"] == [{"index": 1, "reason": "NO_VALID_IDENTIFIER"}]

    listing = await client.get("/api/v1/contacts", params={"source": "imported"})
    assert sorted(item["first_name"] for item in listing.json()["data"]) == ["Alice", "Carol"]


@pytest.mark.anyio("asyncio")
async def test_vcard_import(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/contacts/import",
        files={"file": ("dana.vcf", VCARD.encode(), "text/vcard")},
        data={"batch_name": "Phone export"},
    )

    assert response.status_code == 200
    result = response.json()["data"]
    assert result["counts"]["successful"] == 1
    created = result["successful"][0]["value"]
    assert created["first_name"] == "Dana"
    assert created["last_name"] == "Lee"
    assert created["phone"] == "+15550107777"
    assert created["company"] == "Lee Plumbing"


@pytest.mark.anyio("asyncio")
async def test_import_without_identifier_column_fails_the_batch(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/contacts/import",
        files={"file": ("names.csv", b"First Name,Last Name\nAlice,Johnson\n", "text/csv")},
    )

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "MISSING_HEADER"
    batch = (await client.get(f"/api/v1/contacts/import-batches/{error['details']['batch_id']}")).json()["data"]
    assert batch["status"] == "failed"


@pytest.mark.anyio("asyncio")
async def test_oversized_bulk_is_rejected_before_any_insert(client: AsyncClient) -> None:
    records = [{"email": f"person{number}@example.com"} for number in range(1001)]

    response = await client.post("/api/v1/contacts/bulk", json={"contacts": records})

    assert response.status_code == 413
    error = response.json()["error"]
    assert error["code"] == "BATCH_TOO_LARGE"
    assert error["details"]["limit"] == 1000
    listing = await client.get("/api/v1/contacts")
    assert listing.json()["meta"]["total"] == 0
    batch = (await client.get(f"/api/v1/contacts/import-batches/{error['details']['batch_id']}")).json()["data"]
    assert batch["status"] == "failed"


@pytest.mark.anyio("asyncio")
async def test_bulk_requests_are_rate_limited_per_owner(client: AsyncClient) -> None:
    for _ in range(10):
        response = await client.post("/api/v1/contacts/bulk", json={"contacts": []})
        assert response.status_code == 200

    rejected = await client.post("/api/v1/contacts/bulk", json={"contacts": []})
    assert rejected.status_code == 429
    assert rejected.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert rejected.headers["Retry-After"] == "3600"

    other_owner = await client.post("/api/v1/contacts/bulk", json={"contacts": []}, headers={"X-User-Id": "owner-2"})
    assert other_owner.status_code == 200


@pytest.mark.anyio("asyncio")
async def test_export_contacts_csv(client: AsyncClient) -> None:
    await create_contact(client, {**ALICE, "notes": "Met at the expo"})

    response = await client.get("/api/v1/contacts/export")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    lines = response.text.strip().splitlines()
    assert lines[0] == "First Name,Last Name,Phone,Email,Company,Job Title,Tags,Notes,Created At"
    assert lines[1].startswith("Alice,Johnson,5550101234,alice@example.com,Acme,,client;vip,Met at the expo,2025-01-06T09:00:00")
