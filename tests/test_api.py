"""
HTTP tests against the FastAPI app.

Coverage:
- Slot creation, listing and deletion over HTTP
- Booking admission, queue and lifecycle endpoints
- Error body shape for core errors
- Pending request resolution
- Role and scope checks on bearer tokens
"""
import uuid

from jose import jwt

from conftest import PROVIDER
from slotbook.core.config import settings

API = "/api/v1"
P = str(PROVIDER)


async def _create_slots(client, slots, date_from="2025-06-01", date_to=None):
    body = {"provider_id": P, "date_from": date_from, "slots": slots}
    if date_to:
        body["date_to"] = date_to
    return await client.post(f"{API}/slots", json=body)


async def test_health(client):
    r = await client.get(f"{API}/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


async def test_request_id_is_echoed(client):
    r = await client.get(f"{API}/health", headers={"x-request-id": "abc123"})
    assert r.headers["x-request-id"] == "abc123"
    r = await client.get(f"{API}/health")
    assert r.headers["x-request-id"]


async def test_slot_creation_and_listing(client):
    r = await _create_slots(client, [
        {"label": "Morning", "start": "09:00", "end": "12:00", "capacity": 3},
        {"label": "Evening", "start": "17:00", "end": "20:00", "preset": "small"},
    ], date_to="2025-06-02")
    assert r.status_code == 201
    body = r.json()
    assert len(body["created"]) == 4 and body["skipped"] == []

    r = await _create_slots(client, [{"label": "Morning", "start": "09:00", "end": "12:00", "capacity": 3}])
    assert r.status_code == 201
    assert r.json()["created"] == []
    assert r.json()["skipped"] == [{"date": "2025-06-01", "label": "Morning", "kind": "in_clinic"}]

    r = await client.get(f"{API}/slots", params={"provider_id": P, "date": "2025-06-01"})
    assert r.status_code == 200
    listed = r.json()
    assert [s["label"] for s in listed] == ["Morning", "Evening"]
    assert listed[1]["max_capacity"] == 5
    assert listed[0]["available_capacity"] == 3


async def test_overlap_error_body(client):
    await _create_slots(client, [{"label": "Morning", "start": "09:00", "end": "10:00", "capacity": 3}])
    r = await _create_slots(client, [{"label": "Early", "start": "09:30", "end": "10:30", "capacity": 2}])

    assert r.status_code == 422
    body = r.json()
    assert body["error"] == "OverlapConflict"
    assert "Morning" in body["message"]
    assert body["context"]["conflicts_with"][0]["label"] == "Morning"


async def test_booking_flow(client):
    r = await _create_slots(client, [{"label": "Morning", "start": "09:00", "end": "10:20", "capacity": 2}])
    slot_id = r.json()["created"][0]["id"]

    ids = []
    for _ in range(2):
        r = await client.post(f"{API}/bookings", json={"slot_id": slot_id, "patient_id": str(uuid.uuid4())})
        assert r.status_code == 201
        ids.append(r.json()["id"])

    r = await client.post(f"{API}/bookings", json={"slot_id": slot_id, "patient_id": str(uuid.uuid4())})
    assert r.status_code == 409
    body = r.json()
    assert body["error"] == "SlotSaturated"
    assert body["context"]["slot_id"] == slot_id
    assert body["context"]["available"] == 0

    r = await client.get(f"{API}/slots/{slot_id}/queue")
    assert [(b["id"], b["admission_order"], b["scheduled_at"]) for b in r.json()] == [
        (ids[0], 0, "2025-06-01T09:00:00"),
        (ids[1], 1, "2025-06-01T09:40:00"),
    ]

    r = await client.post(f"{API}/bookings/{ids[0]}/cancel", json={"reason": "sick"})
    assert r.status_code == 200 and r.json()["status"] == "cancelled"
    r = await client.get(f"{API}/bookings/{ids[1]}")
    assert r.json()["admission_order"] == 0

    r = await client.post(f"{API}/bookings/{ids[1]}/status", json={"status": "completed"})
    assert r.status_code == 409
    assert r.json()["error"] == "InvalidTransition"
    r = await client.post(f"{API}/bookings/{ids[1]}/status", json={"status": "checked_in"})
    assert r.json()["status"] == "checked_in"

    r = await client.get(f"{API}/queue", params={"provider_id": P, "service_day": "2025-06-01"})
    assert r.status_code == 200
    q = r.json()
    assert [b["id"] for b in q["queue"]] == [ids[1]]
    assert q["queue"][0]["queue_position"] == 1
    assert q["stats"]["cancelled"] == 1

    r = await client.post(f"{API}/reconciliation/slots/{slot_id}/sync")
    assert r.json() == {"slot_id": slot_id, "current_bookings": 1}


async def test_hard_delete_over_http(client):
    r = await _create_slots(client, [{"label": "Morning", "start": "09:00", "end": "12:00", "capacity": 3}])
    slot_id = r.json()["created"][0]["id"]

    r = await client.delete(f"{API}/slots/{slot_id}", params={"hard": "true"})
    assert r.status_code == 204
    r = await client.post(f"{API}/bookings", json={"slot_id": slot_id, "patient_id": str(uuid.uuid4())})
    assert r.status_code == 404
    assert r.json()["error"] == "NotFound"


async def test_request_resolution_over_http(client):
    r = await _create_slots(client, [{"label": "Morning", "start": "09:00", "end": "12:00", "capacity": 3}])
    slot_id = r.json()["created"][0]["id"]

    r = await client.post(f"{API}/requests", json={
        "patient_id": str(uuid.uuid4()), "provider_id": P, "requested_at": "2025-06-01T09:20:00",
    })
    assert r.status_code == 201
    request_id = r.json()["id"]
    assert r.json()["assigned_time"] == "2025-06-01T09:00:00"

    r = await client.get(f"{API}/requests", params={"status": "pending"})
    assert [x["id"] for x in r.json()] == [request_id]

    r = await client.post(f"{API}/requests/{request_id}/resolve", json={"decision": "approve"})
    assert r.status_code == 200
    body = r.json()
    assert body["request"]["status"] == "approved"
    assert body["booking"]["slot_id"] == slot_id
    assert body["booking"]["scheduled_at"] == "2025-06-01T09:00:00"

    r = await client.post(f"{API}/requests/{request_id}/resolve", json={"decision": "reject"})
    assert r.status_code == 409
    assert r.json()["error"] == "AlreadyResolved"


async def test_invalid_payload_is_rejected(client):
    r = await client.post(f"{API}/bookings", json={"patient_id": str(uuid.uuid4())})
    assert r.status_code == 422


# =============================================================================
# Scopes
# =============================================================================

def _token(**claims):
    claims.setdefault("sub", str(uuid.uuid4()))
    return {"Authorization": f"Bearer {jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALG)}"}


async def test_receptionist_can_book_but_not_edit_slots(client):
    r = await _create_slots(client, [{"label": "Morning", "start": "09:00", "end": "12:00", "capacity": 3}])
    slot_id = r.json()["created"][0]["id"]
    headers = _token(roles=["receptionist"])

    r = await client.post(f"{API}/bookings", json={"slot_id": slot_id, "patient_id": str(uuid.uuid4())}, headers=headers)
    assert r.status_code == 201

    r = await client.patch(f"{API}/slots/{slot_id}", json={"capacity": 5}, headers=headers)
    assert r.status_code == 403
    assert "slots:write" in r.json()["detail"]


async def test_explicit_token_scopes(client):
    r = await client.post(f"{API}/reconciliation/providers/{P}/sync", headers=_token(scopes=["slots:read"]))
    assert r.status_code == 403
    r = await client.post(f"{API}/reconciliation/providers/{P}/sync", headers=_token(scopes=["reconcile:write"]))
    assert r.status_code == 200
    assert r.json() == {"provider_id": P, "slots": {}}


async def test_bad_token_is_rejected(client):
    r = await client.get(f"{API}/requests", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


async def test_patient_cannot_resolve_own_request(client):
    await _create_slots(client, [{"label": "Morning", "start": "09:00", "end": "12:00", "capacity": 3}])
    patient = _token(roles=["patient"])

    r = await client.post(f"{API}/requests", json={
        "patient_id": str(uuid.uuid4()), "provider_id": P, "requested_at": "2025-06-01T09:20:00",
    }, headers=patient)
    assert r.status_code == 201
    request_id = r.json()["id"]

    r = await client.post(f"{API}/requests/{request_id}/resolve", json={"decision": "approve"}, headers=patient)
    assert r.status_code == 403
    assert "requests:resolve" in r.json()["detail"]

    r = await client.post(f"{API}/requests/{request_id}/resolve", json={"decision": "approve"}, headers=_token(roles=["receptionist"]))
    assert r.status_code == 200
    assert r.json()["request"]["status"] == "approved"
