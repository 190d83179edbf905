"""
End to end over HTTP: an owner lists a drill, a renter books days 5-7,
extends to day 9 and returns it.
"""
import uuid
from datetime import timedelta


def _photos(kind):
    return [{"url": f"https://cdn.example.com/{kind}-{i}.jpg"} for i in range(2)]


def _create_equipment(client, headers, today, **overrides):
    body = {
        "name": "Cordless hammer drill",
        "price_per_day": "100.00",
        "service_fee_percent": "10",
        "available_ranges": [
            {"start_date": today.isoformat(), "end_date": (today + timedelta(days=90)).isoformat()}
        ],
    }
    body.update(overrides)
    resp = client.post("/equipment", json=body, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _day(today, n):
    return (today + timedelta(days=n)).isoformat()


def test_rental_round_trip(client, auth_headers, owner_id, renter_id, today):
    owner, renter = auth_headers(owner_id), auth_headers(renter_id)
    equipment = _create_equipment(client, owner, today)

    resp = client.post(
        "/rentals",
        json={"equipment_id": equipment["id"], "start_date": _day(today, 5), "end_date": _day(today, 7)},
        headers=renter,
    )
    assert resp.status_code == 201, resp.text
    rental = resp.json()
    rid = rental["id"]
    assert rental["status"] == "requested"
    assert rental["total_price"] == "330.00"

    resp = client.post(f"/rentals/{rid}/approve", json={"notes": "Side gate"}, headers=owner)
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "approved"

    resp = client.post(f"/rentals/{rid}/pickup", headers=renter)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["status"] == "active"
    assert body["pickup_checklist_summary"]["total"] == 5
    assert body["has_pickup_log"] is False

    resp = client.post(
        f"/rentals/{rid}/condition-logs",
        json={"type": "pickup", "condition": "excellent", "photos": _photos("pickup"), "acknowledged": True},
        headers=renter,
    )
    assert resp.status_code == 201, resp.text
    assert resp.json()["has_pickup_log"] is True

    resp = client.post(f"/rentals/{rid}/extension", json={"new_end_date": _day(today, 9)}, headers=renter)
    assert resp.status_code == 201, resp.text
    assert resp.json()["additional_cost"] == "220.00"
    assert client.get(f"/rentals/{rid}", headers=owner).json()["status"] == "extension_requested"

    resp = client.post(f"/rentals/{rid}/extension/resolve", json={"decision": "approved"}, headers=owner)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["status"] == "active"
    assert body["end_date"] == _day(today, 9)
    assert body["total_days"] == 5
    assert body["total_price"] == "550.00"

    resp = client.post(
        f"/rentals/{rid}/condition-logs",
        json={"type": "return", "condition": "good", "photos": _photos("return"), "acknowledged": True},
        headers=owner,
    )
    assert resp.status_code == 201, resp.text

    resp = client.post(f"/rentals/{rid}/return", json={"require_return_log": True}, headers=owner)
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "completed"

    history = client.get(f"/rentals/{rid}/history", headers=renter).json()
    actions = [(h["entity_type"], h["action"]) for h in history]
    assert ("rental", "CREATE") in actions
    assert ("extension", "APPROVE") in actions
    assert actions[-1] == ("rental", "RETURN")


def test_errors_are_structured(client, auth_headers, owner_id, renter_id, today):
    owner, renter = auth_headers(owner_id), auth_headers(renter_id)
    equipment = _create_equipment(client, owner, today, min_rental_days=3, blocked_dates=[_day(today, 20)])

    resp = client.post(
        "/rentals",
        json={"equipment_id": equipment["id"], "start_date": _day(today, 5), "end_date": _day(today, 6)},
        headers=renter,
    )
    assert resp.status_code == 422
    body = resp.json()
    assert body["error"] == "availability_error"
    assert body["details"]["reason"] == "below_minimum_duration"

    resp = client.post(
        "/rentals",
        json={"equipment_id": equipment["id"], "start_date": _day(today, 19), "end_date": _day(today, 21)},
        headers=renter,
    )
    assert resp.status_code == 422
    assert resp.json()["details"] == {"reason": "blocked_date", "date": _day(today, 20)}

    rid = client.post(
        "/rentals",
        json={"equipment_id": equipment["id"], "start_date": _day(today, 5), "end_date": _day(today, 7)},
        headers=renter,
    ).json()["id"]

    resp = client.post(f"/rentals/{rid}/pickup", headers=renter)
    assert resp.status_code == 409
    assert resp.json()["error"] == "illegal_transition"

    resp = client.post(f"/rentals/{rid}/approve", headers=renter)
    assert resp.status_code == 403

    resp = client.get(f"/rentals/{uuid.uuid4()}", headers=renter)
    assert resp.status_code == 404


def test_competing_approval_returns_conflict(client, auth_headers, owner_id, renter_id, today):
    owner = auth_headers(owner_id)
    equipment = _create_equipment(client, owner, today)
    first = client.post(
        "/rentals",
        json={"equipment_id": equipment["id"], "start_date": _day(today, 5), "end_date": _day(today, 8)},
        headers=auth_headers(renter_id),
    ).json()
    second = client.post(
        "/rentals",
        json={"equipment_id": equipment["id"], "start_date": _day(today, 7), "end_date": _day(today, 9)},
        headers=auth_headers(uuid.uuid4()),
    ).json()

    assert client.post(f"/rentals/{first['id']}/approve", headers=owner).status_code == 200
    resp = client.post(f"/rentals/{second['id']}/approve", headers=owner)
    assert resp.status_code == 409
    body = resp.json()
    assert body["error"] == "date_conflict"
    assert body["details"]["conflicting_rental_id"] == first["id"]


def test_availability_endpoints(client, auth_headers, owner_id, renter_id, today):
    owner = auth_headers(owner_id)
    equipment = _create_equipment(client, owner, today, buffer_days=2)
    eid = equipment["id"]

    resp = client.post(
        f"/equipment/{eid}/availability/check",
        json={"start_date": _day(today, 3), "end_date": _day(today, 4)},
        headers=owner,
    )
    assert resp.json()["available"] is True
    assert resp.json()["total_price"] == "220.00"

    resp = client.put(f"/equipment/{eid}/availability", json={"blocked_dates": [_day(today, 4)]}, headers=owner)
    assert resp.status_code == 200
    assert resp.json()["blocked_dates"] == [_day(today, 4)]

    resp = client.put(f"/equipment/{eid}/availability", json={"buffer_days": 1}, headers=auth_headers(renter_id))
    assert resp.status_code == 403

    resp = client.post(
        f"/equipment/{eid}/availability/check",
        json={"start_date": _day(today, 3), "end_date": _day(today, 4)},
        headers=owner,
    )
    body = resp.json()
    assert body["available"] is False
    assert body["reason"] == "blocked_date"
    assert body["unavailable_dates"] == [{"day": _day(today, 4), "reason": "blocked_date"}]

    resp = client.get(f"/equipment/{eid}/next-available", headers=owner)
    assert resp.json() == {"equipment_id": eid, "next_available_date": None, "available_now": True}


def test_flags_over_http(client, auth_headers, owner_id, renter_id, today):
    owner, renter = auth_headers(owner_id), auth_headers(renter_id)
    equipment = _create_equipment(client, owner, today)
    rid = client.post(
        "/rentals",
        json={"equipment_id": equipment["id"], "start_date": _day(today, 5), "end_date": _day(today, 7)},
        headers=renter,
    ).json()["id"]
    client.post(f"/rentals/{rid}/approve", headers=owner)

    categories = client.get("/flags/categories").json()
    assert len(categories) == 8

    resp = client.post(f"/rentals/{rid}/flags", json={"category": "safety_concern"}, headers=renter)
    assert resp.status_code == 201, resp.text
    flag = resp.json()
    assert flag["severity"] == "critical"
    assert client.get(f"/rentals/{rid}", headers=owner).json()["has_critical_open_flag"] is True

    resp = client.post(f"/flags/{flag['id']}/resolve", json={"note": "Guard reattached"}, headers=owner)
    assert resp.json()["status"] == "resolved"
    assert client.post(f"/flags/{flag['id']}/resolve", headers=renter).json()["resolution_note"] == "Guard reattached"
    assert client.get(f"/rentals/{rid}/flags?open_only=true", headers=renter).json() == []

    stranger = auth_headers(uuid.uuid4())
    assert client.get(f"/rentals/{rid}/flags", headers=stranger).status_code == 403


def test_requests_need_a_token(client):
    assert client.get("/rentals").status_code == 401
    assert client.get("/healthz").json()["status"] == "ok"
