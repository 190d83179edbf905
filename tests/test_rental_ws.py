import asyncio
import uuid

import pytest
from fastapi import WebSocketDisconnect

from gearshift.auth.security import create_access_token
from gearshift.services.rental_hub import hub


class _DeadSocket:
    async def send_json(self, data):
        raise WebSocketDisconnect(code=1006)


class _RecordingSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, data):
        self.sent.append(data)


@pytest.fixture
def watched(make_equipment, make_rental):
    rental = make_rental(make_equipment(), 5, 7)
    key = str(rental.id)
    yield rental
    hub._rental_connections.pop(key, None)


def test_publish_drops_dead_sockets_and_keeps_live_ones(watched):
    key = str(watched.id)
    dead, live = _DeadSocket(), _RecordingSocket()
    asyncio.run(hub.subscribe(key, dead))
    asyncio.run(hub.subscribe(key, live))

    asyncio.run(hub.publish(key, "rental_approved", {"status": "approved"}))

    assert live.sent == [{"event": "rental_approved", "rental_id": key, "data": {"status": "approved"}}]
    assert hub.subscriber_count(key) == 1


def test_dead_subscriber_does_not_fail_a_committed_approval(client, auth_headers, owner_id, renter_id, watched):
    key = str(watched.id)
    asyncio.run(hub.subscribe(key, _DeadSocket()))

    resp = client.post(f"/rentals/{key}/approve", headers=auth_headers(owner_id))
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "approved"
    assert hub.subscriber_count(key) == 0
    assert client.get(f"/rentals/{key}", headers=auth_headers(renter_id)).json()["status"] == "approved"


@pytest.mark.parametrize("token", [None, "not-a-jwt"])
def test_subscription_needs_a_valid_token(client, watched, token):
    url = f"/ws/rentals/{watched.id}" + (f"?token={token}" if token else "")
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(url):
            pass
    assert exc.value.code == 4401


def test_only_parties_may_subscribe(client, watched):
    stranger = create_access_token(uuid.uuid4())
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(f"/ws/rentals/{watched.id}?token={stranger}"):
            pass
    assert exc.value.code == 4403


def test_subscriber_receives_transition(client, auth_headers, owner_id, renter_id, watched):
    key = str(watched.id)
    token = create_access_token(renter_id)
    with client, client.websocket_connect(f"/ws/rentals/{key}?token={token}") as ws:
        # pong means the socket is registered with the hub
        ws.send_text("ping")
        assert ws.receive_text() == "pong"

        resp = client.post(f"/rentals/{key}/approve", json={"notes": "Gate code 4411"}, headers=auth_headers(owner_id))
        assert resp.status_code == 200, resp.text
        message = ws.receive_json()

    assert message["event"] == "rental_approved"
    assert message["rental_id"] == key
    assert message["data"]["status"] == "approved"
    assert message["data"]["owner_notes"] == "Gate code 4411"
