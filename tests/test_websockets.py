"""Websocket tests: Starlette TestClient against the queue, room and
conversation sockets, services overridden to use a per-test SQLite store."""
import time
import uuid

import pytest
from starlette.websockets import WebSocketDisconnect

from protv.models.match import MATCH_ACTIVE, MATCH_ENDED


def create_profile(client, school="Harvard University"):
    resp = client.post(
        "/api/v1/profiles/",
        json={
            "email": f"{uuid.uuid4().hex[:10]}@protv.test",
            "full_name": "Socket Student",
            "school": school,
            "major": "History",
            "class_year": 2027,
        },
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def pair(client):
    a = create_profile(client, school="Harvard University")
    b = create_profile(client, school="Brown University")
    assert client.post("/api/v1/queue/enter", json={"user_id": a["id"]}).json()["match"] is None
    match = client.post("/api/v1/queue/enter", json={"user_id": b["id"]}).json()["match"]
    assert match is not None
    return match, a, b


def receive_until(ws, frame_type, limit=50):
    """Read frames until one of *frame_type*; returns it with the types skipped."""
    skipped = []
    for _ in range(limit):
        frame = ws.receive_json()
        if frame["type"] == frame_type:
            return frame, skipped
        skipped.append(frame["type"])
    raise AssertionError(f"no {frame_type!r} frame after {skipped}")


def close_code(ws, limit=50):
    """Drain frames until the server closes the socket."""
    with pytest.raises(WebSocketDisconnect) as closed:
        for _ in range(limit):
            ws.receive_json()
    return closed.value.code


def wait_for(predicate, attempts=100, delay=0.02):
    for _ in range(attempts):
        if predicate():
            return True
        time.sleep(delay)
    return predicate()


def match_status(live, room_id):
    return live.call(live.services.matches.get_by_room, room_id).status


class TestQueueSocket:
    def test_opening_reports_count_and_state(self, live):
        a = create_profile(live.client)
        with live.client.websocket_connect(f"/api/v1/queue/ws/{a['id']}") as ws:
            assert ws.receive_json() == {"type": "queue_count", "count": 0}
            assert ws.receive_json() == {"type": "state", "in_queue": False}

    def test_dropping_the_socket_keeps_the_ticket(self, live):
        a = create_profile(live.client)
        with live.client.websocket_connect(f"/api/v1/queue/ws/{a['id']}") as ws:
            receive_until(ws, "state")
            ws.send_json({"action": "enter"})
            receive_until(ws, "queued")

        assert wait_for(lambda: live.services.notifier.subscriber_count("queue") == 0)
        status = live.client.get(f"/api/v1/queue/{a['id']}").json()
        assert status["in_queue"] is True

    def test_failing_command_answers_with_error_and_stays_open(self, live):
        a = create_profile(live.client)
        with live.client.websocket_connect(f"/api/v1/queue/ws/{a['id']}") as ws:
            receive_until(ws, "state")

            ws.send_json({"action": "dance"})
            error, _ = receive_until(ws, "error")
            assert error["code"] == "UNKNOWN_ACTION"

            ws.send_json({"action": "enter", "filters": {"schools": ["Nowhere College"]}})
            error, _ = receive_until(ws, "error")
            assert error["code"] == "VALIDATION_ERROR"

            ws.send_json({"action": "enter"})
            queued, _ = receive_until(ws, "queued")
            assert queued["user_id"] == a["id"]

    def test_waiting_user_hears_about_the_pairing(self, live):
        a = create_profile(live.client, school="Harvard University")
        b = create_profile(live.client, school="Yale University")
        with live.client.websocket_connect(f"/api/v1/queue/ws/{a['id']}") as ws:
            receive_until(ws, "state")
            ws.send_json({"action": "enter"})
            receive_until(ws, "queued")

            match = live.client.post("/api/v1/queue/enter", json={"user_id": b["id"]}).json()["match"]
            matched, _ = receive_until(ws, "matched")
            assert matched["room_id"] == match["room_id"]

    def test_unreadable_frame_closes_the_socket(self, live):
        a = create_profile(live.client)
        with live.client.websocket_connect(f"/api/v1/queue/ws/{a['id']}") as ws:
            receive_until(ws, "state")
            ws.send_json({"action": "enter"})
            receive_until(ws, "queued")
            ws.send_text("not json")
            assert close_code(ws) == 1003

        assert live.client.get(f"/api/v1/queue/{a['id']}").json()["in_queue"] is True


class TestRoomSocket:
    def test_entering_sends_room_and_transport(self, live):
        match, a, b = pair(live.client)
        url = f"/api/v1/rooms/ws/{match['room_id']}/{a['id']}"
        with live.client.websocket_connect(url) as ws:
            ready = ws.receive_json()
            assert ready["type"] == "room_ready"
            assert ready["counterpart"]["id"] == b["id"]
            assert ready["connection_status"] is None

            transport, _ = receive_until(ws, "transport_ready")
            assert transport["url"].endswith(match["room_id"])

    def test_unknown_room_sends_the_client_back(self, live):
        a = create_profile(live.client)
        with live.client.websocket_connect(f"/api/v1/rooms/ws/room_gone/{a['id']}") as ws:
            assert ws.receive_json() == {
                "type": "exit",
                "destination": "queue",
                "notice": "MATCH_NOT_FOUND",
            }
            assert close_code(ws) == 1000

    def test_dropping_the_socket_ends_the_match(self, live):
        match, a, _ = pair(live.client)
        room = match["room_id"]
        with live.client.websocket_connect(f"/api/v1/rooms/ws/{room}/{a['id']}") as ws:
            receive_until(ws, "room_ready")
            assert match_status(live, room) == MATCH_ACTIVE

        assert wait_for(lambda: match_status(live, room) == MATCH_ENDED)

    def test_failing_command_answers_with_error_and_stays_open(self, live):
        match, a, _ = pair(live.client)
        room = match["room_id"]
        with live.client.websocket_connect(f"/api/v1/rooms/ws/{room}/{a['id']}") as ws:
            receive_until(ws, "room_ready")

            ws.send_json({"action": "report", "reason": "   "})
            error, _ = receive_until(ws, "error")
            assert error["code"] == "EMPTY_REASON"

            ws.send_json({"action": "chat", "message": 42})
            error, _ = receive_until(ws, "error")
            assert error["code"] == "EMPTY_MESSAGE"

            ws.send_json({"action": "extend"})
            extended, _ = receive_until(ws, "extended")
            assert extended["remaining"] > 60

            assert match_status(live, room) == MATCH_ACTIVE

    def test_partner_gets_match_ended_then_exit(self, live):
        match, a, b = pair(live.client)
        room = match["room_id"]
        with live.client.websocket_connect(f"/api/v1/rooms/ws/{room}/{a['id']}") as ws_a:
            receive_until(ws_a, "room_ready")
            with live.client.websocket_connect(f"/api/v1/rooms/ws/{room}/{b['id']}") as ws_b:
                receive_until(ws_b, "room_ready")

                ws_b.send_json({"action": "skip"})
                exit_b, _ = receive_until(ws_b, "exit")
                assert exit_b["destination"] == "queue"
                assert close_code(ws_b) == 1000

            exit_a, skipped = receive_until(ws_a, "exit")
            assert exit_a == {"type": "exit", "destination": "queue", "notice": "match_ended"}
            assert [t for t in skipped if t not in ("tick", "time_up", "transport_ready")][-1:] == [
                "match_ended"
            ]
            # The server hangs up on its own once the session is over.
            assert close_code(ws_a) == 1000

        assert match_status(live, room) == MATCH_ENDED

    def test_unreadable_frame_counts_as_leaving(self, live):
        match, a, _ = pair(live.client)
        room = match["room_id"]
        with live.client.websocket_connect(f"/api/v1/rooms/ws/{room}/{a['id']}") as ws:
            receive_until(ws, "room_ready")
            ws.send_text("{not json")
            assert close_code(ws) == 1003

        assert wait_for(lambda: match_status(live, room) == MATCH_ENDED)

    def test_non_object_frame_counts_as_leaving(self, live):
        match, a, _ = pair(live.client)
        room = match["room_id"]
        with live.client.websocket_connect(f"/api/v1/rooms/ws/{room}/{a['id']}") as ws:
            receive_until(ws, "room_ready")
            ws.send_json(["skip"])
            assert close_code(ws) == 1003

        assert wait_for(lambda: match_status(live, room) == MATCH_ENDED)


class TestConversationSocket:
    def _connected_pair(self, client):
        match, a, b = pair(client)
        room = match["room_id"]
        client.post(f"/api/v1/rooms/{room}/connect", json={"user_id": a["id"]})
        client.post(f"/api/v1/rooms/{room}/skip", json={"user_id": a["id"]})
        return match, a, b

    def test_new_messages_are_pushed_live(self, live):
        match, a, b = self._connected_pair(live.client)
        with live.client.websocket_connect(f"/api/v1/connections/ws/{b['id']}/{a['id']}") as ws:
            ready = ws.receive_json()
            assert ready == {"type": "ready", "match_id": match["id"]}

            sent = live.client.post(
                f"/api/v1/connections/{a['id']}/{b['id']}/messages",
                json={"message": "see you around"},
            )
            assert sent.status_code == 201
            pushed, _ = receive_until(ws, "chat_message")
            assert pushed["message"]["message"] == "see you around"
            assert pushed["message"]["sender_id"] == a["id"]

            ws.send_json({"action": "send", "message": "  likewise  "})
            echoed, _ = receive_until(ws, "chat_message")
            assert echoed["message"]["message"] == "likewise"
            assert echoed["message"]["sender_id"] == b["id"]

            ws.send_json({"action": "send", "message": ""})
            error, _ = receive_until(ws, "error")
            assert error["code"] == "EMPTY_MESSAGE"

        thread = live.client.get(f"/api/v1/connections/{a['id']}/{b['id']}/messages").json()
        assert [m["message"] for m in thread] == ["see you around", "likewise"]

    def test_unconnected_pair_is_refused(self, live):
        match, a, b = pair(live.client)
        live.client.post(f"/api/v1/rooms/{match['room_id']}/skip", json={"user_id": a["id"]})
        with live.client.websocket_connect(f"/api/v1/connections/ws/{a['id']}/{b['id']}") as ws:
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["code"] == "NOT_CONNECTED"
            assert close_code(ws) == 1000
