import pytest
from starlette.websockets import WebSocketDisconnect

import swaps


def test_send_blocked_until_accepted(client, pair, swap):
    alice, bruno = pair
    request_id = swap(alice, bruno)
    res = client.post(f"/chats/{request_id}/messages", json={"text": "hello"}, headers=alice.headers)
    assert res.status_code == 409

    client.post(f"/requests/{request_id}/respond", json={"decision": "reject"}, headers=bruno.headers)
    res = client.post(f"/chats/{request_id}/messages", json={"text": "hello"}, headers=alice.headers)
    assert res.status_code == 409


def test_messages_in_order(client, pair, swap):
    alice, bruno = pair
    request_id = swap(alice, bruno, decision="accept")
    for acct, text in ((alice, "hi"), (bruno, "hola"), (alice, "when?")):
        res = client.post(f"/chats/{request_id}/messages", json={"text": text}, headers=acct.headers)
        assert res.status_code == 201

    messages = client.get(f"/chats/{request_id}/messages", headers=bruno.headers).json()
    assert [m["text"] for m in messages] == ["hi", "hola", "when?"]
    assert [m["sender_id"] for m in messages] == [alice.uid, bruno.uid, alice.uid]


def test_empty_message_rejected(client, pair, swap):
    alice, bruno = pair
    request_id = swap(alice, bruno, decision="accept")
    res = client.post(f"/chats/{request_id}/messages", json={"text": "   "}, headers=alice.headers)
    assert res.status_code == 400


def test_non_member_cannot_read_or_write(client, pair, swap, make_user):
    alice, bruno = pair
    request_id = swap(alice, bruno, decision="accept")
    outsider = make_user("Olga")
    assert client.get(f"/chats/{request_id}/messages", headers=outsider.headers).status_code == 403
    res = client.post(f"/chats/{request_id}/messages", json={"text": "hey"}, headers=outsider.headers)
    assert res.status_code == 403


def test_chat_feed_streams_new_messages(client, broker, pair, swap):
    alice, bruno = pair
    request_id = swap(alice, bruno, decision="accept")
    client.post(f"/chats/{request_id}/messages", json={"text": "first"}, headers=alice.headers)

    with client.websocket_connect(f"/ws/chats/{request_id}?token={alice.token}") as ws:
        snapshot = ws.receive_json()
        assert snapshot["type"] == "snapshot"
        assert [m["text"] for m in snapshot["messages"]] == ["first"]

        client.post(f"/chats/{request_id}/messages", json={"text": "second"}, headers=bruno.headers)
        event = ws.receive_json()
        assert event["type"] == "message"
        assert event["message"]["text"] == "second"
        assert event["message"]["sender_id"] == bruno.uid

    assert broker.subscriber_count(f"chat:{request_id}") == 0


def test_chat_feed_does_not_repeat_snapshot_messages(client, broker, pair, swap, monkeypatch):
    alice, bruno = pair
    request_id = swap(alice, bruno, decision="accept")
    list_messages = swaps.list_messages

    def list_after_racing_send(db, session, chat_id):
        # a message lands between subscribing and reading the history
        monkeypatch.setattr(swaps, "list_messages", list_messages)
        swaps.send_message(db, broker, session, chat_id, "racing")
        return list_messages(db, session, chat_id)

    monkeypatch.setattr(swaps, "list_messages", list_after_racing_send)

    with client.websocket_connect(f"/ws/chats/{request_id}?token={alice.token}") as ws:
        snapshot = ws.receive_json()
        assert [m["text"] for m in snapshot["messages"]] == ["racing"]

        client.post(f"/chats/{request_id}/messages", json={"text": "after"}, headers=bruno.headers)
        event = ws.receive_json()
        assert event["message"]["text"] == "after"


def test_chat_feed_refused_for_pending_swap(client, broker, pair, swap):
    alice, bruno = pair
    request_id = swap(alice, bruno)
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/chats/{request_id}?token={alice.token}"):
            pass
    assert broker.subscriber_count(f"chat:{request_id}") == 0


def test_requests_feed_announces_decisions(client, pair, swap):
    alice, bruno = pair
    request_id = swap(alice, bruno)

    with client.websocket_connect(f"/ws/requests?token={alice.token}") as ws:
        snapshot = ws.receive_json()
        assert [r["id"] for r in snapshot["outgoing"]] == [request_id]
        assert snapshot["incoming"] == []

        client.post(f"/requests/{request_id}/respond", json={"decision": "accept"}, headers=bruno.headers)
        event = ws.receive_json()
        assert event["type"] == "updated"
        assert event["request"]["status"] == "accepted"
