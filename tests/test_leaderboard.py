from bson import ObjectId

import swaps


def _users(*names):
    return [{"_id": ObjectId(), "name": n} for n in names]


def test_rank_by_swaps_then_rating():
    a, b, c = _users("A", "B", "C")
    ids = {u["name"]: str(u["_id"]) for u in (a, b, c)}
    accepted = (
        [{"from_uid": ids["A"], "to_uid": "other"}] * 3
        + [{"from_uid": "other", "to_uid": ids["B"]}] * 3
        + [{"from_uid": ids["C"], "to_uid": "other"}] * 5
    )
    feedback = [
        {"to_uid": ids["A"], "rating": 4},
        {"to_uid": ids["B"], "rating": 4},
        {"to_uid": ids["B"], "rating": 5},
    ]
    board = swaps.rank([a, b, c], accepted, feedback)
    assert [e["name"] for e in board] == ["C", "B", "A"]
    assert board[0]["average_rating"] == 0.0
    assert board[1]["average_rating"] == 4.5
    assert [e["swaps_count"] for e in board] == [5, 3, 3]


def test_endpoint_counts_only_accepted(client, db, pair, swap, make_user):
    alice, bruno = pair
    carla = make_user("Carla", offered=["Spanish"], wanted=["Guitar"])
    swap(alice, bruno, decision="accept")
    swap(alice, carla, from_skill="Guitar", to_skill="Spanish", decision="reject")
    client.post(f"/users/{bruno.uid}/feedback", json={"rating": 5}, headers=alice.headers)

    board = client.get("/leaderboard", headers=carla.headers).json()
    by_id = {e["id"]: e for e in board}
    assert by_id[alice.uid]["swaps_count"] == 1
    assert by_id[bruno.uid]["swaps_count"] == 1
    assert by_id[carla.uid]["swaps_count"] == 0
    assert board[0]["id"] == bruno.uid


def test_banned_users_left_out(client, db, pair):
    alice, bruno = pair
    db["user"].update_one({"_id": ObjectId(bruno.uid)}, {"$set": {"is_banned": True}})
    ids = [e["id"] for e in client.get("/leaderboard", headers=alice.headers).json()]
    assert bruno.uid not in ids
