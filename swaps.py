"""
SkillSwap domain operations.

Every function takes the database handle and, where a user is acting, the
caller's ``Session`` explicitly. Authorization is checked here, at the data
access boundary, not only in the routes. Precondition failures raise
``HTTPException`` with a message meant for the end user; nothing is written
before all checks pass.

Request lifecycle::

    create -> pending --respond(accept)--> accepted
                      --respond(reject)--> rejected
    any state --delete--> (gone, chat removed, feedback kept)
    any state --admin_set_status--> any state (audited)
"""
import csv
import io
import re
from typing import Dict, Iterable, List, Optional

from fastapi import HTTPException
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
from auth import Session, hash_password
from database import create_document, now, oid
from live import Broker
from logging_config import get_logger
from schemas import (AVAILABILITY_OPTIONS, Admin, Announcement, Auditlog, Chat, Feedback, Message, Request,
                     Savedprofile, User, UserSnapshot)

logger = get_logger(__name__)

DECISIONS = {"accept": "accepted", "reject": "rejected"}
STATUSES = ("pending", "accepted", "rejected")
PROFILE_FIELDS = {"name", "location", "photo_url", "skills_offered", "skills_wanted", "availability", "is_public"}


# ---------- Serialization ----------

def serialize_user(doc, private: bool = False) -> dict:
    out = {
        "id": str(doc["_id"]),
        "name": doc.get("name"),
        "location": doc.get("location"),
        "photo_url": doc.get("photo_url"),
        "skills_offered": doc.get("skills_offered", []),
        "skills_wanted": doc.get("skills_wanted", []),
        "verified_skills": doc.get("verified_skills", []),
        "availability": doc.get("availability", []),
        "is_public": doc.get("is_public", True),
        "rating": doc.get("rating"),
        "review_count": doc.get("review_count"),
        "created_at": doc.get("created_at"),
    }
    if private:
        out["email"] = doc.get("email")
        out["is_banned"] = doc.get("is_banned", False)
    return out


def serialize_request(doc) -> dict:
    return {
        "id": str(doc["_id"]),
        "from_uid": doc.get("from_uid"),
        "to_uid": doc.get("to_uid"),
        "from_user": doc.get("from_user"),
        "to_user": doc.get("to_user"),
        "from_skill": doc.get("from_skill"),
        "to_skill": doc.get("to_skill"),
        "message": doc.get("message"),
        "status": doc.get("status"),
        "created_at": doc.get("created_at"),
        "updated_at": doc.get("updated_at"),
    }


def serialize_message(doc) -> dict:
    return {
        "id": str(doc["_id"]),
        "chat_id": doc.get("chat_id"),
        "sender_id": doc.get("sender_id"),
        "text": doc.get("text"),
        "timestamp": doc.get("timestamp"),
    }


def serialize_feedback(doc) -> dict:
    return {
        "id": str(doc["_id"]),
        "from_uid": doc.get("from_uid"),
        "to_uid": doc.get("to_uid"),
        "request_id": doc.get("request_id"),
        "rating": doc.get("rating"),
        "comment": doc.get("comment"),
        "created_at": doc.get("created_at"),
    }


def _unique(values: Iterable[str]) -> List[str]:
    seen = []
    for v in values:
        v = v.strip()
        if v and v not in seen:
            seen.append(v)
    return seen


# ---------- Users & profiles ----------

def get_user_doc(db: Database, uid: str) -> dict:
    user = db["user"].find_one({"_id": oid(uid)})
    if not user:
        raise HTTPException(404, "User not found")
    return user


def register_user(db: Database, name: str, email: str, password: str) -> dict:
    email = email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(400, detail="Email already registered")
    user_doc = User(name=name, email=email, password_hash=hash_password(password)).model_dump(exclude_none=True)
    try:
        uid = create_document(db, "user", user_doc)
    except DuplicateKeyError:
        raise HTTPException(400, detail="Email already registered")
    if email in config.ADMIN_EMAILS:
        grant_admin(db, uid, email)
    logger.info("Registered user %s", uid)
    return db["user"].find_one({"_id": oid(uid)})


def grant_admin(db: Database, uid: str, email: str) -> None:
    db["admin"].update_one(
        {"_id": uid},
        {"$setOnInsert": Admin(email=email, created_at=now()).model_dump()},
        upsert=True,
    )


def can_view(session: Session, user: dict) -> bool:
    return bool(user.get("is_public", True)) or str(user["_id"]) == session.uid or session.is_admin


def update_profile(db: Database, session: Session, updates: Dict) -> dict:
    set_fields = {k: v for k, v in updates.items() if k in PROFILE_FIELDS and v is not None}
    for key in ("skills_offered", "skills_wanted", "availability"):
        if key in set_fields:
            set_fields[key] = _unique(set_fields[key])
    bad = [a for a in set_fields.get("availability", []) if a not in AVAILABILITY_OPTIONS]
    if bad:
        raise HTTPException(400, f"Unknown availability option: {', '.join(bad)}")
    if "name" in set_fields:
        set_fields["name"] = set_fields["name"].strip()
        if not set_fields["name"]:
            raise HTTPException(400, "Name cannot be empty")

    set_fields["updated_at"] = now()
    db["user"].update_one({"_id": oid(session.uid)}, {"$set": set_fields})
    user = get_user_doc(db, session.uid)
    recompute_verified_skills(db, session.uid, user.get("skills_offered", []))
    return get_user_doc(db, session.uid)


def browse_users(db: Database, session: Session, search: Optional[str] = None,
                 availability: Optional[str] = None, page: int = 1,
                 page_size: Optional[int] = None) -> dict:
    page_size = page_size or config.USERS_PER_PAGE
    query = {"is_public": True, "is_banned": {"$ne": True}, "_id": {"$ne": oid(session.uid)}}
    if availability:
        query["availability"] = availability
    if search and search.strip():
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"skills_offered": pattern}, {"skills_wanted": pattern}]

    cursor = db["user"].find(query).sort("created_at", -1).skip((page - 1) * page_size).limit(page_size + 1)
    users = list(cursor)
    return {
        "users": [serialize_user(u) for u in users[:page_size]],
        "page": page,
        "has_more": len(users) > page_size,
    }


def view_profile(db: Database, session: Session, uid: str) -> dict:
    user = get_user_doc(db, uid)
    if not can_view(session, user):
        raise HTTPException(403, "This user's profile is private")
    feedback = list(db["feedback"].find({"to_uid": uid}).sort("created_at", -1))
    accepted = accepted_between(db, session.uid, uid) if uid != session.uid else []
    out = serialize_user(user, private=uid == session.uid or session.is_admin)
    out["feedback"] = [serialize_feedback(f) for f in feedback]
    out["average_rating"] = sum(f["rating"] for f in feedback) / len(feedback) if feedback else 0.0
    out["can_leave_feedback"] = bool(unreviewed_swaps(db, session.uid, accepted))
    out["chat_id"] = str(accepted[0]["_id"]) if accepted else None
    return out


def save_profile(db: Database, session: Session, target_uid: str) -> dict:
    if target_uid == session.uid:
        raise HTTPException(400, "You cannot save your own profile")
    target = get_user_doc(db, target_uid)
    if not can_view(session, target):
        raise HTTPException(403, "This user's profile is private")
    db["savedprofile"].update_one(
        {"owner_uid": session.uid, "target_uid": target_uid},
        {"$set": Savedprofile(owner_uid=session.uid, target_uid=target_uid).model_dump()},
        upsert=True,
    )
    return {"saved": True, "count": db["savedprofile"].count_documents({"owner_uid": session.uid})}


def list_saved(db: Database, session: Session) -> List[dict]:
    out = []
    for entry in db["savedprofile"].find({"owner_uid": session.uid}):
        user = db["user"].find_one({"_id": oid(entry["target_uid"])})
        if user and can_view(session, user) and not user.get("is_banned"):
            out.append(serialize_user(user))
    return out


# ---------- Swap requests ----------

def accepted_between(db: Database, a: str, b: str) -> List[dict]:
    return list(db["request"].find({
        "status": "accepted",
        "$or": [{"from_uid": a, "to_uid": b}, {"from_uid": b, "to_uid": a}],
    }).sort("updated_at", -1))


def _load_request(db: Database, request_id: str) -> dict:
    req = db["request"].find_one({"_id": oid(request_id)})
    if not req:
        raise HTTPException(404, "Request not found")
    return req


def _notify(broker: Broker, req: dict, kind: str) -> None:
    event = {"type": kind, "request": serialize_request(req)}
    for uid in {req["from_uid"], req["to_uid"]}:
        broker.publish(f"requests:{uid}", event)


def create_request(db: Database, broker: Broker, session: Session, to_uid: str,
                   from_skill: str, to_skill: str, message: Optional[str] = None) -> dict:
    if not from_skill or not to_skill:
        raise HTTPException(400, "Please select both skills")
    if to_uid == session.uid:
        raise HTTPException(400, "You cannot request a swap with yourself")
    target = get_user_doc(db, to_uid)
    if not target.get("is_public", True) or target.get("is_banned"):
        raise HTTPException(403, "This user's profile is private")
    me = get_user_doc(db, session.uid)
    if from_skill not in me.get("skills_offered", []) or from_skill not in target.get("skills_wanted", []):
        raise HTTPException(400, f"'{from_skill}' is not a skill you offer that {target['name']} wants")
    if to_skill not in target.get("skills_offered", []) or to_skill not in me.get("skills_wanted", []):
        raise HTTPException(400, f"'{to_skill}' is not a skill {target['name']} offers that you want")

    request_id = create_document(db, "request", Request(
        from_uid=session.uid,
        to_uid=to_uid,
        from_user=UserSnapshot(name=me.get("name"), photo_url=me.get("photo_url")),
        to_user=UserSnapshot(name=target.get("name"), photo_url=target.get("photo_url")),
        from_skill=from_skill,
        to_skill=to_skill,
        message=message,
    ).model_dump(exclude_none=True))
    try:
        ensure_chat(db, request_id, [session.uid, to_uid])
    except PyMongoError:
        logger.exception("Chat creation failed for request %s, rolling back", request_id)
        db["request"].delete_one({"_id": oid(request_id)})
        raise

    req = _load_request(db, request_id)
    logger.info("Request %s created: %s -> %s", request_id, session.uid, to_uid)
    _notify(broker, req, "created")
    return req


def ensure_chat(db: Database, chat_id: str, users: List[str]) -> None:
    db["chat"].update_one(
        {"_id": chat_id},
        {"$setOnInsert": Chat(users=users, created_at=now()).model_dump()},
        upsert=True,
    )


def list_requests(db: Database, session: Session, box: str = "incoming",
                  status: Optional[str] = None) -> List[dict]:
    if box not in ("incoming", "outgoing"):
        raise HTTPException(400, "box must be 'incoming' or 'outgoing'")
    if status is not None and status not in STATUSES:
        raise HTTPException(400, "Invalid status")
    field = "to_uid" if box == "incoming" else "from_uid"
    query = {field: session.uid}
    if status:
        query["status"] = status
    return list(db["request"].find(query).sort("created_at", -1))


def _set_status(db: Database, req: dict, status: str) -> dict:
    db["request"].update_one({"_id": req["_id"]}, {"$set": {"status": status, "updated_at": now()}})
    return db["request"].find_one({"_id": req["_id"]})


def respond_to_request(db: Database, broker: Broker, session: Session, request_id: str, decision: str) -> dict:
    if decision not in DECISIONS:
        raise HTTPException(400, "Decision must be 'accept' or 'reject'")
    req = _load_request(db, request_id)
    target_status = DECISIONS[decision]
    if req["to_uid"] != session.uid:
        if session.is_admin:
            return admin_set_status(db, broker, session, request_id, target_status)
        raise HTTPException(403, "Only the recipient can respond to this request")
    if req["status"] == target_status:
        return req
    if req["status"] != "pending":
        raise HTTPException(409, f"Request already {req['status']}")

    req = _set_status(db, req, target_status)
    logger.info("Request %s %s by %s", request_id, target_status, session.uid)
    _notify(broker, req, "updated")
    return req


def admin_set_status(db: Database, broker: Broker, session: Session, request_id: str, status: str) -> dict:
    if not session.is_admin:
        raise HTTPException(403, "Forbidden")
    if status not in STATUSES:
        raise HTTPException(400, "Invalid status")
    req = _load_request(db, request_id)
    before = req["status"]
    if before == status:
        return req
    req = _set_status(db, req, status)
    audit(db, session, "request.status", request_id, {"status": before}, {"status": status})
    logger.warning("Admin %s changed request %s status %s -> %s", session.uid, request_id, before, status)
    _notify(broker, req, "updated")
    return req


def delete_request(db: Database, broker: Broker, session: Session, request_id: str) -> None:
    req = _load_request(db, request_id)
    if session.uid not in (req["from_uid"], req["to_uid"]) and not session.is_admin:
        raise HTTPException(403, "Forbidden")
    db["request"].delete_one({"_id": req["_id"]})
    db["chat"].delete_one({"_id": request_id})
    db["message"].delete_many({"chat_id": request_id})
    if session.is_admin and session.uid not in (req["from_uid"], req["to_uid"]):
        audit(db, session, "request.delete", request_id, serialize_request(req), None)
    logger.info("Request %s deleted by %s", request_id, session.uid)
    _notify(broker, req, "deleted")


# ---------- Chat ----------

def load_chat(db: Database, session: Session, chat_id: str, write: bool = False) -> dict:
    chat = db["chat"].find_one({"_id": chat_id})
    if not chat:
        raise HTTPException(404, "Chat not found")
    member = session.uid in chat.get("users", [])
    if not member and (write or not session.is_admin):
        raise HTTPException(403, "Forbidden")
    req = db["request"].find_one({"_id": oid(chat_id)})
    if not req or req.get("status") != "accepted":
        raise HTTPException(409, "Chat is available once the swap is accepted")
    return chat


def list_messages(db: Database, session: Session, chat_id: str) -> List[dict]:
    load_chat(db, session, chat_id)
    return list(db["message"].find({"chat_id": chat_id}).sort("timestamp", 1))


def send_message(db: Database, broker: Broker, session: Session, chat_id: str, text: str) -> dict:
    if not text or not text.strip():
        raise HTTPException(400, "Message cannot be empty")
    load_chat(db, session, chat_id, write=True)
    doc = Message(chat_id=chat_id, sender_id=session.uid, text=text, timestamp=now()).model_dump()
    res = db["message"].insert_one(doc)
    doc["_id"] = res.inserted_id
    broker.publish(f"chat:{chat_id}", {"type": "message", "message": serialize_message(doc)})
    return doc


# ---------- Feedback ----------

def list_feedback(db: Database, session: Session, uid: str) -> List[dict]:
    user = get_user_doc(db, uid)
    if not can_view(session, user):
        raise HTTPException(403, "This user's profile is private")
    return list(db["feedback"].find({"to_uid": uid}).sort("created_at", -1))


def submit_feedback(db: Database, session: Session, to_uid: str, rating: int,
                    comment: Optional[str] = None, request_id: Optional[str] = None) -> dict:
    if to_uid == session.uid:
        raise HTTPException(400, "You cannot review yourself")
    if not 1 <= rating <= 5:
        raise HTTPException(400, "Rating must be between 1 and 5")
    get_user_doc(db, to_uid)

    accepted = accepted_between(db, session.uid, to_uid)
    if not accepted:
        raise HTTPException(403, "You must have a completed swap to leave feedback")
    if request_id is not None:
        accepted = [r for r in accepted if str(r["_id"]) == request_id]
        if not accepted:
            raise HTTPException(400, "Request is not an accepted swap between you")

    accepted = unreviewed_swaps(db, session.uid, accepted)
    if not accepted:
        raise HTTPException(409, "You already left feedback for this swap")

    try:
        feedback_id = create_document(db, "feedback", Feedback(
            from_uid=session.uid,
            to_uid=to_uid,
            request_id=str(accepted[0]["_id"]),
            rating=rating,
            comment=comment,
        ).model_dump(exclude_none=True))
    except DuplicateKeyError:
        raise HTTPException(409, "You already left feedback for this swap")
    refresh_rating(db, to_uid)
    target = get_user_doc(db, to_uid)
    recompute_verified_skills(db, to_uid, target.get("skills_offered", []))
    logger.info("Feedback %s from %s to %s", feedback_id, session.uid, to_uid)
    return db["feedback"].find_one({"_id": oid(feedback_id)})


def unreviewed_swaps(db: Database, reviewer_uid: str, accepted: List[dict]) -> List[dict]:
    """Narrow ``accepted`` to the swaps ``reviewer_uid`` may still review."""
    if not config.FEEDBACK_UNIQUE_PER_REQUEST:
        return accepted
    ids = [str(r["_id"]) for r in accepted]
    reviewed = {f["request_id"] for f in db["feedback"].find({"from_uid": reviewer_uid, "request_id": {"$in": ids}})}
    return [r for r in accepted if str(r["_id"]) not in reviewed]


def refresh_rating(db: Database, uid: str) -> None:
    agg = list(db["feedback"].aggregate([
        {"$match": {"to_uid": uid}},
        {"$group": {"_id": "$to_uid", "avg": {"$avg": "$rating"}, "count": {"$sum": 1}}},
    ]))
    avg = float(agg[0]["avg"]) if agg else 0.0
    cnt = int(agg[0]["count"]) if agg else 0
    db["user"].update_one({"_id": oid(uid)}, {"$set": {"rating": round(avg, 2), "review_count": cnt}})


# ---------- Verification & leaderboard ----------

def recompute_verified_skills(db: Database, uid: str, skills: Iterable[str]) -> List[str]:
    """Overwrite the user's verified skills with those supplied in enough accepted swaps."""
    verified = []
    for skill in _unique(skills):
        given = db["request"].count_documents({"status": "accepted", "from_uid": uid, "from_skill": skill})
        given += db["request"].count_documents({"status": "accepted", "to_uid": uid, "to_skill": skill})
        if given >= config.VERIFICATION_THRESHOLD:
            verified.append(skill)
    db["user"].update_one({"_id": oid(uid)}, {"$set": {"verified_skills": verified}})
    return verified


def rank(users: List[dict], accepted: List[dict], feedback: List[dict]) -> List[dict]:
    counts: Dict[str, int] = {}
    for r in accepted:
        for uid in (r["from_uid"], r["to_uid"]):
            counts[uid] = counts.get(uid, 0) + 1
    ratings: Dict[str, List[int]] = {}
    for f in feedback:
        ratings.setdefault(f["to_uid"], []).append(f["rating"])

    board = []
    for u in users:
        uid = str(u["_id"])
        received = ratings.get(uid, [])
        board.append({
            "id": uid,
            "name": u.get("name"),
            "photo_url": u.get("photo_url"),
            "swaps_count": counts.get(uid, 0),
            "average_rating": sum(received) / len(received) if received else 0.0,
        })
    board.sort(key=lambda e: (-e["swaps_count"], -e["average_rating"]))
    return board


def leaderboard(db: Database) -> List[dict]:
    users = list(db["user"].find({"is_banned": {"$ne": True}}))
    accepted = list(db["request"].find({"status": "accepted"}))
    feedback = list(db["feedback"].find({}))
    return rank(users, accepted, feedback)


# ---------- Moderation ----------

def audit(db: Database, session: Session, action: str, target_id: str,
          before: Optional[dict], after: Optional[dict]) -> None:
    create_document(db, "auditlog", Auditlog(
        actor_uid=session.uid, action=action, target_id=target_id, before=before, after=after,
    ).model_dump(exclude_none=True))


def set_ban(db: Database, session: Session, uid: str, banned: bool) -> dict:
    if uid == session.uid:
        raise HTTPException(400, "You cannot ban yourself")
    user = get_user_doc(db, uid)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"is_banned": banned, "updated_at": now()}})
    audit(db, session, "user.ban" if banned else "user.unban", uid,
          {"is_banned": user.get("is_banned", False)}, {"is_banned": banned})
    logger.warning("Admin %s set is_banned=%s on %s", session.uid, banned, uid)
    return get_user_doc(db, uid)


def remove_skill(db: Database, session: Session, uid: str, field: str, skill: str) -> dict:
    if field not in ("skills_offered", "skills_wanted"):
        raise HTTPException(400, "field must be 'skills_offered' or 'skills_wanted'")
    user = get_user_doc(db, uid)
    db["user"].update_one({"_id": user["_id"]}, {"$pull": {field: skill}, "$set": {"updated_at": now()}})
    audit(db, session, "user.remove_skill", uid, {field: user.get(field, [])}, {"removed": skill})
    if field == "skills_offered":
        recompute_verified_skills(db, uid, [s for s in user.get(field, []) if s != skill])
    return get_user_doc(db, uid)


def post_announcement(db: Database, session: Session, title: str, message: str) -> dict:
    if not title.strip() or not message.strip():
        raise HTTPException(400, "Title and message are required")
    ann_id = create_document(
        db, "announcement",
        Announcement(title=title, message=message, created_by=session.uid).model_dump(exclude_none=True),
    )
    return db["announcement"].find_one({"_id": oid(ann_id)})


def users_csv(db: Database) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(["Name", "Email", "SkillsOffered", "SkillsWanted", "isBanned", "isPublic"])
    for u in db["user"].find({}).sort("created_at", 1):
        writer.writerow([
            u.get("name"),
            u.get("email"),
            ";".join(u.get("skills_offered", [])),
            ";".join(u.get("skills_wanted", [])),
            "Yes" if u.get("is_banned") else "No",
            "Yes" if u.get("is_public", True) else "No",
        ])
    return buf.getvalue()
