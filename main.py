from contextlib import asynccontextmanager
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

import config
import swaps
from auth import (Session, create_access_token, get_session, is_admin, require_admin, session_from_token,
                  verify_password)
from database import ensure_indexes, get_db
from live import Broker, get_broker, stream_to_websocket
from logging_config import configure_logging, get_logger

configure_logging()
logger = get_logger("skillswap")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await run_in_threadpool(ensure_indexes, get_db())
    except PyMongoError as e:
        logger.warning("Could not ensure indexes at startup: %s", e)
    yield


# App setup
app = FastAPI(title="SkillSwap API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable"})


# Pydantic models
class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    location: Optional[str] = None
    photo_url: Optional[str] = None
    skills_offered: Optional[List[str]] = None
    skills_wanted: Optional[List[str]] = None
    availability: Optional[List[str]] = None
    is_public: Optional[bool] = None


class SwapRequestIn(BaseModel):
    to_uid: str
    from_skill: str = ""
    to_skill: str = ""
    message: Optional[str] = None


class RespondIn(BaseModel):
    decision: Literal["accept", "reject"]


class MessageIn(BaseModel):
    text: str


class FeedbackIn(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    request_id: Optional[str] = None


class BanIn(BaseModel):
    banned: bool


class StatusIn(BaseModel):
    status: Literal["pending", "accepted", "rejected"]


class AnnouncementIn(BaseModel):
    title: str
    message: str


def _token_for(db: Database, user: dict) -> TokenResponse:
    uid = str(user["_id"])
    access_token = create_access_token({"sub": uid})
    user_out = swaps.serialize_user(user, private=True)
    user_out["is_admin"] = is_admin(db, uid)
    return TokenResponse(access_token=access_token, user=user_out)


def _check_credentials(db: Database, payload: LoginRequest) -> dict:
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Invalid email or password")
    if user.get("is_banned"):
        raise HTTPException(status_code=403, detail="Account banned")
    return user


# Routes
@app.get("/")
def root():
    return {"message": "SkillSwap API"}


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    try:
        collections = db.list_collection_names()
        return {"backend": "ok", "database": "ok", "collections": collections}
    except PyMongoError as e:
        logger.error("Database check failed: %s", e)
        return {"backend": "ok", "database": f"error: {str(e)[:80]}"}


# Auth
@app.post("/auth/register", status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, db: Database = Depends(get_db)):
    user = swaps.register_user(db, payload.name, payload.email, payload.password)
    return swaps.serialize_user(user, private=True)


@app.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    return _token_for(db, _check_credentials(db, payload))


@app.post("/admin/login", response_model=TokenResponse)
def admin_login(payload: LoginRequest, db: Database = Depends(get_db)):
    user = _check_credentials(db, payload)
    if not is_admin(db, str(user["_id"])):
        logger.warning("Admin login refused for %s", payload.email)
        raise HTTPException(status_code=403, detail="Not an admin account")
    return _token_for(db, user)


@app.get("/me")
def me(session: Session = Depends(get_session), db: Database = Depends(get_db)):
    out = swaps.serialize_user(swaps.get_user_doc(db, session.uid), private=True)
    out["is_admin"] = session.is_admin
    return out


# Profiles
@app.patch("/users/me")
def update_me(payload: ProfileUpdate, session: Session = Depends(get_session), db: Database = Depends(get_db)):
    user = swaps.update_profile(db, session, payload.model_dump(exclude_unset=True))
    return swaps.serialize_user(user, private=True)


@app.post("/users/me/verified-skills")
def recompute_my_skills(session: Session = Depends(get_session), db: Database = Depends(get_db)):
    user = swaps.get_user_doc(db, session.uid)
    return {"verified_skills": swaps.recompute_verified_skills(db, session.uid, user.get("skills_offered", []))}


@app.get("/users/me/saved")
def saved_profiles(session: Session = Depends(get_session), db: Database = Depends(get_db)):
    return swaps.list_saved(db, session)


@app.get("/users")
def browse(
    search: Optional[str] = None,
    availability: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1, le=100),
    session: Session = Depends(get_session),
    db: Database = Depends(get_db),
):
    return swaps.browse_users(db, session, search, availability, page, page_size)


@app.get("/users/{uid}")
def user_detail(uid: str, session: Session = Depends(get_session), db: Database = Depends(get_db)):
    return swaps.view_profile(db, session, uid)


@app.post("/users/{uid}/save")
def save_user(uid: str, session: Session = Depends(get_session), db: Database = Depends(get_db)):
    return swaps.save_profile(db, session, uid)


# Feedback
@app.get("/users/{uid}/feedback")
def user_feedback(uid: str, session: Session = Depends(get_session), db: Database = Depends(get_db)):
    return [swaps.serialize_feedback(f) for f in swaps.list_feedback(db, session, uid)]


@app.post("/users/{uid}/feedback", status_code=status.HTTP_201_CREATED)
def add_feedback(uid: str, payload: FeedbackIn, session: Session = Depends(get_session),
                 db: Database = Depends(get_db)):
    fb = swaps.submit_feedback(db, session, uid, payload.rating, payload.comment, payload.request_id)
    return swaps.serialize_feedback(fb)


@app.get("/leaderboard")
def get_leaderboard(session: Session = Depends(get_session), db: Database = Depends(get_db)):
    return swaps.leaderboard(db)


# Requests
@app.post("/requests", status_code=status.HTTP_201_CREATED)
def create_request(payload: SwapRequestIn, session: Session = Depends(get_session),
                   db: Database = Depends(get_db), broker: Broker = Depends(get_broker)):
    req = swaps.create_request(db, broker, session, payload.to_uid, payload.from_skill,
                               payload.to_skill, payload.message)
    return swaps.serialize_request(req)


@app.get("/requests")
def my_requests(
    box: Literal["incoming", "outgoing"] = "incoming",
    status_filter: Optional[Literal["pending", "accepted", "rejected"]] = Query(None, alias="status"),
    session: Session = Depends(get_session),
    db: Database = Depends(get_db),
):
    return [swaps.serialize_request(r) for r in swaps.list_requests(db, session, box, status_filter)]


@app.post("/requests/{request_id}/respond")
def respond(request_id: str, payload: RespondIn, session: Session = Depends(get_session),
            db: Database = Depends(get_db), broker: Broker = Depends(get_broker)):
    return swaps.serialize_request(swaps.respond_to_request(db, broker, session, request_id, payload.decision))


@app.delete("/requests/{request_id}")
def delete_request(request_id: str, session: Session = Depends(get_session),
                   db: Database = Depends(get_db), broker: Broker = Depends(get_broker)):
    swaps.delete_request(db, broker, session, request_id)
    return {"deleted": True}


# Chat
@app.get("/chats/{chat_id}/messages")
def chat_messages(chat_id: str, session: Session = Depends(get_session), db: Database = Depends(get_db)):
    return [swaps.serialize_message(m) for m in swaps.list_messages(db, session, chat_id)]


@app.post("/chats/{chat_id}/messages", status_code=status.HTTP_201_CREATED)
def post_message(chat_id: str, payload: MessageIn, session: Session = Depends(get_session),
                 db: Database = Depends(get_db), broker: Broker = Depends(get_broker)):
    return swaps.serialize_message(swaps.send_message(db, broker, session, chat_id, payload.text))


# Live feeds
async def _ws_session(websocket: WebSocket, db: Database, token: str) -> Optional[Session]:
    try:
        return await run_in_threadpool(session_from_token, db, token)
    except HTTPException as e:
        await websocket.close(code=4000 + e.status_code, reason=str(e.detail))
        return None


@app.websocket("/ws/chats/{chat_id}")
async def chat_feed(websocket: WebSocket, chat_id: str, token: str = Query(...),
                    db: Database = Depends(get_db), broker: Broker = Depends(get_broker)):
    session = await _ws_session(websocket, db, token)
    if session is None:
        return
    sub = broker.subscribe(f"chat:{chat_id}")
    try:
        messages = await run_in_threadpool(swaps.list_messages, db, session, chat_id)
    except HTTPException as e:
        sub.unsubscribe()
        await websocket.close(code=4000 + e.status_code, reason=str(e.detail))
        return
    await websocket.accept()
    await websocket.send_json({
        "type": "snapshot",
        "messages": jsonable_encoder([swaps.serialize_message(m) for m in messages]),
    })
    sent = {str(m["_id"]) for m in messages}
    await stream_to_websocket(websocket, sub, skip=lambda e: e.get("message", {}).get("id") in sent)


@app.websocket("/ws/requests")
async def requests_feed(websocket: WebSocket, token: str = Query(...),
                        db: Database = Depends(get_db), broker: Broker = Depends(get_broker)):
    session = await _ws_session(websocket, db, token)
    if session is None:
        return
    sub = broker.subscribe(f"requests:{session.uid}")
    try:
        incoming = await run_in_threadpool(swaps.list_requests, db, session, "incoming")
        outgoing = await run_in_threadpool(swaps.list_requests, db, session, "outgoing")
    except PyMongoError:
        sub.unsubscribe()
        raise
    await websocket.accept()
    await websocket.send_json({
        "type": "snapshot",
        "incoming": jsonable_encoder([swaps.serialize_request(r) for r in incoming]),
        "outgoing": jsonable_encoder([swaps.serialize_request(r) for r in outgoing]),
    })
    await stream_to_websocket(websocket, sub)


# Announcements
@app.get("/announcements")
def announcements(session: Session = Depends(get_session), db: Database = Depends(get_db)):
    anns = db["announcement"].find({}).sort("created_at", -1)
    return [{"id": str(a["_id"]), "title": a.get("title"), "message": a.get("message"),
             "created_at": a.get("created_at")} for a in anns]


# Admin endpoints
@app.get("/admin/users")
def admin_users(admin: Session = Depends(require_admin), db: Database = Depends(get_db)):
    users = db["user"].find({}).sort("created_at", -1)
    return [swaps.serialize_user(u, private=True) for u in users]


@app.patch("/admin/users/{uid}/ban")
def admin_ban_user(uid: str, payload: BanIn, admin: Session = Depends(require_admin),
                   db: Database = Depends(get_db)):
    return swaps.serialize_user(swaps.set_ban(db, admin, uid, payload.banned), private=True)


@app.delete("/admin/users/{uid}/skills")
def admin_remove_skill(uid: str, field: Literal["skills_offered", "skills_wanted"], skill: str,
                       admin: Session = Depends(require_admin), db: Database = Depends(get_db)):
    return swaps.serialize_user(swaps.remove_skill(db, admin, uid, field, skill), private=True)


@app.get("/admin/users.csv")
def admin_users_csv(admin: Session = Depends(require_admin), db: Database = Depends(get_db)):
    return Response(
        content=swaps.users_csv(db),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="users.csv"'},
    )


@app.get("/admin/requests")
def admin_requests(admin: Session = Depends(require_admin), db: Database = Depends(get_db)):
    reqs = db["request"].find({}).sort("created_at", -1)
    return [swaps.serialize_request(r) for r in reqs]


@app.patch("/admin/requests/{request_id}/status")
def admin_request_status(request_id: str, payload: StatusIn, admin: Session = Depends(require_admin),
                         db: Database = Depends(get_db), broker: Broker = Depends(get_broker)):
    return swaps.serialize_request(swaps.admin_set_status(db, broker, admin, request_id, payload.status))


@app.delete("/admin/requests/{request_id}")
def admin_delete_request(request_id: str, admin: Session = Depends(require_admin),
                         db: Database = Depends(get_db), broker: Broker = Depends(get_broker)):
    swaps.delete_request(db, broker, admin, request_id)
    return {"deleted": True}


@app.post("/admin/announcements", status_code=status.HTTP_201_CREATED)
def admin_announce(payload: AnnouncementIn, admin: Session = Depends(require_admin),
                   db: Database = Depends(get_db)):
    ann = swaps.post_announcement(db, admin, payload.title, payload.message)
    return {"id": str(ann["_id"]), "title": ann["title"], "message": ann["message"],
            "created_at": ann.get("created_at")}


@app.get("/admin/audit")
def admin_audit(admin: Session = Depends(require_admin), db: Database = Depends(get_db)):
    entries = db["auditlog"].find({}).sort("created_at", -1)
    return [{"id": str(e["_id"]), "actor_uid": e.get("actor_uid"), "action": e.get("action"),
             "target_id": e.get("target_id"), "before": e.get("before"), "after": e.get("after"),
             "created_at": e.get("created_at")} for e in entries]


# Seed/demo endpoint
@app.post("/seed")
def seed(db: Database = Depends(get_db)):
    if not config.ENABLE_SEED:
        raise HTTPException(404, "Not Found")

    def ensure_user(name, email, password, offered, wanted):
        u = db["user"].find_one({"email": email})
        if u:
            return u
        u = swaps.register_user(db, name, email, password)
        db["user"].update_one({"_id": u["_id"]}, {"$set": {
            "skills_offered": offered, "skills_wanted": wanted, "availability": ["Evenings", "Weekends"],
        }})
        return db["user"].find_one({"_id": u["_id"]})

    admin = ensure_user("Admin", "admin@demo.com", "admin123", [], [])
    swaps.grant_admin(db, str(admin["_id"]), admin["email"])
    ensure_user("Alice", "alice@demo.com", "alice123", ["Python", "Guitar"], ["Spanish"])
    ensure_user("Bruno", "bruno@demo.com", "bruno123", ["Spanish", "Cooking"], ["Python"])

    return {
        "demo_accounts": {
            "admin": {"email": "admin@demo.com", "password": "admin123"},
            "alice": {"email": "alice@demo.com", "password": "alice123"},
            "bruno": {"email": "bruno@demo.com", "password": "bruno123"},
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
