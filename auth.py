from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError
from passlib.context import CryptContext
from pymongo.database import Database

import config
from database import get_db
from logging_config import get_logger

logger = get_logger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")


@dataclass(frozen=True)
class Session:
    """The signed-in user, resolved from a bearer token on every call."""
    uid: str
    name: str
    email: str
    photo_url: Optional[str] = None
    is_admin: bool = False


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def is_admin(db: Database, uid: str) -> bool:
    return db["admin"].count_documents({"_id": uid}, limit=1) > 0


def session_from_token(db: Database, token: str) -> Session:
    """Decode ``token`` and load its user. Raises 401 or 403 on failure."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
        user = db["user"].find_one({"_id": ObjectId(user_id)})
    except (JWTError, InvalidId):
        raise credentials_exception

    if not user:
        raise credentials_exception
    if user.get("is_banned"):
        raise HTTPException(status_code=403, detail="Account banned")
    uid = str(user["_id"])
    return Session(
        uid=uid,
        name=user.get("name", ""),
        email=user.get("email", ""),
        photo_url=user.get("photo_url"),
        is_admin=is_admin(db, uid),
    )


# Dependency: get current session
def get_session(token: str = Depends(oauth2_scheme), db: Database = Depends(get_db)) -> Session:
    return session_from_token(db, token)


def require_admin(session: Session = Depends(get_session)) -> Session:
    if not session.is_admin:
        logger.warning("Non-admin %s denied admin access", session.uid)
        raise HTTPException(status_code=403, detail="Forbidden")
    return session
