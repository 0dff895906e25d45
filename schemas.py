"""
Database Schemas for SkillSwap

Each Pydantic model represents a MongoDB collection.
Collection name is lowercase of the class name.
- User -> "user"
- Request -> "request"
- Chat -> "chat", Message -> "message"
- Feedback -> "feedback"
- Savedprofile -> "savedprofile"
- Admin -> "admin"
- Announcement -> "announcement"
- Auditlog -> "auditlog"

User references (from_uid, owner_uid, ...) are stored as the string form of
the user's _id.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

RequestStatus = Literal["pending", "accepted", "rejected"]

AVAILABILITY_OPTIONS = ("Weekdays", "Weekends", "Mornings", "Afternoons", "Evenings", "Flexible")


class User(BaseModel):
    name: str = Field(..., description="Display name")
    email: EmailStr = Field(..., description="Unique email address")
    password_hash: str = Field(..., description="Hashed password")
    location: Optional[str] = Field(None, description="City/Country")
    photo_url: Optional[str] = Field(None, description="Profile photo in object storage")
    skills_offered: List[str] = Field(default_factory=list, description="Skills the user can teach")
    skills_wanted: List[str] = Field(default_factory=list, description="Skills the user wants to learn")
    verified_skills: List[str] = Field(default_factory=list, description="Offered skills with enough accepted swaps")
    availability: List[str] = Field(default_factory=list, description="Subset of AVAILABILITY_OPTIONS")
    is_public: bool = Field(True, description="Listed in browse and viewable by others")
    is_banned: bool = Field(False, description="Blocked by a moderator")
    rating: Optional[float] = Field(None, ge=0, le=5, description="Average received rating")
    review_count: Optional[int] = Field(None, ge=0, description="Number of received reviews")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UserSnapshot(BaseModel):
    name: str
    photo_url: Optional[str] = None


class Request(BaseModel):
    from_uid: str = Field(..., description="Requester user id")
    to_uid: str = Field(..., description="Recipient user id")
    from_user: UserSnapshot = Field(..., description="Requester name/photo at creation time")
    to_user: UserSnapshot = Field(..., description="Recipient name/photo at creation time")
    from_skill: str = Field(..., description="Skill the requester gives")
    to_skill: str = Field(..., description="Skill the requester receives")
    message: Optional[str] = None
    status: RequestStatus = "pending"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Chat(BaseModel):
    """_id is the _id of the owning request."""
    users: List[str] = Field(..., min_length=2, max_length=2)
    created_at: Optional[datetime] = None


class Message(BaseModel):
    chat_id: str
    sender_id: str
    text: str = Field(..., min_length=1)
    timestamp: Optional[datetime] = None


class Feedback(BaseModel):
    from_uid: str = Field(..., description="Reviewer user id")
    to_uid: str = Field(..., description="Reviewed user id")
    request_id: str = Field(..., description="Accepted request the review is about")
    rating: int = Field(..., ge=1, le=5, description="Rating 1-5")
    comment: Optional[str] = None
    created_at: Optional[datetime] = None


class Savedprofile(BaseModel):
    owner_uid: str
    target_uid: str
    saved: bool = True


class Admin(BaseModel):
    """_id is the _id of the admin's user document."""
    email: EmailStr
    created_at: Optional[datetime] = None


class Announcement(BaseModel):
    title: str
    message: str
    created_by: str
    created_at: Optional[datetime] = None


class Auditlog(BaseModel):
    actor_uid: str
    action: str
    target_id: str
    before: Optional[dict] = None
    after: Optional[dict] = None
    created_at: Optional[datetime] = None
