"""
Database Schemas

Pydantic models defining MongoDB collections. Class name lowercased is the collection name.
Documents are loosely typed in practice; these describe what the API writes.
"""
from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal
from datetime import datetime

# User accounts. `oauth_id` is the provider subject for users that signed in through OAuth.
class User(BaseModel):
    name: str
    username: str = Field(..., min_length=3, max_length=32)
    email: Optional[EmailStr] = None
    password_hash: Optional[str] = Field(None, description="BCrypt hashed password")
    oauth_id: Optional[str] = None
    oauth_provider: Optional[str] = None
    avatar_url: Optional[str] = None
    role: Literal["user", "moderator", "admin"] = "user"
    is_private: bool = False
    is_guest: bool = False
    is_online: bool = False
    last_seen: Optional[datetime] = None
    followers_count: int = Field(0, ge=0)
    following_count: int = Field(0, ge=0)
    phone: Optional[str] = None
    phone_verified: bool = False

class Session(BaseModel):
    token: str
    user_id: str = Field(..., description="Id the session was opened with (storage or OAuth)")
    expires_at: datetime

class Post(BaseModel):
    user_id: str
    content: str
    type: Literal["text", "poll"] = "text"
    poll_options: List[dict] = Field(default_factory=list, description="Embedded poll: [{option, votes}]")
    likes_count: int = 0
    comments_count: int = 0
    shares_count: int = 0
    bookmarks_count: int = 0

class Comment(BaseModel):
    post_id: str
    user_id: str
    content: str

class Like(BaseModel):
    user_id: str
    post_id: str

class Share(BaseModel):
    user_id: str
    post_id: str
    content: Optional[str] = None

class Follow(BaseModel):
    follower_id: str
    following_id: str
    status: Literal["pending", "accepted"] = "accepted"

class MessageEdit(BaseModel):
    content: str
    created_at: datetime

class MessageReaction(BaseModel):
    emoji: str
    users: List[str] = Field(default_factory=list)
    count: int = 0

# Direct messages between two users
class Message(BaseModel):
    sender_id: str
    receiver_id: str
    content: str = Field(..., max_length=5000)
    type: Literal["text", "image", "video", "file"] = "text"
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    read: bool = False
    edits: List[MessageEdit] = Field(default_factory=list)
    reactions: List[MessageReaction] = Field(default_factory=list)

class Notification(BaseModel):
    user_id: str
    type: Literal["like", "comment", "follow", "follow_request", "share", "system"]
    title: str
    message: str
    link: Optional[str] = None
    post_id: Optional[str] = None
    actor_id: Optional[str] = None
    contributors: List[str] = Field(default_factory=list)
    read: bool = False

# Standalone poll attached to a post
class Poll(BaseModel):
    post_id: str
    question: str
    options: List[str] = Field(..., min_length=2)
    expires_at: Optional[datetime] = None

class PollVote(BaseModel):
    poll_id: str
    user_id: str
    option_index: int = Field(..., ge=0)

class Bookmark(BaseModel):
    user_id: str
    post_id: str
    tags: List[str] = Field(default_factory=list)
    saved_at: Optional[datetime] = None

class Group(BaseModel):
    name: str
    description: Optional[str] = None
    privacy: Literal["public", "private"] = "public"
    owner_id: str

class AuditLog(BaseModel):
    user_id: str
    action: str
    details: dict = {}
    ip: str = "unknown"
    user_agent: str = "unknown"

# One pending code per phone number, plus its send-rate window
class Otp(BaseModel):
    phone: str
    code_hash: str
    purpose: str = "login"
    attempts: int = 0
    expires_at: datetime
    send_count: int = 0
    window_started_at: Optional[datetime] = None
