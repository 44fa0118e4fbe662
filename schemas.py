"""
Database Schemas for the Orbya social network

Each Pydantic model represents a collection in MongoDB. The collection name is the
lowercase of the class name (handled by our database helpers at usage time).
References to other documents are stored as string ids.
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal
from datetime import datetime

USERNAME_PATTERN = r"^[A-Za-z0-9_]+$"
MAX_POST_LENGTH = 5000
MAX_MESSAGE_LENGTH = 1000

Gender = Literal["male", "female", "other", "unspecified"]
Theme = Literal["light", "dark", "red-dark", "blue-dark", "green-dark"]


class User(BaseModel):
    username: str = Field(..., min_length=3, max_length=20, pattern=USERNAME_PATTERN)
    email: EmailStr = Field(..., description="Unique email, stored lowercased")
    password_hash: str = Field(..., description="BCrypt password hash")
    profile_picture: Optional[str] = Field(None, description="Filename under uploads/profiles")
    description: str = Field("No description", max_length=500)
    gender: Gender = "unspecified"
    age: Optional[int] = Field(None, ge=13, le=120)
    studies: str = Field("Not specified", max_length=200)
    theme: Theme = "light"
    reset_password_token: Optional[str] = None
    reset_password_expires: Optional[datetime] = None
    followers: List[str] = Field(default_factory=list, description="User IDs following this user")
    following: List[str] = Field(default_factory=list, description="User IDs this user follows")


class Like(BaseModel):
    user: str = Field(..., description="User ID of the liker")
    created_at: datetime


class Post(BaseModel):
    author_id: str = Field(..., description="User ID of the author")
    text: str = Field(..., min_length=1, max_length=MAX_POST_LENGTH)
    is_rich_text: bool = False
    image: Optional[str] = Field(None, description="Filename under uploads/posts")
    likes: List[Like] = Field(default_factory=list)
    likes_count: int = Field(0, ge=0, description="Always equal to len(likes)")


class Conversation(BaseModel):
    # one-to-one only
    participants: List[str] = Field(..., min_length=2, max_length=2, description="User IDs (as strings)")
    participant_key: str = Field(..., description="Sorted participant ids joined by ':'")
    last_message_id: Optional[str] = None
    last_activity: Optional[datetime] = None


class Message(BaseModel):
    conversation_id: str = Field(..., description="Conversation ID")
    sender_id: str = Field(..., description="User ID of sender")
    content: str = Field("", max_length=MAX_MESSAGE_LENGTH, description="Text content")
    image: Optional[str] = Field(None, description="Filename under uploads/chat")
    message_type: Literal["text", "image"] = "text"
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
