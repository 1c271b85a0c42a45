"""
Database Schemas for WisdomVault

Each Pydantic model describes one stored document. Field names are the
camelCase keys the web client already reads, so documents are written with
model_dump() as-is.
"""
from typing import Optional, List, Literal
from pydantic import BaseModel, ConfigDict, Field, EmailStr
from datetime import datetime

Role = Literal["user", "admin"]
Visibility = Literal["public", "private"]
AccessLevel = Literal["free", "premium"]

PLACEHOLDER_NAME = "Anonymous"


class Account(BaseModel):
    """
    Collection: "users"
    """
    uid: str = Field(..., description="Identity provider subject id")
    email: EmailStr = Field(..., description="Unique email address")
    name: str = Field(PLACEHOLDER_NAME, description="Display name")
    photoURL: str = Field("", description="Avatar image URL")
    role: Role = "user"
    isPremium: bool = False
    createdAt: datetime


class CreatorSnapshot(BaseModel):
    """Point-in-time copy of the creator's public fields, embedded in a lesson."""
    name: str
    email: EmailStr
    uid: str
    photo: str = ""


class Marker(BaseModel):
    email: EmailStr


class Comment(BaseModel):
    text: str = Field(..., min_length=1)
    authorName: str
    authorEmail: EmailStr
    authorPhoto: str = ""
    createdAt: datetime


class Lesson(BaseModel):
    """
    Collections: "public-lesson" and "my-lessons" (same _id in both)
    """
    title: str = Field(..., min_length=1)
    shortDescription: Optional[str] = ""
    fullDescription: str = Field(..., min_length=1)
    category: Optional[str] = None
    emotionalTone: Optional[str] = None
    image: str = ""
    visibility: Visibility = "public"
    accessLevel: AccessLevel = "free"
    creator: CreatorSnapshot
    likesCount: int = Field(0, ge=0)
    favoritesCount: int = Field(0, ge=0)
    likedBy: List[Marker] = []
    favoritedBy: List[Marker] = []
    comments: List[Comment] = []
    isReported: bool = False
    revision: int = Field(0, ge=0, description="Bumped on every write to the public copy")
    createdAt: datetime


class Post(BaseModel):
    """
    Collection: "posts"
    Extra body fields sent by the client are kept as-is.
    """
    model_config = ConfigDict(extra="allow")

    title: Optional[str] = None
    content: str = Field(..., min_length=1)
    authorEmail: EmailStr
    createdAt: datetime
