"""
Database Schemas for the Urban Issue Reporter

Each Pydantic model describes the user-supplied part of a MongoDB collection.
Collection name = lowercase of class name (User -> "user", Issue -> "issue",
Comment -> "comment"). Server-maintained fields (votes, status, timestamps)
are filled in by the stores.
"""

from typing import List, Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, EmailStr, Field

Category = Literal[
    'traffic', 'sanitation', 'infrastructure', 'water',
    'electricity', 'environment', 'security', 'other',
]
Priority = Literal['low', 'medium', 'high']
Status = Literal['pending', 'in-progress', 'resolved', 'rejected']
VoteType = Literal['up', 'down']

CATEGORIES = get_args(Category)
PRIORITIES = get_args(Priority)
STATUSES = get_args(Status)


class User(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="Hashed password")
    is_admin: bool = Field(False, description="Administrators triage and resolve issues")
    is_active: bool = Field(True, description="Whether user is active")


class Coordinates(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class Location(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    address: str = Field(..., min_length=1, description="Nearest address or landmark")
    coordinates: Coordinates


class Issue(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=200, description="Short summary")
    description: str = Field(..., min_length=1, max_length=2000, description="Issue description")
    category: Category = Field(..., description="Issue category")
    priority: Priority = Field('medium')
    location: Location
    imageUrl: Optional[str] = Field(None, description="URL returned by the upload step")
    tags: List[str] = Field(default_factory=list)


class Comment(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    content: str = Field(..., min_length=1, max_length=1000, description="Comment text")
