"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Status values are stored as short lowercase strings; the allowed values
are listed as module constants so services and queries share them.
"""

from typing import Optional
from sqlmodel import SQLModel, Field
from datetime import datetime, timezone

LAYER_ACTIVE = "active"
LAYER_DELETED = "deleted"

STATUS_DRAFT = "draft"
STATUS_FORMED = "formed"
STATUS_COMPLETED = "completed"
STATUS_DELETED = "deleted"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    """A registered user.

    Fields:
    - `username`: unique login name
    - `password_hash`: hashed password string (never store plaintext)
    - `is_moderator`: moderators complete requests and manage layers
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    email: Optional[str] = None
    is_active: bool = True
    is_moderator: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class Layer(SQLModel, table=True):
    """A dated historical layer with its raw lexicon string.

    `words` keeps the text exactly as entered (comma, space or semicolon
    separated); the parsed lexicon is derived on read, see `lexicon.py`.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, nullable=False, unique=True)
    description: Optional[str] = None
    image_url: Optional[str] = None
    year_from: int
    year_to: int
    status: str = Field(default=LAYER_ACTIVE, index=True)
    words: str = ""


class ResearchRequest(SQLModel, table=True):
    """A user's research request and, once completed, its matched year range."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    moderator_id: Optional[int] = Field(default=None, foreign_key="user.id")
    status: str = Field(default=STATUS_DRAFT, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    formed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    text_for_analysis: Optional[str] = None
    purpose: Optional[str] = None
    result_year_from: Optional[int] = None
    result_year_to: Optional[int] = None
    matched_layer_count: Optional[int] = None


class RequestLayer(SQLModel, table=True):
    """Link between a request and a layer.

    The composite primary key guarantees at most one row per pair.
    `match_count` is 0 for layers added to a draft by hand and the number
    of matched lexicon words for rows written by completion.
    """
    request_id: int = Field(foreign_key="researchrequest.id", primary_key=True)
    layer_id: int = Field(foreign_key="layer.id", primary_key=True)
    match_count: int = 0
    comment: Optional[str] = None


class RevokedToken(SQLModel, table=True):
    """A logged-out JWT, kept until its own `exp` passes.

    Only the SHA-256 digest of the token is stored.
    """
    token_hash: str = Field(primary_key=True, max_length=64)
    expires_at: int = Field(index=True)
