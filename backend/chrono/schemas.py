"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests.
"""

from pydantic import BaseModel, Field
from typing import Optional


class RegisterIn(BaseModel):
    """Payload for user registration/login endpoints."""
    username: str = Field(min_length=1, max_length=150)
    password: str = Field(min_length=1)
    email: Optional[str] = None


class LayerIn(BaseModel):
    """Request format for creating a layer.

    `words` is the lexicon as free text, separated by commas, spaces or
    semicolons.
    """
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    image_url: Optional[str] = None
    year_from: int
    year_to: int
    words: str = ""


class LayerUpdate(BaseModel):
    """Partial layer update; only the fields sent are changed."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    image_url: Optional[str] = None
    year_from: Optional[int] = None
    year_to: Optional[int] = None
    words: Optional[str] = None


class RequestUpdate(BaseModel):
    """Editable fields of a draft research request."""
    text_for_analysis: Optional[str] = None
    purpose: Optional[str] = None


class LayerCommentIn(BaseModel):
    comment: Optional[str] = Field(default=None, max_length=1024)


class AsyncResultIn(BaseModel):
    """Callback body posted by the external calculator."""
    research_request_id: int
    result_from_year: Optional[int] = None
    result_to_year: Optional[int] = None
    matched_layers: Optional[int] = Field(default=None, ge=0)
    auth_token: str
