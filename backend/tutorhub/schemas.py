"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests. Step payloads are deliberately loose
(`fields` is a free-form mapping); their contract is enforced by the
step validator so the same rules apply to every form.
"""

from pydantic import BaseModel, Field
from typing import Any, Dict, Optional


class RegisterIn(BaseModel):
    """Payload for account registration."""
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=6)
    role: str
    full_name: str = ""


class LoginIn(BaseModel):
    """Payload for the login endpoint."""
    email: str
    password: str


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str
    role: str
    needs_form_completion: bool = False


class StepSubmission(BaseModel):
    """One step of a registration form."""
    fields: Dict[str, Any] = Field(default_factory=dict)


class OptionIn(BaseModel):
    """Request format for creating a catalog option."""
    name: str
    parent_role: Optional[str] = None
    parent_id: Optional[int] = None
    description: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0


class OptionUpdate(BaseModel):
    """Partial update of a catalog option; omitted fields are left unchanged."""
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


class ReviewIn(BaseModel):
    """Admin decision on a teacher application."""
    status: str
    review_notes: Optional[str] = Field(default=None, max_length=2000)
