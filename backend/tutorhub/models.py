"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Role, status and form names are stored as plain strings; the accepted
values are listed in the module-level tuples below.
"""

from typing import Optional
from datetime import datetime, timezone
from sqlalchemy import Column, JSON, UniqueConstraint
from sqlmodel import SQLModel, Field

ROLE_STUDENT = "STUDENT"
ROLE_TEACHER = "TEACHER"
ROLE_ADMIN = "ADMIN"
USER_ROLES = (ROLE_STUDENT, ROLE_TEACHER, ROLE_ADMIN)

TEACHER_ROLES = ("TUTORING", "PROJECTS_MAKER", "COURSING", "COACHING")

STATUS_PENDING = "PENDING"
STATUS_APPROVED = "APPROVED"
STATUS_REJECTED = "REJECTED"
APPLICATION_STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    """A registered account.

    Fields:
    - `email`: unique login name
    - `password_hash`: hashed password string (never store plaintext)
    - `role`: one of `USER_ROLES`
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    role: str = Field(index=True)
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)


class Student(SQLModel, table=True):
    """Student profile, the subject of the intake form."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', unique=True)
    full_name: str = ""
    is_form_completed: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


class Teacher(SQLModel, table=True):
    """Teacher profile, the subject of the teacher registration form.

    The public profile fields are copied from the field bag when the
    registration completes and can be edited afterwards; `is_approved`
    flips when an admin reviews the teacher's application.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', unique=True)
    full_name: str = ""
    phone: Optional[str] = None
    short_bio: Optional[str] = None
    profile_photo: Optional[str] = None
    languages_spoken: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    proposed_hourly_rate: Optional[float] = None
    is_approved: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


class RegistrationProgress(SQLModel, table=True):
    """Persisted progress of one subject through its registration form.

    One row per `(subject_type, subject_id)`. `field_bag` is a flexible
    JSON key/value map of everything accepted so far.
    """
    __table_args__ = (UniqueConstraint('subject_type', 'subject_id', name='uq_progress_subject'),)

    id: Optional[int] = Field(default=None, primary_key=True)
    subject_type: str = Field(index=True)
    subject_id: int = Field(index=True)
    current_step: int = 1
    is_completed: bool = False
    field_bag: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class DynamicOption(SQLModel, table=True):
    """An entry of the option catalog.

    Top-level entries (`parent_id` is None) are the categories of a parent
    role; children sit exactly one level below them.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    parent_role: str = Field(index=True)
    parent_id: Optional[int] = Field(default=None, foreign_key='dynamicoption.id', index=True)
    name: str
    description: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0
    created_at: datetime = Field(default_factory=_utcnow)


class TeacherApplication(SQLModel, table=True):
    """A submitted teacher registration awaiting admin review."""
    id: Optional[int] = Field(default=None, primary_key=True)
    teacher_id: int = Field(foreign_key='teacher.id', index=True)
    status: str = Field(default=STATUS_PENDING, index=True)
    application_data: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    review_notes: Optional[str] = None
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
