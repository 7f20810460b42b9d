"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories and
the pure registration modules in `utils/`. Services are intentionally
thin: they validate, run the domain logic and persist aggregates via
repositories. Domain failures are raised as `ValueError` subclasses (or
`None` for lookups that found nothing) and translated to HTTP responses
by the controllers.
"""

import json
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import List, Mapping, Optional

import jwt
from passlib.context import CryptContext
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .utils.completion import CompletionOutcome, on_advance
from .utils.form_errors import CatalogFetchError, StorageError
from .utils.form_steps import (
    CATALOG_CHILDREN,
    CATALOG_ROLE_OPTIONS,
    CATALOG_TUTORING_CATEGORIES,
    FieldSpec,
    STUDENT_FORM,
    TEACHER_FORM,
    TEACHER_PROFILE,
    FormDefinition,
    StepDefinition,
    form_for_role,
)
from .utils.step_sequencer import ProgressState, advance, completion_percent
from .utils.step_validator import validate

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

logger = logging.getLogger("tutorhub.registration")
catalog_logger = logging.getLogger("tutorhub.catalog")


class AccountExists(ValueError):
    """An account with the same email is already registered."""


def _log(log: logging.Logger, event: str, **payload) -> None:
    log.info("%s %s", event, json.dumps(payload, ensure_ascii=True, default=str))


class AuthService:
    """Authentication related operations (register + authenticate)."""
    SELF_SERVICE_ROLES = (models.ROLE_STUDENT, models.ROLE_TEACHER)

    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.student_repo = repositories.StudentRepository(session)

    def register(self, email: str, password: str, role: str, full_name: str = "") -> models.User:
        """Create a student or teacher account with a hashed password.

        Students get their profile immediately; the teacher profile is
        created by the first registration step.
        """
        if role not in self.SELF_SERVICE_ROLES:
            raise ValueError(f"role must be one of {', '.join(self.SELF_SERVICE_ROLES)}")
        email = email.strip().lower()
        if self.user_repo.get_by_email(email):
            raise AccountExists("user with this email already exists")
        user = models.User(email=email, password_hash=PWD_CTX.hash(password), role=role)
        try:
            self.user_repo.create(user, commit=False)
            if role == models.ROLE_STUDENT:
                self.student_repo.save(models.Student(user_id=user.id, full_name=full_name.strip()), commit=False)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError("failed to create account") from exc
        self.session.refresh(user)
        return user

    def authenticate(self, email: str, password: str) -> Optional[models.User]:
        """Verify credentials and return the user, or `None` on failure."""
        user = self.user_repo.get_by_email(email.strip().lower())
        if not user or not user.is_active:
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            return None
        return user

    def create_token(self, user: models.User) -> str:
        """Sign a JWT carrying the user's id, email and role."""
        expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {"user_id": user.id, "email": user.email, "role": user.role, "exp": int(expire.timestamp())}
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    def needs_form_completion(self, user: models.User) -> bool:
        """True while a student or teacher has not finished their registration form."""
        form = form_for_role(user.role)
        if form is None:
            return False
        profile = RegistrationService(self.session).get_subject(user, form)
        if profile is None:
            return True
        progress = repositories.ProgressRepository(self.session).load(form, profile.id)
        return progress is None or not progress.is_completed

    def ensure_admin(self, email: str, password: str) -> models.User:
        """Create an admin account unless one with `email` already exists."""
        email = email.strip().lower()
        existing = self.user_repo.get_by_email(email)
        if existing:
            return existing
        return self.user_repo.create(models.User(email=email, password_hash=PWD_CTX.hash(password), role=models.ROLE_ADMIN))


def option_to_dict(option: models.DynamicOption, children: Optional[List[models.DynamicOption]] = None) -> dict:
    out = {
        "id": option.id,
        "label": option.name,
        "description": option.description,
        "parent_role": option.parent_role,
        "parent_id": option.parent_id,
        "is_active": option.is_active,
        "sort_order": option.sort_order,
    }
    if children is not None:
        out["children"] = [option_to_dict(c) for c in children]
    return out


class CatalogService:
    """Option catalog lookups for select fields whose choices live in the database.

    Results are always read fresh from the database so validation never
    runs against a stale option set.
    """
    def __init__(self, session: Session):
        self.session = session
        self.option_repo = repositories.OptionRepository(session)

    def fetch_options_for_step(self, form: FormDefinition, step: int, dependent_ids: Optional[List[str]] = None,
                               field: Optional[str] = None) -> Optional[dict]:
        """Return `{field, options}` for a select field of `step`.

        Without `field` the step's catalog field is used, falling back to
        its first static select field. Returns `None` if the step or field
        does not exist or is not a select field.
        """
        definition = form.step(step)
        if definition is None:
            return None
        if field:
            spec = definition.get_field(field)
        else:
            selects = [f for f in definition.fields if f.is_select]
            spec = next((f for f in selects if f.catalog), selects[0] if selects else None)
        if spec is None or not spec.is_select:
            return None
        if spec.choices:
            options = [{"id": c, "label": c, "description": None} for c in spec.choices]
        else:
            options = [
                {"id": o.id, "label": o.name, "description": o.description}
                for o in self.options_for_field(spec, dependent_ids or [])
            ]
        return {"field": spec.name, "options": options}

    def options_for_field(self, spec: FieldSpec, dependent_ids: List[str]) -> List[models.DynamicOption]:
        """Run the catalog query behind `spec` for the given dependent selection."""
        try:
            if spec.catalog == CATALOG_TUTORING_CATEGORIES:
                return self.option_repo.list_top_level(roles=["TUTORING"])
            if spec.catalog == CATALOG_ROLE_OPTIONS:
                return self.option_repo.list_top_level(roles=[str(r) for r in dependent_ids]) if dependent_ids else []
            if spec.catalog == CATALOG_CHILDREN:
                parent_ids = [int(i) for i in dependent_ids if str(i).isdigit()]
                return self.option_repo.list_children(parent_ids)
        except SQLAlchemyError as exc:
            _log(catalog_logger, "catalog_fetch_failed", field=spec.name, catalog=spec.catalog, error=str(exc))
            raise CatalogFetchError(f"failed to fetch options for {spec.name}") from exc
        raise ValueError(f"unknown catalog query {spec.catalog!r}")

    def resolve_options(self, definition: StepDefinition, fields: Mapping) -> dict:
        """Build the validator's `options` mapping for every catalog field of a step.

        Dependent ids come from the selections already stored in the
        subject's field bag.
        """
        resolved = {}
        for spec in definition.fields:
            if not spec.catalog:
                continue
            dependent_ids = list(fields.get(spec.depends_on) or []) if spec.depends_on else []
            resolved[spec.name] = {str(o.id) for o in self.options_for_field(spec, dependent_ids)}
        return resolved


class RegistrationService:
    """Drive a student or teacher through their multi-step registration form."""
    def __init__(self, session: Session):
        self.session = session
        self.progress_repo = repositories.ProgressRepository(session)
        self.student_repo = repositories.StudentRepository(session)
        self.teacher_repo = repositories.TeacherRepository(session)
        self.app_repo = repositories.ApplicationRepository(session)
        self.catalog = CatalogService(session)

    def _check_access(self, user: models.User, form: FormDefinition) -> None:
        if user.role != form.role:
            raise PermissionError(f"the {form.name} form is only available to {form.role.lower()} accounts")

    def get_subject(self, user: models.User, form: FormDefinition):
        """Return the student/teacher profile behind `user`, or `None`."""
        if form.role == models.ROLE_STUDENT:
            return self.student_repo.get_by_user(user.id)
        return self.teacher_repo.get_by_user(user.id)

    def _get_or_create_subject(self, user: models.User, form: FormDefinition):
        subject = self.get_subject(user, form)
        if subject is not None:
            return subject
        try:
            if form.role == models.ROLE_STUDENT:
                return self.student_repo.save(models.Student(user_id=user.id))
            return self.teacher_repo.save(models.Teacher(user_id=user.id))
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError("failed to create registration profile") from exc

    def get_progress(self, user: models.User, form: FormDefinition) -> Optional[ProgressState]:
        """Return the stored progress of `user` or `None` when nothing was submitted yet."""
        self._check_access(user, form)
        subject = self.get_subject(user, form)
        if subject is None:
            return None
        return self.progress_repo.load(form, subject.id)

    def submit_step(self, user: models.User, form: FormDefinition, step: int,
                    fields: Optional[Mapping]) -> tuple[ProgressState, CompletionOutcome]:
        """Validate and accept one step, persist the result and report completion.

        A rejected submission leaves the stored progress untouched.
        """
        self._check_access(user, form)
        subject = self._get_or_create_subject(user, form)
        previous = self.progress_repo.load(form, subject.id) or ProgressState.initial(subject.id, form)
        definition = form.step(step)
        options = self.catalog.resolve_options(definition, previous.fields) if definition else None
        progress = advance(previous, step, fields, form, options)
        outcome = on_advance(previous, progress, user.role)
        self.progress_repo.save(progress, commit=False)
        try:
            if outcome.newly_completed:
                self._on_completed(subject, form, progress)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError(f"failed to save {form.name} progress") from exc
        _log(
            logger, "step_accepted",
            form=form.name, subject_id=subject.id, step=step,
            current_step=progress.current_step, is_completed=progress.is_completed,
        )
        if outcome.newly_completed:
            _log(logger, "registration_completed", form=form.name, subject_id=subject.id, redirect_to=outcome.redirect_to)
        return progress, outcome

    def _on_completed(self, subject, form: FormDefinition, progress: ProgressState) -> None:
        if form.role == models.ROLE_STUDENT:
            subject.is_form_completed = True
            self.student_repo.save(subject, commit=False)
            return
        for name, column in TeacherProfileService.COLUMNS.items():
            if name in progress.fields:
                setattr(subject, column, progress.fields[name])
        self.teacher_repo.save(subject, commit=False)
        self.app_repo.save(
            models.TeacherApplication(teacher_id=subject.id, application_data=dict(progress.fields)),
            commit=False,
        )

    def completion_status(self, user: models.User) -> dict:
        """Summarize how far `user` got through their registration form."""
        form = form_for_role(user.role)
        if form is None:
            raise ValueError("form completion check not applicable for this user role")
        progress = self.get_progress(user, form)
        if progress is None:
            progress = ProgressState.initial(0, form)
        return {
            "form": form.name,
            "is_completed": progress.is_completed,
            "current_step": progress.current_step,
            "total_steps": progress.total_steps,
            "progress": completion_percent(progress),
        }


class OptionService:
    """Admin management of the two-level option catalog."""
    CATALOG_FIELDS = ("selectedCategories", "selectedSubcategories", "selectedSubOptions", "selectedDeepOptions")

    def __init__(self, session: Session):
        self.session = session
        self.option_repo = repositories.OptionRepository(session)
        self.progress_repo = repositories.ProgressRepository(session)

    def parent_roles(self) -> List[dict]:
        """Return every parent role with the number of its top-level options."""
        counts = self.option_repo.parent_role_counts()
        return [{"role": role, "option_count": counts.get(role, 0)} for role in models.TEACHER_ROLES]

    def list_options(self, parent_role: str, include_inactive: bool = False) -> List[dict]:
        """Return the top-level options of `parent_role` with their children."""
        self._check_role(parent_role)
        parents = self.option_repo.list_top_level(roles=[parent_role], include_inactive=include_inactive)
        children = self.option_repo.list_children([p.id for p in parents], include_inactive=include_inactive)
        by_parent = {}
        for child in children:
            by_parent.setdefault(child.parent_id, []).append(child)
        return [option_to_dict(p, by_parent.get(p.id, [])) for p in parents]

    def create_option(self, name: str, parent_role: Optional[str] = None, parent_id: Optional[int] = None,
                      description: Optional[str] = None, is_active: bool = True, sort_order: int = 0) -> models.DynamicOption:
        """Create a top-level option or a child of an existing top-level option."""
        name = (name or "").strip()
        if not name:
            raise ValueError("name is required")
        if parent_id is not None:
            parent = self.option_repo.get(parent_id)
            if parent is None:
                raise ValueError("parent option not found")
            if parent.parent_id is not None:
                raise ValueError("options can only be nested one level deep")
            if parent_role and parent_role != parent.parent_role:
                raise ValueError("child options inherit the parent's role")
            parent_role = parent.parent_role
        self._check_role(parent_role)
        option = models.DynamicOption(
            parent_role=parent_role, parent_id=parent_id, name=name,
            description=description, is_active=is_active, sort_order=sort_order,
        )
        option = self.option_repo.save(option)
        _log(catalog_logger, "option_created", id=option.id, parent_role=parent_role, parent_id=parent_id)
        return option

    def update_option(self, option_id: int, changes: Mapping) -> Optional[models.DynamicOption]:
        """Apply `changes` (name, description, is_active, sort_order); `None` if missing."""
        option = self.option_repo.get(option_id)
        if option is None:
            return None
        if "name" in changes:
            name = (changes["name"] or "").strip()
            if not name:
                raise ValueError("name cannot be empty")
            option.name = name
        for key in ("description", "is_active", "sort_order"):
            if key in changes and changes[key] is not None:
                setattr(option, key, changes[key])
        return self.option_repo.save(option)

    def delete_option(self, option_id: int) -> bool:
        """Delete an unused leaf option; return False if it does not exist."""
        option = self.option_repo.get(option_id)
        if option is None:
            return False
        if self.option_repo.count_children(option_id) > 0:
            raise ValueError("cannot delete option with child options; delete the children first")
        if self._is_selected(option_id):
            raise ValueError("cannot delete option that is selected in a registration; deactivate it instead")
        self.option_repo.delete(option)
        _log(catalog_logger, "option_deleted", id=option_id)
        return True

    def _is_selected(self, option_id: int) -> bool:
        key = str(option_id)
        for subject_type in ("student", "teacher"):
            for row in self.progress_repo.list_by_type(subject_type):
                bag = row.field_bag or {}
                if any(key in (bag.get(name) or []) for name in self.CATALOG_FIELDS):
                    return True
        return False

    def _check_role(self, parent_role: Optional[str]) -> None:
        if parent_role not in models.TEACHER_ROLES:
            raise ValueError(f"parent_role must be one of {', '.join(models.TEACHER_ROLES)}")


def application_to_dict(application: models.TeacherApplication, teacher: Optional[models.Teacher] = None) -> dict:
    out = {
        "id": application.id,
        "teacher_id": application.teacher_id,
        "status": application.status,
        "application_data": application.application_data,
        "review_notes": application.review_notes,
        "reviewed_by": application.reviewed_by,
        "reviewed_at": application.reviewed_at.isoformat() if application.reviewed_at else None,
        "created_at": application.created_at.isoformat() if application.created_at else None,
    }
    if teacher is not None:
        out["teacher"] = {"id": teacher.id, "full_name": teacher.full_name, "is_approved": teacher.is_approved}
    return out


class ApplicationReviewService:
    """Admin review of submitted teacher applications."""
    REVIEW_STATUSES = (models.STATUS_APPROVED, models.STATUS_REJECTED)

    def __init__(self, session: Session):
        self.session = session
        self.app_repo = repositories.ApplicationRepository(session)
        self.teacher_repo = repositories.TeacherRepository(session)

    def list_applications(self, status: Optional[str] = None) -> List[dict]:
        if status and status not in models.APPLICATION_STATUSES:
            raise ValueError(f"status must be one of {', '.join(models.APPLICATION_STATUSES)}")
        return [application_to_dict(a) for a in self.app_repo.list(status)]

    def get_application(self, application_id: int) -> Optional[dict]:
        application = self.app_repo.get(application_id)
        if application is None:
            return None
        return application_to_dict(application, self.teacher_repo.get(application.teacher_id))

    def review(self, application_id: int, admin: models.User, status: str,
               review_notes: Optional[str] = None) -> Optional[dict]:
        """Approve or reject an application; approval marks the teacher approved.

        Returns `None` if the application does not exist.
        """
        if status not in self.REVIEW_STATUSES:
            raise ValueError(f"status must be one of {', '.join(self.REVIEW_STATUSES)}")
        application = self.app_repo.get(application_id)
        if application is None:
            return None
        teacher = self.teacher_repo.get(application.teacher_id)
        if teacher is None:
            raise ValueError("teacher not found for this application")
        application.status = status
        application.review_notes = review_notes
        application.reviewed_by = admin.id
        application.reviewed_at = datetime.now(timezone.utc)
        teacher.is_approved = status == models.STATUS_APPROVED
        try:
            self.app_repo.save(application, commit=False)
            self.teacher_repo.save(teacher, commit=False)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError("failed to record application review") from exc
        self.session.refresh(application)
        _log(logger, "application_reviewed", id=application.id, status=status, admin_id=admin.id)
        return application_to_dict(application, teacher)


class TeacherProfileService:
    """Read and edit the profile of a registered teacher."""
    COLUMNS = {
        "fullName": "full_name",
        "phone": "phone",
        "shortBio": "short_bio",
        "profilePhoto": "profile_photo",
        "languagesSpoken": "languages_spoken",
        "proposedHourlyRate": "proposed_hourly_rate",
    }

    def __init__(self, session: Session):
        self.session = session
        self.teacher_repo = repositories.TeacherRepository(session)
        self.progress_repo = repositories.ProgressRepository(session)
        self.app_repo = repositories.ApplicationRepository(session)

    def get_profile(self, user: models.User) -> Optional[dict]:
        """Return the teacher's profile with registration and review state, or `None`."""
        teacher = self.teacher_repo.get_by_user(user.id)
        if teacher is None:
            return None
        progress = self.progress_repo.load(TEACHER_FORM, teacher.id) or ProgressState.initial(teacher.id, TEACHER_FORM)
        application = self.app_repo.latest_for_teacher(teacher.id)
        return {
            "id": teacher.id,
            "user": {"id": user.id, "email": user.email, "role": user.role},
            "full_name": teacher.full_name,
            "phone": teacher.phone,
            "short_bio": teacher.short_bio,
            "profile_photo": teacher.profile_photo,
            "languages_spoken": list(teacher.languages_spoken or []),
            "proposed_hourly_rate": teacher.proposed_hourly_rate,
            "is_approved": teacher.is_approved,
            "registration": {
                "is_completed": progress.is_completed,
                "current_step": progress.current_step,
                "total_steps": progress.total_steps,
            },
            "application": application_to_dict(application) if application else None,
        }

    def update_profile(self, user: models.User, changes: Mapping) -> Optional[dict]:
        """Validate and apply profile edits; `None` if the teacher has no profile yet.

        Edits go through the same field rules as the registration form.
        Fields outside the editable set raise `ValueError`; invalid values
        raise the validator's `StepValidationError`.
        """
        teacher = self.teacher_repo.get_by_user(user.id)
        if teacher is None:
            return None
        unknown = sorted(set(changes) - set(TEACHER_PROFILE.field_names))
        if unknown:
            raise ValueError(f"fields cannot be edited on the profile: {', '.join(unknown)}")
        accepted = validate(TEACHER_PROFILE, changes)
        for name, value in accepted.items():
            setattr(teacher, self.COLUMNS[name], value)
        try:
            self.teacher_repo.save(teacher)
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError("failed to update teacher profile") from exc
        _log(logger, "profile_updated", teacher_id=teacher.id, fields=sorted(accepted))
        return self.get_profile(user)


def _count_values(bags: List[Mapping], name: str) -> dict:
    return dict(Counter(bag[name] for bag in bags if bag.get(name)))


class RegistrationAnalyticsService:
    """Admin dashboard figures computed from applications, profiles and field bags."""
    DEMOGRAPHIC_FIELDS = ("studentType", "inclusiveLearning", "curriculum", "grade")
    PREFERENCE_FIELDS = ("preferredTime", "preferredTutor", "sessionType")
    TOP_SELECTIONS = 10

    def __init__(self, session: Session):
        self.session = session
        self.app_repo = repositories.ApplicationRepository(session)
        self.teacher_repo = repositories.TeacherRepository(session)
        self.student_repo = repositories.StudentRepository(session)
        self.option_repo = repositories.OptionRepository(session)
        self.progress_repo = repositories.ProgressRepository(session)

    def dashboard_stats(self) -> dict:
        by_status = self.app_repo.count_by_status()
        return {
            "applications": {
                "total": sum(by_status.values()),
                "pending": by_status.get(models.STATUS_PENDING, 0),
                "approved": by_status.get(models.STATUS_APPROVED, 0),
                "rejected": by_status.get(models.STATUS_REJECTED, 0),
            },
            "users": {
                "approved_teachers": self.teacher_repo.count_approved(),
                "students": self.student_repo.count(),
            },
            "active_options": self.option_repo.count_active(),
        }

    def student_form_analytics(self) -> dict:
        """Completion rate plus answer counts over every completed student form."""
        total = self.student_repo.count()
        completed = self.student_repo.count(form_completed=True)
        bags = [row.field_bag or {} for row in self.progress_repo.list_by_type(STUDENT_FORM.name, completed_only=True)]
        return {
            "completion": {
                "total": total,
                "completed": completed,
                "pending": total - completed,
                "completion_rate": round(completed / total * 100, 2) if total else 0.0,
            },
            "demographics": {name: _count_values(bags, name) for name in self.DEMOGRAPHIC_FIELDS},
            "preferences": {name: _count_values(bags, name) for name in self.PREFERENCE_FIELDS},
            "category_selection": {
                "categories": self._top_selections(bags, "selectedCategories"),
                "subcategories": self._top_selections(bags, "selectedSubcategories"),
            },
        }

    def _top_selections(self, bags: List[Mapping], name: str) -> dict:
        counts = Counter(str(option_id) for bag in bags for option_id in (bag.get(name) or []))
        labels = self.option_repo.names(int(i) for i in counts if i.isdigit())
        # most selected first, ties by id
        top = sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:self.TOP_SELECTIONS]
        return {
            "total": sum(counts.values()),
            "top": [
                {"id": option_id, "name": labels.get(int(option_id)) if option_id.isdigit() else None, "count": count}
                for option_id, count in top
            ],
        }
