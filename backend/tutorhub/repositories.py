"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
profiles, registration progress, catalog options, applications).
Repositories return SQLModel objects and perform commits/refreshes where
appropriate; `commit=False` lets a service group several writes into one
transaction.
"""

from datetime import datetime, timezone
from typing import Iterable, List, Optional
from sqlmodel import Session, select
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from . import models
from .utils.form_errors import StorageError
from .utils.form_steps import FormDefinition
from .utils.step_sequencer import ProgressState


def _persist(session: Session, obj, commit: bool):
    session.add(obj)
    if commit:
        session.commit()
        session.refresh(obj)
    else:
        session.flush()
    return obj


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User, commit: bool = True) -> models.User:
        """Persist a new user and return the managed instance."""
        return _persist(self.session, user, commit)

    def get_by_email(self, email: str) -> Optional[models.User]:
        """Return a `User` by email or `None` if not found."""
        stmt = select(models.User).where(models.User.email == email)
        return self.session.exec(stmt).first()

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)


class StudentRepository:
    """Student profile lookups and writes."""
    def __init__(self, session: Session):
        self.session = session

    def get_by_user(self, user_id: int) -> Optional[models.Student]:
        stmt = select(models.Student).where(models.Student.user_id == user_id)
        return self.session.exec(stmt).first()

    def save(self, student: models.Student, commit: bool = True) -> models.Student:
        return _persist(self.session, student, commit)

    def count(self, form_completed: Optional[bool] = None) -> int:
        stmt = select(func.count(models.Student.id))
        if form_completed is not None:
            stmt = stmt.where(models.Student.is_form_completed == form_completed)
        return self.session.exec(stmt).one()


class TeacherRepository:
    """Teacher profile lookups and writes."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, teacher_id: int) -> Optional[models.Teacher]:
        return self.session.get(models.Teacher, teacher_id)

    def get_by_user(self, user_id: int) -> Optional[models.Teacher]:
        stmt = select(models.Teacher).where(models.Teacher.user_id == user_id)
        return self.session.exec(stmt).first()

    def save(self, teacher: models.Teacher, commit: bool = True) -> models.Teacher:
        return _persist(self.session, teacher, commit)

    def count_approved(self) -> int:
        stmt = select(func.count(models.Teacher.id)).where(models.Teacher.is_approved == True)  # noqa: E712
        return self.session.exec(stmt).one()


class ProgressRepository:
    """Progress store: load and upsert `RegistrationProgress` rows.

    Rows are keyed by `(subject_type, subject_id)`. Saves are full
    upserts with last-write-wins semantics; there is no version token.
    """
    def __init__(self, session: Session):
        self.session = session

    def _get_row(self, subject_type: str, subject_id: int) -> Optional[models.RegistrationProgress]:
        stmt = select(models.RegistrationProgress).where(
            models.RegistrationProgress.subject_type == subject_type,
            models.RegistrationProgress.subject_id == subject_id
        )
        return self.session.exec(stmt).first()

    def load(self, form: FormDefinition, subject_id: int) -> Optional[ProgressState]:
        """Return the stored progress of a subject or `None` (not found).

        `None` is not an error: the caller starts the subject at step 1
        with an empty field bag.
        """
        try:
            row = self._get_row(form.name, subject_id)
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to load {form.name} progress for subject {subject_id}") from exc
        if row is None:
            return None
        return ProgressState(
            subject_id=row.subject_id,
            form=row.subject_type,
            total_steps=form.total_steps,
            current_step=row.current_step,
            fields=dict(row.field_bag or {}),
            is_completed=row.is_completed,
        )

    def save(self, state: ProgressState, commit: bool = True) -> models.RegistrationProgress:
        """Upsert `state`; database failures roll back and raise `StorageError`.

        If a concurrent request inserted the row between our lookup and our
        insert, the unique constraint fires; the transaction is rolled back
        and the save is retried once as an update. Call `save` before any
        other write of the same transaction.
        """
        try:
            try:
                return self._upsert(state, commit)
            except IntegrityError:
                self.session.rollback()
                return self._upsert(state, commit)
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError(f"failed to save {state.form} progress for subject {state.subject_id}") from exc

    def _upsert(self, state: ProgressState, commit: bool) -> models.RegistrationProgress:
        now = datetime.now(timezone.utc)
        row = self._get_row(state.form, state.subject_id)
        if row is None:
            row = models.RegistrationProgress(subject_type=state.form, subject_id=state.subject_id)
        row.current_step = state.current_step
        row.field_bag = dict(state.fields)
        row.is_completed = state.is_completed
        if state.is_completed and row.completed_at is None:
            row.completed_at = now
        row.updated_at = now
        return _persist(self.session, row, commit)

    def list_by_type(self, subject_type: str, completed_only: bool = False) -> List[models.RegistrationProgress]:
        """Return every progress row of one form, optionally only the completed ones."""
        stmt = select(models.RegistrationProgress).where(models.RegistrationProgress.subject_type == subject_type)
        if completed_only:
            stmt = stmt.where(models.RegistrationProgress.is_completed == True)  # noqa: E712
        return self.session.exec(stmt).all()


class OptionRepository:
    """Queries over the `DynamicOption` catalog tree."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, option_id: int) -> Optional[models.DynamicOption]:
        return self.session.get(models.DynamicOption, option_id)

    def list_top_level(self, roles: Optional[Iterable[str]] = None, include_inactive: bool = False) -> List[models.DynamicOption]:
        """Return top-level options, optionally restricted to `roles`."""
        stmt = select(models.DynamicOption).where(models.DynamicOption.parent_id == None)  # noqa: E711
        if roles is not None:
            stmt = stmt.where(models.DynamicOption.parent_role.in_(list(roles)))
        if not include_inactive:
            stmt = stmt.where(models.DynamicOption.is_active == True)  # noqa: E712
        stmt = stmt.order_by(models.DynamicOption.sort_order, models.DynamicOption.name)
        return self.session.exec(stmt).all()

    def list_children(self, parent_ids: Iterable[int], include_inactive: bool = False) -> List[models.DynamicOption]:
        """Return the children of every id in `parent_ids`."""
        ids = list(parent_ids)
        if not ids:
            return []
        stmt = select(models.DynamicOption).where(models.DynamicOption.parent_id.in_(ids))
        if not include_inactive:
            stmt = stmt.where(models.DynamicOption.is_active == True)  # noqa: E712
        stmt = stmt.order_by(models.DynamicOption.sort_order, models.DynamicOption.name)
        return self.session.exec(stmt).all()

    def count_children(self, option_id: int) -> int:
        stmt = select(func.count(models.DynamicOption.id)).where(models.DynamicOption.parent_id == option_id)
        return self.session.exec(stmt).one()

    def count_active(self) -> int:
        stmt = select(func.count(models.DynamicOption.id)).where(models.DynamicOption.is_active == True)  # noqa: E712
        return self.session.exec(stmt).one()

    def names(self, option_ids: Iterable[int]) -> dict:
        """Return `{id: name}` for the options of `option_ids` that exist."""
        ids = list(option_ids)
        if not ids:
            return {}
        stmt = select(models.DynamicOption.id, models.DynamicOption.name).where(models.DynamicOption.id.in_(ids))
        return {option_id: name for option_id, name in self.session.exec(stmt).all()}

    def parent_role_counts(self) -> dict:
        """Return `{parent_role: number of top-level options}`."""
        stmt = (
            select(models.DynamicOption.parent_role, func.count(models.DynamicOption.id))
            .where(models.DynamicOption.parent_id == None)  # noqa: E711
            .group_by(models.DynamicOption.parent_role)
            .order_by(models.DynamicOption.parent_role)
        )
        return {role: count for role, count in self.session.exec(stmt).all()}

    def save(self, option: models.DynamicOption) -> models.DynamicOption:
        return _persist(self.session, option, commit=True)

    def delete(self, option: models.DynamicOption) -> None:
        self.session.delete(option)
        self.session.commit()


class ApplicationRepository:
    """Persist and query `TeacherApplication` records."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, application_id: int) -> Optional[models.TeacherApplication]:
        return self.session.get(models.TeacherApplication, application_id)

    def list(self, status: Optional[str] = None) -> List[models.TeacherApplication]:
        """Return applications newest first, optionally filtered by status."""
        stmt = select(models.TeacherApplication)
        if status:
            stmt = stmt.where(models.TeacherApplication.status == status)
        stmt = stmt.order_by(models.TeacherApplication.created_at.desc(), models.TeacherApplication.id.desc())
        return self.session.exec(stmt).all()

    def latest_for_teacher(self, teacher_id: int) -> Optional[models.TeacherApplication]:
        stmt = (
            select(models.TeacherApplication)
            .where(models.TeacherApplication.teacher_id == teacher_id)
            .order_by(models.TeacherApplication.id.desc())
        )
        return self.session.exec(stmt).first()

    def save(self, application: models.TeacherApplication, commit: bool = True) -> models.TeacherApplication:
        return _persist(self.session, application, commit)

    def count_by_status(self) -> dict:
        """Return `{status: number of applications}`."""
        stmt = (
            select(models.TeacherApplication.status, func.count(models.TeacherApplication.id))
            .group_by(models.TeacherApplication.status)
        )
        return {status: count for status, count in self.session.exec(stmt).all()}
