"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the tutoring marketplace
registration backend. Controllers are intentionally thin: they accept
requests, delegate to services, and translate domain errors into HTTP
responses.

Endpoints implemented:
- POST /auth/register
- POST /auth/login
- GET /registration/{form}/steps
- GET /registration/{form}/steps/{step}/options
- GET /registration/{form}/progress
- POST /registration/{form}/steps/{step}
- GET /forms/completion
- GET, PATCH /teacher/profile
- GET /admin/stats
- GET /admin/analytics/student-forms
- GET /admin/parent-roles
- GET, POST /admin/options
- PATCH, DELETE /admin/options/{option_id}
- GET /admin/applications
- GET /admin/applications/{application_id}
- POST /admin/applications/{application_id}/review
"""

from typing import List, Optional

from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from sqlmodel import Session
import json
import logging
import time
import uuid
from .database import engine, create_db_and_tables, get_session
from . import services, models
from .auth import get_current_user, require_role
from .schemas import RegisterIn, LoginIn, TokenOut, StepSubmission, OptionIn, OptionUpdate, ReviewIn
from .utils.form_errors import CatalogFetchError, StepOutOfOrder, StepValidationError, StorageError, ValidationFailed
from .utils.form_steps import FormDefinition, get_form
from .utils.rate_limit import LoginRateLimiter
from .config import settings

app = FastAPI(title="Tutoring Marketplace Registration API")
logger = logging.getLogger("tutorhub.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)
_login_limiter = LoginRateLimiter(settings.LOGIN_RATE_LIMIT_PER_MIN, settings.LOGIN_RATE_LIMIT_WINDOW_SECONDS)
_LOGGED_PREFIXES = ("/auth", "/registration", "/forms", "/teacher", "/admin")

# Wide-open CORS for a local frontend dev server.
if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()
if settings.ADMIN_EMAIL:
    with Session(engine) as _session:
        services.AuthService(_session).ensure_admin(settings.ADMIN_EMAIL, settings.ADMIN_PASSWORD)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    logged = request.url.path.startswith(_LOGGED_PREFIXES)
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        if logged:
            logger.exception(
                "request_failed %s",
                json.dumps(
                    {
                        "request_id": req_id,
                        "path": request.url.path,
                        "method": request.method,
                        "duration_ms": elapsed_ms,
                    },
                    ensure_ascii=True,
                ),
            )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    if logged:
        logger.info(
            "request_done %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                },
                ensure_ascii=True,
            ),
        )
    return response


def _form_or_404(form: str) -> FormDefinition:
    definition = get_form(form)
    if definition is None:
        raise HTTPException(status_code=404, detail=f"unknown form: {form}")
    return definition


def _enforce_login_rate_limit(request: Request, email: str) -> str:
    key = f"{request.client.host if request.client else 'unknown'}:{email.strip().lower()}"
    allowed, retry_after = _login_limiter.hit(key)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"too many login attempts; retry after {retry_after}s",
            headers={"Retry-After": str(retry_after)},
        )
    return key


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}


@app.post('/auth/register', status_code=201)
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    """Register a student or teacher account.

    Returns 409 if the email is already taken.
    """
    auth = services.AuthService(db)
    try:
        user = auth.register(payload.email, payload.password, payload.role, payload.full_name)
    except services.AccountExists as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {'id': user.id, 'email': user.email, 'role': user.role}


@app.post('/auth/login', response_model=TokenOut)
def login(payload: LoginIn, request: Request, db: Session = Depends(get_session)):
    """Authenticate a user and return a signed JWT.

    The response also tells the client whether the user still has a
    registration form to finish.
    """
    key = _enforce_login_rate_limit(request, payload.email)
    auth = services.AuthService(db)
    user = auth.authenticate(payload.email, payload.password)
    if not user:
        raise HTTPException(status_code=401, detail='invalid credentials')
    _login_limiter.reset(key)
    return TokenOut(
        access_token=auth.create_token(user),
        role=user.role,
        needs_form_completion=auth.needs_form_completion(user),
    )


@app.get('/registration/{form}/steps')
def list_steps(form: str):
    """Describe every step of a registration form and its fields."""
    definition = _form_or_404(form)
    return {
        'form': definition.name,
        'total_steps': definition.total_steps,
        'steps': [s.to_dict() for s in definition.steps],
    }


@app.get('/registration/{form}/steps/{step}/options')
def step_options(
    form: str,
    step: int,
    dependent_ids: List[str] = Query(default=[]),
    field: Optional[str] = None,
    db: Session = Depends(get_session),
):
    """Return the selectable options of a step.

    For steps whose options depend on an earlier selection, pass the
    selected ids as repeated `dependent_ids` query parameters.
    """
    definition = _form_or_404(form)
    try:
        result = services.CatalogService(db).fetch_options_for_step(definition, step, dependent_ids, field=field)
    except CatalogFetchError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if result is None:
        raise HTTPException(status_code=404, detail='no selectable options for this step')
    return {'form': definition.name, 'step': step, **result}


@app.get('/registration/{form}/progress')
def get_progress(form: str, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Return the caller's stored progress.

    404 means nothing was submitted yet; clients start at step 1.
    """
    definition = _form_or_404(form)
    svc = services.RegistrationService(db)
    try:
        progress = svc.get_progress(user, definition)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if progress is None:
        raise HTTPException(status_code=404, detail='progress not found')
    return progress.to_dict()


@app.post('/registration/{form}/steps/{step}')
def submit_step(
    form: str,
    step: int,
    submission: StepSubmission,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    """Submit one step of a registration form.

    Steps may be resubmitted (editing earlier answers) but never skipped.
    On the final step the response carries the post-registration redirect.
    """
    definition = _form_or_404(form)
    svc = services.RegistrationService(db)
    try:
        progress, outcome = svc.submit_step(user, definition, step, submission.fields)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValidationFailed as e:
        raise HTTPException(status_code=422, detail={**e.error.to_dict(), 'step': step})
    except StepOutOfOrder as e:
        raise HTTPException(
            status_code=409,
            detail={'error': e.code, 'step': e.step, 'current_step': e.current_step, 'message': str(e)},
        )
    except (StorageError, CatalogFetchError) as e:
        raise HTTPException(status_code=503, detail=str(e))
    out = progress.to_dict()
    out['completion'] = outcome.to_dict()
    return out


@app.get('/forms/completion')
def form_completion(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Return whether the caller has completed their registration form."""
    try:
        return services.RegistrationService(db).completion_status(user)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e))


@app.get('/teacher/profile')
def get_teacher_profile(db: Session = Depends(get_session), user: models.User = Depends(require_role(models.ROLE_TEACHER))):
    """Return the caller's teacher profile, approval state and latest application."""
    try:
        profile = services.TeacherProfileService(db).get_profile(user)
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if profile is None:
        raise HTTPException(status_code=404, detail='teacher profile not found')
    return profile


@app.patch('/teacher/profile')
def update_teacher_profile(
    submission: StepSubmission,
    db: Session = Depends(get_session),
    user: models.User = Depends(require_role(models.ROLE_TEACHER)),
):
    """Edit the public profile fields (name, phone, bio, photo, languages, rate)."""
    try:
        profile = services.TeacherProfileService(db).update_profile(user, submission.fields)
    except StepValidationError as e:
        raise HTTPException(status_code=422, detail=e.to_dict())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if profile is None:
        raise HTTPException(status_code=404, detail='teacher profile not found')
    return profile


@app.get('/admin/stats')
def dashboard_stats(db: Session = Depends(get_session), admin: models.User = Depends(require_role(models.ROLE_ADMIN))):
    """Application counts per status, approved teachers, students and active options."""
    return services.RegistrationAnalyticsService(db).dashboard_stats()


@app.get('/admin/analytics/student-forms')
def student_form_analytics(db: Session = Depends(get_session), admin: models.User = Depends(require_role(models.ROLE_ADMIN))):
    """Completion rate and answer distribution of the student intake form."""
    return services.RegistrationAnalyticsService(db).student_form_analytics()


@app.get('/admin/parent-roles')
def parent_roles(db: Session = Depends(get_session), admin: models.User = Depends(require_role(models.ROLE_ADMIN))):
    """List parent roles with the number of top-level options under each."""
    return services.OptionService(db).parent_roles()


@app.get('/admin/options')
def list_options(
    parent_role: str,
    include_inactive: bool = False,
    db: Session = Depends(get_session),
    admin: models.User = Depends(require_role(models.ROLE_ADMIN)),
):
    """List the options of one parent role as a two-level tree."""
    try:
        return services.OptionService(db).list_options(parent_role, include_inactive=include_inactive)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post('/admin/options', status_code=201)
def create_option(
    payload: OptionIn,
    db: Session = Depends(get_session),
    admin: models.User = Depends(require_role(models.ROLE_ADMIN)),
):
    """Create a top-level option (with `parent_role`) or a child (with `parent_id`)."""
    try:
        option = services.OptionService(db).create_option(
            payload.name,
            parent_role=payload.parent_role,
            parent_id=payload.parent_id,
            description=payload.description,
            is_active=payload.is_active,
            sort_order=payload.sort_order,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return services.option_to_dict(option)


@app.patch('/admin/options/{option_id}')
def update_option(
    option_id: int,
    payload: OptionUpdate,
    db: Session = Depends(get_session),
    admin: models.User = Depends(require_role(models.ROLE_ADMIN)),
):
    """Rename, describe, reorder or (de)activate an option."""
    try:
        option = services.OptionService(db).update_option(option_id, payload.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if option is None:
        raise HTTPException(status_code=404, detail='option not found')
    return services.option_to_dict(option)


@app.delete('/admin/options/{option_id}')
def delete_option(
    option_id: int,
    db: Session = Depends(get_session),
    admin: models.User = Depends(require_role(models.ROLE_ADMIN)),
):
    """Delete an option that has no children and is not selected anywhere."""
    try:
        deleted = services.OptionService(db).delete_option(option_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=404, detail='option not found')
    return {'status': 'deleted', 'id': option_id}


@app.get('/admin/applications')
def list_applications(
    status: Optional[str] = None,
    db: Session = Depends(get_session),
    admin: models.User = Depends(require_role(models.ROLE_ADMIN)),
):
    """List teacher applications, optionally filtered by status."""
    try:
        return services.ApplicationReviewService(db).list_applications(status)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get('/admin/applications/{application_id}')
def get_application(
    application_id: int,
    db: Session = Depends(get_session),
    admin: models.User = Depends(require_role(models.ROLE_ADMIN)),
):
    """Return one teacher application with its teacher summary."""
    application = services.ApplicationReviewService(db).get_application(application_id)
    if application is None:
        raise HTTPException(status_code=404, detail='application not found')
    return application


@app.post('/admin/applications/{application_id}/review')
def review_application(
    application_id: int,
    payload: ReviewIn,
    db: Session = Depends(get_session),
    admin: models.User = Depends(require_role(models.ROLE_ADMIN)),
):
    """Approve or reject a teacher application."""
    svc = services.ApplicationReviewService(db)
    try:
        result = svc.review(application_id, admin, payload.status, payload.review_notes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if result is None:
        raise HTTPException(status_code=404, detail='application not found')
    return result
