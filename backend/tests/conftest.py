import os
import tempfile
import uuid
from pathlib import Path

import pytest

# Point the app at a throwaway database before `tutorhub` is imported anywhere.
TEST_DB = Path(tempfile.gettempdir()) / f"tutorhub_test_{os.getpid()}.db"
if TEST_DB.exists():
    TEST_DB.unlink()
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB}"
os.environ["LOGIN_RATE_LIMIT_PER_MIN"] = "1000"
os.environ.pop("ADMIN_EMAIL", None)
os.environ.pop("ADMIN_PASSWORD", None)


@pytest.fixture(scope="session", autouse=True)
def reset_db():
    """Ensure a fresh SQLite database for tests and remove it afterwards."""
    from tutorhub.database import create_db_and_tables, engine
    create_db_and_tables()
    yield
    engine.dispose()
    try:
        TEST_DB.unlink()
    except OSError:
        pass


@pytest.fixture
def session():
    from sqlmodel import Session
    from tutorhub.database import engine
    with Session(engine) as s:
        yield s


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from tutorhub.main import app
    return TestClient(app)


def unique_email(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"


def _register_and_login(client, role: str) -> dict:
    email = unique_email(role.lower())
    r = client.post('/auth/register', json={'email': email, 'password': 'secret123', 'role': role, 'full_name': 'Test User'})
    assert r.status_code == 201, r.text
    login = client.post('/auth/login', json={'email': email, 'password': 'secret123'})
    assert login.status_code == 200, login.text
    return {'Authorization': f"Bearer {login.json()['access_token']}"}


@pytest.fixture
def student_headers(client):
    return _register_and_login(client, 'STUDENT')


@pytest.fixture
def teacher_headers(client):
    return _register_and_login(client, 'TEACHER')


@pytest.fixture
def admin_headers(client, session):
    from tutorhub import services
    email = unique_email('admin')
    services.AuthService(session).ensure_admin(email, 'adminpass')
    login = client.post('/auth/login', json={'email': email, 'password': 'adminpass'})
    assert login.status_code == 200, login.text
    return {'Authorization': f"Bearer {login.json()['access_token']}"}


@pytest.fixture
def catalog(session):
    """A tutoring category with two subcategories plus a second, unrelated category."""
    from tutorhub import services
    svc = services.OptionService(session)
    tag = uuid.uuid4().hex[:6]
    math = svc.create_option(f"Math {tag}", parent_role="TUTORING", sort_order=0)
    algebra = svc.create_option(f"Algebra {tag}", parent_id=math.id, sort_order=1)
    geometry = svc.create_option(f"Geometry {tag}", parent_id=math.id, sort_order=0)
    science = svc.create_option(f"Science {tag}", parent_role="TUTORING", sort_order=1)
    physics = svc.create_option(f"Physics {tag}", parent_id=science.id)
    return {
        'math': math.id, 'algebra': algebra.id, 'geometry': geometry.id,
        'science': science.id, 'physics': physics.id,
    }


@pytest.fixture
def student_steps():
    """A valid payload for every step of the student form (catalog ids unchecked)."""
    return {
        1: {'studentType': 'STUDENT'},
        2: {'inclusiveLearning': 'NONE'},
        3: {'formGender': 'FEMALE'},
        4: {'curriculum': 'IB_SYSTEM'},
        5: {'grade': 'GRADE9'},
        6: {'selectedCategories': ['1']},
        7: {'selectedSubcategories': ['2']},
        8: {'preferredTime': 'WEEKEND'},
        9: {'preferredTutor': 'BOTH'},
        10: {'sessionType': 'ONLINE_SESSIONS'},
    }


@pytest.fixture
def teacher_steps():
    """A valid payload for every step of the teacher form (catalog ids unchecked)."""
    return {
        1: {
            'fullName': 'Rana Haddad', 'gender': 'FEMALE', 'nationality': 'Lebanese',
            'dateOfBirth': '1990-04-12', 'phone': '+971501234567',
        },
        2: {'selectedRoles': ['TUTORING']},
        3: {'selectedSubOptions': ['1']},
        4: {'selectedDeepOptions': [], 'otherOptions': ['Olympiad prep']},
        5: {'highestEducation': 'MASTER', 'yearsExperience': 6, 'languagesSpoken': ['English', 'Arabic']},
        6: {'preferredTutoringMethod': 'ONLINE', 'proposedHourlyRate': 40},
        7: {'cvFile': 'uploads/cv.pdf'},
        8: {'agreedToTerms': True},
    }


def submit_step(client, headers, form, step, fields):
    return client.post(f'/registration/{form}/steps/{step}', json={'fields': fields}, headers=headers)


def student_payloads(student_steps, catalog):
    """`student_steps` with the catalog steps pointing at the `catalog` fixture."""
    steps = dict(student_steps)
    steps[6] = {'selectedCategories': [str(catalog['math'])]}
    steps[7] = {'selectedSubcategories': [catalog['algebra'], str(catalog['geometry'])]}
    return steps


def teacher_payloads(teacher_steps, catalog):
    steps = dict(teacher_steps)
    steps[3] = {'selectedSubOptions': [str(catalog['math'])]}
    steps[4] = {'selectedDeepOptions': [str(catalog['algebra'])], 'otherOptions': ['Olympiad prep']}
    return steps


def complete_form(client, headers, form, steps):
    for n in sorted(steps):
        r = submit_step(client, headers, form, n, steps[n])
        assert r.status_code == 200, r.text
    return r.json()
