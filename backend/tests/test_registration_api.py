from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from tutorhub import repositories

from conftest import student_payloads, submit_step, teacher_payloads, unique_email


def test_health(client):
    r = client.get('/health')
    assert r.status_code == 200
    assert r.json() == {'status': 'ok'}


def test_register_rejects_admin_role_and_duplicates(client):
    email = unique_email('dup')
    bad = client.post('/auth/register', json={'email': email, 'password': 'secret123', 'role': 'ADMIN'})
    assert bad.status_code == 400
    ok = client.post('/auth/register', json={'email': email, 'password': 'secret123', 'role': 'STUDENT'})
    assert ok.status_code == 201
    again = client.post('/auth/register', json={'email': email.upper(), 'password': 'secret123', 'role': 'STUDENT'})
    assert again.status_code == 409


def test_login_reports_pending_form(client):
    email = unique_email('fresh')
    client.post('/auth/register', json={'email': email, 'password': 'secret123', 'role': 'TEACHER'})
    r = client.post('/auth/login', json={'email': email, 'password': 'secret123'})
    assert r.status_code == 200
    body = r.json()
    assert body['role'] == 'TEACHER'
    assert body['needs_form_completion'] is True
    assert client.post('/auth/login', json={'email': email, 'password': 'wrong'}).status_code == 401


def test_registration_requires_token(client):
    assert client.get('/registration/student/progress').status_code in (401, 403)
    bad = client.get('/registration/student/progress', headers={'Authorization': 'Bearer not-a-jwt'})
    assert bad.status_code == 401


def test_list_steps_describes_forms(client):
    r = client.get('/registration/teacher/steps')
    assert r.status_code == 200
    body = r.json()
    assert body['total_steps'] == 8
    assert body['steps'][1]['fields'][0]['choices'] == ['TUTORING', 'PROJECTS_MAKER', 'COURSING', 'COACHING']
    assert client.get('/registration/parent/steps').status_code == 404


def test_progress_not_found_before_first_submission(client, student_headers):
    r = client.get('/registration/student/progress', headers=student_headers)
    assert r.status_code == 404
    assert r.json()['detail'] == 'progress not found'


def test_student_flow_to_completion(client, student_headers, student_steps, catalog):
    steps = student_payloads(student_steps, catalog)
    for n in range(1, 10):
        r = submit_step(client, student_headers, 'student', n, steps[n])
        assert r.status_code == 200, r.text
        assert r.json()['current_step'] == n + 1
        assert r.json()['completion'] == {'completed': False, 'redirect_to': None}

    r = submit_step(client, student_headers, 'student', 10, steps[10])
    assert r.status_code == 200
    body = r.json()
    assert body['is_completed'] is True
    assert body['current_step'] == 11
    assert body['completion'] == {'completed': True, 'redirect_to': '/'}
    assert body['fields']['selectedSubcategories'] == [str(catalog['algebra']), str(catalog['geometry'])]

    progress = client.get('/registration/student/progress', headers=student_headers).json()
    assert progress['is_completed'] is True
    status = client.get('/forms/completion', headers=student_headers).json()
    assert status == {'form': 'student', 'is_completed': True, 'current_step': 11, 'total_steps': 10, 'progress': 100}


def test_skipping_ahead_is_rejected_without_changing_progress(client, student_headers, student_steps):
    submit_step(client, student_headers, 'student', 1, student_steps[1])
    before = client.get('/registration/student/progress', headers=student_headers).json()

    r = submit_step(client, student_headers, 'student', 5, student_steps[5])
    assert r.status_code == 409
    detail = r.json()['detail']
    assert detail['error'] == 'StepOutOfOrder'
    assert detail['current_step'] == 2

    assert client.get('/registration/student/progress', headers=student_headers).json() == before


def test_unknown_step_number_is_out_of_order(client, student_headers):
    r = submit_step(client, student_headers, 'student', 11, {})
    assert r.status_code == 409


def test_validation_errors_name_the_field(client, student_headers, student_steps):
    r = submit_step(client, student_headers, 'student', 1, {})
    assert r.status_code == 422
    assert r.json()['detail'] == {
        'error': 'MissingRequiredField', 'field': 'studentType', 'message': 'studentType is required', 'step': 1,
    }
    r = submit_step(client, student_headers, 'student', 1, {'studentType': 'TUTOR'})
    assert r.status_code == 422
    assert r.json()['detail']['error'] == 'InvalidOptionValue'
    assert client.get('/registration/student/progress', headers=student_headers).status_code == 404


def test_subcategory_must_belong_to_selected_category(client, student_headers, student_steps, catalog):
    steps = student_payloads(student_steps, catalog)
    for n in range(1, 7):
        assert submit_step(client, student_headers, 'student', n, steps[n]).status_code == 200
    r = submit_step(client, student_headers, 'student', 7, {'selectedSubcategories': [str(catalog['physics'])]})
    assert r.status_code == 422
    assert r.json()['detail']['field'] == 'selectedSubcategories'


def test_editing_an_earlier_step(client, student_headers, student_steps):
    for n in range(1, 4):
        submit_step(client, student_headers, 'student', n, student_steps[n])
    r = submit_step(client, student_headers, 'student', 1, {'studentType': 'PARENT'})
    assert r.status_code == 200
    assert r.json()['current_step'] == 4
    assert r.json()['fields']['studentType'] == 'PARENT'


def test_form_must_match_role(client, student_headers, teacher_steps):
    r = submit_step(client, student_headers, 'teacher', 1, teacher_steps[1])
    assert r.status_code == 403
    assert client.get('/registration/teacher/progress', headers=student_headers).status_code == 403


def test_step_options_endpoint(client, catalog):
    r = client.get('/registration/student/steps/7/options', params={'dependent_ids': [catalog['math']]})
    assert r.status_code == 200
    body = r.json()
    assert body['field'] == 'selectedSubcategories'
    # ordered by sort_order
    assert [o['id'] for o in body['options']] == [catalog['geometry'], catalog['algebra']]

    static = client.get('/registration/student/steps/1/options').json()
    assert [o['id'] for o in static['options']] == ['PARENT', 'STUDENT']

    assert client.get('/registration/teacher/steps/1/options', params={'field': 'fullName'}).status_code == 404
    assert client.get('/registration/student/steps/42/options').status_code == 404


def test_teacher_flow_creates_pending_application(client, teacher_headers, teacher_steps, catalog, admin_headers):
    steps = teacher_payloads(teacher_steps, catalog)
    for n in range(1, 8):
        r = submit_step(client, teacher_headers, 'teacher', n, steps[n])
        assert r.status_code == 200, r.text
    r = submit_step(client, teacher_headers, 'teacher', 8, steps[8])
    assert r.status_code == 200
    assert r.json()['completion'] == {'completed': True, 'redirect_to': '/teacher/profile'}

    pending = client.get('/admin/applications', params={'status': 'PENDING'}, headers=admin_headers).json()
    mine = [a for a in pending if a['application_data'].get('phone') == '+971501234567'
            and a['application_data'].get('selectedSubOptions') == [str(catalog['math'])]]
    assert len(mine) == 1
    app_id = mine[0]['id']

    detail = client.get(f'/admin/applications/{app_id}', headers=admin_headers).json()
    assert detail['teacher']['full_name'] == 'Rana Haddad'
    assert detail['teacher']['is_approved'] is False

    # a second submission of the last step does not file another application
    submit_step(client, teacher_headers, 'teacher', 8, steps[8])
    pending = client.get('/admin/applications', params={'status': 'PENDING'}, headers=admin_headers).json()
    assert len([a for a in pending if a['teacher_id'] == detail['teacher_id']]) == 1

    reviewed = client.post(f'/admin/applications/{app_id}/review', json={'status': 'APPROVED', 'review_notes': 'welcome'},
                           headers=admin_headers)
    assert reviewed.status_code == 200
    assert reviewed.json()['status'] == 'APPROVED'
    assert reviewed.json()['teacher']['is_approved'] is True


def test_teacher_deep_options_must_belong_to_sub_options(client, teacher_headers, teacher_steps, catalog):
    steps = teacher_payloads(teacher_steps, catalog)
    for n in range(1, 4):
        assert submit_step(client, teacher_headers, 'teacher', n, steps[n]).status_code == 200
    r = submit_step(client, teacher_headers, 'teacher', 4, {'selectedDeepOptions': [str(catalog['physics'])]})
    assert r.status_code == 422
    assert r.json()['detail']['error'] == 'InvalidOptionValue'


def test_review_rejects_unknown_status(client, admin_headers):
    r = client.post('/admin/applications/999999/review', json={'status': 'PENDING'}, headers=admin_headers)
    assert r.status_code == 400
    r = client.post('/admin/applications/999999/review', json={'status': 'REJECTED'}, headers=admin_headers)
    assert r.status_code == 404


def test_completion_endpoint_for_new_account(client, teacher_headers, admin_headers):
    r = client.get('/forms/completion', headers=teacher_headers)
    assert r.status_code == 200
    assert r.json() == {'form': 'teacher', 'is_completed': False, 'current_step': 1, 'total_steps': 8, 'progress': 0}
    assert client.get('/forms/completion', headers=admin_headers).status_code == 404


def test_login_needs_form_completion_clears_after_completion(client, student_steps, catalog):
    email = unique_email('done')
    client.post('/auth/register', json={'email': email, 'password': 'secret123', 'role': 'STUDENT'})
    login = client.post('/auth/login', json={'email': email, 'password': 'secret123'}).json()
    assert login['needs_form_completion'] is True
    headers = {'Authorization': f"Bearer {login['access_token']}"}
    steps = student_payloads(student_steps, catalog)
    for n in range(1, 11):
        assert submit_step(client, headers, 'student', n, steps[n]).status_code == 200
    again = client.post('/auth/login', json={'email': email, 'password': 'secret123'}).json()
    assert again['needs_form_completion'] is False


def test_login_rate_limit(client, monkeypatch):
    from tutorhub import main
    from tutorhub.utils.rate_limit import LoginRateLimiter

    monkeypatch.setattr(main, '_login_limiter', LoginRateLimiter(1, 60))
    email = unique_email('limited')
    client.post('/auth/register', json={'email': email, 'password': 'secret123', 'role': 'STUDENT'})
    first = client.post('/auth/login', json={'email': email, 'password': 'wrong'})
    assert first.status_code == 401
    second = client.post('/auth/login', json={'email': email, 'password': 'wrong'})
    assert second.status_code == 429
    assert int(second.headers['Retry-After']) >= 1


def test_request_id_header(client):
    r = client.get('/registration/student/steps', headers={'X-Request-ID': 'abc123'})
    assert r.headers['X-Request-ID'] == 'abc123'
    assert client.get('/health').headers.get('X-Request-ID')


def test_oversized_number_is_a_validation_error(client, teacher_headers, teacher_steps, catalog):
    steps = teacher_payloads(teacher_steps, catalog)
    for n in range(1, 5):
        assert submit_step(client, teacher_headers, 'teacher', n, steps[n]).status_code == 200
    r = submit_step(client, teacher_headers, 'teacher', 5, {'yearsExperience': 10 ** 400})
    assert r.status_code == 422
    assert r.json()['detail']['error'] == 'InvalidFieldValue'
    assert r.json()['detail']['field'] == 'yearsExperience'
    assert client.get('/registration/teacher/progress', headers=teacher_headers).json()['current_step'] == 5


def test_failed_commit_returns_503_and_keeps_progress(client, student_headers, student_steps, monkeypatch):
    submit_step(client, student_headers, 'student', 1, student_steps[1])
    before = client.get('/registration/student/progress', headers=student_headers).json()

    def broken_commit(self):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(Session, 'commit', broken_commit)
    r = submit_step(client, student_headers, 'student', 2, student_steps[2])
    assert r.status_code == 503
    monkeypatch.undo()

    assert client.get('/registration/student/progress', headers=student_headers).json() == before
    assert submit_step(client, student_headers, 'student', 2, student_steps[2]).status_code == 200


def test_catalog_failure_returns_503_and_keeps_progress(client, student_headers, student_steps, catalog, monkeypatch):
    steps = student_payloads(student_steps, catalog)
    for n in range(1, 6):
        assert submit_step(client, student_headers, 'student', n, steps[n]).status_code == 200
    before = client.get('/registration/student/progress', headers=student_headers).json()

    def broken_query(self, *args, **kwargs):
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(repositories.OptionRepository, 'list_top_level', broken_query)
    r = submit_step(client, student_headers, 'student', 6, steps[6])
    assert r.status_code == 503
    assert client.get('/registration/student/steps/6/options').status_code == 503
    monkeypatch.undo()

    assert client.get('/registration/student/progress', headers=student_headers).json() == before
    assert submit_step(client, student_headers, 'student', 6, steps[6]).status_code == 200
