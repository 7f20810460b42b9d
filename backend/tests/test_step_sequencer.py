import pytest

from tutorhub.utils.completion import on_advance
from tutorhub.utils.form_errors import InvalidOptionValue, MissingRequiredField, StepOutOfOrder, ValidationFailed
from tutorhub.utils.form_steps import STUDENT_FORM, TEACHER_FORM
from tutorhub.utils.step_sequencer import ProgressState, advance, completion_percent


def _run(form, steps, upto, subject_id=1):
    progress = ProgressState.initial(subject_id, form)
    for n in range(1, upto + 1):
        progress = advance(progress, n, steps[n], form)
    return progress


def test_fresh_student_submits_first_step():
    progress = advance(ProgressState.initial(1, STUDENT_FORM), 1, {'studentType': 'STUDENT'}, STUDENT_FORM)
    assert progress.current_step == 2
    assert progress.is_completed is False
    assert progress.total_steps == 10
    assert progress.fields == {'studentType': 'STUDENT'}


def test_skipping_ahead_is_rejected_and_state_unchanged(student_steps):
    progress = _run(STUDENT_FORM, student_steps, 1)
    snapshot = progress.to_dict()
    with pytest.raises(StepOutOfOrder) as exc:
        advance(progress, 5, student_steps[5], STUDENT_FORM)
    assert exc.value.current_step == 2
    assert progress.to_dict() == snapshot


@pytest.mark.parametrize("step", [0, 11, -3])
def test_unknown_step_numbers_are_out_of_order(student_steps, step):
    with pytest.raises(StepOutOfOrder):
        advance(ProgressState.initial(1, STUDENT_FORM), step, {}, STUDENT_FORM)


def test_final_student_step_completes_and_redirects_home(student_steps):
    progress = _run(STUDENT_FORM, student_steps, 9)
    assert progress.current_step == 10
    done = advance(progress, 10, student_steps[10], STUDENT_FORM)
    assert done.is_completed is True
    assert done.current_step == 11
    outcome = on_advance(progress, done, 'STUDENT')
    assert outcome.completed and outcome.newly_completed
    assert outcome.redirect_to == '/'


def test_teacher_empty_roles_fail_validation(teacher_steps):
    progress = _run(TEACHER_FORM, teacher_steps, 1)
    with pytest.raises(ValidationFailed) as exc:
        advance(progress, 2, {'selectedRoles': []}, TEACHER_FORM)
    assert isinstance(exc.value.error, MissingRequiredField)
    assert exc.value.error.field == 'selectedRoles'


def test_editing_a_past_step_keeps_current_step(student_steps):
    progress = _run(STUDENT_FORM, student_steps, 5)
    assert progress.current_step == 6
    edited = advance(progress, 3, {'formGender': 'MALE'}, STUDENT_FORM)
    assert edited.current_step == 6
    assert edited.fields['formGender'] == 'MALE'
    assert edited.fields['curriculum'] == 'IB_SYSTEM'


def test_resubmission_is_idempotent(student_steps):
    once = advance(ProgressState.initial(1, STUDENT_FORM), 1, student_steps[1], STUDENT_FORM)
    twice = advance(once, 1, student_steps[1], STUDENT_FORM)
    assert twice == once


def test_fields_accumulate_across_steps(teacher_steps):
    progress = _run(TEACHER_FORM, teacher_steps, 1)
    first = dict(progress.fields)
    for n in range(2, 9):
        progress = advance(progress, n, teacher_steps[n], TEACHER_FORM)
        for key, value in first.items():
            assert progress.fields[key] == value


@pytest.mark.parametrize("form,fixture", [(STUDENT_FORM, 'student_steps'), (TEACHER_FORM, 'teacher_steps')])
def test_completion_boundary(request, form, fixture):
    steps = request.getfixturevalue(fixture)
    progress = _run(form, steps, form.total_steps - 1)
    assert not progress.is_completed
    done = advance(progress, form.total_steps, steps[form.total_steps], form)
    assert done.is_completed and done.current_step == form.total_steps + 1


def test_completion_does_not_regress_on_edit(student_steps):
    done = _run(STUDENT_FORM, student_steps, 10)
    edited = advance(done, 2, {'inclusiveLearning': 'ADHD'}, STUDENT_FORM)
    assert edited.is_completed is True
    assert edited.current_step == 11
    assert on_advance(done, edited, 'STUDENT').newly_completed is False


def test_advance_does_not_mutate_input(student_steps):
    progress = _run(STUDENT_FORM, student_steps, 2)
    fields_before = dict(progress.fields)
    advance(progress, 3, student_steps[3], STUDENT_FORM)
    assert dict(progress.fields) == fields_before
    assert progress.current_step == 3


def test_catalog_options_are_enforced(student_steps):
    progress = _run(STUDENT_FORM, student_steps, 6)
    with pytest.raises(ValidationFailed) as exc:
        advance(progress, 7, {'selectedSubcategories': ['2']}, STUDENT_FORM, {'selectedSubcategories': {'3'}})
    assert isinstance(exc.value.error, InvalidOptionValue)


def test_completion_percent(student_steps):
    assert completion_percent(ProgressState.initial(1, STUDENT_FORM)) == 0
    assert completion_percent(_run(STUDENT_FORM, student_steps, 5)) == 50
    assert completion_percent(_run(STUDENT_FORM, student_steps, 10)) == 100
