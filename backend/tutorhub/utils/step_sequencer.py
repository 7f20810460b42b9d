"""Pure state machine that moves a subject through a multi-step form.

`advance` takes the current `ProgressState`, a step number and the raw
payload, and returns the next state. It never mutates its inputs and does
no I/O; loading and saving are the progress store's job, and catalog
options for dependent fields are resolved by the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Iterable, Mapping, Optional

from .form_errors import StepOutOfOrder, StepValidationError, ValidationFailed
from .form_steps import FormDefinition
from .step_validator import validate


@dataclass(frozen=True)
class ProgressState:
    subject_id: int
    form: str
    total_steps: int
    current_step: int = 1
    fields: Mapping = field(default_factory=dict)
    is_completed: bool = False

    @classmethod
    def initial(cls, subject_id: int, form: FormDefinition) -> "ProgressState":
        """Default state for a subject with no stored progress."""
        return cls(subject_id=subject_id, form=form.name, total_steps=form.total_steps)

    def to_dict(self) -> dict:
        return {
            "form": self.form,
            "subject_id": self.subject_id,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "is_completed": self.is_completed,
            "fields": dict(self.fields),
        }


def advance(
    progress: ProgressState,
    step: int,
    payload: Optional[Mapping],
    form: FormDefinition,
    options: Optional[Mapping[str, Iterable]] = None,
) -> ProgressState:
    """Accept `payload` for `step` and return the resulting state.

    Submitting the current step moves `current_step` forward by one;
    resubmitting an earlier step only overwrites that step's fields.
    Completion is reached once `current_step` passes the last step and is
    never undone by later edits.
    """
    definition = form.step(step)
    if definition is None:
        raise StepOutOfOrder(step, progress.current_step, f"{form.name} form has no step {step}")
    if step > progress.current_step:
        raise StepOutOfOrder(step, progress.current_step)
    try:
        accepted = validate(definition, payload, options)
    except StepValidationError as exc:
        raise ValidationFailed(step, exc) from exc

    merged = dict(progress.fields)
    merged.update(accepted)
    current_step = step + 1 if step == progress.current_step else progress.current_step
    return replace(
        progress,
        current_step=current_step,
        fields=merged,
        is_completed=progress.is_completed or current_step > progress.total_steps,
    )


def completion_percent(progress: ProgressState) -> int:
    """Share of the form already accepted, 0-100."""
    if progress.is_completed:
        return 100
    if progress.total_steps <= 0:
        return 0
    return round((progress.current_step - 1) / progress.total_steps * 100)
