"""Decide what happens once a registration form has been completed."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .step_sequencer import ProgressState

REDIRECTS = {
    "STUDENT": "/",
    "TEACHER": "/teacher/profile",
}


@dataclass(frozen=True)
class CompletionOutcome:
    completed: bool
    redirect_to: Optional[str] = None
    # true only on the submission that completed the form
    newly_completed: bool = False

    def to_dict(self) -> dict:
        return {"completed": self.completed, "redirect_to": self.redirect_to}


NOT_YET_COMPLETE = CompletionOutcome(completed=False)


def redirect_for(role: str) -> str:
    try:
        return REDIRECTS[role]
    except KeyError:
        raise ValueError(f"no post-registration redirect for role {role!r}")


def on_advance(previous: Optional[ProgressState], progress: ProgressState, role: str) -> CompletionOutcome:
    """Map the state after an accepted step to a completion outcome."""
    if not progress.is_completed:
        return NOT_YET_COMPLETE
    was_completed = previous is not None and previous.is_completed
    return CompletionOutcome(completed=True, redirect_to=redirect_for(role), newly_completed=not was_completed)
