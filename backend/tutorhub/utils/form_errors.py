"""Error taxonomy for multi-step registration forms.

All errors derive from `ValueError` so controllers can keep the usual
`except ValueError` translation into HTTP 4xx responses, while the more
specific classes pick the exact status code and payload.
"""

from __future__ import annotations

from typing import Optional


class StepValidationError(ValueError):
    """Base class for a payload that does not satisfy a step's contract."""

    code = "StepValidationError"

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "field": self.field, "message": self.message}


class MissingRequiredField(StepValidationError):
    code = "MissingRequiredField"

    def __init__(self, field: str):
        super().__init__(field, f"{field} is required")


class InvalidOptionValue(StepValidationError):
    code = "InvalidOptionValue"

    def __init__(self, field: str, value):
        super().__init__(field, f"{value!r} is not a valid option for {field}")
        self.value = value


class InvalidFieldValue(StepValidationError):
    code = "InvalidFieldValue"


class StepOutOfOrder(ValueError):
    """Raised when a step is submitted before the steps preceding it."""

    code = "StepOutOfOrder"

    def __init__(self, step: int, current_step: int, message: Optional[str] = None):
        super().__init__(message or f"step {step} cannot be submitted while at step {current_step}")
        self.step = step
        self.current_step = current_step


class ValidationFailed(ValueError):
    """Wraps a `StepValidationError` raised while advancing a form."""

    code = "ValidationFailed"

    def __init__(self, step: int, error: StepValidationError):
        super().__init__(f"step {step}: {error.message}")
        self.step = step
        self.error = error


class StorageError(RuntimeError):
    """The progress store could not read or write a record."""


class CatalogFetchError(RuntimeError):
    """The option catalog could not be queried."""
