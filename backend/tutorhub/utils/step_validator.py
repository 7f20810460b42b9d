"""Validate one step's payload against its field contract.

`validate` has no side effects: it either raises a `StepValidationError`
subclass or returns the normalized payload (trimmed strings, de-duplicated
multi-select lists, parsed numbers) restricted to the step's own fields.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime
from typing import Iterable, Mapping, Optional

from .form_errors import InvalidFieldValue, InvalidOptionValue, MissingRequiredField
from .form_steps import FieldKind, FieldSpec, StepDefinition


def validate(step: StepDefinition, payload: Optional[Mapping], options: Optional[Mapping[str, Iterable]] = None) -> dict:
    """Check `payload` against `step` and return the normalized fields.

    `options` maps a catalog-backed field name to the currently valid ids
    for it. A catalog field missing from `options` is not membership-checked;
    the server always passes a freshly fetched set.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise InvalidFieldValue("fields", "step payload must be an object")
    options = options or {}
    out = {}
    for spec in step.fields:
        raw = payload.get(spec.name)
        value = _normalize(spec, raw, _allowed(spec, options))
        if _is_empty(value):
            if spec.required:
                raise MissingRequiredField(spec.name)
            continue
        out[spec.name] = value
    return out


def _allowed(spec: FieldSpec, options: Mapping[str, Iterable]) -> Optional[set]:
    if spec.choices:
        return set(spec.choices)
    if spec.catalog and spec.name in options:
        return {str(o) for o in options[spec.name]}
    return None


def _is_empty(value) -> bool:
    return value is None or value == "" or value == []


def _normalize(spec: FieldSpec, raw, allowed: Optional[set]):
    if raw is None:
        return None
    if spec.kind == FieldKind.MULTI:
        return _normalize_multi(spec, raw, allowed)
    if spec.kind == FieldKind.NUMERIC:
        return _normalize_number(spec, raw)
    if spec.kind == FieldKind.CONSENT:
        return _normalize_consent(spec, raw)
    if not isinstance(raw, str):
        raise InvalidFieldValue(spec.name, f"{spec.name} must be a string")
    value = raw.strip()
    if not value:
        return value
    if spec.kind == FieldKind.SINGLE:
        if allowed is not None and value not in allowed:
            raise InvalidOptionValue(spec.name, value)
        return value
    if spec.kind == FieldKind.DATE:
        return _normalize_date(spec, value)
    _check_length(spec, value)
    if spec.pattern and not re.fullmatch(spec.pattern, value):
        raise InvalidFieldValue(spec.name, f"{spec.name} has an invalid format")
    return value


def _normalize_multi(spec: FieldSpec, raw, allowed: Optional[set]) -> list:
    if isinstance(raw, (str, bytes)) or not isinstance(raw, (list, tuple)):
        raise InvalidFieldValue(spec.name, f"{spec.name} must be a list")
    seen = []
    for item in raw:
        # catalog ids may arrive as numbers
        if isinstance(item, int) and not isinstance(item, bool):
            item = str(item)
        if not isinstance(item, str):
            raise InvalidFieldValue(spec.name, f"{spec.name} items must be strings")
        item = item.strip()
        if not item:
            raise InvalidFieldValue(spec.name, f"{spec.name} items cannot be empty")
        _check_length(spec, item)
        if allowed is not None and item not in allowed:
            raise InvalidOptionValue(spec.name, item)
        if item not in seen:
            seen.append(item)
    return seen


def _normalize_number(spec: FieldSpec, raw):
    if isinstance(raw, bool):
        raise InvalidFieldValue(spec.name, f"{spec.name} must be a number")
    if isinstance(raw, str):
        raw = raw.strip()
        if not raw:
            return None
        try:
            raw = float(raw)
        except ValueError:
            raise InvalidFieldValue(spec.name, f"{spec.name} must be a number")
    if not isinstance(raw, (int, float)):
        raise InvalidFieldValue(spec.name, f"{spec.name} must be a number")
    # ints stay ints: arbitrarily large ones cannot be converted to float
    if isinstance(raw, float):
        if not math.isfinite(raw):
            raise InvalidFieldValue(spec.name, f"{spec.name} must be a number")
        if spec.integer and not raw.is_integer():
            raise InvalidFieldValue(spec.name, f"{spec.name} must be a whole number")
        if raw.is_integer():
            raw = int(raw)
    if spec.minimum is not None and raw < spec.minimum:
        raise InvalidFieldValue(spec.name, f"{spec.name} cannot be less than {spec.minimum:g}")
    if spec.maximum is not None and raw > spec.maximum:
        raise InvalidFieldValue(spec.name, f"{spec.name} cannot exceed {spec.maximum:g}")
    return raw


def _normalize_date(spec: FieldSpec, value: str) -> str:
    try:
        parsed = datetime.fromisoformat(value).date()
    except ValueError:
        raise InvalidFieldValue(spec.name, f"{spec.name} must be an ISO date")
    if parsed > date.today():
        raise InvalidFieldValue(spec.name, f"{spec.name} cannot be in the future")
    return parsed.isoformat()


def _normalize_consent(spec: FieldSpec, raw) -> bool:
    if raw is True or (isinstance(raw, str) and raw.strip().lower() == "true"):
        return True
    raise InvalidFieldValue(spec.name, f"{spec.name} must be accepted")


def _check_length(spec: FieldSpec, value: str) -> None:
    if spec.min_length is not None and len(value) < spec.min_length:
        raise InvalidFieldValue(spec.name, f"{spec.name} must be at least {spec.min_length} characters long")
    if spec.max_length is not None and len(value) > spec.max_length:
        raise InvalidFieldValue(spec.name, f"{spec.name} cannot exceed {spec.max_length} characters")
