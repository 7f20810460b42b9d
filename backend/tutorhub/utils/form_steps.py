"""Static step definitions for the student intake and teacher registration forms.

Each form is an ordered tuple of `StepDefinition`s. A select field either
carries its option universe statically (`choices`) or names a `catalog`
query whose result depends on what was accepted earlier for `depends_on`;
that dependency is resolved by the caller before validation.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional


class FieldKind(str, Enum):
    SINGLE = "single"
    MULTI = "multi"
    TEXT = "text"
    NUMERIC = "numeric"
    DATE = "date"
    CONSENT = "consent"


# Catalog queries understood by `services.CatalogService`.
CATALOG_TUTORING_CATEGORIES = "tutoring_categories"
CATALOG_ROLE_OPTIONS = "role_options"
CATALOG_CHILDREN = "children"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    kind: FieldKind
    required: bool = True
    choices: tuple = ()
    catalog: Optional[str] = None
    depends_on: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    integer: bool = False
    pattern: Optional[str] = None

    @property
    def is_select(self) -> bool:
        return self.kind in (FieldKind.SINGLE, FieldKind.MULTI) and bool(self.choices or self.catalog)

    def to_dict(self) -> dict:
        out = {"name": self.name, "kind": self.kind.value, "required": self.required}
        if self.choices:
            out["choices"] = list(self.choices)
        if self.catalog:
            out["catalog"] = self.catalog
            out["depends_on"] = self.depends_on
        return out


@dataclass(frozen=True)
class StepDefinition:
    number: int
    title: str
    fields: tuple

    @property
    def required_fields(self) -> frozenset:
        return frozenset(f.name for f in self.fields if f.required)

    @property
    def field_names(self) -> tuple:
        return tuple(f.name for f in self.fields)

    def get_field(self, name: str) -> Optional[FieldSpec]:
        return next((f for f in self.fields if f.name == name), None)

    def to_dict(self) -> dict:
        return {"step": self.number, "title": self.title, "fields": [f.to_dict() for f in self.fields]}


@dataclass(frozen=True)
class FormDefinition:
    name: str
    role: str
    steps: tuple = field(default_factory=tuple)

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def step(self, number: int) -> Optional[StepDefinition]:
        if 1 <= number <= len(self.steps):
            return self.steps[number - 1]
        return None


def _single(name, choices, required=True):
    return FieldSpec(name, FieldKind.SINGLE, required=required, choices=tuple(choices))


GENDERS = ("MALE", "FEMALE", "OTHER")
GRADES = tuple(f"GRADE{i}" for i in range(1, 13))

STUDENT_FORM = FormDefinition(
    name="student",
    role="STUDENT",
    steps=(
        StepDefinition(1, "Who is filling in the form", (_single("studentType", ("PARENT", "STUDENT")),)),
        StepDefinition(2, "Inclusive learning", (
            _single("inclusiveLearning", ("ADHD", "DYSLEXIA", "DYSCALCULIA", "DYSGRAPHIA", "NONE")),
        )),
        StepDefinition(3, "Gender", (_single("formGender", GENDERS),)),
        StepDefinition(4, "Curriculum", (
            _single("curriculum", (
                "IB_SYSTEM", "AMERICAN_SYSTEM", "BRITISH_SYSTEM", "FRENCH_SYSTEM", "NATIONAL_SYSTEM", "OTHER",
            )),
        )),
        StepDefinition(5, "Grade", (_single("grade", GRADES),)),
        StepDefinition(6, "Categories", (
            FieldSpec("selectedCategories", FieldKind.MULTI, catalog=CATALOG_TUTORING_CATEGORIES),
        )),
        StepDefinition(7, "Subcategories", (
            FieldSpec("selectedSubcategories", FieldKind.MULTI, catalog=CATALOG_CHILDREN,
                      depends_on="selectedCategories"),
        )),
        StepDefinition(8, "Preferred time", (_single("preferredTime", ("WEEKEND", "WEEKDAYS")),)),
        StepDefinition(9, "Preferred tutor", (_single("preferredTutor", ("MALE_TUTOR", "FEMALE_TUTOR", "BOTH")),)),
        StepDefinition(10, "Session type", (_single("sessionType", ("ONLINE_SESSIONS", "OFFLINE_SESSIONS")),)),
    ),
)

TEACHER_FORM = FormDefinition(
    name="teacher",
    role="TEACHER",
    steps=(
        StepDefinition(1, "Basic information", (
            FieldSpec("fullName", FieldKind.TEXT, min_length=2, max_length=100),
            _single("gender", GENDERS),
            FieldSpec("nationality", FieldKind.TEXT, min_length=2, max_length=50),
            FieldSpec("dateOfBirth", FieldKind.DATE),
            FieldSpec("phone", FieldKind.TEXT, pattern=r"^\+?[1-9]\d{1,14}$"),
            FieldSpec("profilePhoto", FieldKind.TEXT, required=False),
        )),
        StepDefinition(2, "Roles", (
            FieldSpec("selectedRoles", FieldKind.MULTI,
                      choices=("TUTORING", "PROJECTS_MAKER", "COURSING", "COACHING")),
        )),
        StepDefinition(3, "Sub options", (
            FieldSpec("selectedSubOptions", FieldKind.MULTI, catalog=CATALOG_ROLE_OPTIONS,
                      depends_on="selectedRoles"),
        )),
        StepDefinition(4, "Deep options", (
            FieldSpec("selectedDeepOptions", FieldKind.MULTI, required=False, catalog=CATALOG_CHILDREN,
                      depends_on="selectedSubOptions"),
            FieldSpec("otherOptions", FieldKind.MULTI, required=False, min_length=1, max_length=100),
        )),
        StepDefinition(5, "Education and experience", (
            FieldSpec("universityAffiliation", FieldKind.TEXT, required=False, max_length=200),
            _single("highestEducation", ("BACHELOR", "MASTER", "MBA", "PHD", "OTHER"), required=False),
            FieldSpec("yearsExperience", FieldKind.NUMERIC, required=False, minimum=0, maximum=50, integer=True),
            FieldSpec("languagesSpoken", FieldKind.MULTI, required=False, min_length=1, max_length=50),
            FieldSpec("shortBio", FieldKind.TEXT, required=False, max_length=1000),
            FieldSpec("shortVideo", FieldKind.TEXT, required=False),
        )),
        StepDefinition(6, "Tutoring preferences", (
            _single("preferredTutoringTime", ("WEEKDAYS", "WEEKENDS", "FLEXIBLE"), required=False),
            _single("preferredTutoringMethod", ("ONLINE", "PHYSICAL"), required=False),
            _single("location", ("UAE", "LEBANON", "OTHER"), required=False),
            FieldSpec("proposedHourlyRate", FieldKind.NUMERIC, required=False, minimum=0, maximum=10000),
        )),
        StepDefinition(7, "Documents", (
            FieldSpec("cvFile", FieldKind.TEXT, required=False),
            FieldSpec("certificates", FieldKind.MULTI, required=False),
        )),
        StepDefinition(8, "Terms", (FieldSpec("agreedToTerms", FieldKind.CONSENT),)),
    ),
)


def _editable(form: FormDefinition, names: tuple, title: str) -> StepDefinition:
    """Collect fields of `form` into an all-optional step for partial updates."""
    specs = []
    for name in names:
        spec = next(s.get_field(name) for s in form.steps if s.get_field(name) is not None)
        specs.append(replace(spec, required=False))
    return StepDefinition(0, title, tuple(specs))


# Fields a teacher may edit on their profile after registering.
TEACHER_PROFILE = _editable(
    TEACHER_FORM,
    ("fullName", "phone", "shortBio", "profilePhoto", "languagesSpoken", "proposedHourlyRate"),
    "Teacher profile",
)


FORMS = {STUDENT_FORM.name: STUDENT_FORM, TEACHER_FORM.name: TEACHER_FORM}


def get_form(name: str) -> Optional[FormDefinition]:
    """Return the form registered under `name` or `None`."""
    return FORMS.get(name)


def form_for_role(role: str) -> Optional[FormDefinition]:
    """Return the registration form filled in by users of `role`."""
    return next((f for f in FORMS.values() if f.role == role), None)
