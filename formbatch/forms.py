from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
import json
from pathlib import Path

from formbatch.config import Settings
from formbatch.schemas import Record


class FieldKind(str, Enum):
    TEXT = "text"
    SELECT = "select"
    CHECKBOX = "checkbox"
    CHECKBOX_GROUP = "checkbox_group"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    locator: str
    kind: FieldKind = FieldKind.TEXT
    fallback_hint: str | None = None


DEFAULT_SUBMIT_SELECTOR = 'input[type="submit"], button[type="submit"], #submit-button, .submit-button'


@dataclass(frozen=True)
class FormLayout:
    fields: tuple[FieldSpec, ...]
    defaults: Mapping[str, str] = field(default_factory=dict)
    submit_selector: str = DEFAULT_SUBMIT_SELECTOR
    label_fields: tuple[str, ...] = ()

    def describe(self, record: Record) -> str:
        parts = [(record.get(name) or "").strip() for name in self.label_fields]
        return " ".join(part for part in parts if part) or "record"

    def spec_for(self, name: str) -> FieldSpec:
        for spec in self.fields:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def values_for(self, record: Record) -> Iterator[tuple[str, str]]:
        for spec in self.fields:
            value = (record.get(spec.name) or "").strip() or self.defaults.get(spec.name, "")
            if value:
                yield spec.name, value


def default_layout() -> FormLayout:
    select = FieldKind.SELECT
    return FormLayout(
        fields=(
            FieldSpec("Title", 'select[name="answer-0"]', select),
            FieldSpec("First Name", '[name="answer-1"]'),
            FieldSpec("Last Name", '[name="answer-2"]'),
            FieldSpec("Phone Number", '[name="answer-3"]'),
            FieldSpec("Kingschat Handle", '[name="answer-4"]'),
            FieldSpec("Email", '[name="answer-5"]'),
            FieldSpec("Birthday", '[name="answer-6"]'),
            FieldSpec("Marital Status", '[name="answer-7"]', select, fallback_hint="others"),
            FieldSpec("Gender", '[name="answer-8"]', select),
            FieldSpec("Age", '[name="answer-9"]', select, fallback_hint="adult"),
            FieldSpec("Group", '[name="answer-10"]', select, fallback_hint="limitless"),
            FieldSpec("Church Name", '[name="answer-11"]'),
            FieldSpec("Cell Name", '[name="answer-12"]'),
            FieldSpec("Sub-Teams", 'input[name="answer-13[]"]', FieldKind.CHECKBOX_GROUP),
        ),
        defaults={
            "Phone Number": "0000000000",
            "Kingschat Handle": "@test",
            "Email": "test@test.com",
            "Birthday": "1st January",
            "Marital Status": "Single",
            "Gender": "Male",
            "Age": "Adult ( 20 years and above)",
            "Group": "CE LIMITLESS GROUP",
            "Church Name": "Test Church",
            "Cell Name": "Test Cell",
            "Sub-Teams": "USHERS",
        },
        label_fields=("First Name", "Last Name"),
    )


def load_layout(path: Path) -> FormLayout:
    with path.open("r", encoding="utf-8") as infile:
        payload = json.load(infile)

    fields = tuple(
        FieldSpec(
            name=str(item["name"]),
            locator=str(item["locator"]),
            kind=FieldKind(item.get("kind", FieldKind.TEXT.value)),
            fallback_hint=item.get("fallback_hint"),
        )
        for item in payload["fields"]
    )
    if not fields:
        raise ValueError(f"form layout has no fields: {path}")

    return FormLayout(
        fields=fields,
        defaults={str(key): str(value) for key, value in payload.get("defaults", {}).items()},
        submit_selector=payload.get("submit_selector", DEFAULT_SUBMIT_SELECTOR),
        label_fields=tuple(str(name) for name in payload.get("label_fields", ())),
    )


def resolve_layout(settings: Settings) -> FormLayout:
    if settings.form_layout_path:
        return load_layout(Path(settings.form_layout_path))
    return default_layout()
