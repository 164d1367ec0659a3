from collections.abc import Callable, Iterable
import csv
import io
import logging
from pathlib import Path
import re

from formbatch.schemas import IngestResult, InvalidRow


logger = logging.getLogger(__name__)

REQUIRED_FIELDS = (
    "Title",
    "First Name",
    "Last Name",
    "Phone Number",
    "Email",
    "Marital Status",
    "Group",
    "Church Name",
)
OPTIONAL_FIELDS = ("Kingschat Handle", "Birthday", "Age", "Sub-Teams", "Gender", "Cell Name")
HEADER_ALIASES = {"Name of Cell": "Cell Name"}

SAMPLE_COLUMNS = (
    "Title",
    "First Name",
    "Last Name",
    "Phone Number",
    "Kingschat Handle",
    "Email",
    "Birthday",
    "Marital Status",
    "Gender",
    "Age",
    "Group",
    "Church Name",
    "Cell Name",
    "Sub-Teams",
)

KNOWN_TITLES = ("Pastor", "Elder", "Deacon", "Deaconess", "Brother", "Sister", "Mr", "Mrs", "Miss", "Dr", "Prof")
MARITAL_STATUSES = ("Single", "Married", "Divorced", "Widowed", "Separated")
GENDERS = ("Male", "Female", "Other", "Prefer not to say")
AGE_GROUPS = (
    "Under 18",
    "18-24",
    "25-34",
    "35-44",
    "45-54",
    "55-64",
    "65+",
    "Adult ( 20 years and above)",
    "Youth (13-35)",
    "Children (Under 13)",
)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
NAME_RE = re.compile(r"^[a-zA-Z\s'-]+$")
BIRTHDAY_RE = re.compile(r"^(\d{1,2})[/\-\s](\d{1,2}|[A-Za-z]+)[/\-\s](\d{4})$")
DEFAULT_COUNTRY_CODE = "234"


class IngestionError(ValueError):
    pass


def _contains_any(value: str, choices: Iterable[str]) -> bool:
    lowered = value.lower()
    return any(choice.lower() in lowered for choice in choices)


def validate_email(value: str, field: str) -> str:
    if not EMAIL_RE.match(value):
        raise IngestionError(f"Invalid email format: {value}")
    return value.lower()


def validate_phone(value: str, field: str) -> str:
    digits = re.sub(r"\D", "", value)
    if len(digits) < 10 or len(digits) > 15:
        raise IngestionError(f"Invalid phone number format: {value}")
    if digits.startswith(DEFAULT_COUNTRY_CODE):
        return f"+{digits}"
    # Local numbers drop their trunk prefix once the country code is added.
    return f"+{DEFAULT_COUNTRY_CODE}{digits.removeprefix('0')}"


def validate_name(value: str, field: str) -> str:
    if len(value) < 2:
        raise IngestionError(f"{field} must be at least 2 characters long")
    if not NAME_RE.match(value):
        raise IngestionError(f"{field} contains invalid characters")
    return value


def validate_title(value: str, field: str) -> str:
    if not _contains_any(value, KNOWN_TITLES):
        logger.warning("unusual title: %s", value)
    return value


def validate_birthday(value: str, field: str) -> str:
    if not BIRTHDAY_RE.match(value):
        raise IngestionError(f"Invalid birthday format: {value}. Use DD/MM/YYYY or similar")
    return value


def validate_marital_status(value: str, field: str) -> str:
    if not _contains_any(value, MARITAL_STATUSES):
        raise IngestionError(f"Invalid marital status: {value}")
    return value


def validate_gender(value: str, field: str) -> str:
    if not _contains_any(value, GENDERS):
        raise IngestionError(f"Invalid gender: {value}")
    return value


def validate_age(value: str, field: str) -> str:
    if not _contains_any(value, AGE_GROUPS):
        logger.warning("unusual age category: %s", value)
    return value


FIELD_VALIDATORS: dict[str, Callable[[str, str], str]] = {
    "Email": validate_email,
    "Phone Number": validate_phone,
    "First Name": validate_name,
    "Last Name": validate_name,
    "Title": validate_title,
    "Birthday": validate_birthday,
    "Marital Status": validate_marital_status,
    "Gender": validate_gender,
    "Age": validate_age,
}


def validate_row(row: dict[str, str]) -> dict[str, str]:
    data = {key.strip(): (value or "").strip() for key, value in row.items() if key}
    for alias, canonical in HEADER_ALIASES.items():
        if alias in data and canonical not in data:
            data[canonical] = data[alias]

    for field in REQUIRED_FIELDS:
        if not data.get(field):
            raise IngestionError(f"Missing required field: {field}")

    record: dict[str, str] = {}
    for field, value in data.items():
        if field not in REQUIRED_FIELDS and field not in OPTIONAL_FIELDS:
            continue
        if not value:
            continue
        validator = FIELD_VALIDATORS.get(field)
        record[field] = validator(value, field) if validator else value
    return record


def ingest_rows(rows: Iterable[dict[str, str]]) -> IngestResult:
    records: list[dict[str, str]] = []
    errors: list[InvalidRow] = []
    total = 0

    for total, row in enumerate(rows, start=1):
        try:
            records.append(validate_row(row))
        except IngestionError as exc:
            errors.append(InvalidRow(row=total, error=str(exc), data=dict(row)))
            logger.warning("row %s validation failed: %s", total, exc)

    logger.info(
        "csv processing completed",
        extra={"valid_records": len(records), "invalid_records": len(errors)},
    )
    return IngestResult(records=records, errors=errors, total_rows=total)


def ingest_csv_text(text: str) -> IngestResult:
    reader = csv.DictReader(io.StringIO(text))
    rows = (row for row in reader if any((value or "").strip() for value in row.values() if isinstance(value, str)))
    return ingest_rows(rows)


def ingest_csv(path: Path) -> IngestResult:
    if not path.exists():
        raise FileNotFoundError(f"input file not found: {path}")
    return ingest_csv_text(path.read_text(encoding="utf-8-sig"))


def sample_rows() -> list[dict[str, str]]:
    return [
        {
            "Title": "Pastor",
            "First Name": "John",
            "Last Name": "Doe",
            "Phone Number": "08012345678",
            "Kingschat Handle": "@johndoe",
            "Email": "john@example.com",
            "Birthday": "15 March 1985",
            "Marital Status": "Married",
            "Gender": "Male",
            "Age": "Adult ( 20 years and above)",
            "Group": "CE LIMITLESS GROUP",
            "Church Name": "CE Port Harcourt",
            "Cell Name": "Victory Cell",
            "Sub-Teams": "Media, Ushering",
        }
    ]


def render_sample_csv() -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=list(SAMPLE_COLUMNS), quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writeheader()
    writer.writerows(sample_rows())
    return buffer.getvalue()
