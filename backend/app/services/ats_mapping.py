from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import date, datetime, timezone
from typing import Any, Optional

from backend.app.models import ApplicationStatus

_MISSING = object()

EMPLOYMENT_TYPES = {
    "full time": "full-time",
    "fulltime": "full-time",
    "permanent": "full-time",
    "part time": "part-time",
    "parttime": "part-time",
    "contractor": "contract",
    "freelance": "contract",
    "temp": "temporary",
    "temporary": "temporary",
    "intern": "internship",
    "internship": "internship",
}

JOB_STATUSES = {
    "open": "active",
    "published": "active",
    "live": "active",
    "paused": "paused",
    "hold": "paused",
    "closed": "closed",
    "filled": "closed",
    "expired": "closed",
    "draft": "draft",
    "pending": "draft",
}

APPLICATION_STATUSES = {
    "submitted": ApplicationStatus.new,
    "applied": ApplicationStatus.new,
    "reviewing": ApplicationStatus.screening,
    "screening": ApplicationStatus.screening,
    "phone_screen": ApplicationStatus.screening,
    "interviewing": ApplicationStatus.interview,
    "interview_scheduled": ApplicationStatus.interview,
    "onsite": ApplicationStatus.interview,
    "testing": ApplicationStatus.assessment,
    "assessment": ApplicationStatus.assessment,
    "technical": ApplicationStatus.assessment,
    "offer_extended": ApplicationStatus.offer,
    "offer_sent": ApplicationStatus.offer,
    "hired": ApplicationStatus.hired,
    "accepted": ApplicationStatus.hired,
    "declined": ApplicationStatus.rejected,
    "rejected": ApplicationStatus.rejected,
    "not_selected": ApplicationStatus.rejected,
    "withdrawn": ApplicationStatus.withdrawn,
    "cancelled": ApplicationStatus.withdrawn,
}

AVAILABILITY = {
    "immediately": "immediate",
    "immediate": "immediate",
    "asap": "immediate",
    "now": "immediate",
    "2 weeks": "2-weeks",
    "2weeks": "2-weeks",
    "two weeks": "2-weeks",
    "1 month": "1-month",
    "1month": "1-month",
    "one month": "1-month",
    "30 days": "1-month",
    "flexible": "flexible",
    "negotiable": "flexible",
    "open": "flexible",
}

# Field-name defaults per mapping key; a connection's field_mapping overrides them.
JOB_FIELDS = {
    "id_field": "id",
    "title_field": "title",
    "description_field": "description",
    "department_field": "department",
    "location_field": "location",
    "employment_type_field": "employment_type",
    "experience_level_field": "experience_level",
    "salary_field": "salary",
    "hiring_manager_field": "hiring_manager",
    "recruiter_field": "recruiter",
    "status_field": "status",
    "posted_date_field": "posted_date",
    "expires_date_field": "expires_date",
}

CANDIDATE_FIELDS = {
    "candidate_id_field": "id",
    "first_name_field": "first_name",
    "last_name_field": "last_name",
    "email_field": "email",
    "phone_field": "phone",
    "address_field": "address",
    "linkedin_field": "linkedin_url",
    "portfolio_field": "portfolio_url",
    "current_title_field": "current_title",
    "current_company_field": "current_company",
    "desired_salary_field": "desired_salary",
    "availability_field": "availability",
    "remote_field": "open_to_remote",
}

APPLICATION_FIELDS = {
    "application_id_field": "id",
    "job_id_field": "job_id",
    "candidate_id_field": "candidate_id",
    "status_field": "status",
    "cover_letter_field": "cover_letter",
    "offered_salary_field": "offered_salary",
    "applied_date_field": "applied_at",
    "rejection_reason_field": "rejection_reason",
}

_RANGE_PATTERN = re.compile(r"\$?([\d,]+)\s*-\s*\$?([\d,]+)")
_NUMBER_PATTERN = re.compile(r"\$?([\d,]+)")


class MappingError(ValueError):
    pass


def data_get(data: Any, path: Optional[str], default: Any = None) -> Any:
    """Reads a dot-separated path such as ``location.name`` or ``items.0.id``."""
    if not path:
        return default
    current = data
    for segment in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(segment, _MISSING)
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            return default
        if current is _MISSING:
            return default
    return default if current is None else current


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def _field(mapping: Mapping[str, str], defaults: Mapping[str, str], key: str) -> str:
    return mapping.get(key) or defaults[key]


def _to_amount(raw: str) -> Optional[float]:
    cleaned = raw.replace(",", "")
    if not cleaned:
        return None
    return float(cleaned)


def normalize_employment_type(value: Any) -> str:
    return EMPLOYMENT_TYPES.get(_text(value).lower(), "full-time")


def normalize_experience_level(value: Any) -> str:
    normalized = _text(value).lower()
    if any(token in normalized for token in ("entry", "junior", "associate")):
        return "entry-level"
    if any(token in normalized for token in ("senior", "lead")):
        return "senior"
    if any(token in normalized for token in ("executive", "director", "manager")):
        return "executive"
    return "mid-level"


def normalize_job_status(value: Any) -> str:
    return JOB_STATUSES.get(_text(value).lower(), "active")


def normalize_application_status(value: Any) -> ApplicationStatus:
    normalized = _text(value).lower()
    try:
        return ApplicationStatus(normalized)
    except ValueError:
        return APPLICATION_STATUSES.get(normalized, ApplicationStatus.new)


def normalize_availability(value: Any) -> str:
    return AVAILABILITY.get(_text(value).lower(), "immediate")


def parse_date(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def extract_salary_min(value: Any) -> Optional[float]:
    if not value:
        return None
    if isinstance(value, Mapping):
        raw = value.get("min", value.get("minimum"))
        return float(raw) if raw not in (None, "") else None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value)
    match = _RANGE_PATTERN.search(text) or _NUMBER_PATTERN.search(text)
    return _to_amount(match.group(1)) if match else None


def extract_salary_max(value: Any) -> Optional[float]:
    if not value:
        return None
    if isinstance(value, Mapping):
        raw = value.get("max", value.get("maximum"))
        return float(raw) if raw not in (None, "") else None
    if isinstance(value, (int, float)):
        return None
    match = _RANGE_PATTERN.search(str(value))
    return _to_amount(match.group(2)) if match else None


def extract_amount(value: Any) -> Optional[float]:
    """First number in a salary value; used for desired and offered salaries."""
    if not value or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    match = _NUMBER_PATTERN.search(text)
    return _to_amount(match.group(1)) if match else None


def _collect(data: Mapping[str, Any], fields: tuple[str, ...]) -> list[Any]:
    collected: list[Any] = []
    for field in fields:
        if field not in data:
            continue
        value = data[field]
        if isinstance(value, list):
            collected.extend(value)
        else:
            collected.append(value)
    return [item for item in collected if item]


def _first_list(data: Mapping[str, Any], fields: tuple[str, ...]) -> list[Any]:
    for field in fields:
        value = data.get(field)
        if isinstance(value, list):
            return list(value)
    return []


def extract_custom_fields(data: Mapping[str, Any], standard_fields: set[str]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if key not in standard_fields}


def _standard_fields(
    mapping: Mapping[str, str], defaults: Mapping[str, str], extra: tuple[str, ...]
) -> set[str]:
    fields = {_field(mapping, defaults, key).split(".", 1)[0] for key in defaults}
    fields.update(value.split(".", 1)[0] for value in mapping.values() if isinstance(value, str))
    fields.update(extra)
    return fields


def _require_id(value: Any, label: str) -> str:
    text = _text(value)
    if not text:
        raise MappingError(f"{label} is missing")
    return text


def _reader(document: Mapping[str, Any], mapping: Mapping[str, str], defaults: Mapping[str, str]):
    def read(key: str, default: Any = None) -> Any:
        return data_get(document, _field(mapping, defaults, key), default)

    return read


def map_job_data(
    document: Mapping[str, Any], mapping: Optional[Mapping[str, str]] = None
) -> dict[str, Any]:
    mapping = mapping or {}
    read = _reader(document, mapping, JOB_FIELDS)
    salary = read("salary_field")
    return {
        "external_job_id": _require_id(
            read("id_field") or data_get(document, "job_id"), "job id"
        ),
        "title": _text(read("title_field")),
        "description": _text(read("description_field")),
        "department": _text(read("department_field")),
        "location": _text(read("location_field")),
        "employment_type": normalize_employment_type(read("employment_type_field", "full-time")),
        "experience_level": normalize_experience_level(
            read("experience_level_field", "entry-level")
        ),
        "salary_min": extract_salary_min(salary),
        "salary_max": extract_salary_max(salary),
        "salary_currency": "USD",
        "requirements": _collect(
            document, ("requirements", "qualifications", "skills_required", "must_have")
        ),
        "benefits": _collect(document, ("benefits", "perks", "compensation_benefits")),
        "hiring_manager": _text(read("hiring_manager_field")),
        "recruiter": _text(read("recruiter_field")),
        "status": normalize_job_status(read("status_field", "active")),
        "posted_at": parse_date(read("posted_date_field")),
        "expires_at": parse_date(read("expires_date_field")),
        "custom_fields": extract_custom_fields(
            document,
            _standard_fields(
                mapping,
                JOB_FIELDS,
                (
                    "job_id", "requirements", "qualifications", "skills_required", "must_have",
                    "benefits", "perks", "compensation_benefits", "event_type",
                ),
            ),
        ),
    }


def map_candidate_data(
    document: Mapping[str, Any], mapping: Optional[Mapping[str, str]] = None
) -> dict[str, Any]:
    mapping = mapping or {}
    read = _reader(document, mapping, CANDIDATE_FIELDS)
    return {
        "external_candidate_id": _require_id(
            read("candidate_id_field") or data_get(document, "candidate_id"), "candidate id"
        ),
        "first_name": _text(read("first_name_field")),
        "last_name": _text(read("last_name_field")),
        "email": _text(read("email_field")),
        "phone": _text(read("phone_field")),
        "address": _text(read("address_field")),
        "linkedin_url": _text(read("linkedin_field")),
        "portfolio_url": _text(read("portfolio_field")),
        "skills": _collect(document, ("skills", "technologies", "expertise", "competencies")),
        "education": _first_list(document, ("education",)),
        "experience": _first_list(document, ("experience", "work_history")),
        "current_title": _text(read("current_title_field")),
        "current_company": _text(read("current_company_field")),
        "desired_salary": extract_amount(read("desired_salary_field")),
        "availability": normalize_availability(read("availability_field", "immediate")),
        "open_to_remote": bool(read("remote_field", False)),
        "custom_fields": extract_custom_fields(
            document,
            _standard_fields(
                mapping,
                CANDIDATE_FIELDS,
                (
                    "candidate_id", "skills", "technologies", "expertise", "competencies",
                    "education", "experience", "work_history", "event_type",
                ),
            ),
        ),
    }


def map_application_data(
    document: Mapping[str, Any], mapping: Optional[Mapping[str, str]] = None
) -> dict[str, Any]:
    mapping = mapping or {}
    read = _reader(document, mapping, APPLICATION_FIELDS)
    return {
        "external_application_id": _require_id(
            read("application_id_field") or data_get(document, "application_id"),
            "application id",
        ),
        "external_job_id": _text(read("job_id_field")),
        "external_candidate_id": _text(read("candidate_id_field")),
        "status": normalize_application_status(read("status_field", "new")),
        "cover_letter": _text(read("cover_letter_field")),
        "attachments": _first_list(document, ("attachments", "files")),
        "questionnaire_responses": _first_list(
            document, ("questionnaire_responses", "custom_questions")
        ),
        "offered_salary": extract_amount(read("offered_salary_field")),
        "applied_at": parse_date(read("applied_date_field")),
        "rejection_reason": _text(read("rejection_reason_field")),
        "assessment_scores": _first_list(document, ("assessment_scores",)),
        "custom_fields": extract_custom_fields(
            document,
            _standard_fields(
                mapping,
                APPLICATION_FIELDS,
                (
                    "application_id", "attachments", "files", "questionnaire_responses",
                    "custom_questions", "assessment_scores", "interview_notes", "event_type",
                ),
            ),
        ),
    }


def extract_entity_array(
    data: Any, common_keys: tuple[str, ...], array_path: Optional[str] = None
) -> list[Any]:
    """Finds the list of entities inside a provider response body."""
    if array_path:
        found = data_get(data, array_path, [])
        return list(found) if isinstance(found, list) else []
    if isinstance(data, Mapping):
        for key in common_keys:
            value = data.get(key)
            if isinstance(value, list):
                return list(value)
        return []
    if isinstance(data, list):
        return list(data)
    return []
