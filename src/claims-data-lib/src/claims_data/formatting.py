"""
claims_data.formatting — Phone / address helpers and request body validation.

Every validator raises ValueError with a message fit for a 400 response.
"""

from __future__ import annotations

import json
import re
from datetime import date
from typing import Any

from claims_data.models import MAX_PHOTOS_PER_REPORT, ReportStatus

_NON_DIGIT = re.compile(r"\D")
_STATE_RE = re.compile(r"^[A-Z]{2}$")
_ZIP_RE = re.compile(r"^\d{5}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_FILE_NAME_RE = re.compile(r"[^a-zA-Z0-9.]")

REPORT_REQUIRED_FIELDS: tuple[str, ...] = (
    "claimNumber",
    "firstName",
    "lastName",
    "phone",
    "email",
    "address",
    "city",
    "state",
    "zip",
    "incidentDate",
    "description",
)
REPORT_OPTIONAL_FIELDS: tuple[str, ...] = (
    "apartment",
    "companyName",
    "shingleExposure",
    "photoUrls",
    "status",
    "weatherReport",
)
WEATHER_REPORT_FIELDS: tuple[str, ...] = (
    "reported_hail_size_inches",
    "weather_date",
    "weather_description",
)
PROPERTY_FIELDS: tuple[str, ...] = (
    "propertyName",
    "address",
    "apartment",
    "city",
    "state",
    "zip",
)


# ---------------------------------------------------------------------------
# Phone numbers
# ---------------------------------------------------------------------------


def _digits(value: str) -> str:
    return _NON_DIGIT.sub("", value or "")


def format_phone_number(value: str) -> str:
    """Format up to ten digits as (XXX) XXX-XXXX, progressively.

    A stored E.164 value (+1XXXXXXXXXX) loses its country code first.
    """
    text = (value or "").strip()
    if text.startswith("+1"):
        text = text[2:]
    digits = _digits(text)
    if not digits:
        return ""
    if len(digits) < 4:
        return f"({digits}"
    if len(digits) < 7:
        return f"({digits[:3]}) {digits[3:]}"
    return f"({digits[:3]}) {digits[3:6]}-{digits[6:10]}"


def to_e164(value: str) -> str:
    """Normalize a US phone number to +1XXXXXXXXXX."""
    digits = _digits(value)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) < 10:
        raise ValueError("phone number must contain at least 10 digits")
    return f"+1{digits[:10]}"


# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------


def parse_address(full: str) -> dict[str, str]:
    """Split "street[, apt...], city, ST 12345" into its components.

    Anything with fewer than three comma-separated parts is returned whole
    as the street.
    """
    empty = {"street": "", "apartment": "", "city": "", "state": "", "zip": ""}
    if not full:
        return empty
    parts = [p.strip() for p in full.split(",")]
    if len(parts) < 3:
        return {**empty, "street": full}

    state_zip = parts[-1].split()
    zip_code = state_zip.pop() if state_zip else ""
    return {
        "street": parts[0],
        "apartment": ", ".join(parts[1:-2]),
        "city": parts[-2],
        "state": " ".join(state_zip),
        "zip": zip_code,
    }


def combine_address(
    street: str,
    apartment: str | None,
    city: str,
    state: str,
    zip_code: str,
) -> str:
    apt = (apartment or "").strip()
    apt_part = f", {apt}" if apt else ""
    return f"{street.strip()}{apt_part}, {city.strip()}, {state.strip()} {zip_code.strip()}"


def clean_file_name(name: str) -> str:
    return _FILE_NAME_RE.sub("_", name)


# ---------------------------------------------------------------------------
# Field validators
# ---------------------------------------------------------------------------


def _text(body: dict[str, Any], field: str, *, min_length: int = 1) -> str:
    value = body.get(field)
    if value is None or not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise ValueError(f"{field} is required")
    text = str(value).strip()
    if len(text) < min_length:
        if min_length == 1:
            raise ValueError(f"{field} is required")
        raise ValueError(f"{field} must be at least {min_length} characters")
    return text


def _state(value: str, field: str = "state") -> str:
    state = value.strip().upper()
    if not _STATE_RE.match(state):
        raise ValueError(f"{field} must be a 2-letter state code")
    return state


def _zip(value: str) -> str:
    if not _ZIP_RE.match(value):
        raise ValueError("zip must be 5 digits")
    return value


def _email(value: str) -> str:
    if not _EMAIL_RE.match(value):
        raise ValueError("email must be a valid email address")
    return value.lower()


def validate_email(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("email is required")
    return _email(value.strip())


def _phone(value: str) -> str:
    if len(_digits(value)) < 10:
        raise ValueError("phone number must be at least 10 digits")
    return value


def _incident_date(value: str) -> str:
    try:
        return date.fromisoformat(value[:10]).isoformat()
    except ValueError as exc:
        raise ValueError("incidentDate must be an ISO date (YYYY-MM-DD)") from exc


def _positive_number(value: Any, *, field: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{field} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field} must be a number") from exc
    if number <= 0:
        raise ValueError(f"{field} must be greater than 0")
    return number


def _photo_urls(value: Any) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError("photoUrls must be a list of storage paths")
    if len(value) > MAX_PHOTOS_PER_REPORT:
        raise ValueError(f"a report holds at most {MAX_PHOTOS_PER_REPORT} photos")
    return [v.strip() for v in value if v.strip()]


def _report_status(value: Any) -> str:
    try:
        return ReportStatus(str(value).strip().lower()).value
    except ValueError as exc:
        allowed = ", ".join(s.value for s in ReportStatus)
        raise ValueError(f"status must be one of: {allowed}") from exc


def _weather_report(value: Any) -> str:
    """Normalize a weather report to its JSON string form."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValueError("weatherReport must be a JSON object") from exc
    if not isinstance(value, dict):
        raise ValueError("weatherReport must be a JSON object")
    missing = [f for f in WEATHER_REPORT_FIELDS if value.get(f) in (None, "")]
    if missing:
        raise ValueError(f"weatherReport missing field(s): {', '.join(missing)}")
    _positive_number(value["reported_hail_size_inches"], field="reported_hail_size_inches")
    return json.dumps(value)


# ---------------------------------------------------------------------------
# Body validators
# ---------------------------------------------------------------------------


def validate_report(body: dict[str, Any], *, partial: bool = False) -> dict[str, Any]:
    """Validate an incident report body and return normalized attributes.

    With partial=True only the fields present are validated (PATCH).
    """
    unknown = sorted(
        set(body) - set(REPORT_REQUIRED_FIELDS) - set(REPORT_OPTIONAL_FIELDS) - {"id", "companyId"}
    )
    if unknown:
        raise ValueError(f"Unsupported field(s): {', '.join(unknown)}")

    if not partial:
        missing = [f for f in REPORT_REQUIRED_FIELDS if body.get(f) in (None, "")]
        if missing:
            raise ValueError(f"Missing required field(s): {', '.join(missing)}")

    attrs: dict[str, Any] = {}
    for field in ("claimNumber", "firstName", "lastName", "address", "city"):
        if field in body:
            attrs[field] = _text(body, field)
    if "phone" in body:
        attrs["phone"] = _phone(_text(body, "phone"))
    if "email" in body:
        attrs["email"] = _email(_text(body, "email"))
    if "state" in body:
        attrs["state"] = _state(_text(body, "state"))
    if "zip" in body:
        attrs["zip"] = _zip(_text(body, "zip"))
    if "incidentDate" in body:
        attrs["incidentDate"] = _incident_date(_text(body, "incidentDate"))
    if "description" in body:
        attrs["description"] = _text(body, "description", min_length=10)

    for field in ("apartment", "companyName"):
        if field in body:
            value = body[field]
            attrs[field] = str(value).strip() if value is not None else None
    if body.get("shingleExposure") not in (None, ""):
        attrs["shingleExposure"] = _positive_number(
            body["shingleExposure"], field="shingleExposure"
        )
    if "photoUrls" in body:
        attrs["photoUrls"] = _photo_urls(body["photoUrls"] or [])
    if "status" in body:
        attrs["status"] = _report_status(body["status"])
    if body.get("weatherReport") not in (None, ""):
        attrs["weatherReport"] = _weather_report(body["weatherReport"])
    return attrs


def validate_property(body: dict[str, Any], *, partial: bool = False) -> dict[str, Any]:
    unknown = sorted(set(body) - set(PROPERTY_FIELDS) - {"id"})
    if unknown:
        raise ValueError(f"Unsupported field(s): {', '.join(unknown)}")

    attrs: dict[str, Any] = {}
    checks = (
        ("propertyName", 2),
        ("address", 5),
        ("city", 2),
    )
    for field, min_length in checks:
        if field in body or not partial:
            attrs[field] = _text(body, field, min_length=min_length)
    if "state" in body or not partial:
        state = _text(body, "state")
        if not _STATE_RE.match(state):
            raise ValueError("state must be 2 uppercase letters")
        attrs["state"] = state
    if "zip" in body or not partial:
        attrs["zip"] = _zip(_text(body, "zip"))
    if "apartment" in body:
        apartment = body["apartment"]
        attrs["apartment"] = (str(apartment).strip() or None) if apartment is not None else None
    return attrs


# ---------------------------------------------------------------------------
# User profile attributes
# ---------------------------------------------------------------------------

COMPANY_ATTRIBUTES = frozenset({"custom:companyId", "custom:companyName"})
PROFILE_ATTRIBUTES = frozenset(
    {
        "name",
        "given_name",
        "family_name",
        "phone_number",
        "address",
        "email",
        *COMPANY_ATTRIBUTES,
    }
)
ADDRESS_PARTS: tuple[str, ...] = ("street", "apartment", "city", "state", "zip")


def validate_profile_attributes(raw: Any) -> dict[str, str]:
    """Normalize a profile update into user-pool attributes.

    Address parts (street, apartment, city, state, zip) are combined into the
    single "address" attribute and phone_number is stored as E.164.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("attributes must be an object")

    attributes: dict[str, str] = {}
    address_parts = {k: raw.get(k) for k in ADDRESS_PARTS if raw.get(k) is not None}
    for name, value in raw.items():
        if name in ADDRESS_PARTS:
            continue
        if name not in PROFILE_ATTRIBUTES:
            raise ValueError(f"Unsupported attribute: {name}")
        attributes[name] = str(value).strip()

    if "phone_number" in attributes:
        attributes["phone_number"] = to_e164(attributes["phone_number"])
    if "email" in attributes:
        attributes["email"] = validate_email(attributes["email"])
    if address_parts:
        missing = [k for k in ("street", "city", "state", "zip") if not address_parts.get(k)]
        if missing:
            raise ValueError(f"Missing address field(s): {', '.join(missing)}")
        attributes["address"] = combine_address(
            str(address_parts["street"]),
            address_parts.get("apartment"),
            str(address_parts["city"]),
            str(address_parts["state"]),
            str(address_parts["zip"]),
        )
    if not attributes:
        raise ValueError("At least one attribute is required")
    return attributes
