"""Field validation for registration and help-request submission.

Validators never raise on bad input; they return a ``{field: message}`` map
that is empty when everything checks out.
"""

import re
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from schemas import EMERGENCY_TYPES, REGISTRABLE_ROLES, SEVERITIES

PHONE_RE = re.compile(r"01\d{9}", re.ASCII)

_email_adapter = TypeAdapter(EmailStr)


def is_valid_email(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    try:
        _email_adapter.validate_python(value)
    except PydanticValidationError:
        return False
    return True


def clean_phone(value: Any) -> str:
    """Strip everything but digits, the way the phone field is typed on forms."""
    if not isinstance(value, str):
        return ""
    return re.sub(r"\D", "", value)


def _text(fields: Mapping[str, Any], key: str) -> str:
    value = fields.get(key)
    return value.strip() if isinstance(value, str) else ""


def parse_coordinates(value: Any) -> Tuple[Optional[Tuple[float, float]], Optional[str]]:
    """Return ``((lat, lng), None)``, ``(None, None)`` when absent, or an error."""
    if value is None:
        return None, None
    if not isinstance(value, Mapping):
        return None, "Coordinates must be an object with lat and lng"
    lat, lng = value.get("lat"), value.get("lng")
    if lat is None and lng is None:
        return None, None
    if lat is None or lng is None:
        return None, "Both latitude and longitude are required"
    try:
        lat, lng = float(lat), float(lng)
    except (TypeError, ValueError):
        return None, "Latitude and longitude must be numbers"
    if not -90 <= lat <= 90:
        return None, "Latitude must be between -90 and 90"
    if not -180 <= lng <= 180:
        return None, "Longitude must be between -180 and 180"
    return (lat, lng), None


def validate_request_fields(fields: Mapping[str, Any]) -> Dict[str, str]:
    errors: Dict[str, str] = {}

    if len(_text(fields, "victimName")) < 3:
        errors["victimName"] = "Name is required (min 3 characters)"

    phone = fields.get("phone")
    if not isinstance(phone, str) or not PHONE_RE.fullmatch(phone):
        errors["phone"] = "Valid Bangladesh phone number required"

    if len(_text(fields, "address")) < 10:
        errors["address"] = "Detailed address is required"

    if fields.get("emergencyType") not in EMERGENCY_TYPES:
        errors["emergencyType"] = "Emergency type is required"

    if len(_text(fields, "description")) < 20:
        errors["description"] = "Detailed description is required (min 20 characters)"

    severity = fields.get("severity")
    if severity is not None and severity not in SEVERITIES:
        errors["severity"] = "Severity must be one of: " + ", ".join(SEVERITIES)

    email = fields.get("email")
    if email and not is_valid_email(email):
        errors["email"] = "Invalid email format"

    _, coord_error = parse_coordinates(fields.get("coordinates"))
    if coord_error:
        errors["coordinates"] = coord_error

    return errors


def validate_registration(fields: Mapping[str, Any]) -> Dict[str, str]:
    errors: Dict[str, str] = {}

    if len(_text(fields, "name")) < 3:
        errors["name"] = "Name must be at least 3 characters"

    email = fields.get("email")
    if not email:
        errors["email"] = "Email is required"
    elif not is_valid_email(email):
        errors["email"] = "Invalid email format"

    phone = clean_phone(fields.get("phone"))
    if not phone:
        errors["phone"] = "Phone number is required"
    elif len(phone) != 11 or not phone.startswith("01"):
        errors["phone"] = "Invalid phone number (must be 11 digits starting with 01)"

    password = fields.get("password")
    if not password:
        errors["password"] = "Password is required"
    elif not isinstance(password, str) or len(password) < 6:
        errors["password"] = "Password must be at least 6 characters"

    confirm = fields.get("confirmPassword")
    if confirm is not None and confirm != password:
        errors["confirmPassword"] = "Passwords do not match"

    if fields.get("role") not in REGISTRABLE_ROLES:
        errors["role"] = "Please select your role"

    _, coord_error = parse_coordinates(fields.get("coordinates"))
    if coord_error:
        errors["coordinates"] = coord_error

    return errors
