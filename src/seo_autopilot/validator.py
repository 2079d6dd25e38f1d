from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Tuple

OPPORTUNITY_TYPES = ("CITY_GAP", "SERVICE_GAP", "POSITION_OPPORTUNITY")
PROPOSAL_ACTIONS = ("CREATE_PAGE", "REWRITE_META", "EXPAND_CONTENT")

CITY_RE = re.compile(r"^[a-zA-Z\s\-']+$")
SERVICE_RE = re.compile(r"^[a-z\-]+$")
STATE_RE = re.compile(r"^[A-Z]{2}$")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1F\x7F]")


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: Tuple[str, ...] = ()
    sanitized: Dict[str, Any] = field(default_factory=dict)


def sanitize_string(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return _CONTROL_CHARS_RE.sub("", value).strip()


def is_valid_city(city: Any) -> bool:
    if not isinstance(city, str) or not 2 <= len(city) <= 50:
        return False
    return bool(CITY_RE.match(city))


def is_valid_service(service: Any) -> bool:
    if not isinstance(service, str) or not 2 <= len(service) <= 30:
        return False
    return bool(SERVICE_RE.match(service))


def is_valid_state(state: Any) -> bool:
    return isinstance(state, str) and bool(STATE_RE.match(state))


def _is_score(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and 0 <= value <= 100


def _require_str(payload: Mapping[str, Any], key: str, errors: list) -> None:
    value = payload.get(key)
    if not value or not isinstance(value, str):
        errors.append(f"Missing or invalid {key}")


def validate_opportunity(opportunity: Mapping[str, Any]) -> ValidationResult:
    errors: list = []
    for key in ("type", "service", "city", "state"):
        _require_str(opportunity, key, errors)
    if not _is_score(opportunity.get("score")):
        errors.append("Invalid score (must be 0-100)")

    kind = opportunity.get("type")
    if kind and kind not in OPPORTUNITY_TYPES:
        errors.append(f"Invalid type. Must be one of: {', '.join(OPPORTUNITY_TYPES)}")
    state = opportunity.get("state")
    if isinstance(state, str) and state and len(state) != 2:
        errors.append("State must be 2-letter code")
    return ValidationResult(valid=not errors, errors=tuple(errors))


def validate_proposal(proposal: Mapping[str, Any]) -> ValidationResult:
    errors: list = []
    for key in ("action", "service", "city", "state", "reason"):
        _require_str(proposal, key, errors)
    if not _is_score(proposal.get("score")):
        errors.append("Invalid score (must be 0-100)")

    action = proposal.get("action")
    if action and action not in PROPOSAL_ACTIONS:
        errors.append(f"Invalid action. Must be one of: {', '.join(PROPOSAL_ACTIONS)}")
    return ValidationResult(valid=not errors, errors=tuple(errors))


def validate_competitor_data(data: Mapping[str, Any]) -> ValidationResult:
    """Validate one competitor ranking row and return a sanitized copy."""
    errors: list = []
    sanitized: Dict[str, Any] = {}

    if data.get("competitor"):
        sanitized["competitor"] = sanitize_string(data["competitor"])
        if not sanitized["competitor"]:
            errors.append("Invalid competitor name")
    else:
        errors.append("Missing competitor")

    if data.get("service"):
        sanitized["service"] = sanitize_string(data["service"]).lower()
        if not is_valid_service(sanitized["service"]):
            errors.append("Invalid service name")
    else:
        errors.append("Missing service")

    if data.get("city"):
        sanitized["city"] = sanitize_string(data["city"])
        if not is_valid_city(sanitized["city"]):
            errors.append("Invalid city name")
    else:
        errors.append("Missing city")

    if data.get("state"):
        sanitized["state"] = sanitize_string(data["state"]).upper()
        if not is_valid_state(sanitized["state"]):
            errors.append("Invalid state code")
    else:
        errors.append("Missing state")

    position = data.get("position")
    if isinstance(position, (int, float)) and not isinstance(position, bool):
        sanitized["position"] = position
        if not 1 <= position <= 100:
            errors.append("Position must be between 1 and 100")
    else:
        errors.append("Missing or invalid position")

    for passthrough in ("source", "timestamp"):
        if data.get(passthrough) is not None:
            sanitized[passthrough] = data[passthrough]

    return ValidationResult(valid=not errors, errors=tuple(errors), sanitized=sanitized)
