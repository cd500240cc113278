"""Structural guards for everything the arbiter emits or persists.

One decision, never a list. Each check raises InvariantViolationError on the
first problem; callers must not catch it to recover, since a violation means
the arbiter itself produced a malformed object.

Checkpoints:
- assembled action / rescue, before it is persisted
- the outgoing response, before it is returned
"""

from numbers import Real
from typing import Any, Iterator

DECISION_TYPES = frozenset({"cook", "order", "zero_cook"})
RESCUE_TYPES = frozenset({"order", "zero_cook"})

FORBIDDEN_ACTION_FIELDS = frozenset({
    "options",
    "alternatives",
    "suggestions",
    "otherMeals",
    "recommendations",
    "choices",
    "list",
    "items",
})
FORBIDDEN_RESCUE_FIELDS = FORBIDDEN_ACTION_FIELDS | {"meals"}

DECISION_RESPONSE_FIELDS = frozenset({"decision", "drmRecommended", "reason", "autopilot"})
DRM_RESPONSE_FIELDS = frozenset({"rescue", "exhausted"})
FEEDBACK_RESPONSE_FIELDS = frozenset({"recorded", "drmRequired"})

DRM_REASONS = frozenset({
    "calendar_conflict",
    "low_energy",
    "two_rejections",
    "late_no_action",
    "handle_it",
    "im_done",
})

_REQUIRED_ACTION_FIELDS = {
    "cook": {"mealId": str, "title": str, "stepsShort": str, "estMinutes": int},
    "order": {"vendorKey": str, "deepLinkUrl": str, "title": str, "estMinutes": int},
    "zero_cook": {"title": str, "stepsShort": str, "estMinutes": int},
}
_REQUIRED_RESCUE_FIELDS = {
    "order": {"vendorKey": str, "deepLinkUrl": str},
    "zero_cook": {"stepsShort": str},
}


class InvariantViolationError(Exception):
    def __init__(self, message: str, path: str = "$"):
        self.path = path
        super().__init__(f"{message} (at {path})")


def find_arrays_deep(value: Any, path: str = "$") -> Iterator[str]:
    """Yield the path of every list/tuple/set nested anywhere in `value`."""
    if isinstance(value, (list, tuple, set, frozenset)):
        yield path
        return
    if isinstance(value, dict):
        for key, child in value.items():
            yield from find_arrays_deep(child, f"{path}.{key}")


def find_forbidden_fields_deep(value: Any, forbidden: frozenset, path: str = "$") -> Iterator[str]:
    if isinstance(value, dict):
        for key, child in value.items():
            child_path = f"{path}.{key}"
            if key in forbidden:
                yield child_path
            yield from find_forbidden_fields_deep(child, forbidden, child_path)


def assert_no_arrays_deep(value: Any, path: str = "$") -> None:
    for found in find_arrays_deep(value, path):
        raise InvariantViolationError("array found", found)


def assert_no_forbidden_fields(value: Any, forbidden: frozenset = FORBIDDEN_ACTION_FIELDS, path: str = "$") -> None:
    for found in find_forbidden_fields_deep(value, forbidden, path):
        raise InvariantViolationError("forbidden field present", found)


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _check_type(value: Any, expected: type) -> bool:
    if expected is int:
        return _is_number(value)
    return isinstance(value, expected)


def _require_fields(obj: dict, required: dict, path: str) -> None:
    for field, expected in required.items():
        if field not in obj or obj[field] is None:
            raise InvariantViolationError(f"missing required field '{field}'", path)
        if not _check_type(obj[field], expected):
            raise InvariantViolationError(f"field '{field}' has wrong type", f"{path}.{field}")


def validate_single_action(action: Any, path: str = "$.decision") -> None:
    """A decision action: one object, a known type, an id, and its type's fields."""
    if not isinstance(action, dict):
        raise InvariantViolationError("action must be a single object", path)
    assert_no_arrays_deep(action, path)
    assert_no_forbidden_fields(action, FORBIDDEN_ACTION_FIELDS, path)

    decision_type = action.get("decisionType")
    if decision_type not in DECISION_TYPES:
        raise InvariantViolationError(f"invalid decisionType {decision_type!r}", path)
    event_id = action.get("decisionEventId")
    if not isinstance(event_id, str) or not event_id:
        raise InvariantViolationError("decisionEventId must be a non-empty string", path)
    if not isinstance(action.get("contextHash"), str):
        raise InvariantViolationError("contextHash must be a string", path)
    _require_fields(action, _REQUIRED_ACTION_FIELDS[decision_type], path)


def validate_single_rescue(rescue: Any, path: str = "$.rescue") -> None:
    if not isinstance(rescue, dict):
        raise InvariantViolationError("rescue must be a single object", path)
    assert_no_arrays_deep(rescue, path)
    assert_no_forbidden_fields(rescue, FORBIDDEN_RESCUE_FIELDS, path)

    rescue_type = rescue.get("rescueType")
    if rescue_type not in RESCUE_TYPES:
        raise InvariantViolationError(f"invalid rescueType {rescue_type!r}", path)
    _require_fields(
        rescue,
        {"drmEventId": str, "title": str, "estMinutes": int, "contextHash": str},
        path,
    )
    _require_fields(rescue, _REQUIRED_RESCUE_FIELDS[rescue_type], path)


def _check_response_shape(response: Any, allowed: frozenset) -> None:
    if not isinstance(response, dict):
        raise InvariantViolationError("response must be an object")
    extra = set(response) - allowed
    if extra:
        raise InvariantViolationError(f"unexpected response fields {sorted(extra)}")
    assert_no_arrays_deep(response)


def validate_decision_response(response: Any) -> None:
    _check_response_shape(response, DECISION_RESPONSE_FIELDS)
    if not isinstance(response.get("drmRecommended"), bool):
        raise InvariantViolationError("drmRecommended must be a boolean", "$.drmRecommended")

    decision = response.get("decision")
    if decision is not None:
        validate_single_action(decision)
    elif not response["drmRecommended"]:
        # null is only allowed as the explicit "DRM recommended" answer
        raise InvariantViolationError("decision is null without drmRecommended", "$.decision")

    reason = response.get("reason")
    if reason is not None and reason not in DRM_REASONS:
        raise InvariantViolationError(f"unknown reason {reason!r}", "$.reason")
    autopilot = response.get("autopilot")
    if autopilot is not None and not isinstance(autopilot, bool):
        raise InvariantViolationError("autopilot must be a boolean", "$.autopilot")


def validate_drm_response(response: Any) -> None:
    _check_response_shape(response, DRM_RESPONSE_FIELDS)
    if not isinstance(response.get("exhausted"), bool):
        raise InvariantViolationError("exhausted must be a boolean", "$.exhausted")
    rescue = response.get("rescue")
    if rescue is not None:
        validate_single_rescue(rescue)
    elif not response["exhausted"]:
        raise InvariantViolationError("rescue is null but not exhausted", "$.rescue")


def validate_feedback_response(response: Any) -> None:
    _check_response_shape(response, FEEDBACK_RESPONSE_FIELDS)
    if not isinstance(response.get("recorded"), bool):
        raise InvariantViolationError("recorded must be a boolean", "$.recorded")
    drm_required = response.get("drmRequired")
    if drm_required is not None and not isinstance(drm_required, bool):
        raise InvariantViolationError("drmRequired must be a boolean", "$.drmRequired")
