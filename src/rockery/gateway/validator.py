"""
Rockery Rule Validator

Turns an inbound JSON payload into a validated MockingRule.

Every field is extracted by its own extractor and the resulting errors are
merged, so a single response reports every problem with the payload instead
of only the first one.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..common import canonical_json
from .rule import MockingRule, INTERCEPTABLE_METHODS, is_valid_status_code


REQUEST_URL_FIELD = '_rockery_request_url'
REQUEST_QUERY_FIELD = '_rockery_request_query'
REQUEST_METHOD_FIELD = '_rockery_request_method'
REQUEST_DATA_FIELD = '_rockery_request_data'
RESPONSE_STATUS_CODE_FIELD = '_rockery_response_status_code'
RESPONSE_DATA_FIELD = '_rockery_response_data'

_MISSING = object()


class RuleValidationError(ValueError):
    """Raised when a payload cannot be turned into a rule; carries every error."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__('; '.join(self.errors))


@dataclass
class FieldResult:
    """Outcome of extracting a single field: a value, an error, or neither."""

    value: Any = None
    error: Optional[str] = None


FieldExtractor = Callable[[Dict[str, Any]], FieldResult]


def _required(field_name: str) -> FieldResult:
    return FieldResult(error=f"Field {field_name} is required")


def extract_request_url(payload: Dict[str, Any]) -> FieldResult:
    raw = payload.get(REQUEST_URL_FIELD, _MISSING)
    if raw is _MISSING:
        return _required(REQUEST_URL_FIELD)
    if not isinstance(raw, str):
        return FieldResult(error=f"{REQUEST_URL_FIELD} must be a string")
    return FieldResult(value=raw or '/')


def extract_request_query(payload: Dict[str, Any]) -> FieldResult:
    raw = payload.get(REQUEST_QUERY_FIELD, _MISSING)
    if raw is _MISSING:
        return FieldResult()
    if not isinstance(raw, str):
        return FieldResult(error=f"{REQUEST_QUERY_FIELD} must be a string")
    return FieldResult(value=raw)


def extract_request_method(payload: Dict[str, Any]) -> FieldResult:
    raw = payload.get(REQUEST_METHOD_FIELD, _MISSING)
    if raw is _MISSING:
        return _required(REQUEST_METHOD_FIELD)
    if not isinstance(raw, str):
        return FieldResult(error=f"{REQUEST_METHOD_FIELD} must be a string")

    method = raw.strip().upper()
    if method not in INTERCEPTABLE_METHODS:
        return FieldResult(
            error=f"{REQUEST_METHOD_FIELD} must be one of following: {', '.join(INTERCEPTABLE_METHODS)}"
        )
    return FieldResult(value=method)


def _extract_serialized(payload: Dict[str, Any], field_name: str, required: bool) -> FieldResult:
    raw = payload.get(field_name, _MISSING)
    if raw is _MISSING:
        return _required(field_name) if required else FieldResult()
    try:
        return FieldResult(value=canonical_json(raw))
    except (TypeError, ValueError):
        return FieldResult(error=f"{field_name} must be of JSON format in order to be serialized properly")


def extract_request_data(payload: Dict[str, Any]) -> FieldResult:
    return _extract_serialized(payload, REQUEST_DATA_FIELD, required=False)


def extract_response_status_code(payload: Dict[str, Any]) -> FieldResult:
    raw = payload.get(RESPONSE_STATUS_CODE_FIELD, _MISSING)
    if raw is _MISSING:
        return _required(RESPONSE_STATUS_CODE_FIELD)
    # bool is an int subclass, but true/false is not a status code
    if isinstance(raw, bool) or not isinstance(raw, int):
        return FieldResult(error=f"{RESPONSE_STATUS_CODE_FIELD} must be an integer")
    # Custom codes are fine for testing as long as they fit a status line
    if not is_valid_status_code(raw):
        return FieldResult(error=f"Provided {RESPONSE_STATUS_CODE_FIELD} is not a valid HTTP status code")
    return FieldResult(value=raw)


def extract_response_data(payload: Dict[str, Any]) -> FieldResult:
    return _extract_serialized(payload, RESPONSE_DATA_FIELD, required=True)


RULE_EXTRACTORS: Dict[str, FieldExtractor] = {
    'request_url': extract_request_url,
    'request_query': extract_request_query,
    'request_method': extract_request_method,
    'request_data': extract_request_data,
    'response_status_code': extract_response_status_code,
    'response_data': extract_response_data,
}

CRITERIA_EXTRACTORS: Dict[str, FieldExtractor] = {
    'request_url': extract_request_url,
    'request_query': extract_request_query,
    'request_method': extract_request_method,
    'request_data': extract_request_data,
}


def run_extractors(payload: Dict[str, Any], extractors: Dict[str, FieldExtractor]) -> Dict[str, Any]:
    """
    Run each extractor independently and merge their outcomes.

    Args:
        payload: Decoded JSON object
        extractors: Mapping of output key -> extractor

    Returns:
        Mapping of output key -> extracted value

    Raises:
        RuleValidationError: With every collected error, if there were any
    """
    values: Dict[str, Any] = {}
    errors: List[str] = []

    for key, extractor in extractors.items():
        result = extractor(payload)
        if result.error is not None:
            errors.append(result.error)
        else:
            values[key] = result.value

    if errors:
        raise RuleValidationError(errors)
    return values


def create_mocking_rule_from_json(payload: Dict[str, Any]) -> MockingRule:
    """
    Build an unsaved MockingRule from a create-rule payload.

    The rule is not persisted; pass it to ``RuleStore.create`` for that.

    Raises:
        RuleValidationError: If any field is missing or malformed
    """
    values = run_extractors(payload, RULE_EXTRACTORS)
    return MockingRule(**values)


def normalize_request_body(body: str) -> Optional[str]:
    """
    Bring an inbound request body into the form stored as rule request data.

    The body is only trimmed; blank bodies become ``None``. It is compared
    byte for byte with the stored data, so a JSON body matches only when the
    client sends the same compact, key-sorted text the rule holds.
    """
    text = body.strip()
    return text or None


def parse_rule_criteria(payload: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """
    Extract the four matching fields from a delete-rule payload.

    Returns:
        Keyword arguments for ``RuleStore.find``

    Raises:
        RuleValidationError: If any field is missing or malformed
    """
    values = run_extractors(payload, CRITERIA_EXTRACTORS)
    return {
        'url': values['request_url'],
        'query': values['request_query'],
        'method': values['request_method'],
        'data': values['request_data'],
    }
