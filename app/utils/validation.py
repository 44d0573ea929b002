"""
Action payload validation utilities

JSON Schema checks applied at the HTTP boundary before an action is queued,
plus the capacity limits that go with them. The core itself trusts what the
queue hands it.
"""

import json
import logging
from typing import Any, Dict, List

from jsonschema import Draft7Validator

from app.exceptions import CapacityError, ValidationError
from app.utils.settings import Settings

logger = logging.getLogger(__name__)

ACTION_KINDS = ("initialize", "commit", "terminate")

_INTERACTION_LIST = {
    "oneOf": [
        {"type": "array", "items": {"type": ["object", "null"]}},
        {"type": "object"},
    ]
}

_CMI_OBJECT = {
    "type": "object",
    "properties": {
        "interactions": _INTERACTION_LIST,
        "core": {"type": "object"},
        "score": {"type": "object"},
    },
}

COMMIT_PAYLOAD_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {
        "cmi": _CMI_OBJECT,
        "interactions": _INTERACTION_LIST,
        "core": {"type": "object"},
        "score": {"type": "object"},
    },
}

INITIALIZE_PAYLOAD_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {
        "learnerId": {"type": ["string", "null"], "maxLength": 255},
    },
}

ACTION_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "initialize": INITIALIZE_PAYLOAD_SCHEMA,
    "commit": COMMIT_PAYLOAD_SCHEMA,
    "terminate": COMMIT_PAYLOAD_SCHEMA,
}

_validators = {
    kind: Draft7Validator(schema) for kind, schema in ACTION_SCHEMAS.items()
}


def schema_errors(kind: str, payload: Any) -> List[str]:
    """Return human readable schema violations for an action payload."""
    validator = _validators.get(kind)
    if validator is None:
        return [f"Unknown action kind '{kind}'"]
    messages = []
    for error in sorted(validator.iter_errors(payload), key=str):
        location = ".".join(str(p) for p in error.absolute_path) or "payload"
        messages.append(f"{location}: {error.message}")
    return messages


def validate_action_payload(
    kind: str, payload: Any, settings: Settings
) -> Dict[str, Any]:
    """Validate one action payload; returns it (``None`` becomes ``{}``)."""
    if payload is None:
        payload = {}
    errors = schema_errors(kind, payload)
    if errors:
        logger.info("Rejected %s payload: %s", kind, "; ".join(errors))
        raise ValidationError(
            f"Invalid {kind} payload: " + "; ".join(errors)
        )
    size = len(json.dumps(payload, default=str).encode("utf-8"))
    if size > settings.max_payload_bytes:
        raise CapacityError(
            f"{kind} payload ({size} bytes) exceeds maximum allowed size "
            f"({settings.max_payload_bytes} bytes)"
        )
    return payload


def validate_batch_size(count: int, settings: Settings) -> None:
    if count == 0:
        raise ValidationError("Upload batch contains no actions")
    if count > settings.max_batch_actions:
        raise CapacityError(
            f"Upload batch has {count} actions; maximum is "
            f"{settings.max_batch_actions}"
        )
