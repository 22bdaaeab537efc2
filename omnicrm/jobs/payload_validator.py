"""
Job payload validation.

Rejects malformed, oversized or deeply nested payloads before they reach the
jobs table or a processor. sanitize() is a best-effort cleanup pass and not
a substitute for validate().
"""

import json
import re
from typing import Any

from pydantic import ValidationError

from omnicrm.config import settings
from omnicrm.infrastructure.observability.logging import get_logger
from omnicrm.jobs.domain import JobKind, JobPayload, payload_model_for
from omnicrm.jobs.errors import (
    InvalidPayloadError,
    JobPayloadError,
    PayloadTooDeepError,
    PayloadTooLargeError,
    UnknownJobKindError,
)

logger = get_logger(__name__)

MAX_DEPTH = 10
DEPTH_RECURSION_LIMIT = 15
DEPTH_SAMPLE_SIZE = 10
MAX_STRING_LENGTH = 50_000
MAX_ARRAY_LENGTH = 1000
MAX_OBJECT_KEYS = 50
MAX_KEY_LENGTH = 100
LOG_EXCERPT_LENGTH = 500

_SCRIPT_TAG = re.compile(r"<script[^>]*>[\s\S]*?</script>", re.IGNORECASE)
_JS_PROTOCOL = re.compile(r"javascript:", re.IGNORECASE)
_HTML_DATA_URI = re.compile(r"data:text/html", re.IGNORECASE)
_UNSAFE_KEY_CHARS = re.compile(r"[^\w.-]")


def _serialize(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def estimate_payload_size(payload: Any) -> int:
    """UTF-8 byte length of the compact JSON encoding (0 if not serializable)."""
    try:
        return len(_serialize(payload).encode("utf-8"))
    except (TypeError, ValueError):
        return 0


def get_object_depth(obj: Any, current_depth: int = 1) -> int:
    """
    Approximate nesting depth of dicts/lists.

    Only the first few entries of each container are sampled and recursion
    stops at DEPTH_RECURSION_LIMIT, so a hostile payload cannot exhaust the stack.
    """
    if not isinstance(obj, (dict, list, tuple)):
        return current_depth

    if current_depth > DEPTH_RECURSION_LIMIT:
        return current_depth

    children = list(obj.values()) if isinstance(obj, dict) else list(obj)
    max_depth = current_depth
    for child in children[:DEPTH_SAMPLE_SIZE]:
        max_depth = max(max_depth, get_object_depth(child, current_depth + 1))
    return max_depth


def _format_issues(error: ValidationError) -> list[str]:
    issues = []
    for issue in error.errors():
        path = ".".join(str(part) for part in issue["loc"]) or "root"
        issues.append(f"{path}: {issue['msg']}")
    return issues


def validate(kind: JobKind | str, payload: Any, user_id: str) -> JobPayload:
    """
    Validate a job payload for a job kind.

    Args:
        kind: Job kind (enum member or its string value)
        payload: Raw payload (usually a dict decoded from JSON)
        user_id: Owning user, for log context

    Returns:
        JobPayload: The payload parsed into the kind's model

    Raises:
        UnknownJobKindError: No schema registered for kind
        PayloadTooLargeError: Serialized payload exceeds JOB_MAX_PAYLOAD_BYTES
        PayloadTooDeepError: Nesting deeper than MAX_DEPTH
        InvalidPayloadError: Schema validation failed
    """
    kind_name = kind.value if isinstance(kind, JobKind) else str(kind)

    model = payload_model_for(kind_name)
    if model is None:
        logger.error("Unknown job kind for payload validation", user_id=user_id, job_kind=kind_name)
        raise UnknownJobKindError(
            f"Unknown job kind: {kind_name}", job_kind=kind_name, user_id=user_id
        )

    try:
        payload_str = _serialize(payload)
    except (TypeError, ValueError) as e:
        raise InvalidPayloadError(
            f"Invalid payload for {kind_name}: not JSON serializable",
            issues=[f"root: {e}"],
            job_kind=kind_name,
            user_id=user_id,
        ) from e

    payload_size = len(payload_str.encode("utf-8"))
    max_size = settings.JOB_MAX_PAYLOAD_BYTES
    if payload_size > max_size:
        logger.warning(
            "Job payload exceeds size limit",
            user_id=user_id,
            job_kind=kind_name,
            payload_size=payload_size,
            max_size=max_size,
            payload=payload_str[:LOG_EXCERPT_LENGTH],
        )
        raise PayloadTooLargeError(
            f"Payload size {round(payload_size / 1024)}KB exceeds limit of {round(max_size / 1024)}KB",
            size=payload_size,
            limit=max_size,
            job_kind=kind_name,
            user_id=user_id,
        )

    depth = get_object_depth(payload)
    if depth > MAX_DEPTH:
        logger.warning(
            "Job payload has excessive nesting depth",
            user_id=user_id,
            job_kind=kind_name,
            depth=depth,
            payload=payload_str[:LOG_EXCERPT_LENGTH],
        )
        raise PayloadTooDeepError(
            f"Payload nesting depth {depth} exceeds limit of {MAX_DEPTH}",
            depth=depth,
            limit=MAX_DEPTH,
            job_kind=kind_name,
            user_id=user_id,
        )

    try:
        validated = model.model_validate(payload if payload is not None else {})
    except ValidationError as e:
        issues = _format_issues(e)
        logger.warning(
            "Job payload validation failed",
            user_id=user_id,
            job_kind=kind_name,
            errors=issues,
            payload=payload_str[:LOG_EXCERPT_LENGTH],
        )
        raise InvalidPayloadError(
            f"Invalid payload: {'; '.join(issues)}",
            issues=issues,
            job_kind=kind_name,
            user_id=user_id,
        ) from e

    logger.debug(
        "Job payload validation successful",
        user_id=user_id,
        job_kind=kind_name,
        payload_size=payload_size,
    )
    return validated


def validate_batch(jobs: list[tuple[JobKind | str, Any]], user_id: str) -> list[dict[str, Any]]:
    """
    Pre-validate several (kind, payload) pairs without raising.

    Returns one dict per input with kind, payload, valid and (when invalid) error.
    """
    results = []
    for kind, payload in jobs:
        try:
            validate(kind, payload, user_id)
            results.append({"kind": kind, "payload": payload, "valid": True})
        except JobPayloadError as e:
            results.append({"kind": kind, "payload": payload, "valid": False, "error": str(e)})

    invalid_count = sum(1 for result in results if not result["valid"])
    if invalid_count:
        logger.warning(
            "Some jobs failed payload validation in batch",
            user_id=user_id,
            total_jobs=len(jobs),
            invalid_jobs=invalid_count,
            valid_jobs=len(jobs) - invalid_count,
        )

    return results


def sanitize(payload: Any) -> Any:
    """
    Return a cleaned copy of payload.

    Strings are truncated and stripped of script tags, javascript: and
    data:text/html fragments; lists and dicts are capped in size and dict keys
    lose non-word characters. The input is never modified.
    """
    if payload is None:
        return None

    if isinstance(payload, str):
        sanitized = payload[:MAX_STRING_LENGTH]
        sanitized = _SCRIPT_TAG.sub("", sanitized)
        sanitized = _JS_PROTOCOL.sub("", sanitized)
        return _HTML_DATA_URI.sub("", sanitized)

    if isinstance(payload, (list, tuple)):
        return [sanitize(item) for item in list(payload)[:MAX_ARRAY_LENGTH]]

    if isinstance(payload, dict):
        sanitized_obj: dict[str, Any] = {}
        for key, value in list(payload.items())[:MAX_OBJECT_KEYS]:
            clean_key = _UNSAFE_KEY_CHARS.sub("", str(key))[:MAX_KEY_LENGTH]
            if clean_key:
                sanitized_obj[clean_key] = sanitize(value)
        return sanitized_obj

    return payload
