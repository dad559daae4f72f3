"""Decode vision-model replies into receipt data.

Models wrap their JSON in markdown fences, prepend chatter, or leave out
fields. :func:`parse_receipt_response` cleans the reply, decodes the
first JSON object in it and checks that a receipt the model calls valid
has everything the pipeline needs. It raises on anything it cannot use.

:func:`classify_receipt_response` is the non-raising form used by the
worker. It sorts a reply into one of three outcomes:

``ValidReceipt``
    Decoded and structurally complete; still subject to schema
    validation before it is stored.
``InvalidReceipt``
    The model looked at the image and reported it is not a readable
    receipt. This is a final business answer, not a failure.
``OperationalFailure``
    The reply could not be used. The job attempt should fail and be
    retried.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from receipt_extraction.core.errors import (
    EmptyItemsError,
    InvalidFieldError,
    MissingFieldError,
    ResponseParseError,
)

DEFAULT_MODEL_ERROR = "Unknown validation error"
DEFAULT_INVALID_REASON = "Receipt marked as invalid"

REQUIRED_FIELDS = ("date", "currency", "vendorName", "total")
NUMERIC_FIELDS = ("tax", "total")

_OPEN_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)
_CLOSE_FENCE = re.compile(r"```\s*$", re.MULTILINE)
_BLANK_LINE = re.compile(r"^\s*\n", re.MULTILINE)

ReceiptData = dict[str, Any]


@dataclass(frozen=True)
class ValidReceipt:
    data: ReceiptData


@dataclass(frozen=True)
class InvalidReceipt:
    reason: str


@dataclass(frozen=True)
class OperationalFailure:
    error: ResponseParseError


ExtractionOutcome = Union[ValidReceipt, InvalidReceipt, OperationalFailure]


def strip_markdown_fences(content: str) -> str:
    text = _OPEN_FENCE.sub("", content)
    text = _CLOSE_FENCE.sub("", text)
    text = _BLANK_LINE.sub("", text)
    return text.strip()


def extract_json_object(content: str) -> Optional[str]:
    """Return the first balanced ``{...}`` span in ``content``.

    Braces inside JSON string literals are ignored.
    """
    start = content.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(content)):
            ch = content[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return content[start : idx + 1]
        # Unbalanced from here on; try the next opening brace
        start = content.find("{", start + 1)
    return None


def _is_valid_json(text: str) -> bool:
    try:
        json.loads(text)
        return True
    except ValueError:
        return False


def _is_present(value: Any) -> bool:
    return value is not None and value != ""


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _message_content(envelope: Mapping[str, Any]) -> str:
    try:
        content = envelope["message"]["content"]
    except (KeyError, TypeError) as exc:
        raise ResponseParseError("Model response has no message content") from exc
    if not isinstance(content, str):
        raise ResponseParseError("Model response content is not text")
    return content


def validate_receipt_data(data: ReceiptData) -> ReceiptData:
    """Check the decoded object in place.

    Invalid receipts only get a default ``error``. Valid ones must carry
    the required fields, a non-empty item list and numeric tax/total.
    """
    if not data.get("is_valid"):
        if not data.get("error"):
            data["error"] = DEFAULT_MODEL_ERROR
        return data

    for field in REQUIRED_FIELDS:
        if not _is_present(data.get(field)):
            raise MissingFieldError(field)

    items = data.get("items")
    if not isinstance(items, list) or not items:
        raise EmptyItemsError()

    for field in NUMERIC_FIELDS:
        if not _is_number(data.get(field)):
            raise InvalidFieldError(field, data.get(field))
    return data


def parse_receipt_response(envelope: Mapping[str, Any]) -> ReceiptData:
    """Decode and check a model reply of the form ``{"message": {"content": ...}}``.

    Raises ``ResponseParseError`` (or one of its subclasses) when the
    reply is unusable.
    """
    content = _message_content(envelope)

    json_text = strip_markdown_fences(content)
    if not _is_valid_json(json_text):
        json_text = extract_json_object(content) or "{}"

    try:
        data = json.loads(json_text.strip())
    except ValueError as exc:
        raise ResponseParseError(f"Model response is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ResponseParseError(f"Expected a JSON object, got {type(data).__name__}")

    return validate_receipt_data(data)


def classify_receipt_response(envelope: Mapping[str, Any]) -> ExtractionOutcome:
    try:
        data = parse_receipt_response(envelope)
    except ResponseParseError as exc:
        return OperationalFailure(exc)
    if not data.get("is_valid"):
        reason = str(data.get("error") or "").strip()
        return InvalidReceipt(reason or DEFAULT_INVALID_REASON)
    return ValidReceipt(data)
