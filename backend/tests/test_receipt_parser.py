from __future__ import annotations

import json

import pytest

from receipt_extraction.core.errors import (
    EmptyItemsError,
    InvalidFieldError,
    MissingFieldError,
    ResponseParseError,
)
from receipt_extraction.utils.receipt_parser import (
    InvalidReceipt,
    OperationalFailure,
    ValidReceipt,
    classify_receipt_response,
    extract_json_object,
    parse_receipt_response,
    strip_markdown_fences,
)

from fakes import STOP_AND_SHOP_REPLY, model_reply

VALID = '{"is_valid": true, "date": "2026-01-14", "currency": "USD", "vendorName": "Walmart", "items": [{"name": "Bread", "qty": 1, "cost": 2.49}], "tax": 0.4, "total": 2.89}'


def test_parses_fenced_json():
    data = parse_receipt_response(model_reply(STOP_AND_SHOP_REPLY))
    assert data["vendorName"] == "STOP&SHOP"
    assert data["total"] == 17.17
    assert len(data["items"]) == 5


def test_same_name_different_price_items_stay_separate():
    data = parse_receipt_response(model_reply(STOP_AND_SHOP_REPLY))
    cards = [item for item in data["items"] if item["name"] == "HALLMARK CARD"]
    assert [c["cost"] for c in cards] == [2.00, 3.79, 0.99]
    assert all(c["qty"] == 1 for c in cards)


def test_strip_markdown_fences_removes_wrappers_and_blank_lines():
    assert strip_markdown_fences("```JSON\n\n{\"a\": 1}\n```\n") == '{"a": 1}'


def test_falls_back_to_first_object_in_chatter():
    content = f"Sure! Here is the receipt:\n{VALID}\nLet me know if you need more."
    data = parse_receipt_response(model_reply(content))
    assert data["vendorName"] == "Walmart"


def test_extract_json_object_ignores_braces_inside_strings():
    text = 'noise {"name": "a } b", "nested": {"x": 1}} trailing {"other": 2}'
    assert extract_json_object(text) == '{"name": "a } b", "nested": {"x": 1}}'


def test_extract_json_object_returns_none_without_object():
    assert extract_json_object("no json here") is None


def test_content_without_json_is_treated_as_invalid_receipt():
    data = parse_receipt_response(model_reply("I cannot read this image."))
    assert data == {"error": "Unknown validation error"}


def test_invalid_receipt_keeps_model_error():
    data = parse_receipt_response(model_reply('{"is_valid": false, "error": "Image unreadable"}'))
    assert data["error"] == "Image unreadable"


def test_invalid_receipt_without_error_gets_default():
    data = parse_receipt_response(model_reply('{"is_valid": false}'))
    assert data["error"] == "Unknown validation error"


@pytest.mark.parametrize("field", ["date", "currency", "vendorName", "total"])
def test_missing_required_field(field):
    payload = json.loads(VALID)
    payload.pop(field)
    with pytest.raises(MissingFieldError) as exc_info:
        parse_receipt_response(model_reply(json.dumps(payload)))
    assert str(exc_info.value) == f"Missing required field: {field}"


def test_null_or_empty_required_field_counts_as_missing():
    payload = json.loads(VALID)
    payload["vendorName"] = ""
    with pytest.raises(MissingFieldError):
        parse_receipt_response(model_reply(json.dumps(payload)))
    payload["vendorName"] = "Walmart"
    payload["date"] = None
    with pytest.raises(MissingFieldError):
        parse_receipt_response(model_reply(json.dumps(payload)))


def test_zero_total_is_present():
    payload = json.loads(VALID)
    payload["total"] = 0
    payload["tax"] = 0
    assert parse_receipt_response(model_reply(json.dumps(payload)))["total"] == 0


@pytest.mark.parametrize("items", [[], None, "Bread", {"name": "Bread"}])
def test_items_must_be_non_empty_list(items):
    payload = json.loads(VALID)
    payload["items"] = items
    with pytest.raises(EmptyItemsError):
        parse_receipt_response(model_reply(json.dumps(payload)))


@pytest.mark.parametrize("field,value", [("tax", "0.40"), ("tax", True), ("total", "2.89"), ("tax", None)])
def test_numeric_fields_must_be_numbers(field, value):
    payload = json.loads(VALID)
    payload[field] = value
    with pytest.raises(InvalidFieldError) as exc_info:
        parse_receipt_response(model_reply(json.dumps(payload)))
    assert exc_info.value.field == field


def test_nan_total_rejected():
    content = VALID.replace('"total": 2.89', '"total": NaN')
    with pytest.raises(InvalidFieldError):
        parse_receipt_response(model_reply(content))


def test_non_object_json_rejected():
    with pytest.raises(ResponseParseError):
        parse_receipt_response(model_reply("[1, 2, 3]"))


def test_envelope_without_message_content():
    with pytest.raises(ResponseParseError):
        parse_receipt_response({"done": True})


def test_classify_valid():
    outcome = classify_receipt_response(model_reply(STOP_AND_SHOP_REPLY))
    assert isinstance(outcome, ValidReceipt)
    assert outcome.data["currency"] == "USD"


def test_classify_invalid_uses_model_reason():
    outcome = classify_receipt_response(model_reply('{"is_valid": false, "error": "Not a receipt"}'))
    assert outcome == InvalidReceipt("Not a receipt")


def test_classify_invalid_blank_reason_falls_back():
    outcome = classify_receipt_response(model_reply('{"is_valid": false, "error": "   "}'))
    assert outcome == InvalidReceipt("Receipt marked as invalid")


def test_classify_operational_failure_never_raises():
    outcome = classify_receipt_response(model_reply('{"is_valid": true, "currency": "USD"}'))
    assert isinstance(outcome, OperationalFailure)
    assert isinstance(outcome.error, MissingFieldError)


def test_fenced_and_bare_json_parse_identically():
    bare = STOP_AND_SHOP_REPLY.split("```json", 1)[1].rsplit("```", 1)[0]
    assert "```" not in bare
    fenced = parse_receipt_response(model_reply(STOP_AND_SHOP_REPLY))
    assert parse_receipt_response(model_reply(bare)) == fenced
    assert parse_receipt_response(model_reply(bare.strip())) == fenced
