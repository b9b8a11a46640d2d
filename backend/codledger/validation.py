# Overview: Request payload parsing for the API; strict type coercion before any service call.

from __future__ import annotations

from typing import Any

from codledger.errors import ValidationError
from codledger.time_utils import parse_iso_date


# Upper bound for any single money amount (minor units)
MAX_AMOUNT = 999_999_999_999


def coerce_int(value: Any, field: str, *, minimum: int | None = None, required: bool = True) -> int | None:
    """
    Strict integer coercion: rejects floats, bools, decimals and scientific notation.

    "12" -> 12, 12 -> 12, 12.0 -> error, "1e3" -> error, True -> error.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field} is required", field=field)
        return None

    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        # Reject scientific notation (e.g., "1e15", "1E10")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)", field=field)
        # Reject decimal points (e.g., "12.5")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)", field=field)
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer", field=field)
    elif isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal", field=field)
    else:
        raise ValidationError(f"{field} must be an integer", field=field)

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be >= {minimum}", field=field, value=result)
    if abs(result) > MAX_AMOUNT:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT}", field=field)
    return result


def coerce_bool(value: Any, field: str) -> bool:
    """JSON booleans only; "yes"/1 are ambiguous for a delivery outcome."""
    if isinstance(value, bool):
        return value
    raise ValidationError(f"{field} must be true or false", field=field)


def coerce_date(value: Any, field: str, *, required: bool = True):
    try:
        parsed = parse_iso_date(value)
    except ValueError:
        raise ValidationError(f"{field} must be a YYYY-MM-DD date", field=field)
    if parsed is None and required:
        raise ValidationError(f"{field} is required", field=field)
    return parsed


def optional_text(value: Any, field: str, *, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", field=field)
    text = value.strip()
    if not text:
        return None
    if max_length and len(text) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}", field=field)
    return text


def _require_object(payload: Any) -> dict:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def parse_reconciliation_payload(payload: Any) -> dict:
    """
    Validate a reconciliation submission.

    {
        "carrier_id": 3,
        "delivery_date": "2026-03-14",
        "total_cash_collected": 250000,
        "discrepancy_notes": "optional",
        "orders": [{"order_id": 10, "delivered": true}, ...]
    }

    Returns kwargs for reconciliation_service.reconcile (minus store/user).
    """
    payload = _require_object(payload)

    orders_raw = payload.get("orders")
    if not isinstance(orders_raw, list) or not orders_raw:
        raise ValidationError("orders must be a non-empty list")

    orders = []
    for index, item in enumerate(orders_raw):
        if not isinstance(item, dict):
            raise ValidationError("Each order must be an object", index=index)
        orders.append(
            {
                "order_id": coerce_int(item.get("order_id"), f"orders[{index}].order_id", minimum=1),
                "delivered": coerce_bool(item.get("delivered"), f"orders[{index}].delivered"),
            }
        )

    return {
        "carrier_id": coerce_int(payload.get("carrier_id"), "carrier_id", minimum=1),
        "delivery_date": coerce_date(payload.get("delivery_date"), "delivery_date"),
        "total_cash_collected": coerce_int(payload.get("total_cash_collected"), "total_cash_collected", minimum=0),
        "discrepancy_notes": optional_text(payload.get("discrepancy_notes"), "discrepancy_notes"),
        "orders": orders,
    }


def parse_status_payload(payload: Any) -> dict:
    """{"status": "...", "expected_status": "...", "rejected_line_item_ids": [..], "note": "..."}"""
    payload = _require_object(payload)

    status = payload.get("status")
    if not isinstance(status, str) or not status.strip():
        raise ValidationError("status is required")

    rejected = payload.get("rejected_line_item_ids") or []
    if not isinstance(rejected, list):
        raise ValidationError("rejected_line_item_ids must be a list")

    return {
        "target_status": status.strip(),
        "expected_status": optional_text(payload.get("expected_status"), "expected_status"),
        "rejected_line_item_ids": [
            coerce_int(v, f"rejected_line_item_ids[{i}]", minimum=1) for i, v in enumerate(rejected)
        ],
        "note": optional_text(payload.get("note"), "note", max_length=255),
    }


def parse_payment_payload(payload: Any) -> dict:
    payload = _require_object(payload)
    return {
        "amount": coerce_int(payload.get("amount"), "amount", minimum=1),
        "method": optional_text(payload.get("method"), "method", max_length=64),
        "reference": optional_text(payload.get("reference"), "reference", max_length=128),
        "notes": optional_text(payload.get("notes"), "notes"),
        "payment_date": coerce_date(payload.get("payment_date"), "payment_date", required=False),
    }


def parse_correction_payload(payload: Any) -> dict:
    payload = _require_object(payload)
    reason = optional_text(payload.get("reason"), "reason", max_length=255)
    if reason is None:
        raise ValidationError("reason is required")
    return {
        "total_cod_collected": coerce_int(payload.get("total_cod_collected"), "total_cod_collected", minimum=0),
        "reason": reason,
    }
