"""Customer/order verification for intents that touch account data."""

from __future__ import annotations

import hashlib
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Set

import pandas as pd

from . import config
from .audit import log_file_access, log_function_call
from .config import bare_address
from .domain import ClassificationResult, MissingInfo, VerificationResult, VerificationStatus
from .intents import field_by_id

ORDER_NUMBER_PATTERNS = (
    re.compile(r"\border\s*(?:number|no\.?|#)?\s*(?:is\s+)?[:#]?\s*#?\s*([A-Z]{0,5}-?\d{4,})\b", re.IGNORECASE),
    re.compile(r"#\s?([A-Z]{0,5}-?\d{4,})\b", re.IGNORECASE),
    re.compile(r"\b([A-Z]{2,5}-\d{4,})\b"),
)


class VerificationUnavailableError(RuntimeError):
    pass


class Verifier(Protocol):
    def verify(self, thread_id: str, sender: Optional[str], text: str) -> VerificationResult:
        ...


def normalise_order_number(value: Any) -> str:
    text = str(value or "").strip().upper().lstrip("#").strip()
    if text.endswith(".0") and text[:-2].isdigit():
        text = text[:-2]
    return text


def extract_order_number(text: str) -> Optional[str]:
    for pattern in ORDER_NUMBER_PATTERNS:
        match = pattern.search(text or "")
        if match:
            return normalise_order_number(match.group(1))
    return None


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    text = str(value).strip()
    return text or None


@lru_cache(maxsize=4)
def load_order_records(path: str) -> Dict[str, Dict[str, str]]:
    """Return order rows keyed by normalised order number."""
    data_path = Path(path)
    log_function_call("load_order_records", stage="start", path=str(data_path))
    if not data_path.exists():
        log_file_access(data_path, operation="read", status="missing", source="order_records")
        return {}

    try:
        df = pd.read_excel(data_path)
    except Exception as exc:
        log_file_access(data_path, operation="read", status="error", source="order_records", error=type(exc).__name__)
        raise

    log_file_access(data_path, operation="read", status="success", source="order_records", rows=int(len(df)))
    records: Dict[str, Dict[str, str]] = {}
    for row in df.to_dict("records"):
        number = normalise_order_number(row.get("order_number"))
        if not number:
            continue
        clean_row: Dict[str, str] = {}
        for key, value in row.items():
            cleaned = _clean(value)
            if cleaned is not None:
                clean_row[str(key)] = cleaned
        clean_row["order_number"] = number
        records[number] = clean_row

    log_function_call("load_order_records", stage="completed", path=str(data_path), records=len(records))
    return records


def _split_flags(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [item.strip() for item in re.split(r"[;,]", raw) if item.strip()]


class OrderRecordVerifier:
    """Verify a sender against an exported order spreadsheet."""

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = str(path or config.ORDER_RECORDS_PATH)

    def verify(self, thread_id: str, sender: Optional[str], text: str) -> VerificationResult:
        order_number = extract_order_number(text)
        if not order_number:
            return VerificationResult(status=VerificationStatus.PENDING, reason="Order number required")

        record = load_order_records(self.path).get(order_number)
        if record is None:
            return VerificationResult(status=VerificationStatus.NOT_FOUND, reason=f"Order {order_number} not found")

        sender_address = bare_address(sender or "")
        record_email = (record.get("email") or "").lower()
        if record_email and sender_address and record_email != sender_address:
            email_hash = hashlib.sha256(sender_address.encode("utf-8")).hexdigest()[:12]
            log_function_call("verify_order", stage="email_mismatch", thread_id=thread_id, email_hash=email_hash)
            return VerificationResult(status=VerificationStatus.NOT_FOUND, reason="email_mismatch")

        order = {
            "number": order_number,
            "status": record.get("status"),
            "fulfillment_status": record.get("fulfillment_status"),
            "created_at": record.get("created_at"),
            "tracking": record.get("tracking"),
            "line_items": _split_flags(record.get("line_items")),
            "shipping_city": record.get("shipping_city"),
            "shipping_state": record.get("shipping_state"),
        }
        customer = {
            "email": record_email or None,
            "name": record.get("customer_name"),
            "total_orders": record.get("total_orders"),
            "total_spent": record.get("total_spent"),
        }
        flags = _split_flags(record.get("flags"))
        if flags:
            return VerificationResult(
                status=VerificationStatus.FLAGGED,
                order=order,
                customer=customer,
                flags=tuple(flags),
                reason=f"Customer flagged: {', '.join(flags)}",
            )
        return VerificationResult(status=VerificationStatus.VERIFIED, order=order, customer=customer)


def available_data(verification: VerificationResult) -> Set[str]:
    kinds: Set[str] = set()
    if verification.order:
        kinds.add("order")
    if verification.customer:
        kinds.add("customer")
    return kinds


def fold_verified_data(classification: ClassificationResult, verification: VerificationResult) -> ClassificationResult:
    """Drop missing-info entries that verified data now supplies.

    Only fields whose catalog entry names a matching ``satisfied_by`` source
    are cleared; everything else still has to come from the customer.
    """
    if verification.status != VerificationStatus.VERIFIED:
        return classification
    kinds = available_data(verification)
    remaining: List[MissingInfo] = []
    for item in classification.missing_info:
        definition = field_by_id(classification.primary_intent, item.id)
        if definition is not None and kinds.intersection(definition.satisfied_by):
            continue
        remaining.append(item)
    return classification.with_missing_info(tuple(remaining))
