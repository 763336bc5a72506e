"""One-line thread summaries for dashboards and external syndication."""

from __future__ import annotations

from .domain import ESCALATION_ACTIONS, Action, ThreadState

ISSUE_TYPES = {
    "ORDER_STATUS": "Order status inquiry",
    "ORDER_CHANGE_REQUEST": "Order change request",
    "MISSING_DAMAGED_ITEM": "Missing or damaged item",
    "WRONG_ITEM_RECEIVED": "Wrong item received",
    "RETURN_REFUND_REQUEST": "Return/refund request",
    "PRODUCT_SUPPORT": "Product support",
    "FUNCTIONALITY_BUG": "Product malfunction",
    "FIRMWARE_UPDATE_REQUEST": "Firmware update request",
    "FIRMWARE_ACCESS_ISSUE": "Firmware access issue",
    "DOCS_VIDEO_MISMATCH": "Documentation issue",
    "INSTALL_GUIDANCE": "Install question",
    "COMPATIBILITY_QUESTION": "Fitment question",
    "PART_IDENTIFICATION": "Part identification",
    "CHARGEBACK_THREAT": "Chargeback threat",
    "LEGAL_SAFETY_RISK": "Legal/safety concern",
    "THANK_YOU_CLOSE": "Thank you message",
    "FOLLOW_UP_NO_NEW_INFO": "Follow-up",
    "VENDOR_SPAM": "Vendor spam",
    "AUTOMATED_EMAIL": "Automated notification",
}

STATE_STATUSES = {
    ThreadState.NEW: "new",
    ThreadState.AWAITING_INFO: "awaiting customer info",
    ThreadState.IN_PROGRESS: "in progress",
    ThreadState.ESCALATED: "escalated",
    ThreadState.RESOLVED: "resolved",
}


def thread_summary(intent: str, state: ThreadState, action: Action, human_handling: bool = False) -> str:
    issue_type = ISSUE_TYPES.get(intent, "General inquiry")
    if action in ESCALATION_ACTIONS:
        return f"{issue_type} - ESCALATED"
    if human_handling:
        return f"{issue_type} - human handling"
    return f"{issue_type} - {STATE_STATUSES[state]}"
