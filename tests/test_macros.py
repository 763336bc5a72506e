from support_triage.domain import MissingInfo
from support_triage.macros import (
    ESCALATION_NOTICE,
    INTERNAL_NOTES_HEADER,
    macro_for,
    missing_info_prompt,
    with_escalation_notice,
)

SIGNATURE = "– Lina"


def test_missing_info_prompt_required_first_and_capped():
    missing = [
        MissingInfo("vehicle", "Vehicle info", False),
        MissingInfo("order_number", "Order number", True),
        MissingInfo("photo", "A photo of the label", False),
        MissingInfo("unit_type", "Unit type", True),
    ]
    prompt = missing_info_prompt(missing, SIGNATURE)
    assert "1. Order number\n2. Unit type\n3. Vehicle info" in prompt
    assert "photo" not in prompt
    assert prompt.endswith(SIGNATURE)


def test_missing_info_prompt_empty():
    assert missing_info_prompt([], SIGNATURE) == ""


def test_macro_lookup_uses_name():
    assert macro_for("DOCS_VIDEO_MISMATCH", SIGNATURE, name="Jane").startswith("Hey Jane,")
    assert macro_for("ORDER_STATUS", SIGNATURE) is None


def test_escalation_notice_wraps_notes_once():
    wrapped = with_escalation_notice("Customer is upset about shipping.", SIGNATURE)
    assert wrapped.index(ESCALATION_NOTICE) < wrapped.index(INTERNAL_NOTES_HEADER)
    assert wrapped.endswith("Customer is upset about shipping.")
    assert with_escalation_notice(wrapped, SIGNATURE) == wrapped
    assert with_escalation_notice(None, SIGNATURE).endswith(SIGNATURE)
