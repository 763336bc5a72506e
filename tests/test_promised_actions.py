from support_triage.domain import PromiseCategory
from support_triage.promised_actions import detect_promised_actions, draft_snippet, summarise_promises


def test_detects_refund_and_timeline():
    promises = detect_promised_actions("We'll process your refund within 3 business days.")
    descriptions = [p.description for p in promises]
    assert "Will process refund" in descriptions
    assert "Timeline commitment" in descriptions


def test_neutral_text_has_no_promises():
    assert detect_promised_actions("Could you share a photo of the label?\n\n– Lina") == []
    assert detect_promised_actions(None) == []


def test_summary_groups_categories_in_order():
    promises = detect_promised_actions("I'll follow up tomorrow. We will ship it by Friday.")
    summary = summarise_promises(promises)
    assert summary["promise_count"] == len(promises)
    assert summary["categories"][0] == PromiseCategory.SHIPPING.value
    assert PromiseCategory.FOLLOW_UP.value in summary["categories"]
    assert all("matched_text" in item for item in summary["promises"])


def test_snippet_truncates_long_drafts():
    text = "x" * 600
    snippet = draft_snippet(text)
    assert snippet == "x" * 500 + "..."
    assert draft_snippet("short") == "short"


def test_repeated_promise_reported_once():
    promises = detect_promised_actions("We will refund you. Again, we will refund you.")
    assert [(p.category, p.description) for p in promises] == [(PromiseCategory.REFUND, "Will refund")]
