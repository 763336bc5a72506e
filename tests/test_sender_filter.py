from support_triage.config import TriageSettings
from support_triage.sender_filter import check_sender, is_automated


def test_no_reply_local_part_is_automated():
    result = check_sender("Shop <no-reply@shop.example>", "Your order shipped")
    assert result.automated is True
    assert result.rule == "sender:no-reply"


def test_platform_domain_is_automated():
    assert is_automated("notify@mail.facebookmail.com", "New comment on your post")


def test_auto_submitted_header_wins():
    result = check_sender("jane@example.com", "Re: help", {"Auto-Submitted": "auto-replied"})
    assert result.automated is True
    assert result.rule == "header:auto-submitted"


def test_auto_submitted_no_is_a_person():
    assert not is_automated("jane@example.com", "Re: help", {"Auto-Submitted": "no"})


def test_out_of_office_subject():
    assert is_automated("jane@example.com", "Out of Office: back Monday")


def test_regular_customer_passes():
    assert not is_automated("Jane Doe <jane@example.com>", "My gauge won't turn on")


def test_internal_sender_never_filtered():
    settings = TriageSettings(internal_domains=frozenset({"ourshop.com"}))
    assert not is_automated("noreply@ourshop.com", "Automatic reply", settings=settings)
