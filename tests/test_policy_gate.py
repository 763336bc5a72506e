from support_triage.config import TriageSettings
from support_triage.macros import docs_video_mismatch, firmware_access_clarify, missing_info_prompt, verification_request
from support_triage.domain import MissingInfo
from support_triage.policy_gate import check_draft, check_with_settings


def test_signed_draft_passes():
    result = check_draft("Happy to help with that.\n\n– Lina")
    assert result.ok
    assert result.reasons == ()


def test_missing_signature_fails():
    result = check_draft("Happy to help with that.")
    assert not result.ok
    assert "Draft must end with '– Lina' signature" in result.reasons


def test_banned_language_reported():
    result = check_draft("We guarantee it will work and we will refund you.\n\n– Lina")
    assert not result.ok
    assert "Banned language: Contains 'we guarantee'" in result.reasons
    assert "Banned language: Promises a refund" in result.reasons


def test_disallowed_signer_caught():
    result = check_draft("Thanks!\n\n- Rob")
    assert "Disallowed sign-off: Rob" in result.reasons


def test_generic_team_signoff_caught():
    result = check_draft("Thanks!\nThe Support Team\n– Lina")
    assert "Disallowed sign-off: generic team signature" in result.reasons


def test_empty_text_has_nothing_to_sign():
    assert check_draft("").ok


def test_settings_supply_signature():
    settings = TriageSettings(signature_name="Maya")
    assert check_with_settings("All set.\n\n– Maya", settings).ok
    assert not check_with_settings("All set.\n\n– Lina", settings).ok


def test_canned_texts_pass_the_gate():
    signature = TriageSettings().signature
    texts = [
        docs_video_mismatch(signature),
        firmware_access_clarify(signature),
        verification_request(signature),
        missing_info_prompt([MissingInfo("order_number", "Order number", True)], signature),
    ]
    for text in texts:
        assert check_draft(text).ok, text


def test_team_mentioned_in_body_is_not_a_signoff():
    result = check_draft("Hi Jane,\n\nI checked with the team and the Apex fits your 2015 truck.\n\n– Lina")
    assert result.ok
    assert result.reasons == ()


def test_dashed_team_signoff_caught():
    result = check_draft("Thanks for your patience.\n\n— The Team")
    assert "Disallowed sign-off: generic team signature" in result.reasons
