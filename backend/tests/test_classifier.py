import pytest

from backend.services.classifier import classify


@pytest.mark.parametrize(
    "person_known, open_entry, action, outcome, status, input_kind",
    [
        (True, True, "check_in", "REJECT_DUPLICATE_CHECK_IN", None, "none"),
        (True, False, "check_in", "COMMIT_CHECK_IN", "Permitted", "none"),
        (False, False, "check_in", "NEED_VISITOR_REGISTRATION", "Temporary", "visitor_registration"),
        (False, True, "check_in", "NEED_VISITOR_REGISTRATION", "Temporary", "visitor_registration"),
        (True, True, "check_out", "COMMIT_CHECK_OUT", "Exit Recorded", "none"),
        (False, True, "check_out", "COMMIT_CHECK_OUT", "Exit Recorded", "none"),
        (True, False, "check_out", "NEED_JUSTIFICATION", "Temporary", "justification"),
        (False, False, "check_out", "NEED_VISITOR_REGISTRATION", "Temporary", "visitor_registration"),
    ],
)
def test_decision_table(person_known, open_entry, action, outcome, status, input_kind):
    result = classify(person_known=person_known, open_entry=open_entry, action=action)
    assert result["outcome"] == outcome
    assert result["status"] == status
    assert result["input_kind"] == input_kind
    assert result["requires_additional_input"] == (input_kind != "none")


def test_only_commits_write():
    assert classify(person_known=True, open_entry=False, action="check_in")["writes"] is True
    assert classify(person_known=True, open_entry=True, action="check_in")["writes"] is False
    assert classify(person_known=True, open_entry=False, action="check_out")["writes"] is False
