from typing import Literal, TypedDict

from database.ledger import STATUS_EXIT_RECORDED, STATUS_PERMITTED, STATUS_TEMPORARY

Action = Literal["check_in", "check_out"]
InputKind = Literal["none", "visitor_registration", "justification"]
Outcome = Literal[
    "COMMIT_CHECK_IN",
    "REJECT_DUPLICATE_CHECK_IN",
    "NEED_VISITOR_REGISTRATION",
    "COMMIT_CHECK_OUT",
    "NEED_JUSTIFICATION",
]

ACTIONS: set[str] = {"check_in", "check_out"}


class Classification(TypedDict):
    outcome: Outcome
    status: str | None
    requires_additional_input: bool
    input_kind: InputKind
    writes: bool


def _result(outcome: Outcome, status: str | None, input_kind: InputKind = "none") -> Classification:
    return {
        "outcome": outcome,
        "status": status,
        "requires_additional_input": input_kind != "none",
        "input_kind": input_kind,
        "writes": outcome in {"COMMIT_CHECK_IN", "COMMIT_CHECK_OUT"},
    }


def classify(*, person_known: bool, open_entry: bool, action: Action) -> Classification:
    """
    Decide what a scan should do. Pure: no I/O, never raises for a valid action.

      known   open  check_in  -> duplicate check-in, nothing written
      known   -     check_in  -> new open row, Permitted
      unknown any   check_in  -> visitor registration first, Temporary
      any     open  check_out -> close the open row
      known   -     check_out -> justification first, Temporary
      unknown -     check_out -> visitor registration first, Temporary
    """
    if action == "check_in":
        if not person_known:
            return _result("NEED_VISITOR_REGISTRATION", STATUS_TEMPORARY, "visitor_registration")
        if open_entry:
            return _result("REJECT_DUPLICATE_CHECK_IN", None)
        return _result("COMMIT_CHECK_IN", STATUS_PERMITTED)

    if open_entry:
        # An unregistered visitor who checked in through registration can leave normally.
        return _result("COMMIT_CHECK_OUT", STATUS_EXIT_RECORDED)
    if person_known:
        return _result("NEED_JUSTIFICATION", STATUS_TEMPORARY, "justification")
    return _result("NEED_VISITOR_REGISTRATION", STATUS_TEMPORARY, "visitor_registration")
