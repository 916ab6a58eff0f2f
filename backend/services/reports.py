from typing import Any, Iterable


def _percent(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return round(part * 100.0 / whole, 1)


def evacuation_statistics(roster: Iterable[dict[str, Any]], evacuated: Iterable[str]) -> dict[str, Any]:
    """
    Progress of an evacuation: who from `roster` is accounted for.

    `roster` is the list of people inside when the evacuation began (snapshot
    entries or anything with `identifier` / `organization` keys); `evacuated`
    is the set of identifiers confirmed out. Identifiers not on the roster are
    reported separately and do not count towards completion.
    """
    people: dict[str, str] = {}
    for entry in roster:
        identifier = str(entry.get("identifier") or "").strip()
        if identifier:
            people[identifier] = str(entry.get("organization") or "").strip() or "N/A"
    out = {str(i).strip() for i in evacuated if str(i or "").strip()}

    by_organization: dict[str, dict[str, Any]] = {}
    for identifier, organization in people.items():
        bucket = by_organization.setdefault(organization, {"total": 0, "evacuated": 0, "remaining": 0})
        bucket["total"] += 1
        if identifier in out:
            bucket["evacuated"] += 1
        else:
            bucket["remaining"] += 1
    for bucket in by_organization.values():
        bucket["percent_evacuated"] = _percent(bucket["evacuated"], bucket["total"])

    total = len(people)
    evacuated_count = sum(1 for identifier in people if identifier in out)
    remaining = [identifier for identifier in people if identifier not in out]
    return {
        "total": total,
        "evacuated": evacuated_count,
        "remaining": len(remaining),
        "percent_evacuated": _percent(evacuated_count, total),
        "percent_remaining": _percent(len(remaining), total),
        "remaining_identifiers": remaining,
        "unexpected_identifiers": sorted(out - set(people)),
        "by_organization": dict(sorted(by_organization.items())),
        "complete": not remaining,
    }
