import secrets


def new_key() -> str:
    return secrets.token_urlsafe(12)


def first_name(name: str | None) -> str:
    """Return the lower-cased first name token of ``name``."""
    return (name or '').strip().lower().split(' ')[0]


def find_member(label: str, roster: list[dict]) -> dict | None:
    """Return the first roster member whose first name occurs in ``label``."""
    lowered = label.lower()
    for member in roster:
        token = first_name(member.get('name'))
        if token and token in lowered:
            return member
    return None


def assign_parts(labels: list[str], roster: list[dict]) -> list[dict]:
    """Turn score part labels into assignments.

    A label such as ``"1st Trumpet (Kari)"`` mentioning a member's first name
    is assigned to the first such member in roster order.  When a later label
    with exactly the same text matches again, that member is added to the
    existing assignment instead of creating a new one.  Labels that mention
    nobody get an assignment without members.  Members with an empty name
    match no label at all, rather than every label."""
    assignments: list[dict] = []
    by_label: dict[str, dict] = {}
    for label in labels:
        member = find_member(label, roster)
        if member is None:
            assignments.append({'key': new_key(), 'label': label, 'members': []})
            continue
        ref = {'ref': member['id']}
        existing = by_label.get(label)
        if existing is not None:
            existing['members'].append(ref)
            continue
        assignment = {'key': new_key(), 'label': label, 'members': [ref]}
        by_label[label] = assignment
        assignments.append(assignment)
    return assignments


def filter_instrument_name(name: str | None, instruments) -> str | None:
    """Return the first known instrument value mentioned in ``name``."""
    if not name:
        return None
    lowered = name.lower()
    for instrument in instruments:
        value = instrument['value'] if isinstance(instrument, dict) else instrument.value
        if value in lowered:
            return value
    return None
