"""Filtering for the call history list and the full history view.

Recomputed from scratch on every keystroke: a linear scan that keeps the
history's order.
"""

from typing import Iterable, Optional

from calldesk.session import CallRecord

ALL_TYPES = "all"
LIST_VIEW_LIMIT = 20


def _contains(haystack: str, needle: str) -> bool:
    return bool(haystack) and needle in haystack.casefold()


def matches(record: CallRecord, type_filter: str = ALL_TYPES, term: str = "") -> bool:
    if type_filter != ALL_TYPES and record.call_type.value != type_filter:
        return False
    needle = term.casefold()
    if not needle:
        return True
    return (
        _contains(record.caller_name, needle)
        or _contains(record.caller_phone, needle)
        or _contains(record.notes, needle)
        or _contains(record.account_number, needle)
    )


def search(
    records: Iterable[CallRecord],
    type_filter: str = ALL_TYPES,
    term: str = "",
    limit: Optional[int] = None,
) -> list[CallRecord]:
    results = []
    for record in records:
        if limit is not None and len(results) >= limit:
            break
        if matches(record, type_filter, term):
            results.append(record)
    return results


def recent_calls(records: Iterable[CallRecord], type_filter: str = ALL_TYPES, term: str = "") -> list[CallRecord]:
    """The capped list shown next to the call form."""
    return search(records, type_filter, term, limit=LIST_VIEW_LIMIT)


def full_history(records: Iterable[CallRecord], term: str = "") -> list[CallRecord]:
    return search(records, ALL_TYPES, term)
