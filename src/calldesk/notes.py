from typing import Iterable, Optional

from calldesk.session import FieldDescriptor, mask_sensitive

HEADER_PREFIX = "Hold Time:"


def format_duration(duration_ms: float) -> str:
    """Format milliseconds as M:SS."""
    total_seconds = int(max(0, duration_ms) // 1000)
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes}:{seconds:02d}"


def _format_value(value) -> str:
    if value is True:
        return "Yes"
    if value is False:
        return "No"
    return str(value)


def build_notes_header(
    total_hold_ms: float,
    account_number: str,
    sensitive_id: str,
    custom_data: Optional[dict] = None,
    fields: Iterable[FieldDescriptor] = (),
) -> str:
    """Summary block prepended to a finished call's notes.

    Only custom fields flagged include_in_notes with a non-empty value are
    listed, in descriptor order.
    """
    hold = format_duration(total_hold_ms) if total_hold_ms else "00:00"
    lines = [
        f"{HEADER_PREFIX} {hold}",
        f"Account #: {account_number or 'N/A'}",
        f"SSN: {mask_sensitive(sensitive_id) or 'N/A'}",
    ]
    custom_data = custom_data or {}
    for descriptor in fields:
        if not descriptor.include_in_notes:
            continue
        value = custom_data.get(descriptor.id)
        if value in (None, ""):
            continue
        lines.append(f"{descriptor.label}: {_format_value(value)}")
    return "\n".join(lines) + "\n\n"


def with_notes_header(notes: str, header: str) -> str:
    """Prepend the header unless the notes already carry one."""
    if notes.startswith(HEADER_PREFIX):
        return notes
    return header + notes
