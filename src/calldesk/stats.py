from dataclasses import dataclass, field
from typing import Iterable

from calldesk.notes import format_duration
from calldesk.session import CallRecord
from calldesk.states import CallType


@dataclass
class CallStats:
    total_calls: int = 0
    total_duration_ms: float = 0.0
    by_type: dict = field(default_factory=dict)

    @property
    def average_duration_ms(self) -> float:
        if self.total_calls == 0:
            return 0.0
        return self.total_duration_ms / self.total_calls

    def to_dict(self) -> dict:
        return {
            "total_calls": self.total_calls,
            "average_duration_ms": int(self.average_duration_ms),
            "average_duration": format_duration(self.average_duration_ms),
            "by_type": dict(self.by_type),
        }


def summarize(records: Iterable[CallRecord]) -> CallStats:
    stats = CallStats(by_type={t.value: 0 for t in CallType})
    for record in records:
        stats.total_calls += 1
        stats.total_duration_ms += record.duration or 0
        stats.by_type[record.call_type.value] += 1
    return stats
