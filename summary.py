# summary.py
# -----------------------------------------------------------------------------
# Dashboard metrics, always folded from the full record set on each load.
# -----------------------------------------------------------------------------
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence

from progress import ProgressRecord
from topics import Topic

STATUS_PASSED = "Exam passed"
STATUS_COMPLETED = "Completed"
STATUS_NOT_STARTED = "Not started"


@dataclass(frozen=True)
class ProgressSummary:
    completed_count: int
    total_count: int
    percentage: float
    exams_passed_count: int

    @property
    def rounded_percentage(self) -> int:
        return int(self.percentage + 0.5)

    def to_json(self) -> Dict[str, Any]:
        return {
            "completed_count": self.completed_count,
            "total_count": self.total_count,
            "percentage": self.percentage,
            "rounded_percentage": self.rounded_percentage,
            "exams_passed_count": self.exams_passed_count,
        }


def _relevant(topics: Sequence[Topic], records: Iterable[ProgressRecord]) -> List[ProgressRecord]:
    # Rows left behind by a deleted topic are not counted
    known = {t.id for t in topics}
    return [r for r in records if r.topic_id in known]


def summarize(topics: Sequence[Topic], records: Iterable[ProgressRecord]) -> ProgressSummary:
    topics = list(topics or [])
    rows = _relevant(topics, records or [])
    completed = sum(1 for r in rows if r.completed)
    passed = sum(1 for r in rows if r.exam_passed)
    total = len(topics)
    pct = (completed / total * 100) if total else 0
    return ProgressSummary(
        completed_count=completed,
        total_count=total,
        percentage=pct,
        exams_passed_count=passed,
    )


def topic_status(record) -> str:
    if record is None:
        return STATUS_NOT_STARTED
    if record.exam_passed:
        return STATUS_PASSED
    if record.completed:
        return STATUS_COMPLETED
    return STATUS_NOT_STARTED


def topic_rows(topics: Sequence[Topic], records: Iterable[ProgressRecord]) -> List[Dict[str, Any]]:
    by_topic = {r.topic_id: r for r in records or []}
    out: List[Dict[str, Any]] = []
    for t in topics or []:
        rec = by_topic.get(t.id)
        out.append({
            "topic_id": t.id,
            "title": t.title,
            "status": topic_status(rec),
            "completed": bool(rec and rec.completed),
            "score": rec.score if rec else None,
            "passed": bool(rec and rec.exam_passed),
        })
    return out


__all__ = [
    "ProgressSummary",
    "summarize",
    "topic_status",
    "topic_rows",
    "STATUS_PASSED",
    "STATUS_COMPLETED",
    "STATUS_NOT_STARTED",
]
