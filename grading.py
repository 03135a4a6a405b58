# grading.py
# -----------------------------------------------------------------------------
# Multiple-choice grading (pure) and the per-attempt question snapshot.
# -----------------------------------------------------------------------------
import hashlib
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from errors import IncompleteSubmission, NoQuestions
from topics import Question, Topic

PASS_SCORE = 70  # inclusive


@dataclass(frozen=True)
class GradeResult:
    score_percent: int
    passed: bool
    correct: int
    total: int

    def to_json(self) -> Dict[str, Any]:
        return {
            "score_percent": self.score_percent,
            "passed": self.passed,
            "correct": self.correct,
            "total": self.total,
        }


def _selected_index(raw: Any, question: Question) -> Optional[int]:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, str):
        raw = raw.strip()
        if not raw.lstrip("-").isdigit():
            return None
        raw = int(raw)
    if not isinstance(raw, int):
        return None
    if not (0 <= raw < len(question.options)):
        return None
    return raw


def percent_half_up(correct: int, total: int) -> int:
    """round(correct / total * 100) with halves rounded up, in exact integers."""
    return (200 * correct + total) // (2 * total)


def grade(questions: Sequence[Question], answers: Mapping[str, Any]) -> GradeResult:
    """
    Score a full submission. Every question must carry a valid option index
    in `answers` (keyed by question id), otherwise IncompleteSubmission.
    """
    if not questions:
        raise NoQuestions()
    answers = answers or {}
    missing: List[str] = []
    selected: Dict[str, int] = {}
    for q in questions:
        idx = _selected_index(answers.get(q.id), q)
        if idx is None:
            missing.append(q.id)
        else:
            selected[q.id] = idx
    if missing:
        raise IncompleteSubmission(missing)

    correct = sum(1 for q in questions if selected[q.id] == q.correct_answer)
    score = percent_half_up(correct, len(questions))
    return GradeResult(score_percent=score, passed=score >= PASS_SCORE, correct=correct, total=len(questions))


def questions_signature(questions: Sequence[Question]) -> str:
    basis = json.dumps([q.to_dict() for q in questions], sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(basis.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ExamSnapshot:
    """The question set a student saw when the attempt started."""
    attempt_uid: str
    topic_id: str
    questions: List[Question]
    signature: str
    started_at: str

    @classmethod
    def start(cls, topic: Topic) -> "ExamSnapshot":
        if not topic.questions:
            raise NoQuestions(topic.id)
        qs = list(topic.questions)
        return cls(
            attempt_uid=uuid.uuid4().hex,
            topic_id=topic.id,
            questions=qs,
            signature=questions_signature(qs),
            started_at=datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
        )

    def grade(self, answers: Mapping[str, Any]) -> GradeResult:
        return grade(self.questions, answers)

    def is_stale(self, topic: Optional[Topic]) -> bool:
        if topic is None:
            return True
        return questions_signature(topic.questions) != self.signature

    def session_ref(self) -> Dict[str, Any]:
        """What the browser may hold: no questions, so no answer key."""
        return {
            "attempt_uid": self.attempt_uid,
            "topic_id": self.topic_id,
            "signature": self.signature,
            "started_at": self.started_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_uid": self.attempt_uid,
            "topic_id": self.topic_id,
            "questions": [q.to_dict() for q in self.questions],
            "signature": self.signature,
            "started_at": self.started_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ExamSnapshot":
        return cls(
            attempt_uid=str(d["attempt_uid"]),
            topic_id=str(d["topic_id"]),
            questions=[Question.from_dict(q) for q in d.get("questions") or []],
            signature=str(d.get("signature") or ""),
            started_at=_iso(d.get("started_at")),
        )


def _iso(v: Any) -> str:
    if isinstance(v, datetime):
        return v.isoformat()
    return str(v or "")


__all__ = [
    "PASS_SCORE",
    "GradeResult",
    "grade",
    "percent_half_up",
    "questions_signature",
    "ExamSnapshot",
]
