# topics.py
# -----------------------------------------------------------------------------
# Topic / Question model, row (de)serialisation and authoring validation.
# -----------------------------------------------------------------------------
import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from errors import InvalidTopic

OPTIONS_PER_QUESTION = 4


@dataclass(frozen=True)
class Question:
    id: str
    question: str
    options: List[str]
    correct_answer: int

    def __post_init__(self):
        if not isinstance(self.correct_answer, int) or isinstance(self.correct_answer, bool):
            raise InvalidTopic(f"question {self.id}: correct answer must be an option index")
        if not (0 <= self.correct_answer < len(self.options)):
            raise InvalidTopic(
                f"question {self.id}: correct answer {self.correct_answer} outside 0..{len(self.options) - 1}"
            )

    @property
    def is_blank(self) -> bool:
        return not (self.question or "").strip()

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Question":
        raw_correct = d.get("correctAnswer", d.get("correct_answer", 0))
        try:
            correct = int(raw_correct)
        except (TypeError, ValueError):
            raise InvalidTopic(f"question {d.get('id')}: correct answer {raw_correct!r} is not an index") from None
        return cls(
            id=str(d.get("id") or ""),
            question=str(d.get("question") or ""),
            options=[str(o if o is not None else "") for o in (d.get("options") or [])],
            correct_answer=correct,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "question": self.question,
            "options": list(self.options),
            "correctAnswer": self.correct_answer,
        }

    def public_dict(self) -> Dict[str, Any]:
        """Shape handed to students: no correct answer."""
        return {"id": self.id, "question": self.question, "options": list(self.options)}


@dataclass(frozen=True)
class Topic:
    id: str
    title: str
    description: str = ""
    content: str = ""
    example: str = ""
    questions: List[Question] = field(default_factory=list)
    created_at: Optional[datetime] = None

    @property
    def exam_ready(self) -> bool:
        return bool(self.questions) and not any(q.is_blank for q in self.questions)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Topic":
        raw_qs = row.get("questions")
        if isinstance(raw_qs, (bytes, bytearray)):
            raw_qs = raw_qs.decode("utf-8")
        if isinstance(raw_qs, str):
            try:
                raw_qs = json.loads(raw_qs) if raw_qs.strip() else []
            except ValueError:
                raise InvalidTopic(f"topic {row.get('id')}: questions column is not valid JSON") from None
        questions = [Question.from_dict(q) for q in (raw_qs or []) if isinstance(q, dict)]
        return cls(
            id=str(row.get("id")),
            title=str(row.get("title") or ""),
            description=str(row.get("description") or ""),
            content=str(row.get("content") or ""),
            example=str(row.get("example") or ""),
            questions=questions,
            created_at=row.get("created_at"),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "content": self.content,
            "example": self.example,
            "questions": json.dumps([q.to_dict() for q in self.questions], ensure_ascii=False),
        }

    def public_dict(self, with_answers: bool = False) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "content": self.content,
            "example": self.example,
            "questions": [q.to_dict() if with_answers else q.public_dict() for q in self.questions],
            "exam_ready": self.exam_ready,
            "created_at": self.created_at.isoformat() if isinstance(self.created_at, datetime) else self.created_at,
        }


def new_topic_id() -> str:
    return uuid.uuid4().hex


def _normalize_options(raw: Any, qid: str) -> List[str]:
    opts = [str(o if o is not None else "") for o in (raw or [])]
    if len(opts) > OPTIONS_PER_QUESTION:
        raise InvalidTopic(f"question {qid}: at most {OPTIONS_PER_QUESTION} options")
    while len(opts) < OPTIONS_PER_QUESTION:
        opts.append("")
    return opts


def build_topic(payload: Dict[str, Any], topic_id: Optional[str] = None,
                created_at: Optional[datetime] = None) -> Topic:
    """
    Validate an authoring payload and return the Topic to save.
    Questions with a blank prompt are dropped; title, description and
    content are required.
    """
    payload = payload or {}
    title = str(payload.get("title") or "").strip()
    description = str(payload.get("description") or "").strip()
    content = str(payload.get("content") or "")
    missing = [n for n, v in (("title", title), ("description", description), ("content", content.strip())) if not v]
    if missing:
        raise InvalidTopic(f"missing required field(s): {', '.join(missing)}")

    questions: List[Question] = []
    seen_ids = set()
    for i, raw in enumerate(payload.get("questions") or [], start=1):
        if not isinstance(raw, dict):
            raise InvalidTopic(f"question #{i} is not an object")
        if not str(raw.get("question") or "").strip():
            continue
        qid = str(raw.get("id") or "").strip() or f"q{uuid.uuid4().hex[:8]}"
        if qid in seen_ids:
            raise InvalidTopic(f"duplicate question id {qid}")
        seen_ids.add(qid)
        q = Question.from_dict({**raw, "id": qid, "options": _normalize_options(raw.get("options"), qid)})
        questions.append(q)

    return Topic(
        id=topic_id or new_topic_id(),
        title=title,
        description=description,
        content=content,
        example=str(payload.get("example") or ""),
        questions=questions,
        created_at=created_at,
    )


def with_created_at(topic: Topic, created_at: Optional[datetime]) -> Topic:
    return replace(topic, created_at=created_at)


# Seed content for an empty store
DEFAULT_TOPICS: List[Dict[str, Any]] = [
    {
        "id": "1",
        "title": "HTML Basics",
        "description": "Learn the fundamental HTML tags and structure",
        "content": (
            "HTML (HyperText Markup Language) is the standard markup language for creating web pages. "
            "It describes the structure of a web page using elements and tags.\n\n"
            "Basic HTML structure:\n- <!DOCTYPE html>: Declaration\n- <html>: Root element\n"
            "- <head>: Meta information\n- <body>: Visible content"
        ),
        "example": (
            "<!DOCTYPE html>\n<html>\n<head>\n  <title>My First Page</title>\n</head>\n<body>\n"
            "  <h1>Hello World!</h1>\n  <p>This is my first HTML page.</p>\n</body>\n</html>"
        ),
        "questions": [
            {
                "id": "q1",
                "question": "What does HTML stand for?",
                "options": [
                    "HyperText Markup Language",
                    "High Tech Modern Language",
                    "Home Tool Markup Language",
                    "Hyperlinks Text Mark Language",
                ],
                "correctAnswer": 0,
            }
        ],
    },
    {
        "id": "2",
        "title": "HTML Tables",
        "description": "Create and style tables in HTML",
        "content": (
            "HTML tables allow you to arrange data in rows and columns. Tables are defined with the <table> tag.\n\n"
            "Key table elements:\n- <tr>: Table row\n- <td>: Table data cell\n- <th>: Table header cell\n"
            "- <thead>: Groups header content\n- <tbody>: Groups body content"
        ),
        "example": (
            '<table border="1">\n  <thead>\n    <tr>\n      <th>Name</th>\n      <th>Age</th>\n    </tr>\n'
            "  </thead>\n  <tbody>\n    <tr>\n      <td>John</td>\n      <td>25</td>\n    </tr>\n"
            "    <tr>\n      <td>Jane</td>\n      <td>30</td>\n    </tr>\n  </tbody>\n</table>"
        ),
        "questions": [
            {
                "id": "q2",
                "question": "Which tag is used to create a table row?",
                "options": ["<td>", "<tr>", "<table>", "<th>"],
                "correctAnswer": 1,
            }
        ],
    },
    {
        "id": "3",
        "title": "HTML Lists",
        "description": "Learn about ordered and unordered lists",
        "content": (
            "HTML provides two main types of lists:\n\n1. Unordered Lists (<ul>): Items marked with bullets\n"
            "2. Ordered Lists (<ol>): Items marked with numbers\n\nList items are defined with <li> tag.\n\n"
            "You can also nest lists within lists for complex structures."
        ),
        "example": (
            "<!-- Unordered List -->\n<ul>\n  <li>HTML</li>\n  <li>CSS</li>\n  <li>JavaScript</li>\n</ul>\n\n"
            "<!-- Ordered List -->\n<ol>\n  <li>First Step</li>\n  <li>Second Step</li>\n  <li>Third Step</li>\n</ol>"
        ),
        "questions": [
            {
                "id": "q3",
                "question": "Which tag creates an unordered list?",
                "options": ["<ol>", "<ul>", "<list>", "<li>"],
                "correctAnswer": 1,
            }
        ],
    },
]


def default_topics() -> List[Topic]:
    return [Topic.from_row(t) for t in DEFAULT_TOPICS]


__all__ = [
    "Question",
    "Topic",
    "build_topic",
    "new_topic_id",
    "with_created_at",
    "DEFAULT_TOPICS",
    "default_topics",
    "OPTIONS_PER_QUESTION",
]
