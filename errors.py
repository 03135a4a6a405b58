# errors.py
# -----------------------------------------------------------------------------
# Error taxonomy shared by grading, progress and the blueprints.
# -----------------------------------------------------------------------------
from typing import Any, Iterable, List, Optional


class ProgressError(Exception):
    """Base class for every error raised by the progress / exam core."""
    code = "error"


class InvalidTopic(ProgressError):
    code = "invalid_topic"


class IncompleteSubmission(ProgressError):
    """The student tried to submit while some questions are unanswered."""
    code = "incomplete_submission"

    def __init__(self, missing_ids: Iterable[str]):
        self.missing_ids: List[str] = [str(x) for x in missing_ids]
        super().__init__(f"{len(self.missing_ids)} question(s) unanswered: {', '.join(self.missing_ids)}")


class NoQuestions(ProgressError):
    code = "no_questions"

    def __init__(self, topic_id: Optional[str] = None):
        self.topic_id = topic_id
        msg = "exam has no questions" if topic_id is None else f"topic {topic_id} has no exam questions"
        super().__init__(msg)


class PersistenceFailure(ProgressError):
    """
    A store write failed. `intended` is the record the operation tried to
    write, so the caller can retry without re-deriving it.
    """
    code = "persistence_failure"

    def __init__(self, message: str, intended: Any = None):
        self.intended = intended
        super().__init__(message)


class DuplicateKeyConflict(ProgressError):
    """Two-step insert raced with another insert for the same (user_id, topic_id)."""
    code = "duplicate_key"

    def __init__(self, user_id: str, topic_id: str):
        self.user_id = user_id
        self.topic_id = topic_id
        super().__init__(f"progress row already exists for ({user_id}, {topic_id})")


__all__ = [
    "ProgressError",
    "InvalidTopic",
    "IncompleteSubmission",
    "NoQuestions",
    "PersistenceFailure",
    "DuplicateKeyConflict",
]
