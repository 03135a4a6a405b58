# progress.py
# -----------------------------------------------------------------------------
# Per-student topic progress: typed records, a keyed collection for the
# session's view of them, and the reconciler that persists changes.
#
# Natural key is (user_id, topic_id). Every write is a full upsert on that
# key, so a retried request lands on the same final row. When the store has
# no native upsert we fall back to get -> insert/update and convert a racing
# duplicate insert into an update.
# -----------------------------------------------------------------------------
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from errors import DuplicateKeyConflict, PersistenceFailure, ProgressError
from grading import PASS_SCORE

MAX_CONFLICT_RETRIES = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_datetime(v: Any) -> Optional[datetime]:
    if v is None or v == "":
        return None
    if isinstance(v, str):
        v = datetime.fromisoformat(v.replace("Z", "+00:00"))
    if not isinstance(v, datetime):
        raise ValueError(f"not a timestamp: {v!r}")
    if v.tzinfo is None:
        v = v.replace(tzinfo=timezone.utc)
    return v


@dataclass(frozen=True)
class ProgressRecord:
    user_id: str
    topic_id: str
    completed: bool = False
    score: Optional[int] = None
    completed_at: Optional[datetime] = None
    attempt: Optional[int] = None

    def __post_init__(self):
        if self.score is not None:
            if isinstance(self.score, bool) or not isinstance(self.score, int) or not (0 <= self.score <= 100):
                raise ValueError(f"score must be an integer in [0, 100], got {self.score!r}")
        if self.completed_at is not None:
            object.__setattr__(self, "completed_at", _as_datetime(self.completed_at))

    @property
    def key(self):
        return (self.user_id, self.topic_id)

    @property
    def exam_passed(self) -> bool:
        return self.score is not None and self.score >= PASS_SCORE

    def with_changes(self, **changes) -> "ProgressRecord":
        return replace(self, **changes)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ProgressRecord":
        score = row.get("score")
        attempt = row.get("attempt")
        return cls(
            user_id=str(row.get("user_id")),
            topic_id=str(row.get("topic_id")),
            completed=bool(row.get("completed")),
            score=int(score) if score is not None else None,
            completed_at=_as_datetime(row.get("completed_at")),
            attempt=int(attempt) if attempt is not None else None,
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "topic_id": self.topic_id,
            "completed": self.completed,
            "score": self.score,
            "completed_at": self.completed_at,
            "attempt": self.attempt,
        }

    def to_json(self) -> Dict[str, Any]:
        d = self.to_row()
        d["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        d["exam_passed"] = self.exam_passed
        return d


def supersedes(incoming: ProgressRecord, existing: Optional[ProgressRecord]) -> bool:
    """
    True unless `existing` is strictly more recent than `incoming`.
    Attempt counters win when both sides carry one; otherwise completed_at.
    """
    if existing is None or existing.completed_at is None:
        return True
    if incoming.attempt is not None and existing.attempt is not None and incoming.attempt != existing.attempt:
        return incoming.attempt > existing.attempt
    if incoming.completed_at is None:
        return False
    return incoming.completed_at >= existing.completed_at


def lookup(records: Iterable[ProgressRecord], topic_id: str) -> Optional[ProgressRecord]:
    for r in records:
        if r.topic_id == str(topic_id):
            return r
    return None


class ProgressBook:
    """The progress records of one student, keyed by topic id."""

    def __init__(self, user_id: str, records: Iterable[ProgressRecord] = ()):
        self.user_id = str(user_id)
        self._by_topic: Dict[str, ProgressRecord] = {}
        self.reload(records)

    def reload(self, records: Iterable[ProgressRecord]) -> None:
        self._by_topic = {}
        for r in records:
            if r.user_id != self.user_id:
                raise ValueError(f"record for {r.user_id} does not belong to {self.user_id}")
            self._by_topic[r.topic_id] = r

    def merge(self, record: ProgressRecord) -> bool:
        """Apply a freshly persisted record unless a newer one is already held."""
        if record.user_id != self.user_id:
            raise ValueError(f"record for {record.user_id} does not belong to {self.user_id}")
        current = self._by_topic.get(record.topic_id)
        if current is not None and not supersedes(record, current):
            print(f"[progress] discarding stale record for topic {record.topic_id}")
            return False
        self._by_topic[record.topic_id] = record
        return True

    def get(self, topic_id: str) -> Optional[ProgressRecord]:
        return self._by_topic.get(str(topic_id))

    def records(self) -> List[ProgressRecord]:
        return list(self._by_topic.values())

    def __len__(self) -> int:
        return len(self._by_topic)

    def __contains__(self, topic_id) -> bool:
        return str(topic_id) in self._by_topic


class ProgressReconciler:
    """
    Persists completion and exam results against a store exposing
    get_progress / insert_progress / update_progress / select_progress and,
    when `supports_upsert` is true, upsert_progress.
    """

    def __init__(self, store, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.clock = clock

    # ------------------------------- reads ------------------------------------
    def load(self, user_id: str) -> ProgressBook:
        try:
            records = self.store.select_progress(str(user_id))
        except ProgressError:
            raise
        except Exception as e:
            raise PersistenceFailure(f"could not load progress: {e}") from e
        return ProgressBook(str(user_id), records)

    # ------------------------------- writes -----------------------------------
    def apply_completion(self, user_id: str, topic_id: str) -> ProgressRecord:
        fresh = ProgressRecord(str(user_id), str(topic_id), completed=True)
        if getattr(self.store, "supports_upsert", False):
            return self._native(fresh, fields=("completed",), newer_only=False)
        return self._two_step(fresh, lambda cur: cur.with_changes(completed=True))

    def apply_exam_result(self, user_id: str, topic_id: str, score_percent: int,
                          submitted_at: Optional[datetime] = None,
                          attempt: Optional[int] = None) -> ProgressRecord:
        intended = ProgressRecord(
            str(user_id), str(topic_id),
            completed=True,
            score=score_percent,
            completed_at=submitted_at or self.clock(),
            attempt=attempt,
        )
        if getattr(self.store, "supports_upsert", False):
            return self._native(intended, fields=("completed", "score", "completed_at", "attempt"), newer_only=True)

        def _merge(cur: ProgressRecord) -> Optional[ProgressRecord]:
            if not supersedes(intended, cur):
                return None
            if intended.attempt is None:
                return intended.with_changes(attempt=cur.attempt)
            return intended

        return self._two_step(intended, _merge)

    def _native(self, intended: ProgressRecord, fields, newer_only: bool) -> ProgressRecord:
        try:
            stored = self.store.upsert_progress(intended, fields=fields, newer_only=newer_only)
        except ProgressError:
            raise
        except Exception as e:
            print(f"[progress] upsert failed for {intended.key}: {e}")
            raise PersistenceFailure(f"progress write failed: {e}", intended=intended) from e
        if newer_only and stored is not None and stored != intended and not supersedes(intended, stored):
            print(f"[progress] kept newer stored result for {intended.key}")
        return stored

    def _two_step(self, intended: ProgressRecord,
                  merge: Callable[[ProgressRecord], Optional[ProgressRecord]]) -> ProgressRecord:
        target = intended
        for _ in range(MAX_CONFLICT_RETRIES + 1):
            try:
                current = self.store.get_progress(intended.user_id, intended.topic_id)
                if current is None:
                    target = intended
                    self.store.insert_progress(target)
                    return target
                merged = merge(current)
                if merged is None:
                    print(f"[progress] kept newer stored result for {intended.key}")
                    return current
                target = merged
                if merged == current:
                    return current
                self.store.update_progress(merged)
                return merged
            except DuplicateKeyConflict:
                print(f"[progress] concurrent insert for {intended.key}; retrying as update")
                continue
            except ProgressError:
                raise
            except Exception as e:
                print(f"[progress] write failed for {intended.key}: {e}")
                raise PersistenceFailure(f"progress write failed: {e}", intended=target) from e
        raise PersistenceFailure(
            f"progress write for {intended.key} kept conflicting after {MAX_CONFLICT_RETRIES} retries",
            intended=target,
        )


__all__ = [
    "ProgressRecord",
    "ProgressBook",
    "ProgressReconciler",
    "supersedes",
    "lookup",
    "MAX_CONFLICT_RETRIES",
]
