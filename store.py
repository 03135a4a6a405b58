# store.py
# -----------------------------------------------------------------------------
# Store boundary for topics, progress rows and open exam attempts.
#  - PostgresStore: psycopg helpers injected via deps; native upsert keyed on
#    (user_id, topic_id) with ON CONFLICT.
#  - MemoryStore: process-local dicts (local demo / name-only sessions); no
#    native upsert, so the reconciler uses its two-step path.
# -----------------------------------------------------------------------------
import json
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from psycopg import errors as pg_errors

from errors import DuplicateKeyConflict
from grading import ExamSnapshot
from progress import ProgressRecord
from topics import Topic, with_created_at

PROGRESS_COLUMNS = ("user_id", "topic_id", "completed", "score", "completed_at", "attempt")
UPSERT_FIELDS = ("completed", "score", "completed_at", "attempt")

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS public.topics (
      id           TEXT PRIMARY KEY,
      title        TEXT NOT NULL,
      description  TEXT NOT NULL DEFAULT '',
      content      TEXT NOT NULL DEFAULT '',
      example      TEXT NOT NULL DEFAULT '',
      questions    JSONB NOT NULL DEFAULT '[]'::jsonb,
      created_at   TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    CREATE TABLE IF NOT EXISTS public.progress (
      user_id      TEXT NOT NULL,
      topic_id     TEXT NOT NULL REFERENCES public.topics(id) ON DELETE CASCADE,
      completed    BOOLEAN NOT NULL DEFAULT FALSE,
      score        INTEGER CHECK (score BETWEEN 0 AND 100),
      completed_at TIMESTAMPTZ,
      attempt      INTEGER,
      updated_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
      PRIMARY KEY (user_id, topic_id)
    );
    CREATE TABLE IF NOT EXISTS public.exam_attempts (
      attempt_uid  TEXT PRIMARY KEY,
      user_id      TEXT NOT NULL,
      topic_id     TEXT NOT NULL REFERENCES public.topics(id) ON DELETE CASCADE,
      questions    JSONB NOT NULL,
      signature    TEXT NOT NULL,
      started_at   TIMESTAMPTZ NOT NULL
    );
"""


def _order_sql(order: str) -> str:
    o = (order or "desc").lower()
    if o not in ("asc", "desc"):
        raise ValueError(f"order must be 'asc' or 'desc', got {order!r}")
    return o.upper()


# =============================================================================
# Postgres (psycopg 3)
# =============================================================================
class PostgresStore:
    """
    deps:
      - fetch_one(sql, params) -> dict | None
      - fetch_all(sql, params) -> list[dict]
      - execute(sql, params)
      - execute_returning(sql, params) -> list[dict]
    """
    supports_upsert = True

    def __init__(self, deps: Dict[str, Any]):
        self.fetch_one: Callable = deps["fetch_one"]
        self.fetch_all: Callable = deps["fetch_all"]
        self.execute: Callable = deps["execute"]
        self.execute_returning: Callable = deps["execute_returning"]

    def ensure_schema(self) -> None:
        self.execute(SCHEMA_SQL, ())

    # ------------------------------- topics -----------------------------------
    def select_topics(self, order: str = "desc") -> List[Topic]:
        rows = self.fetch_all(f"""
            SELECT id, title, description, content, example, questions, created_at
              FROM public.topics
             ORDER BY created_at {_order_sql(order)}, id {_order_sql(order)};
        """, ())
        return [Topic.from_row(r) for r in rows or []]

    def get_topic(self, topic_id: str) -> Optional[Topic]:
        row = self.fetch_one("""
            SELECT id, title, description, content, example, questions, created_at
              FROM public.topics
             WHERE id = %s;
        """, (str(topic_id),))
        return Topic.from_row(row) if row else None

    def insert_topic(self, topic: Topic) -> Topic:
        r = topic.to_row()
        rows = self.execute_returning("""
            INSERT INTO public.topics (id, title, description, content, example, questions)
            VALUES (%s, %s, %s, %s, %s, %s::jsonb)
            RETURNING created_at;
        """, (r["id"], r["title"], r["description"], r["content"], r["example"], r["questions"]))
        created_at = (rows[0] if rows else {}).get("created_at")
        return with_created_at(topic, created_at)

    def update_topic(self, topic: Topic) -> bool:
        r = topic.to_row()
        rows = self.execute_returning("""
            UPDATE public.topics
               SET title = %s, description = %s, content = %s, example = %s, questions = %s::jsonb
             WHERE id = %s
            RETURNING id;
        """, (r["title"], r["description"], r["content"], r["example"], r["questions"], r["id"]))
        return bool(rows)

    def delete_topic(self, topic_id: str) -> bool:
        rows = self.execute_returning(
            "DELETE FROM public.topics WHERE id = %s RETURNING id;", (str(topic_id),)
        )
        return bool(rows)

    def seed_topics_if_empty(self, topics: Sequence[Topic]) -> int:
        row = self.fetch_one("SELECT COUNT(*) AS n FROM public.topics;", ())
        if int((row or {}).get("n") or 0) > 0:
            return 0
        inserted = 0
        for t in topics:
            r = t.to_row()
            rows = self.execute_returning("""
                INSERT INTO public.topics (id, title, description, content, example, questions)
                VALUES (%s, %s, %s, %s, %s, %s::jsonb)
                ON CONFLICT (id) DO NOTHING
                RETURNING id;
            """, (r["id"], r["title"], r["description"], r["content"], r["example"], r["questions"]))
            inserted += len(rows or [])
        print(f"[topics] seeded {inserted} topic(s)")
        return inserted

    # ------------------------------- progress ---------------------------------
    def select_progress(self, user_id: str) -> List[ProgressRecord]:
        rows = self.fetch_all("""
            SELECT user_id, topic_id, completed, score, completed_at, attempt
              FROM public.progress
             WHERE user_id = %s
             ORDER BY topic_id;
        """, (str(user_id),))
        return [ProgressRecord.from_row(r) for r in rows or []]

    def get_progress(self, user_id: str, topic_id: str) -> Optional[ProgressRecord]:
        row = self.fetch_one("""
            SELECT user_id, topic_id, completed, score, completed_at, attempt
              FROM public.progress
             WHERE user_id = %s AND topic_id = %s;
        """, (str(user_id), str(topic_id)))
        return ProgressRecord.from_row(row) if row else None

    def insert_progress(self, record: ProgressRecord) -> None:
        r = record.to_row()
        try:
            self.execute("""
                INSERT INTO public.progress (user_id, topic_id, completed, score, completed_at, attempt)
                VALUES (%s, %s, %s, %s, %s, %s);
            """, tuple(r[c] for c in PROGRESS_COLUMNS))
        except pg_errors.UniqueViolation:
            raise DuplicateKeyConflict(record.user_id, record.topic_id) from None

    def update_progress(self, record: ProgressRecord) -> None:
        self.execute("""
            UPDATE public.progress
               SET completed = %s, score = %s, completed_at = %s, attempt = %s, updated_at = now()
             WHERE user_id = %s AND topic_id = %s;
        """, (record.completed, record.score, record.completed_at, record.attempt,
              record.user_id, record.topic_id))

    def upsert_progress(self, record: ProgressRecord, fields: Iterable[str] = UPSERT_FIELDS,
                        newer_only: bool = False) -> Optional[ProgressRecord]:
        """
        Insert, or on (user_id, topic_id) conflict overwrite only `fields`.
        With newer_only the overwrite is skipped when the stored row is more
        recent; the stored row is returned in that case.
        """
        fields = tuple(fields)
        unknown = [f for f in fields if f not in UPSERT_FIELDS]
        if not fields or unknown:
            raise ValueError(f"cannot upsert fields {fields!r}")
        sets = []
        for f in fields:
            if f == "attempt":
                sets.append("attempt = COALESCE(EXCLUDED.attempt, p.attempt)")
            else:
                sets.append(f"{f} = EXCLUDED.{f}")
        sets.append("updated_at = now()")
        guard = ""
        if newer_only:
            guard = """
             WHERE p.completed_at IS NULL
                OR CASE
                     WHEN p.attempt IS NOT NULL AND EXCLUDED.attempt IS NOT NULL AND p.attempt <> EXCLUDED.attempt
                       THEN EXCLUDED.attempt > p.attempt
                     ELSE EXCLUDED.completed_at >= p.completed_at
                   END"""
        r = record.to_row()
        rows = self.execute_returning(f"""
            INSERT INTO public.progress AS p (user_id, topic_id, completed, score, completed_at, attempt)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, topic_id) DO UPDATE
               SET {", ".join(sets)}{guard}
            RETURNING user_id, topic_id, completed, score, completed_at, attempt;
        """, tuple(r[c] for c in PROGRESS_COLUMNS))
        if rows:
            return ProgressRecord.from_row(rows[0])
        return self.get_progress(record.user_id, record.topic_id)

    # ----------------------------- exam attempts ------------------------------
    def save_exam_attempt(self, user_id: str, snap: ExamSnapshot) -> None:
        d = snap.to_dict()
        self.execute("""
            INSERT INTO public.exam_attempts (attempt_uid, user_id, topic_id, questions, signature, started_at)
            VALUES (%s, %s, %s, %s::jsonb, %s, %s)
            ON CONFLICT (attempt_uid) DO NOTHING;
        """, (snap.attempt_uid, str(user_id), snap.topic_id,
              json.dumps(d["questions"], ensure_ascii=False), snap.signature, snap.started_at))

    def get_exam_attempt(self, user_id: str, attempt_uid: str) -> Optional[ExamSnapshot]:
        row = self.fetch_one("""
            SELECT attempt_uid, topic_id, questions, signature, started_at
              FROM public.exam_attempts
             WHERE attempt_uid = %s AND user_id = %s;
        """, (str(attempt_uid), str(user_id)))
        if not row:
            return None
        row = dict(row)
        if isinstance(row.get("questions"), str):
            row["questions"] = json.loads(row["questions"])
        return ExamSnapshot.from_dict(row)

    def delete_exam_attempt(self, user_id: str, attempt_uid: str) -> None:
        self.execute(
            "DELETE FROM public.exam_attempts WHERE attempt_uid = %s AND user_id = %s;",
            (str(attempt_uid), str(user_id)),
        )


# =============================================================================
# In-process store
# =============================================================================
class MemoryStore:
    """Single-record operations are atomic under one lock; no native upsert."""
    supports_upsert = False

    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._lock = threading.Lock()
        self._topics: Dict[str, Topic] = {}
        self._progress: Dict[Tuple[str, str], ProgressRecord] = {}
        self._attempts: Dict[str, Tuple[str, ExamSnapshot]] = {}
        self._clock = clock

    def ensure_schema(self) -> None:
        return None

    def _next_created_at(self) -> datetime:
        now = self._clock()
        # keep creation order strict even when the clock does not move
        latest = max((t.created_at for t in self._topics.values() if t.created_at), default=None)
        if latest is not None and now <= latest:
            now = latest + timedelta(microseconds=1)
        return now

    # ------------------------------- topics -----------------------------------
    def select_topics(self, order: str = "desc") -> List[Topic]:
        reverse = _order_sql(order) == "DESC"
        with self._lock:
            topics = list(self._topics.values())
        return sorted(topics, key=lambda t: (t.created_at, t.id), reverse=reverse)

    def get_topic(self, topic_id: str) -> Optional[Topic]:
        with self._lock:
            return self._topics.get(str(topic_id))

    def insert_topic(self, topic: Topic) -> Topic:
        with self._lock:
            if topic.id in self._topics:
                raise ValueError(f"topic {topic.id} already exists")
            saved = with_created_at(topic, self._next_created_at())
            self._topics[topic.id] = saved
            return saved

    def update_topic(self, topic: Topic) -> bool:
        with self._lock:
            current = self._topics.get(topic.id)
            if current is None:
                return False
            self._topics[topic.id] = with_created_at(topic, current.created_at)
            return True

    def delete_topic(self, topic_id: str) -> bool:
        with self._lock:
            if self._topics.pop(str(topic_id), None) is None:
                return False
            for key in [k for k in self._progress if k[1] == str(topic_id)]:
                del self._progress[key]
            for uid in [u for u, (_, s) in self._attempts.items() if s.topic_id == str(topic_id)]:
                del self._attempts[uid]
            return True

    def seed_topics_if_empty(self, topics: Sequence[Topic]) -> int:
        with self._lock:
            if self._topics:
                return 0
            for t in topics:
                self._topics[t.id] = with_created_at(t, self._next_created_at())
            print(f"[topics] seeded {len(topics)} topic(s)")
            return len(topics)

    # ------------------------------- progress ---------------------------------
    def select_progress(self, user_id: str) -> List[ProgressRecord]:
        with self._lock:
            rows = [r for (u, _), r in self._progress.items() if u == str(user_id)]
        return sorted(rows, key=lambda r: r.topic_id)

    def get_progress(self, user_id: str, topic_id: str) -> Optional[ProgressRecord]:
        with self._lock:
            return self._progress.get((str(user_id), str(topic_id)))

    def insert_progress(self, record: ProgressRecord) -> None:
        with self._lock:
            if record.key in self._progress:
                raise DuplicateKeyConflict(record.user_id, record.topic_id)
            self._progress[record.key] = record

    def update_progress(self, record: ProgressRecord) -> None:
        with self._lock:
            if record.key not in self._progress:
                raise KeyError(f"no progress row for {record.key}")
            self._progress[record.key] = record

    # ----------------------------- exam attempts ------------------------------
    def save_exam_attempt(self, user_id: str, snap: ExamSnapshot) -> None:
        with self._lock:
            self._attempts.setdefault(snap.attempt_uid, (str(user_id), snap))

    def get_exam_attempt(self, user_id: str, attempt_uid: str) -> Optional[ExamSnapshot]:
        with self._lock:
            owner, snap = self._attempts.get(str(attempt_uid), (None, None))
        return snap if owner == str(user_id) else None

    def delete_exam_attempt(self, user_id: str, attempt_uid: str) -> None:
        with self._lock:
            owner, _ = self._attempts.get(str(attempt_uid), (None, None))
            if owner == str(user_id):
                del self._attempts[str(attempt_uid)]


__all__ = ["PostgresStore", "MemoryStore", "SCHEMA_SQL", "UPSERT_FIELDS"]
