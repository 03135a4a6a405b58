import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from psycopg.errors import UniqueViolation

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from errors import DuplicateKeyConflict, PersistenceFailure  # noqa: E402
from progress import ProgressReconciler, ProgressRecord  # noqa: E402
from grading import ExamSnapshot  # noqa: E402
from store import PostgresStore, SCHEMA_SQL  # noqa: E402
from topics import build_topic, default_topics  # noqa: E402

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeDB:
    def __init__(self):
        self.executed = []
        self.returning = []
        self.topic_count = 0
        self.fail_insert_with = None
        self.upsert_rows = None
        self.attempt_row = None

    def deps(self):
        return {
            "fetch_one": self.fetch_one,
            "fetch_all": self.fetch_all,
            "execute": self.execute,
            "execute_returning": self.execute_returning,
        }

    def fetch_one(self, sql, params=()):
        if "FROM public.exam_attempts" in sql:
            self.executed.append((sql, params))
            return self.attempt_row
        if "COUNT(*)" in sql:
            return {"n": self.topic_count}
        if "FROM public.progress" in sql:
            return {"user_id": params[0], "topic_id": params[1], "completed": True,
                    "score": 95, "completed_at": T0, "attempt": None}
        if "FROM public.topics" in sql:
            return {"id": params[0], "title": "HTML Basics", "description": "d", "content": "c",
                    "example": "", "created_at": T0,
                    "questions": json.dumps([{"id": "q1", "question": "?", "options": ["a", "b"],
                                              "correctAnswer": 1}])}
        return None

    def fetch_all(self, sql, params=()):
        self.executed.append((sql, params))
        return []

    def execute(self, sql, params=()):
        self.executed.append((sql, params))
        if "INSERT INTO public.progress" in sql and self.fail_insert_with:
            raise self.fail_insert_with

    def execute_returning(self, sql, params=()):
        self.returning.append((sql, params))
        if "INSERT INTO public.progress" in sql:
            if self.upsert_rows is not None:
                return self.upsert_rows
            cols = ("user_id", "topic_id", "completed", "score", "completed_at", "attempt")
            return [dict(zip(cols, params))]
        if "INSERT INTO public.topics" in sql and "RETURNING created_at" in sql:
            return [{"created_at": T0}]
        if "RETURNING id" in sql:
            return [{"id": params[-1] if "UPDATE" in sql else params[0]}]
        return []


@pytest.fixture
def db():
    return FakeDB()


def test_ensure_schema_creates_all_tables(db):
    PostgresStore(db.deps()).ensure_schema()
    sql = db.executed[0][0]
    assert sql == SCHEMA_SQL
    assert "PRIMARY KEY (user_id, topic_id)" in sql
    assert "CREATE TABLE IF NOT EXISTS public.exam_attempts" in sql
    assert "ON DELETE CASCADE" in sql


def test_get_topic_decodes_json_questions(db):
    topic = PostgresStore(db.deps()).get_topic("1")
    assert topic.title == "HTML Basics"
    assert topic.questions[0].correct_answer == 1
    assert topic.created_at == T0


def test_select_topics_orders_newest_first(db):
    PostgresStore(db.deps()).select_topics()
    assert "ORDER BY created_at DESC" in db.executed[0][0]
    with pytest.raises(ValueError):
        PostgresStore(db.deps()).select_topics(order="sideways")


def test_insert_topic_returns_created_at(db):
    topic = build_topic({"title": "T", "description": "D", "content": "C"})
    saved = PostgresStore(db.deps()).insert_topic(topic)
    assert saved.created_at == T0
    sql, params = db.returning[0]
    assert "%s::jsonb" in sql
    assert json.loads(params[5]) == []


def test_seed_only_when_empty(db):
    s = PostgresStore(db.deps())
    db.topic_count = 2
    assert s.seed_topics_if_empty(default_topics()) == 0
    assert db.returning == []
    db.topic_count = 0
    assert s.seed_topics_if_empty(default_topics()) == 3
    assert all("ON CONFLICT (id) DO NOTHING" in sql for sql, _ in db.returning)


def test_unique_violation_maps_to_duplicate_key(db):
    db.fail_insert_with = UniqueViolation("duplicate key value violates unique constraint")
    with pytest.raises(DuplicateKeyConflict):
        PostgresStore(db.deps()).insert_progress(ProgressRecord("u1", "1", completed=True))


def test_upsert_completion_only_touches_completed(db):
    s = PostgresStore(db.deps())
    rec = s.upsert_progress(ProgressRecord("u1", "1", completed=True), fields=("completed",))
    sql, params = db.returning[0]
    assert "ON CONFLICT (user_id, topic_id) DO UPDATE" in sql
    assert "completed = EXCLUDED.completed" in sql
    assert "score = EXCLUDED.score" not in sql
    assert "WHERE" not in sql.split("DO UPDATE", 1)[1]
    assert params[:3] == ("u1", "1", True)
    assert rec.completed is True


def test_upsert_exam_result_has_recency_guard(db):
    s = PostgresStore(db.deps())
    s.upsert_progress(
        ProgressRecord("u1", "1", completed=True, score=80, completed_at=T0, attempt=2),
        newer_only=True,
    )
    sql, _ = db.returning[0]
    assert "score = EXCLUDED.score" in sql
    assert "attempt = COALESCE(EXCLUDED.attempt, p.attempt)" in sql
    assert "EXCLUDED.completed_at >= p.completed_at" in sql


def test_guarded_upsert_returns_stored_row_when_skipped(db):
    db.upsert_rows = []
    stored = PostgresStore(db.deps()).upsert_progress(
        ProgressRecord("u1", "1", completed=True, score=10, completed_at=T0), newer_only=True
    )
    assert stored.score == 95


def test_upsert_rejects_unknown_fields(db):
    with pytest.raises(ValueError):
        PostgresStore(db.deps()).upsert_progress(ProgressRecord("u1", "1"), fields=("user_id",))


def test_reconciler_uses_native_upsert(db):
    r = ProgressReconciler(PostgresStore(db.deps()), clock=lambda: T0)
    rec = r.apply_exam_result("u1", "1", 75)
    assert rec.score == 75
    assert len(db.returning) == 1
    assert db.executed == []


def test_reconciler_wraps_driver_errors(db, monkeypatch):
    from psycopg import OperationalError

    def down(sql, params=()):
        raise OperationalError("could not connect to server")

    monkeypatch.setattr(db, "execute_returning", down)
    r = ProgressReconciler(PostgresStore(db.deps()), clock=lambda: T0)
    with pytest.raises(PersistenceFailure) as exc:
        r.apply_completion("u1", "1")
    assert exc.value.intended == ProgressRecord("u1", "1", completed=True)


def test_exam_attempt_is_saved_with_its_questions(db):
    snap = ExamSnapshot.start(default_topics()[0])
    PostgresStore(db.deps()).save_exam_attempt("u1", snap)
    sql, params = db.executed[-1]
    assert "INSERT INTO public.exam_attempts" in sql
    assert "ON CONFLICT (attempt_uid) DO NOTHING" in sql
    assert params[:3] == (snap.attempt_uid, "u1", snap.topic_id)
    assert json.loads(params[3])[0]["correctAnswer"] == snap.questions[0].correct_answer


def test_exam_attempt_lookup_is_scoped_to_the_student(db):
    snap = ExamSnapshot.start(default_topics()[0])
    row = snap.to_dict()
    db.attempt_row = dict(row, questions=json.dumps(row["questions"]), started_at=T0)

    got = PostgresStore(db.deps()).get_exam_attempt("u1", snap.attempt_uid)
    sql, params = db.executed[-1]
    assert "WHERE attempt_uid = %s AND user_id = %s" in sql
    assert params == (snap.attempt_uid, "u1")
    assert got.attempt_uid == snap.attempt_uid
    assert got.signature == snap.signature
    assert got.questions == snap.questions
    assert got.started_at == T0.isoformat()

    db.attempt_row = None
    assert PostgresStore(db.deps()).get_exam_attempt("u2", snap.attempt_uid) is None


def test_exam_attempt_delete(db):
    PostgresStore(db.deps()).delete_exam_attempt("u1", "abc")
    sql, params = db.executed[-1]
    assert sql.startswith("DELETE FROM public.exam_attempts")
    assert params == ("abc", "u1")
