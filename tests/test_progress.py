import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import psycopg
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from errors import DuplicateKeyConflict, PersistenceFailure  # noqa: E402
from progress import (  # noqa: E402
    MAX_CONFLICT_RETRIES,
    ProgressBook,
    ProgressReconciler,
    ProgressRecord,
    lookup,
    supersedes,
)
from store import MemoryStore  # noqa: E402
from topics import default_topics  # noqa: E402

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    s = MemoryStore(clock=lambda: T0)
    s.seed_topics_if_empty(default_topics())
    return s


@pytest.fixture
def reconciler(store):
    return ProgressReconciler(store, clock=lambda: T0)


# ------------------------------------------------------------------ records --
def test_record_rejects_out_of_range_score():
    with pytest.raises(ValueError):
        ProgressRecord("u", "1", score=101)
    with pytest.raises(ValueError):
        ProgressRecord("u", "1", score=-1)
    assert ProgressRecord("u", "1", score=0).score == 0


def test_record_parses_iso_timestamps():
    rec = ProgressRecord("u", "1", completed_at="2024-05-01T12:00:00Z")
    assert rec.completed_at == T0
    assert rec.to_json()["completed_at"] == "2024-05-01T12:00:00+00:00"


def test_lookup_by_topic():
    rows = [ProgressRecord("u", "1"), ProgressRecord("u", "2", completed=True)]
    assert lookup(rows, "2").completed is True
    assert lookup(rows, "9") is None


# --------------------------------------------------------------- completion --
def test_completion_creates_record(reconciler, store):
    rec = reconciler.apply_completion("u1", "1")
    assert rec.completed is True
    assert rec.score is None
    assert rec.completed_at is None
    assert store.get_progress("u1", "1") == rec


def test_completion_is_idempotent(reconciler, store):
    first = reconciler.apply_completion("u1", "1")
    second = reconciler.apply_completion("u1", "1")
    assert first == second
    assert len(store.select_progress("u1")) == 1


def test_completion_does_not_clobber_exam_score(reconciler):
    scored = reconciler.apply_exam_result("u1", "1", 80)
    after = reconciler.apply_completion("u1", "1")
    assert after.score == 80
    assert after.completed_at == scored.completed_at


# -------------------------------------------------------------- exam result --
def test_exam_result_marks_complete_with_score(reconciler, store):
    rec = reconciler.apply_exam_result("u1", "2", 67)
    assert rec.completed is True
    assert rec.score == 67
    assert rec.completed_at == T0
    assert rec.exam_passed is False
    assert store.get_progress("u1", "2") == rec


def test_exam_result_retry_is_idempotent(reconciler, store):
    a = reconciler.apply_exam_result("u1", "2", 90, submitted_at=T0)
    b = reconciler.apply_exam_result("u1", "2", 90, submitted_at=T0)
    assert a == b
    assert store.select_progress("u1") == [a]


def test_latest_attempt_overwrites_score(reconciler):
    reconciler.apply_exam_result("u1", "2", 100, submitted_at=T0)
    later = reconciler.apply_exam_result("u1", "2", 40, submitted_at=T0 + timedelta(minutes=5))
    assert later.score == 40
    assert later.exam_passed is False


def test_stale_exam_result_is_discarded(reconciler, store):
    newer = reconciler.apply_exam_result("u1", "2", 90, submitted_at=T0 + timedelta(minutes=5))
    kept = reconciler.apply_exam_result("u1", "2", 10, submitted_at=T0)
    assert kept == newer
    assert store.get_progress("u1", "2").score == 90


def test_attempt_counter_wins_over_timestamp(reconciler):
    reconciler.apply_exam_result("u1", "3", 50, submitted_at=T0 + timedelta(hours=1), attempt=2)
    rec = reconciler.apply_exam_result("u1", "3", 75, submitted_at=T0, attempt=3)
    assert rec.score == 75
    assert rec.attempt == 3


def test_result_without_attempt_keeps_stored_counter(reconciler, store):
    reconciler.apply_exam_result("u1", "3", 50, submitted_at=T0, attempt=2)
    rec = reconciler.apply_exam_result("u1", "3", 80, submitted_at=T0 + timedelta(minutes=1))
    assert rec.score == 80
    assert rec.attempt == 2
    assert store.get_progress("u1", "3").attempt == 2


def test_supersedes_rules():
    old = ProgressRecord("u", "1", completed=True, score=50, completed_at=T0)
    new = ProgressRecord("u", "1", completed=True, score=60, completed_at=T0 + timedelta(seconds=1))
    assert supersedes(new, old)
    assert not supersedes(old, new)
    assert supersedes(old, None)
    assert supersedes(old, ProgressRecord("u", "1", completed=True))


# ------------------------------------------------------------- concurrency --
class RacingStore(MemoryStore):
    """The first lookup misses a row another request is inserting right now."""

    def __init__(self, rival, **kw):
        super().__init__(**kw)
        self.rival = rival
        self.raced = False

    def get_progress(self, user_id, topic_id):
        if not self.raced:
            self.raced = True
            super().insert_progress(self.rival)
            return None
        return super().get_progress(user_id, topic_id)


def test_duplicate_insert_is_retried_as_update():
    rival = ProgressRecord("u1", "1", completed=True, score=55, completed_at=T0 - timedelta(minutes=1))
    s = RacingStore(rival, clock=lambda: T0)
    rec = ProgressReconciler(s, clock=lambda: T0).apply_exam_result("u1", "1", 85, submitted_at=T0)
    assert rec.score == 85
    assert s.get_progress("u1", "1").score == 85


def test_completion_race_keeps_rival_score():
    rival = ProgressRecord("u1", "1", completed=True, score=55, completed_at=T0)
    s = RacingStore(rival, clock=lambda: T0)
    rec = ProgressReconciler(s).apply_completion("u1", "1")
    assert rec.completed is True
    assert rec.score == 55


class AlwaysConflictingStore(MemoryStore):
    def get_progress(self, user_id, topic_id):
        return None

    def insert_progress(self, record):
        raise DuplicateKeyConflict(record.user_id, record.topic_id)


def test_endless_conflicts_become_persistence_failure():
    s = AlwaysConflictingStore()
    with pytest.raises(PersistenceFailure) as exc:
        ProgressReconciler(s).apply_completion("u1", "1")
    assert exc.value.intended == ProgressRecord("u1", "1", completed=True)
    assert str(MAX_CONFLICT_RETRIES) in str(exc.value)


# ---------------------------------------------------------------- failures --
class BrokenWritesStore(MemoryStore):
    def insert_progress(self, record):
        raise psycopg.OperationalError("connection refused")

    update_progress = insert_progress


def test_store_failure_carries_intended_record():
    rec = ProgressReconciler(BrokenWritesStore(), clock=lambda: T0)
    with pytest.raises(PersistenceFailure) as exc:
        rec.apply_exam_result("u1", "1", 70)
    intended = exc.value.intended
    assert intended == ProgressRecord("u1", "1", completed=True, score=70, completed_at=T0)
    assert intended.exam_passed is True


class NativeUpsertStore:
    supports_upsert = True

    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def upsert_progress(self, record, fields, newer_only):
        self.calls.append((record, tuple(fields), newer_only))
        if self.fail:
            raise psycopg.OperationalError("server closed the connection")
        return record


def test_native_upsert_path_is_single_call():
    s = NativeUpsertStore()
    r = ProgressReconciler(s, clock=lambda: T0)
    r.apply_completion("u1", "1")
    r.apply_exam_result("u1", "1", 90)
    assert [(c[1], c[2]) for c in s.calls] == [
        (("completed",), False),
        (("completed", "score", "completed_at", "attempt"), True),
    ]


def test_native_upsert_failure_is_wrapped():
    r = ProgressReconciler(NativeUpsertStore(fail=True), clock=lambda: T0)
    with pytest.raises(PersistenceFailure) as exc:
        r.apply_exam_result("u1", "1", 90)
    assert exc.value.intended.score == 90


def test_load_failure_is_wrapped(monkeypatch, store):
    def boom(user_id):
        raise psycopg.OperationalError("timeout")

    monkeypatch.setattr(store, "select_progress", boom)
    with pytest.raises(PersistenceFailure):
        ProgressReconciler(store).load("u1")


# ------------------------------------------------------------------- book --
def test_book_merge_discards_stale_record():
    newer = ProgressRecord("u1", "1", completed=True, score=90, completed_at=T0)
    older = ProgressRecord("u1", "1", completed=True, score=20, completed_at=T0 - timedelta(seconds=1))
    book = ProgressBook("u1", [newer])
    assert book.merge(older) is False
    assert book.get("1") == newer
    assert book.merge(ProgressRecord("u1", "2", completed=True)) is True
    assert "2" in book and len(book) == 2


def test_book_reload_replaces_optimistic_state():
    book = ProgressBook("u1")
    book.merge(ProgressRecord("u1", "1", completed=True))
    book.reload([ProgressRecord("u1", "2", completed=True)])
    assert "1" not in book
    assert [r.topic_id for r in book.records()] == ["2"]


def test_book_rejects_foreign_records():
    with pytest.raises(ValueError):
        ProgressBook("u1", [ProgressRecord("u2", "1")])
    with pytest.raises(ValueError):
        ProgressBook("u1").merge(ProgressRecord("u2", "1"))


def test_load_returns_book(reconciler):
    reconciler.apply_completion("u1", "1")
    reconciler.apply_exam_result("u1", "2", 100)
    reconciler.apply_completion("u2", "1")
    book = reconciler.load("u1")
    assert len(book) == 2
    assert book.get("2").exam_passed is True
