# exam.py
# -----------------------------------------------------------------------------
# Multiple-choice exam endpoints.
# - Start/resume freezes the topic's questions into a server-side snapshot;
#   the session only holds a reference to it, never the answer key
# - Submit grades against that snapshot, then persists via the reconciler
# - Resubmitting a graded attempt returns the stored grade
# - Status reads the latest persisted score for the topic
# -----------------------------------------------------------------------------
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, jsonify, request, session

from errors import IncompleteSubmission, NoQuestions, PersistenceFailure
from grading import PASS_SCORE, ExamSnapshot
from identity import current_identity as _current_identity

ATTEMPTS_KEY = "exam_attempts"   # topic_id -> ExamSnapshot.session_ref()
RESULTS_KEY = "exam_results"     # attempt_uid -> graded result
MAX_REMEMBERED_RESULTS = 20


def _fail(code: str, msg: str, status: int, **extra):
    body = {"ok": False, "error": code, "message": msg}
    body.update(extra)
    return jsonify(body), status


def _parse_submitted_at(raw: Any) -> Optional[datetime]:
    if raw in (None, ""):
        return None
    dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at base_path.
    Required deps: store, reconciler
    Optional deps: current_identity
    """
    bp = Blueprint(name, __name__, url_prefix=(base_path or None))

    store = deps["store"]
    reconciler = deps["reconciler"]
    current_identity: Callable = deps.get("current_identity") or _current_identity

    # ------------------------------ session I/O -------------------------------
    def _drop_ref(topic_id: str) -> None:
        attempts = dict(session.get(ATTEMPTS_KEY) or {})
        if attempts.pop(str(topic_id), None) is not None:
            session[ATTEMPTS_KEY] = attempts

    def _active_snapshot(user_key: str, topic_id: str) -> Optional[ExamSnapshot]:
        # Store errors propagate; callers answer 503.
        ref = (session.get(ATTEMPTS_KEY) or {}).get(str(topic_id))
        if not ref:
            return None
        snap = store.get_exam_attempt(user_key, str(ref.get("attempt_uid") or ""))
        if snap is None or snap.topic_id != str(topic_id):
            _drop_ref(topic_id)
            return None
        return snap

    def _remember_snapshot(user_key: str, snap: ExamSnapshot) -> None:
        store.save_exam_attempt(user_key, snap)
        attempts = dict(session.get(ATTEMPTS_KEY) or {})
        attempts[snap.topic_id] = snap.session_ref()
        session[ATTEMPTS_KEY] = attempts

    def _forget_snapshot(user_key: str, snap: ExamSnapshot) -> None:
        _drop_ref(snap.topic_id)
        try:
            store.delete_exam_attempt(user_key, snap.attempt_uid)
        except Exception as e:
            # unreferenced rows are never read again
            print(f"[exam] could not drop attempt {snap.attempt_uid}: {e}")

    def _existing_grade(attempt_uid: str) -> Optional[Dict[str, Any]]:
        return (session.get(RESULTS_KEY) or {}).get(attempt_uid)

    def _remember_grade(attempt_uid: str, result: Dict[str, Any]) -> None:
        results = dict(session.get(RESULTS_KEY) or {})
        results[attempt_uid] = result
        # session cookie stays small; oldest entries go first
        while len(results) > MAX_REMEMBERED_RESULTS:
            results.pop(next(iter(results)))
        session[RESULTS_KEY] = results

    def _load_topic(topic_id: str):
        try:
            return store.get_topic(topic_id), None
        except Exception as e:
            print(f"[exam] topic lookup failed: {e}")
            return None, _fail("store_unavailable", "Topics are temporarily unavailable", 503)

    def _attempt_unavailable(e: Exception):
        print(f"[exam] attempt store failed: {e}")
        return _fail("store_unavailable", "Exam attempts are temporarily unavailable", 503)

    # --------------------------------- status ---------------------------------
    @bp.get("/topics/<topic_id>/exam/status")
    def exam_status(topic_id: str):
        ident = current_identity()
        if ident is None:
            return _fail("unauthorized", "sign in first", 401)
        user_key = ident.resolve_progress_key()
        try:
            book = reconciler.load(user_key)
        except PersistenceFailure as e:
            print(f"[exam] status load failed: {e}")
            return _fail(e.code, "Progress is temporarily unavailable", 503)
        try:
            snap = _active_snapshot(user_key, topic_id)
        except Exception as e:
            return _attempt_unavailable(e)

        rec = book.get(topic_id)
        if snap is not None:
            state = "started"
        elif rec is not None and rec.score is not None:
            state = "graded"
        else:
            state = "none"
        return jsonify({
            "ok": True,
            "state": state,
            "attempt_uid": snap.attempt_uid if snap else None,
            "pass_score": PASS_SCORE,
            "result": None if rec is None or rec.score is None else {
                "score_percent": rec.score,
                "passed": rec.exam_passed,
                "completed_at": rec.completed_at.isoformat() if rec.completed_at else None,
            },
        })

    # ------------------------------ start/resume ------------------------------
    @bp.get("/topics/<topic_id>/exam")
    def exam_start_or_resume(topic_id: str):
        ident = current_identity()
        if ident is None:
            return _fail("unauthorized", "sign in first", 401)
        topic, err = _load_topic(topic_id)
        if err:
            return err
        if topic is None:
            return _fail("not_found", "topic not found", 404)

        user_key = ident.resolve_progress_key()
        try:
            snap = _active_snapshot(user_key, topic.id)
        except Exception as e:
            return _attempt_unavailable(e)
        if snap is not None and snap.is_stale(topic):
            print(f"[exam] invalidated attempt {snap.attempt_uid}: topic {topic.id} questions changed")
            _forget_snapshot(user_key, snap)
            snap = None
        resumed = snap is not None
        if snap is None:
            try:
                snap = ExamSnapshot.start(topic)
            except NoQuestions as e:
                return _fail(e.code, str(e), 409)
            try:
                _remember_snapshot(user_key, snap)
            except Exception as e:
                return _attempt_unavailable(e)
            print(f"[exam] started attempt {snap.attempt_uid} on topic {topic.id}")

        return jsonify({
            "ok": True,
            "resumed": resumed,
            "attempt_uid": snap.attempt_uid,
            "topic": {"id": topic.id, "title": topic.title},
            "questions": [q.public_dict() for q in snap.questions],
            "pass_score": PASS_SCORE,
            "started_at": snap.started_at,
        })

    # --------------------------------- submit ---------------------------------
    @bp.post("/topics/<topic_id>/exam/<attempt_uid>/submit")
    def exam_submit_and_grade(topic_id: str, attempt_uid: str):
        ident = current_identity()
        if ident is None:
            return _fail("unauthorized", "sign in first", 401)
        data = request.get_json(silent=True) or {}

        # Idempotency
        prior = _existing_grade(attempt_uid)
        if prior and prior.get("topic_id") == str(topic_id):
            return jsonify(dict(prior, ok=True, replayed=True))

        user_key = ident.resolve_progress_key()
        try:
            snap = _active_snapshot(user_key, topic_id)
        except Exception as e:
            return _attempt_unavailable(e)
        if snap is None or snap.attempt_uid != attempt_uid:
            return _fail("attempt_not_found", "attempt not found or not active", 400)

        try:
            submitted_at = _parse_submitted_at(data.get("submitted_at"))
        except ValueError:
            return _fail("invalid_submitted_at", "submitted_at must be an ISO-8601 timestamp", 400)

        answers = data.get("answers") or {}
        if not isinstance(answers, dict):
            return _fail("invalid_answers", "answers must map question ids to option indexes", 400)

        try:
            result = snap.grade(answers)
        except NoQuestions as e:
            return _fail(e.code, str(e), 409)
        except IncompleteSubmission as e:
            return _fail(e.code, "Please answer all questions before submitting.", 400,
                         missing_ids=e.missing_ids)

        # A client clock ahead of ours must not pin the row in the future.
        now = reconciler.clock()
        effective_at = min(submitted_at, now) if submitted_at is not None else now

        try:
            record = reconciler.apply_exam_result(
                user_key, snap.topic_id, result.score_percent,
                submitted_at=effective_at,
            )
        except PersistenceFailure as e:
            intended = e.intended.to_json() if e.intended is not None else None
            return _fail(e.code, "Your exam was graded but could not be saved. Please retry.", 503,
                         grade=result.to_json(), intended=intended)

        kept_newer = record.score != result.score_percent or record.completed_at != effective_at
        payload = dict(result.to_json(), topic_id=snap.topic_id, attempt_uid=attempt_uid)
        _remember_grade(attempt_uid, payload)
        _forget_snapshot(user_key, snap)
        print(f"[exam] graded attempt {attempt_uid}: {result.correct}/{result.total} -> {result.score_percent}%"
              + (" (a newer stored result was kept)" if kept_newer else ""))

        return jsonify(dict(payload, ok=True, replayed=False, kept_newer=kept_newer, record=record.to_json()))

    return bp


__all__ = ["create_exam_blueprint"]
