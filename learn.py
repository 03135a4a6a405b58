# learn.py
# -----------------------------------------------------------------------------
# Student-facing topic endpoints: name sign-in (pre-auth sessions), topic
# list / detail with the caller's status, and "mark as complete".
# -----------------------------------------------------------------------------
from typing import Any, Callable, Dict

from flask import Blueprint, jsonify, request, session

from errors import PersistenceFailure
from exam import ATTEMPTS_KEY, RESULTS_KEY
from identity import SESSION_NAME_KEY, NameDerivedIdentity, current_identity as _current_identity
from summary import topic_status


def _fail(code: str, msg: str, status: int, **extra):
    body = {"ok": False, "error": code, "message": msg}
    body.update(extra)
    return jsonify(body), status


def create_learn_blueprint(base_path: str, deps: Dict[str, Any], name: str = "learn") -> Blueprint:
    """
    Required deps: store, reconciler
    Optional deps: current_identity
    """
    bp = Blueprint(name, __name__, url_prefix=(base_path or None))

    store = deps["store"]
    reconciler = deps["reconciler"]
    current_identity: Callable = deps.get("current_identity") or _current_identity

    # ------------------------------ name sign-in -------------------------------
    def _clear_exam_state() -> None:
        # open attempts and remembered grades belong to the previous student
        session.pop(ATTEMPTS_KEY, None)
        session.pop(RESULTS_KEY, None)

    @bp.post("/student/login")
    def student_login():
        data = request.get_json(silent=True) or {}
        try:
            ident = NameDerivedIdentity(data.get("name") or "")
        except ValueError:
            return _fail("invalid_name", "Please enter your name", 400)
        _clear_exam_state()
        session[SESSION_NAME_KEY] = ident.display_name
        return jsonify({"ok": True, "name": ident.display_name, "progress_key": ident.resolve_progress_key()})

    @bp.post("/student/logout")
    def student_logout():
        session.pop(SESSION_NAME_KEY, None)
        _clear_exam_state()
        return jsonify({"ok": True})

    @bp.get("/student/whoami")
    def student_whoami():
        ident = current_identity()
        if ident is None:
            return jsonify({"ok": True, "signed_in": False})
        return jsonify({
            "ok": True,
            "signed_in": True,
            "name": ident.display_name,
            "progress_key": ident.resolve_progress_key(),
        })

    # --------------------------------- topics ---------------------------------
    @bp.get("/topics")
    def list_topics():
        order = (request.args.get("order") or "desc").lower()
        if order not in ("asc", "desc"):
            return _fail("invalid_order", "order must be asc or desc", 400)
        ident = current_identity()
        try:
            topics = store.select_topics(order=order)
            book = reconciler.load(ident.resolve_progress_key()) if ident else None
        except PersistenceFailure as e:
            print(f"[learn] progress load failed: {e}")
            return _fail(e.code, "Progress is temporarily unavailable", 503)
        except Exception as e:
            print(f"[learn] topic list failed: {e}")
            return _fail("store_unavailable", "Topics are temporarily unavailable", 503)

        items = []
        for t in topics:
            rec = book.get(t.id) if book else None
            items.append({
                "id": t.id,
                "title": t.title,
                "description": t.description,
                "question_count": len(t.questions),
                "exam_ready": t.exam_ready,
                "status": topic_status(rec),
                "completed": bool(rec and rec.completed),
            })
        return jsonify({"ok": True, "topics": items})

    @bp.get("/topics/<topic_id>")
    def topic_detail(topic_id: str):
        try:
            topic = store.get_topic(topic_id)
        except Exception as e:
            print(f"[learn] topic lookup failed: {e}")
            return _fail("store_unavailable", "Topics are temporarily unavailable", 503)
        if topic is None:
            return _fail("not_found", "topic not found", 404)
        return jsonify({"ok": True, "topic": topic.public_dict()})

    @bp.post("/topics/<topic_id>/complete")
    def mark_complete(topic_id: str):
        ident = current_identity()
        if ident is None:
            return _fail("unauthorized", "sign in first", 401)
        try:
            topic = store.get_topic(topic_id)
        except Exception as e:
            print(f"[learn] topic lookup failed: {e}")
            return _fail("store_unavailable", "Topics are temporarily unavailable", 503)
        if topic is None:
            return _fail("not_found", "topic not found", 404)
        try:
            record = reconciler.apply_completion(ident.resolve_progress_key(), topic.id)
        except PersistenceFailure as e:
            intended = e.intended.to_json() if e.intended is not None else None
            return _fail(e.code, "Could not save progress, please retry", 503, intended=intended)
        return jsonify({"ok": True, "record": record.to_json()})

    return bp


__all__ = ["create_learn_blueprint"]
