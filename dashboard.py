# dashboard.py
# -----------------------------------------------------------------------------
# Student dashboard: overall completion plus a per-topic status table, folded
# fresh from the store on every request.
# -----------------------------------------------------------------------------
from typing import Any, Callable, Dict

from flask import Blueprint, jsonify

from errors import PersistenceFailure
from identity import current_identity as _current_identity
from summary import summarize, topic_rows


def create_dashboard_blueprint(base_path: str, deps: Dict[str, Any], name: str = "dashboard") -> Blueprint:
    """
    Required deps: store, reconciler
    Optional deps: current_identity
    """
    bp = Blueprint(name, __name__, url_prefix=(base_path or None))

    store = deps["store"]
    reconciler = deps["reconciler"]
    current_identity: Callable = deps.get("current_identity") or _current_identity

    @bp.get("/progress")
    def progress_dashboard():
        ident = current_identity()
        if ident is None:
            return jsonify({"ok": False, "error": "unauthorized", "message": "sign in first"}), 401
        try:
            topics = store.select_topics(order="desc")
            book = reconciler.load(ident.resolve_progress_key())
        except PersistenceFailure as e:
            print(f"[progress] dashboard load failed: {e}")
            return jsonify({"ok": False, "error": e.code, "message": "Progress is temporarily unavailable"}), 503
        except Exception as e:
            print(f"[progress] dashboard topics failed: {e}")
            return jsonify({"ok": False, "error": "store_unavailable", "message": "Topics are temporarily unavailable"}), 503

        records = book.records()
        return jsonify({
            "ok": True,
            "student": ident.display_name,
            "summary": summarize(topics, records).to_json(),
            "topics": topic_rows(topics, records),
        })

    return bp


__all__ = ["create_dashboard_blueprint"]
