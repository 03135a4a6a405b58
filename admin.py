import hmac
import os
from typing import Any, Dict, Set

from flask import Blueprint, abort, g, jsonify, request, session

from errors import InvalidTopic
from topics import build_topic, default_topics

# =========================
# Admin gating / constants
# =========================
_ADMIN_EMAILS_RAW = os.getenv("ADMIN_EMAILS", "")
ADMIN_EMAILS = {
    e.strip().lower()
    for part in _ADMIN_EMAILS_RAW.split(";")
    for e in part.split(",")
    if e.strip()
}
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")
SESSION_ADMIN_KEY = "is_admin"


def _parse_emails(raw: Any) -> Set[str]:
    if isinstance(raw, (set, frozenset, list, tuple)):
        return {str(e).strip().lower() for e in raw if str(e).strip()}
    return {
        e.strip().lower()
        for part in str(raw or "").split(";")
        for e in part.split(",")
        if e.strip()
    }


def create_admin_blueprint(
    url_prefix: str,
    deps: Dict[str, Any],
    name: str = "admin",
) -> Blueprint:
    """
    Topic authoring (create / edit / delete) behind an admin gate.
    deps:
      - store: topic CRUD (select_topics, get_topic, insert_topic,
        update_topic, delete_topic, seed_topics_if_empty)
      - ADMIN_PASSWORD (optional, defaults to env)
      - ADMIN_EMAILS (optional, defaults to env)
    """
    store = deps["store"]
    admin_password: str = deps.get("ADMIN_PASSWORD", ADMIN_PASSWORD) or ""
    admin_emails = _parse_emails(deps["ADMIN_EMAILS"]) if "ADMIN_EMAILS" in deps else ADMIN_EMAILS

    # Mount at /<BASE_PATH>/admin (e.g. /learn/admin) or /admin if url_prefix=""
    mount_prefix = (url_prefix.rstrip("/") + "/admin") if url_prefix else "/admin"
    bp = Blueprint(name, __name__, url_prefix=mount_prefix)

    def _current_email() -> str:
        return (getattr(g, "user_email", None) or "").lower().strip()

    def is_admin() -> bool:
        if session.get(SESSION_ADMIN_KEY):
            return True
        email = _current_email()
        return bool(email and admin_emails and email in admin_emails)

    def require_admin():
        if not is_admin():
            abort(403)

    def _invalid(e: InvalidTopic):
        return jsonify({"ok": False, "error": e.code, "message": str(e)}), 400

    def _not_found():
        return jsonify({"ok": False, "error": "not_found", "message": "topic not found"}), 404

    def _unavailable(action: str, e: Exception):
        print(f"[admin] could not {action}: {e}")
        return jsonify({"ok": False, "error": "store_unavailable",
                        "message": "Topics are temporarily unavailable"}), 503

    # ---------- Sign-in ----------
    @bp.post("/login")
    def admin_login():
        data = request.get_json(silent=True) or {}
        supplied = str(data.get("password") or "")
        if not admin_password:
            return jsonify({"ok": False, "error": "password_login_disabled"}), 403
        if not hmac.compare_digest(supplied.encode("utf-8"), admin_password.encode("utf-8")):
            print("[admin] rejected password login")
            return jsonify({"ok": False, "error": "invalid_password", "message": "Invalid password"}), 401
        session[SESSION_ADMIN_KEY] = True
        print("[admin] password login accepted")
        return jsonify({"ok": True})

    @bp.post("/logout")
    def admin_logout():
        session.pop(SESSION_ADMIN_KEY, None)
        return jsonify({"ok": True})

    # ---------- Diagnostics ----------
    @bp.get("/whoami")
    def admin_whoami():
        return jsonify({
            "ok": True,
            "is_admin": is_admin(),
            "current_user_email": getattr(g, "user_email", None),
            "admin_emails_enforced": bool(admin_emails),
            "password_login_enabled": bool(admin_password),
        })

    # ---------- Topics ----------
    # Store errors never reach Flask as a bare 500.
    @bp.get("/topics")
    def admin_list_topics():
        require_admin()
        try:
            topics = store.select_topics(order="desc")
        except Exception as e:
            return _unavailable("list topics", e)
        return jsonify({"ok": True, "topics": [t.public_dict(with_answers=True) for t in topics]})

    @bp.get("/topics/<topic_id>")
    def admin_get_topic(topic_id: str):
        require_admin()
        try:
            topic = store.get_topic(topic_id)
        except Exception as e:
            return _unavailable("load topic", e)
        if topic is None:
            return _not_found()
        return jsonify({"ok": True, "topic": topic.public_dict(with_answers=True)})

    @bp.post("/topics")
    def admin_create_topic():
        require_admin()
        data = request.get_json(silent=True) or {}
        try:
            topic = build_topic(data)
        except InvalidTopic as e:
            return _invalid(e)
        try:
            saved = store.insert_topic(topic)
        except Exception as e:
            return _unavailable("create topic", e)
        print(f"[admin] created topic {saved.id} ({saved.title!r}, {len(saved.questions)} question(s))")
        return jsonify({"ok": True, "topic": saved.public_dict(with_answers=True)}), 201

    @bp.put("/topics/<topic_id>")
    def admin_update_topic(topic_id: str):
        require_admin()
        try:
            current = store.get_topic(topic_id)
        except Exception as e:
            return _unavailable("load topic", e)
        if current is None:
            return _not_found()
        data = request.get_json(silent=True) or {}
        try:
            topic = build_topic(data, topic_id=current.id, created_at=current.created_at)
        except InvalidTopic as e:
            return _invalid(e)
        try:
            updated = store.update_topic(topic)
        except Exception as e:
            return _unavailable("update topic", e)
        if not updated:
            return _not_found()
        print(f"[admin] updated topic {topic.id}")
        return jsonify({"ok": True, "topic": topic.public_dict(with_answers=True)})

    @bp.delete("/topics/<topic_id>")
    def admin_delete_topic(topic_id: str):
        require_admin()
        try:
            deleted = store.delete_topic(topic_id)
        except Exception as e:
            return _unavailable("delete topic", e)
        if not deleted:
            return _not_found()
        print(f"[admin] deleted topic {topic_id}")
        return jsonify({"ok": True})

    @bp.post("/seed")
    def admin_seed():
        require_admin()
        try:
            inserted = store.seed_topics_if_empty(default_topics())
        except Exception as e:
            return _unavailable("seed topics", e)
        return jsonify({"ok": True, "inserted": inserted})

    return bp


__all__ = ["create_admin_blueprint", "ADMIN_EMAILS"]
