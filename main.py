# main.py: BASE_PATH-aware app wiring for the topic/exam portal (psycopg3 + pooling)
# Students sign in by name (pre-auth) or with Google; progress is keyed per student.

import os
import threading
from contextlib import contextmanager
from urllib.parse import urlparse, parse_qs, unquote, urlsplit, urlunsplit
from typing import Optional

from flask import Flask, abort, g, jsonify, redirect, request, session

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

# OAuth (Google via Authlib)
from authlib.integrations.flask_client import OAuth

from admin import create_admin_blueprint
from dashboard import create_dashboard_blueprint
from exam import ATTEMPTS_KEY, RESULTS_KEY, create_exam_blueprint
from identity import current_identity
from learn import create_learn_blueprint
from progress import ProgressReconciler
from store import MemoryStore, PostgresStore
from topics import default_topics

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"},
)

# =============================================================================
# OAuth (Google): supports base or full callback in OAUTH_REDIRECT_BASE
# =============================================================================
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
OAUTH_REDIRECT_BASE = (os.getenv("OAUTH_REDIRECT_BASE", "") or "").rstrip("/")

oauth: Optional[OAuth] = None
if GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET:
    oauth = OAuth(app)
    oauth.register(
        "google",
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )

def _require_oauth() -> OAuth:
    if oauth is None:
        abort(503, description="Google OAuth is not configured.")
    return oauth

def _bp(path: str = "") -> str:
    """Prefix a path with BASE_PATH (if set)."""
    p = path or "/"
    if not p.startswith("/"):
        p = "/" + p
    if BASE_PATH and (p == BASE_PATH or p.startswith(BASE_PATH + "/")):
        return p
    return (BASE_PATH + p) if BASE_PATH else p

def _oauth_callback_url() -> str:
    base = OAUTH_REDIRECT_BASE or (request.url_root.rstrip("/") + (BASE_PATH or ""))
    if base.endswith("/auth/callback") or base.endswith("/auth/google/callback"):
        return base
    return base.rstrip("/") + "/auth/google/callback"

# =============================================================================
# Store / DB configuration
# =============================================================================
PROGRESS_STORE = (os.getenv("PROGRESS_STORE", "postgres") or "postgres").strip().lower()
SEED_TOPICS = os.getenv("SEED_TOPICS", "1").lower() in {"1", "true", "yes"}

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_HOST_OVERRIDE = os.getenv("DB_HOST")
DB_PORT_OVERRIDE = os.getenv("DB_PORT")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}

def _log_choice(kwargs: dict, origin: str):
    host = kwargs.get("host", "localhost")
    port = kwargs.get("port", 5432)
    print(f"[DB] {origin}: TCP -> {host}:{port}")

def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    for pref in ("postgresql+psycopg://", "postgres+psycopg://",
                 "postgresql+psycopg2://", "postgres+psycopg2://"):
        if url.startswith(pref):
            url = "postgresql://" + url.split("://", 1)[1]
            break

    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    host = (qs.get("host") or [p.hostname])[0]
    dbname = (p.path or "").lstrip("/") or (qs.get("dbname") or [""])[0]
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }
    if host:
        kwargs["host"] = host
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs

def _tcp_kwargs() -> dict:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set for TCP mode.")
    return {
        "host": DB_HOST_OVERRIDE or "127.0.0.1",
        "port": int(DB_PORT_OVERRIDE or "5432"),
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "sslmode": "disable",
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _connection_kwargs() -> dict:
    if FORCE_TCP:
        kwargs = _tcp_kwargs(); _log_choice(kwargs, "FORCE_TCP"); return kwargs

    for origin, url in (("DATABASE_URL_LOCAL", DATABASE_URL_LOCAL), ("DATABASE_URL", DATABASE_URL)):
        if not url:
            continue
        try:
            kwargs = _parse_database_url(url)
            _log_choice(kwargs, f"Using {origin} (parsed)")
            return kwargs
        except ValueError as e:
            print(f"[DB] Ignoring {origin}: {e}")

    kwargs = _tcp_kwargs(); _log_choice(kwargs, "Local dev"); return kwargs

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def _to_conninfo(kwargs: dict) -> str:
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if any(ch.isspace() for ch in s) or "'" in s or '"' in s:
            s = "'" + s.replace("'", r"\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(conninfo=_to_conninfo(_connection_kwargs()), min_size=1, max_size=6)

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn

def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()

def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows

_db_deps = {
    "fetch_one": fetch_one,
    "fetch_all": fetch_all,
    "execute": execute,
    "execute_returning": execute_returning,
}

def build_store(kind: str = PROGRESS_STORE):
    if kind == "memory":
        print("[DB] PROGRESS_STORE=memory: progress lives in this process only")
        return MemoryStore()
    if kind != "postgres":
        raise ValueError(f"PROGRESS_STORE must be 'postgres' or 'memory', got {kind!r}")
    return PostgresStore(_db_deps)

store = build_store()
reconciler = ProgressReconciler(store)

# Schema + seed run once, on the first request (importing this module never connects)
_store_ready = False
_store_lock = threading.Lock()

def ensure_store_ready():
    global _store_ready
    if _store_ready:
        return
    with _store_lock:
        if _store_ready:
            return
        store.ensure_schema()
        if SEED_TOPICS:
            store.seed_topics_if_empty(default_topics())
        _store_ready = True

# =============================================================================
# Identity helpers
# =============================================================================
def _session_user() -> dict:
    return session.get("user") or {}

def current_user_email() -> Optional[str]:
    e = (_session_user().get("email") or "").strip().lower()
    return e or None

@app.before_request
def attach_identity():
    u = _session_user()
    if u:
        g.user_email = current_user_email()
        g.user_id = u.get("sub") or g.user_email
    if request.path in ("/healthz", _bp("/healthz")):
        return
    try:
        ensure_store_ready()
    except Exception as e:
        print(f"[DB] store not ready: {e}")
        return jsonify({"ok": False, "error": "store_unavailable", "message": "Storage is temporarily unavailable"}), 503

# =============================================================================
# Routes (auth, health, identity)
# =============================================================================
@app.get("/healthz")
def healthz():
    if isinstance(store, MemoryStore):
        return ("ok", 200)
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

@app.get("/whoami")
def whoami():
    ident = current_identity()
    return jsonify({
        "ok": True,
        "signed_in": ident is not None,
        "name": ident.display_name if ident else None,
        "progress_key": ident.resolve_progress_key() if ident else None,
        "oauth_enabled": oauth is not None,
    })

def _sanitize_next(next_url: Optional[str]) -> str:
    if not next_url:
        return _bp("/")
    parts = urlsplit(next_url)
    if parts.scheme or parts.netloc:
        return _bp("/")
    path = parts.path or "/"
    blocked_prefixes = {_bp("/login"), _bp("/auth"), "/login", "/auth"}
    if any(path == p or path.startswith(p + "/") for p in blocked_prefixes):
        return _bp("/")
    return urlunsplit(("", "", path, parts.query, "")) or _bp("/")

@app.get("/login")
def login():
    provider = _require_oauth()
    session["login_next"] = _sanitize_next(request.args.get("next"))
    return provider.google.authorize_redirect(_oauth_callback_url())

@app.get("/logout")
def logout():
    session.clear()
    return jsonify({"ok": True})

@app.get("/auth/callback")
@app.get("/auth/google/callback")
def auth_callback():
    provider = _require_oauth()
    token = provider.google.authorize_access_token()

    # Prefer the ID token from the token response; fall back to userinfo
    claims = token.get("userinfo")
    if not claims:
        meta = provider.google.load_server_metadata() or {}
        userinfo_url = meta.get("userinfo_endpoint") or "https://openidconnect.googleapis.com/v1/userinfo"
        claims = provider.google.get(userinfo_url).json()

    email = (claims.get("email") or "").strip().lower()
    if not email:
        abort(400, description="Google authentication failed (no email).")

    session.pop(ATTEMPTS_KEY, None)
    session.pop(RESULTS_KEY, None)
    session["user"] = {
        "email": email,
        "name": claims.get("name"),
        "sub": claims.get("sub"),
    }
    print(f"[Auth] signed in {email}")
    return redirect(_sanitize_next(session.pop("login_next", None)))

# --- Register the SAME routes under BASE_PATH aliases (e.g., /learn/login) ---
if BASE_PATH:
    app.add_url_rule(f"{BASE_PATH}/healthz", endpoint="healthz_bp", view_func=healthz, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/whoami", endpoint="whoami_bp", view_func=whoami, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/login", endpoint="login_bp", view_func=login, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/logout", endpoint="logout_bp", view_func=logout, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/auth/callback", endpoint="auth_callback_bp", view_func=auth_callback, methods=["GET"])
    app.add_url_rule(f"{BASE_PATH}/auth/google/callback", endpoint="auth_callback_google_bp", view_func=auth_callback, methods=["GET"])

# =============================================================================
# Blueprints
# =============================================================================
_core_deps = {
    "store": store,
    "reconciler": reconciler,
    "current_identity": current_identity,
}
app.register_blueprint(create_learn_blueprint(BASE_PATH, _core_deps))
app.register_blueprint(create_exam_blueprint(BASE_PATH, _core_deps))
app.register_blueprint(create_dashboard_blueprint(BASE_PATH, _core_deps))
app.register_blueprint(create_admin_blueprint(BASE_PATH, {"store": store}, name="admin"))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
