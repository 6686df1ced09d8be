# main.py: certificate verification service, BASE_PATH-aware (psycopg3 + pooling)
# Wires the blueprints together: certificates -> exams -> proctoring -> verify.

import os
import threading
from contextlib import contextmanager
from urllib.parse import urlparse, parse_qs, unquote
from typing import Any, Callable, Dict, Optional

from flask import Flask, jsonify, request, g, session

# Database (psycopg 3)
import psycopg
from psycopg import conninfo
from psycopg_pool import ConnectionPool, PoolTimeout
from psycopg.rows import dict_row

from errors import PersistenceFailure, register_error_handlers
from activity import make_activity_logger, create_logs_blueprint
from certificates import create_certificates_blueprint
from exam import create_exam_blueprint
from proctoring import create_proctoring_blueprint
from verify import create_verify_blueprint

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=True,
    MAX_CONTENT_LENGTH=int(os.getenv("MAX_UPLOAD_BYTES") or 10 * 1024 * 1024) + 64 * 1024,
)
register_error_handlers(app)

# =============================================================================
# DB configuration
# =============================================================================
INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_HOST_OVERRIDE = os.getenv("DB_HOST")
DB_PORT_OVERRIDE = os.getenv("DB_PORT")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}

DB_POOL_MIN = int(os.getenv("DB_POOL_MIN") or 1)
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or 6)
DB_POOL_TIMEOUT = float(os.getenv("DB_POOL_TIMEOUT") or 10)
AUTO_MIGRATE = os.getenv("AUTO_MIGRATE", "1").lower() in {"1", "true", "yes"}

_BASE_KWARGS = {"connect_timeout": 10, "options": "-c search_path=public"}
_DRIVER_SCHEMES = ("postgresql+psycopg", "postgres+psycopg", "postgresql+psycopg2", "postgres+psycopg2")
_PLAIN_SCHEMES = ("postgresql", "postgres")

def _on_managed_runtime() -> bool:
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))

def _is_socket(kwargs: dict) -> bool:
    return str(kwargs.get("host") or "").startswith("/")

def _describe(kwargs: dict) -> str:
    if _is_socket(kwargs):
        return f"unix socket {kwargs['host']}"
    return f"tcp {kwargs.get('host', 'localhost')}:{kwargs.get('port', 5432)}"

def _parse_database_url(url: str) -> dict:
    """postgres URL (SQLAlchemy driver suffixes accepted) -> psycopg connect kwargs."""
    scheme, sep, rest = (url or "").partition("://")
    if not sep:
        raise ValueError("not a URL")
    if scheme in _DRIVER_SCHEMES:
        scheme = "postgresql"
    if scheme not in _PLAIN_SCHEMES:
        raise ValueError(f"Unsupported scheme '{scheme}'")

    p = urlparse("postgresql://" + rest)
    query = {k: v[0] for k, v in parse_qs(p.query or "", keep_blank_values=True).items() if v and v[0]}
    dbname = (p.path or "").lstrip("/") or query.get("dbname")
    if not dbname:
        raise ValueError("URL has no database name")

    kwargs = dict(_BASE_KWARGS, dbname=dbname,
                  user=unquote(p.username or ""), password=unquote(p.password or ""))
    host = query.get("host") or p.hostname
    if host:
        kwargs["host"] = host
    if p.port and not _is_socket(kwargs):
        kwargs["port"] = p.port
    if "sslmode" in query:
        kwargs["sslmode"] = query["sslmode"]
    return kwargs

def _env_kwargs(socket: bool) -> dict:
    """Connect kwargs from DB_* variables: Cloud SQL socket on managed runtimes, TCP otherwise."""
    required = {"DB_NAME": DB_NAME, "DB_USER": DB_USER, "DB_PASS": DB_PASS}
    if socket:
        required["INSTANCE_CONNECTION_NAME"] = INSTANCE_CONNECTION_NAME
    missing = [k for k, v in required.items() if not v]
    if missing:
        raise RuntimeError(f"database not configured, missing: {', '.join(missing)}")

    kwargs = dict(_BASE_KWARGS, dbname=DB_NAME, user=DB_USER, password=DB_PASS)
    if socket:
        kwargs["host"] = f"/cloudsql/{INSTANCE_CONNECTION_NAME}"
    else:
        kwargs.update(host=DB_HOST_OVERRIDE or "127.0.0.1", port=int(DB_PORT_OVERRIDE or 5432), sslmode="disable")
    return kwargs

def _connection_kwargs() -> dict:
    """
    First usable target wins: FORCE_TCP (local only), DATABASE_URL_LOCAL (local
    only), DATABASE_URL, then the DB_* variables. A socket URL is skipped when
    not on a managed runtime, since the socket only exists there.
    """
    managed = _on_managed_runtime()
    if FORCE_TCP and not managed:
        kwargs = _env_kwargs(socket=False)
        print(f"[db] FORCE_TCP -> {_describe(kwargs)}")
        return kwargs

    urls = [("DATABASE_URL", DATABASE_URL)]
    if not managed:
        urls.insert(0, ("DATABASE_URL_LOCAL", DATABASE_URL_LOCAL))
    for name, url in urls:
        if not url:
            continue
        try:
            kwargs = _parse_database_url(url)
        except ValueError as e:
            print(f"[db] ignoring {name}: {e}")
            continue
        if _is_socket(kwargs) and not managed:
            print(f"[db] ignoring {name}: socket target outside a managed runtime")
            continue
        print(f"[db] {name} -> {_describe(kwargs)}")
        return kwargs

    kwargs = _env_kwargs(socket=managed)
    print(f"[db] DB_* variables -> {_describe(kwargs)}")
    return kwargs

# =============================================================================
# Schema (idempotent)
# =============================================================================
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS public.certificates (
    id            BIGSERIAL PRIMARY KEY,
    user_id       TEXT NOT NULL,
    username      TEXT,
    email         TEXT,
    course_name   TEXT NOT NULL,
    file_path     TEXT NOT NULL,
    questions     JSONB NOT NULL DEFAULT '[]'::jsonb,
    status        TEXT NOT NULL DEFAULT 'pending'
                  CHECK (status IN ('pending', 'verified', 'rejected')),
    uploaded_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
    verified_at   TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS certificates_user_idx ON public.certificates (user_id, uploaded_at DESC);

CREATE TABLE IF NOT EXISTS public.exams (
    id                  BIGSERIAL PRIMARY KEY,
    user_id             TEXT NOT NULL,
    user_name           TEXT,
    certificate_id      BIGINT NOT NULL,
    certificate_name    TEXT,
    status              TEXT NOT NULL DEFAULT 'in-progress'
                        CHECK (status IN ('in-progress', 'completed', 'abandoned')),
    exam_date           TIMESTAMPTZ NOT NULL DEFAULT now(),
    questions           JSONB NOT NULL DEFAULT '[]'::jsonb,
    total_questions     INTEGER,
    correct_answers     INTEGER,
    score               INTEGER CHECK (score BETWEEN 0 AND 100),
    result              TEXT CHECK (result IN ('pass', 'fail', 'under-review')),
    time_spent          INTEGER,
    questions_answered  JSONB NOT NULL DEFAULT '[]'::jsonb,
    completed_at        TIMESTAMPTZ,
    cheating_penalty    DOUBLE PRECISION CHECK (cheating_penalty >= 0),
    final_grade         TEXT CHECK (final_grade IN ('PASS', 'FAIL')),
    finalized_at        TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS exams_user_idx ON public.exams (user_id, exam_date DESC);

CREATE TABLE IF NOT EXISTS public.proctoring_events (
    id          BIGSERIAL PRIMARY KEY,
    exam_id     BIGINT NOT NULL,
    user_id     TEXT NOT NULL,
    event_type  TEXT NOT NULL,
    severity    TEXT NOT NULL DEFAULT 'medium'
                CHECK (severity IN ('low', 'medium', 'high')),
    metadata    JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS proctoring_events_exam_idx ON public.proctoring_events (exam_id, created_at);

CREATE TABLE IF NOT EXISTS public.activity_log (
    id           BIGSERIAL PRIMARY KEY,
    user_id      TEXT NOT NULL,
    exam_id      BIGINT,
    action       TEXT NOT NULL,
    description  TEXT NOT NULL,
    metadata     JSONB,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS activity_log_user_idx ON public.activity_log (user_id, created_at DESC);
"""

def _apply_schema(pool: ConnectionPool):
    with pool.connection() as conn:
        conn.execute(SCHEMA_SQL)
        conn.commit()
    print("[db] schema ensured", flush=True)

# =============================================================================
# psycopg3 Connection Pool + helpers
# One pool per process, created lazily on first use under a lock. A
# connection-level failure closes it and re-creates it once. Reads are
# retried once; a write is retried only if its statement was never sent.
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None
_pool_lock = threading.Lock()

def init_pool() -> ConnectionPool:
    global _pg_pool
    with _pool_lock:
        if _pg_pool is not None:
            return _pg_pool
        kwargs = _connection_kwargs()
        pool = ConnectionPool(
            conninfo=conninfo.make_conninfo(**kwargs),
            min_size=DB_POOL_MIN,
            max_size=DB_POOL_MAX,
            timeout=DB_POOL_TIMEOUT,
            open=True,
        )
        if AUTO_MIGRATE:
            _apply_schema(pool)
        _pg_pool = pool
        return pool

def reset_pool():
    global _pg_pool
    with _pool_lock:
        pool, _pg_pool = _pg_pool, None
    if pool is not None:
        try:
            pool.close()
        except Exception as e:
            print(f"[db] pool close failed: {e}")

@contextmanager
def get_conn():
    pool = _pg_pool or init_pool()
    with pool.connection() as conn:
        yield conn

_DB_DOWN = (psycopg.OperationalError, PoolTimeout)

def _with_reconnect(fn: Callable[[Dict[str, bool]], Any], retry_sent: bool = False) -> Any:
    """
    fn(attempt) sets attempt["sent"] right before it sends its statement.
    A failure after that point is only retried when retry_sent is True.
    """
    attempt = {"sent": False}
    try:
        return fn(attempt)
    except _DB_DOWN as first:
        reset_pool()
        if attempt["sent"] and not retry_sent:
            print(f"[db] write failed after send, not retrying: {first}", flush=True)
            raise PersistenceFailure("Storage is temporarily unavailable") from first
        print(f"[db] connection failure, reconnecting once: {first}", flush=True)
    attempt["sent"] = False
    try:
        return fn(attempt)
    except _DB_DOWN as e:
        reset_pool()
        raise PersistenceFailure("Storage is temporarily unavailable") from e

def fetch_all(q, params=None):
    def run(attempt):
        with get_conn() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                attempt["sent"] = True
                cur.execute(q, params or ())
                return cur.fetchall()
    return _with_reconnect(run, retry_sent=True)

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    def run(attempt):
        with get_conn() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                attempt["sent"] = True
                cur.execute(q, params or ())
            conn.commit()
    return _with_reconnect(run)

def execute_returning(q, params=None):
    def run(attempt):
        with get_conn() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                attempt["sent"] = True
                cur.execute(q, params or ())
                rows = cur.fetchall()
            conn.commit()
            return rows
    return _with_reconnect(run)

# =============================================================================
# Collaborators: document text extraction & QR rendering
# =============================================================================
def extract_pdf_text(data: bytes) -> str:
    import io
    from pypdf import PdfReader
    reader = PdfReader(io.BytesIO(data))
    return "\n".join((page.extract_text() or "") for page in reader.pages)

def render_qr_png(payload: str) -> bytes:
    import io
    import qrcode
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=2,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()

# =============================================================================
# Identity (opaque; authentication happens upstream)
# =============================================================================
def _session_identity() -> Dict[str, Optional[str]]:
    u = session.get("user") or {}
    return {"id": u.get("id"), "name": u.get("name"), "email": u.get("email")}

def _proxy_identity() -> Dict[str, Optional[str]]:
    return {
        "id": (request.headers.get("X-User-Id") or "").strip() or None,
        "name": (request.headers.get("X-User-Name") or "").strip() or None,
        "email": (request.headers.get("X-User-Email") or "").strip().lower() or None,
    }

@app.before_request
def attach_identity():
    ident = _session_identity()
    if not ident.get("id"):
        ident = _proxy_identity()
    g.user_id = ident.get("id")
    g.user_name = ident.get("name")
    g.user_email = ident.get("email")

# =============================================================================
# Health
# =============================================================================
@app.get((BASE_PATH or "") + "/healthz")
def healthz():
    out = {"ok": True, "backend": "running", "database": "unavailable"}
    try:
        fetch_one("SELECT 1 AS one;")
        out["database"] = "connected"
    except Exception as e:
        out["database"] = f"error: {str(e)[:60]}"
    return jsonify(out)

# =============================================================================
# Blueprints
# =============================================================================
log_activity = make_activity_logger(execute)

_db_deps = {
    "fetch_one": fetch_one,
    "fetch_all": fetch_all,
    "execute": execute,
    "execute_returning": execute_returning,
    "log_activity": log_activity,
}

app.register_blueprint(create_certificates_blueprint(BASE_PATH, {
    **_db_deps,
    "extract_text": extract_pdf_text,
}))
app.register_blueprint(create_exam_blueprint(BASE_PATH, _db_deps))
app.register_blueprint(create_proctoring_blueprint(BASE_PATH, _db_deps))
app.register_blueprint(create_verify_blueprint(BASE_PATH, {
    **_db_deps,
    "render_qr": render_qr_png,
}))
app.register_blueprint(create_logs_blueprint(BASE_PATH, _db_deps))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
