# activity.py
# Append-only user activity trail (upload, exam start/complete, deletion).
# Writes are best-effort: a failed insert is printed and never fails the request.

import json
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, jsonify

from errors import ValidationFailed
from serialize import rows_to_json

ACTIONS = (
    "certificate_upload",
    "certificate_delete",
    "exam_start",
    "exam_complete",
    "exam_finalize",
)

LOG_LIMIT = 100


def make_activity_logger(execute: Callable) -> Callable[..., None]:
    def log_activity(user_id: Any, action: str, description: str,
                     exam_id: Optional[Any] = None,
                     metadata: Optional[Dict[str, Any]] = None) -> None:
        payload_json = json.dumps(metadata, ensure_ascii=False) if metadata else None
        try:
            execute("""
                INSERT INTO public.activity_log
                    (user_id, exam_id, action, description, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, now());
            """, (str(user_id), exam_id, action, description, payload_json))
        except Exception as e:
            print(f"[activity] insert failed (safe): {e}")
    return log_activity


def create_logs_blueprint(base_path: str, deps: Dict[str, Any], name: str = "logs") -> Blueprint:
    bp = Blueprint(name, __name__, url_prefix=(base_path or "") + "/api/logs")
    fetch_all: Callable = deps["fetch_all"]

    @bp.get("/user/<user_id>")
    def user_logs(user_id: str):
        if not (user_id or "").strip():
            raise ValidationFailed("User ID is required")
        rows = fetch_all("""
            SELECT id, user_id, exam_id, action, description, metadata, created_at
              FROM public.activity_log
             WHERE user_id = %s
             ORDER BY created_at DESC, id DESC
             LIMIT %s;
        """, (user_id, LOG_LIMIT))
        return jsonify({"ok": True, "data": rows_to_json(rows)})

    return bp
