# proctoring.py
# -----------------------------------------------------------------------------
# Proctoring event sink: append-only, per exam. Events are never updated or
# deleted; they are only counted. Read order is event time (then id), because
# a browser may post several events at once and write order is not reliable.
# -----------------------------------------------------------------------------

import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from flask import Blueprint, request, jsonify, g

from errors import NotFound, ValidationFailed
from scoring import SEVERITIES
from serialize import ensure_json, iso, parse_id

EVENT_TYPES = (
    "face_not_detected",
    "multiple_faces",
    "tab_switch",
    "window_blur",
    "sound_detected",
    "unauthorized_device",
)
DEFAULT_SEVERITY = "medium"


def parse_event_time(raw: Any) -> Optional[datetime]:
    """Client event time as epoch milliseconds or ISO-8601; None if absent/unparseable."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        try:
            return datetime.fromtimestamp(float(raw) / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    s = str(raw).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def normalize_event(event_type: Any, severity: Any, metadata: Any) -> Dict[str, Any]:
    et = str(event_type or "").strip()
    if et not in EVENT_TYPES:
        raise ValidationFailed(f"Unknown event type: {et or '(empty)'}", allowed=list(EVENT_TYPES))
    sev = str(severity or "").strip() or DEFAULT_SEVERITY
    if sev not in SEVERITIES:
        raise ValidationFailed(f"Unknown severity: {sev}", allowed=list(SEVERITIES))
    if metadata is None:
        metadata = {}
    if not isinstance(metadata, dict):
        raise ValidationFailed("metadata must be an object")
    return {"event_type": et, "severity": sev, "metadata": metadata}


def summarize(events: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    ordered = sorted(list(events), key=lambda e: (_sort_time(e.get("created_at")), int(e.get("id") or 0)))
    by_type: Dict[str, int] = {}
    by_severity = {s: 0 for s in SEVERITIES}
    for e in ordered:
        by_type[e["event_type"]] = by_type.get(e["event_type"], 0) + 1
        if e.get("severity") in by_severity:
            by_severity[e["severity"]] += 1
    return {
        "total": len(ordered),
        "by_type": by_type,
        "by_severity": by_severity,
        "events": [event_to_json(e) for e in ordered],
    }


def event_to_json(e: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(e.get("id")),
        "exam_id": str(e.get("exam_id")),
        "user_id": e.get("user_id"),
        "event_type": e.get("event_type"),
        "severity": e.get("severity"),
        "metadata": ensure_json(e.get("metadata"), {}),
        "created_at": iso(e.get("created_at")),
    }


def _sort_time(v: Any) -> float:
    if isinstance(v, datetime):
        return (v if v.tzinfo else v.replace(tzinfo=timezone.utc)).timestamp()
    dt = parse_event_time(v)
    return dt.timestamp() if dt else 0.0


def create_proctoring_blueprint(base_path: str, deps: Dict[str, Any], name: str = "proctoring") -> Blueprint:
    """
    Routes (under <base_path>/api/proctoring):
      POST "/event"            {exam_id, user_id?, event_type, severity?, timestamp?, metadata?}
      GET  "/exam/<exam_id>"   counts by type/severity + chronological events
    Required deps: fetch_one, fetch_all, execute_returning
    """
    bp = Blueprint(name, __name__, url_prefix=(base_path or "") + "/api/proctoring")
    fetch_one: Callable = deps["fetch_one"]
    fetch_all: Callable = deps["fetch_all"]
    execute_returning: Callable = deps["execute_returning"]

    def _exam_row(exam_id: Any) -> Dict[str, Any]:
        eid = parse_id(exam_id)
        row = fetch_one("SELECT id, user_id, status FROM public.exams WHERE id = %s;", (eid,)) if eid else None
        if not row:
            raise NotFound("Exam not found")
        return row

    @bp.post("/event")
    def record_event():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationFailed("JSON body required")
        exam_id = data.get("exam_id") or data.get("examId")
        user_id = str(data.get("user_id") or data.get("userId") or getattr(g, "user_id", None) or "").strip()
        if not exam_id or not user_id:
            raise ValidationFailed("Missing required fields: exam_id, user_id")

        ev = normalize_event(data.get("event_type") or data.get("eventType"),
                             data.get("severity"), data.get("metadata"))
        exam = _exam_row(exam_id)

        client_ts = data.get("timestamp")
        occurred = parse_event_time(client_ts)
        metadata = dict(ev["metadata"])
        if client_ts is not None:
            metadata.setdefault("client_timestamp", client_ts)

        rows = execute_returning("""
            INSERT INTO public.proctoring_events
                (exam_id, user_id, event_type, severity, metadata, created_at)
            VALUES (%s, %s, %s, %s, %s, COALESCE(%s, now()))
            RETURNING id, exam_id, user_id, event_type, severity, metadata, created_at;
        """, (exam["id"], user_id, ev["event_type"], ev["severity"],
              json.dumps(metadata, ensure_ascii=False), occurred))
        print(f"[proctoring] exam {exam['id']}: {ev['event_type']} ({ev['severity']})")
        return jsonify({"ok": True, "data": event_to_json(rows[0])}), 201

    @bp.get("/exam/<exam_id>")
    def exam_events(exam_id: str):
        exam = _exam_row(exam_id)
        rows: List[Dict[str, Any]] = fetch_all("""
            SELECT id, exam_id, user_id, event_type, severity, metadata, created_at
              FROM public.proctoring_events
             WHERE exam_id = %s
             ORDER BY created_at ASC, id ASC;
        """, (exam["id"],)) or []
        return jsonify({"ok": True, "data": summarize(rows)})

    return bp


__all__ = [
    "EVENT_TYPES", "DEFAULT_SEVERITY",
    "parse_event_time", "normalize_event", "summarize", "event_to_json",
    "create_proctoring_blueprint",
]
