# verify.py
# -----------------------------------------------------------------------------
# Public verification of a completed exam.
#
# GET  <base>/api/verify/<exam_id>      read-only verification record
# POST <base>/api/verify/<exam_id>/qr   finalize with proctoring, return URL (+ QR PNG)
#
# Only completed exams are ever visible here; anything else is a 404 so an
# in-progress exam's answer key can never leak.
# -----------------------------------------------------------------------------

import os
import base64
from typing import Any, Callable, Dict, List, Optional

from flask import Blueprint, jsonify, request

import scoring
from errors import NotFound
from exam import STATUS_COMPLETED, create_exam_service
from serialize import ensure_json, iso

APP_URL = (os.getenv("APP_URL") or "").rstrip("/")


def display_name(user_name: Optional[str], user_id: Any) -> str:
    name = (user_name or "").strip()
    if name:
        return name
    uid = str(user_id or "")
    if len(uid) <= 4:
        return "****"
    return uid[:4] + "*" * min(8, len(uid) - 4)


def verification_record(exam: Dict[str, Any], events: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Project a completed exam plus its proctoring events into the public record.

    A finalized exam shows the stored cheating_penalty / final_grade. Before the
    first finalize the penalty is a live preview and the grade reads PENDING.
    """
    report = scoring.penalty_report(exam.get("score"), events)
    counts = report["severity_counts"]
    finalized = exam.get("finalized_at") is not None
    if finalized:
        penalty = float(exam.get("cheating_penalty") or 0)
        adjusted = scoring.adjusted_score(exam.get("score"), penalty)
        grade = exam.get("final_grade") or scoring.final_grade(adjusted)
    else:
        penalty, adjusted, grade = report["cheating_penalty"], report["adjusted_score"], "PENDING"
    answered = ensure_json(exam.get("questions_answered"), [])
    return {
        "exam_id": str(exam["id"]),
        "certificate_name": exam.get("certificate_name"),
        "user_name": display_name(exam.get("user_name"), exam.get("user_id")),
        "exam_date": iso(exam.get("exam_date")),
        "completed_at": iso(exam.get("completed_at")),
        "duration": scoring.format_duration(exam.get("time_spent")),
        "total_questions": exam.get("total_questions"),
        "correct_answers": exam.get("correct_answers"),
        "original_score": exam.get("score"),
        "result": exam.get("result"),
        "cheating_logs": {
            "total": len(events),
            "high": counts["high"],
            "medium": counts["medium"],
            "low": counts["low"],
            "violations": [
                {"type": e.get("event_type"), "severity": e.get("severity"), "time": iso(e.get("created_at"))}
                for e in events
            ],
        },
        "cheating_penalty": scoring.one_decimal(penalty),
        "adjusted_score": scoring.one_decimal(adjusted),
        "final_grade": grade,
        "finalized": finalized,
        "questions": [
            {
                "q": i + 1,
                "question": a.get("question_text"),
                "user_answer": a.get("user_answer"),
                "correct_answer": a.get("correct_answer"),
                "correct": bool(a.get("is_correct")),
            }
            for i, a in enumerate(answered)
        ],
    }


def create_verify_blueprint(base_path: str, deps: Dict[str, Any], name: str = "verify") -> Blueprint:
    """
    Required deps: fetch_one, fetch_all, execute, execute_returning, log_activity
    Optional deps: render_qr (payload: str) -> PNG bytes, app_url
    """
    bp = Blueprint(name, __name__, url_prefix=(base_path or "") + "/api/verify")
    svc = create_exam_service(deps)
    render_qr: Optional[Callable[[str], bytes]] = deps.get("render_qr")
    log_activity: Callable = deps["log_activity"]
    app_url = (deps.get("app_url") or APP_URL).rstrip("/")
    page_prefix = (base_path or "") + "/verify"

    def _verification_url(exam_id: Any) -> str:
        base = app_url or request.url_root.rstrip("/")
        return f"{base}{page_prefix}/{exam_id}"

    def _completed(exam_id: str) -> Dict[str, Any]:
        try:
            exam = svc["load_exam"](exam_id)
        except NotFound:
            raise NotFound("Certificate not found")
        if exam.get("status") != STATUS_COMPLETED:
            raise NotFound("Certificate verification pending")
        return exam

    @bp.get("/<exam_id>")
    def verify_exam(exam_id: str):
        exam = _completed(exam_id)
        events = svc["load_events"](exam["id"])
        return jsonify({"ok": True, "data": verification_record(exam, events)})

    @bp.post("/<exam_id>/qr")
    def verification_qr(exam_id: str):
        _completed(exam_id)
        out = svc["finalize"](exam_id)
        exam, events = out["exam"], out["events"]
        url = _verification_url(exam["id"])

        qr_data_url = None
        if render_qr is not None:
            try:
                png = render_qr(url)
                qr_data_url = "data:image/png;base64," + base64.b64encode(png).decode("ascii")
            except Exception as e:
                print(f"[verify] QR rendering failed for exam {exam['id']}: {e}")

        log_activity(exam["user_id"], "exam_finalize",
                     f"Finalized exam with grade {out['report']['final_grade']}",
                     exam_id=exam["id"],
                     metadata={"cheating_penalty": out["report"]["cheating_penalty"]})

        record = verification_record(exam, events)
        record["verification_url"] = url
        return jsonify({"ok": True, "qr_code": qr_data_url, "verification_url": url, "data": record})

    return bp


__all__ = ["display_name", "verification_record", "create_verify_blueprint"]
