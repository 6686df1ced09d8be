# certificates.py
# -----------------------------------------------------------------------------
# Certificate blueprint: upload a PDF, derive the course name, attach a
# validated question bank; read / list / delete; regenerate the bank.
#
# Routes (under <base_path>/api/certificates):
#   POST   ""                              upload (multipart: file, user_id, username, email)
#   GET    "/<id>"                         read
#   GET    "/user/<user_id>"               list newest first
#   DELETE "/<id>"                         delete (best-effort file cleanup)
#   POST   "/<id>/regenerate-questions"    replace the question bank
# -----------------------------------------------------------------------------

import os
import re
import json
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, request, jsonify, g

from errors import NotFound, ValidationFailed
from exam import public_questions
from question_bank import extract_course_name, generate_questions
from serialize import ensure_json, parse_id, row_to_json

UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR") or "uploads")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES") or 10 * 1024 * 1024)

_CERT_COLUMNS = "id, user_id, username, email, course_name, file_path, questions, status, uploaded_at, verified_at"


def sanitize_file_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9.-]", "_", name or "certificate.pdf")


def create_certificates_blueprint(base_path: str, deps: Dict[str, Any], name: str = "certificates") -> Blueprint:
    """
    Required deps: fetch_one, fetch_all, execute, execute_returning, log_activity, extract_text
    Optional deps: generate_questions (subject, n) -> list, upload_dir
    """
    bp = Blueprint(name, __name__, url_prefix=(base_path or "") + "/api/certificates")

    fetch_one: Callable = deps["fetch_one"]
    fetch_all: Callable = deps["fetch_all"]
    execute: Callable = deps["execute"]
    execute_returning: Callable = deps["execute_returning"]
    log_activity: Callable = deps["log_activity"]
    extract_text: Callable[[bytes], str] = deps["extract_text"]
    generator: Optional[Callable] = deps.get("generate_questions")
    upload_dir = Path(deps.get("upload_dir") or UPLOAD_DIR)

    # ------------------------------- file store -------------------------------
    def _put_file(file_name: str, data: bytes) -> str:
        upload_dir.mkdir(parents=True, exist_ok=True)
        path = upload_dir / f"{int(time.time() * 1000)}_{sanitize_file_name(file_name)}"
        path.write_bytes(data)
        return str(path)

    def _delete_file(path: Optional[str]) -> None:
        if not path:
            return
        try:
            os.unlink(path)
        except OSError as e:
            print(f"[files] delete failed for '{path}': {e}")

    # ------------------------------- helpers ----------------------------------
    def _load(cert_id: str) -> Dict[str, Any]:
        cid = parse_id(cert_id)
        row = fetch_one(f"SELECT {_CERT_COLUMNS} FROM public.certificates WHERE id = %s;", (cid,)) if cid else None
        if not row:
            raise NotFound("Certificate not found")
        return row

    def _public(row: Dict[str, Any]) -> Dict[str, Any]:
        # certificate ids are guessable; the answer key only lives on completed exams
        out = row_to_json(row)
        out["questions"] = public_questions(ensure_json(row.get("questions"), []))
        return out

    # --------------------------------- routes ---------------------------------
    @bp.post("")
    def upload_certificate():
        f = request.files.get("file")
        user_id = (request.form.get("user_id") or getattr(g, "user_id", None) or "").strip()
        username = (request.form.get("username") or getattr(g, "user_name", None) or "").strip() or None
        email = (request.form.get("email") or getattr(g, "user_email", None) or "").strip() or None

        if f is None or not f.filename:
            raise ValidationFailed("No file uploaded")
        if not user_id:
            raise ValidationFailed("User ID is required")
        if (f.mimetype or "").lower() != "application/pdf":
            raise ValidationFailed("Only PDF files are allowed")
        data = f.read()
        if len(data) > MAX_UPLOAD_BYTES:
            raise ValidationFailed(f"File size exceeds {MAX_UPLOAD_BYTES // (1024 * 1024)}MB limit")

        file_path = _put_file(f.filename, data)
        try:
            text = extract_text(data)
        except Exception as e:
            print(f"[certificates] PDF parse failed for '{f.filename}': {e}")
            _delete_file(file_path)
            raise ValidationFailed("Failed to parse PDF file")

        course_name = extract_course_name(text, f.filename)
        questions, source = generate_questions(course_name, generator)

        try:
            rows = execute_returning(f"""
                INSERT INTO public.certificates
                    (user_id, username, email, course_name, file_path, questions, status, uploaded_at)
                VALUES (%s, %s, %s, %s, %s, %s, 'pending', now())
                RETURNING {_CERT_COLUMNS};
            """, (user_id, username, email, course_name, file_path, json.dumps(questions, ensure_ascii=False)))
        except Exception:
            _delete_file(file_path)
            raise
        cert = rows[0]

        log_activity(user_id, "certificate_upload", f"Uploaded certificate: {course_name}",
                     metadata={"certificate_id": str(cert["id"]), "question_source": source})

        return jsonify({
            "ok": True,
            "message": "Certificate uploaded successfully!",
            "course_name": course_name,
            "questions": len(questions),
            "question_source": source,
            "certificate_id": str(cert["id"]),
        }), 201

    @bp.get("/<cert_id>")
    def get_certificate(cert_id: str):
        return jsonify({"ok": True, "data": _public(_load(cert_id))})

    @bp.get("/user/<user_id>")
    def list_user_certificates(user_id: str):
        if not (user_id or "").strip():
            raise ValidationFailed("User ID is required")
        rows = fetch_all(f"""
            SELECT {_CERT_COLUMNS}
              FROM public.certificates
             WHERE user_id = %s
             ORDER BY uploaded_at DESC, id DESC;
        """, (user_id,))
        return jsonify({"ok": True, "data": [_public(r) for r in rows or []]})

    @bp.delete("/<cert_id>")
    def delete_certificate(cert_id: str):
        cert = _load(cert_id)
        _delete_file(cert.get("file_path"))
        # exams keep their own snapshot and are not cascaded
        execute("DELETE FROM public.certificates WHERE id = %s;", (cert["id"],))
        log_activity(cert["user_id"], "certificate_delete", f"Deleted certificate: {cert['course_name']}",
                     metadata={"certificate_id": str(cert["id"])})
        return jsonify({"ok": True, "message": "Certificate deleted successfully"})

    @bp.post("/<cert_id>/regenerate-questions")
    def regenerate_questions(cert_id: str):
        cert = _load(cert_id)
        questions, source = generate_questions(cert["course_name"], generator)
        execute("UPDATE public.certificates SET questions = %s WHERE id = %s;",
                (json.dumps(questions, ensure_ascii=False), cert["id"]))
        return jsonify({
            "ok": True,
            "message": "Questions regenerated successfully",
            "questions_count": len(questions),
            "question_source": source,
        })

    return bp


__all__ = ["create_certificates_blueprint", "sanitize_file_name"]
