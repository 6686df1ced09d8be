# errors.py
# -----------------------------------------------------------------------------
# Error taxonomy shared by every blueprint. Each class carries the HTTP status
# it maps to; register_error_handlers() turns them into {"ok": false, ...}.
# -----------------------------------------------------------------------------

import traceback
from typing import Any, Dict, Tuple

from flask import jsonify
from werkzeug.exceptions import HTTPException
import psycopg
from psycopg_pool import PoolTimeout


class ExamServiceError(Exception):
    status_code = 500

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details


class NotFound(ExamServiceError):
    status_code = 404


class ValidationFailed(ExamServiceError):
    status_code = 400


class ExamStateConflict(ExamServiceError):
    status_code = 409


class DuplicateCompletion(ExamStateConflict):
    """A second scoring pass was attempted for an exam that is already completed."""


class UpstreamGenerationFailure(ExamServiceError):
    status_code = 502


class PersistenceFailure(ExamServiceError):
    status_code = 503


def error_body(message: str, **extra: Any) -> Dict[str, Any]:
    body = {"ok": False, "error": message}
    body.update(extra)
    return body


def register_error_handlers(app) -> None:
    """Attach JSON error handlers for the taxonomy above to a Flask app."""

    def _service_error(e: ExamServiceError) -> Tuple[Any, int]:
        if e.status_code >= 500:
            print(f"[error] {e.__class__.__name__}: {e.message}", flush=True)
        return jsonify(error_body(e.message, **e.details)), e.status_code

    def _db_error(e: Exception) -> Tuple[Any, int]:
        print(f"[db] unavailable: {e}", flush=True)
        return jsonify(error_body("Storage is temporarily unavailable")), 503

    def _unexpected(e: Exception) -> Tuple[Any, int]:
        if isinstance(e, HTTPException):
            return jsonify(error_body(e.description or e.name)), e.code or 500
        print(f"[error] unhandled: {e}", flush=True)
        print(traceback.format_exc(), flush=True)
        return jsonify(error_body("Internal server error")), 500

    app.register_error_handler(ExamServiceError, _service_error)
    app.register_error_handler(psycopg.OperationalError, _db_error)
    app.register_error_handler(PoolTimeout, _db_error)
    app.register_error_handler(Exception, _unexpected)


__all__ = [
    "ExamServiceError",
    "NotFound",
    "ValidationFailed",
    "ExamStateConflict",
    "DuplicateCompletion",
    "UpstreamGenerationFailure",
    "PersistenceFailure",
    "error_body",
    "register_error_handlers",
]
