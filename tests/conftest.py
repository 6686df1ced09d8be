import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from flask import Flask, g


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from errors import register_error_handlers


def _load(raw):
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


class FakeDB:
    """
    In-memory stand-in for the psycopg helpers. Recognises the statements the
    blueprints issue by table and clause, and keeps rows the way psycopg hands
    them back: dicts, jsonb already decoded, timestamps as aware datetimes.
    """

    def __init__(self):
        self.certificates = {}
        self.exams = {}
        self.events = {}
        self.activity = []
        self.executed = []
        self._ids = {"certificates": 0, "exams": 0, "events": 0, "activity": 0}
        self._clock = datetime(2024, 5, 1, 9, 0, 0, tzinfo=timezone.utc)

    # ------------------------------------------------------------------ utils
    def now(self):
        self._clock += timedelta(seconds=1)
        return self._clock

    def _next_id(self, table):
        self._ids[table] += 1
        return self._ids[table]

    # ------------------------------------------------------------ public API
    def fetch_all(self, sql, params=()):
        return [dict(r) for r in self._select(sql, params or ())]

    def fetch_one(self, sql, params=()):
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def execute(self, sql, params=()):
        self.executed.append((sql, params))
        self._write(sql, params or ())

    def execute_returning(self, sql, params=()):
        self.executed.append((sql, params))
        return [dict(r) for r in self._write(sql, params or ())]

    def actions(self):
        return [a["action"] for a in self.activity]

    # ---------------------------------------------------------------- seeding
    def add_certificate(self, user_id="u-1", course_name="Intro to Networking", questions=None,
                        username="Ada Lovelace", email="ada@example.com", file_path="uploads/cert.pdf"):
        cid = self._next_id("certificates")
        self.certificates[cid] = {
            "id": cid, "user_id": user_id, "username": username, "email": email,
            "course_name": course_name, "file_path": file_path,
            "questions": list(questions or []), "status": "pending",
            "uploaded_at": self.now(), "verified_at": None,
        }
        return self.certificates[cid]

    # ---------------------------------------------------------------- reading
    def _select(self, sql, params):
        if "SELECT 1" in sql:
            return [{"one": 1}]
        if "FROM public.certificates" in sql:
            if "WHERE user_id" in sql:
                rows = [r for r in self.certificates.values() if r["user_id"] == params[0]]
                return sorted(rows, key=lambda r: (r["uploaded_at"], r["id"]), reverse=True)
            row = self.certificates.get(params[0])
            return [row] if row else []
        if "FROM public.exams" in sql:
            if "WHERE user_id" in sql:
                rows = [r for r in self.exams.values() if r["user_id"] == params[0]]
                return sorted(rows, key=lambda r: (r["exam_date"], r["id"]), reverse=True)
            row = self.exams.get(params[0])
            return [row] if row else []
        if "FROM public.proctoring_events" in sql:
            rows = [r for r in self.events.values() if r["exam_id"] == params[0]]
            return sorted(rows, key=lambda r: (r["created_at"], r["id"]))
        if "FROM public.activity_log" in sql:
            rows = [r for r in self.activity if r["user_id"] == params[0]]
            rows = sorted(rows, key=lambda r: (r["created_at"], r["id"]), reverse=True)
            return rows[: params[1]]
        raise AssertionError(f"unexpected SELECT: {sql}")

    # ---------------------------------------------------------------- writing
    def _write(self, sql, params):
        if "INSERT INTO public.certificates" in sql:
            user_id, username, email, course_name, file_path, questions = params
            cid = self._next_id("certificates")
            row = {
                "id": cid, "user_id": user_id, "username": username, "email": email,
                "course_name": course_name, "file_path": file_path,
                "questions": _load(questions), "status": "pending",
                "uploaded_at": self.now(), "verified_at": None,
            }
            self.certificates[cid] = row
            return [row]
        if "UPDATE public.certificates" in sql:
            if "SET questions" in sql:
                questions, cid = params
                if cid in self.certificates:
                    self.certificates[cid]["questions"] = _load(questions)
            else:
                cid = params[0]
                if cid in self.certificates:
                    self.certificates[cid].update(status="verified", verified_at=self.now())
            return []
        if "DELETE FROM public.certificates" in sql:
            self.certificates.pop(params[0], None)
            return []

        if "INSERT INTO public.exams" in sql:
            user_id, user_name, certificate_id, certificate_name, status, questions = params
            eid = self._next_id("exams")
            row = {
                "id": eid, "user_id": user_id, "user_name": user_name,
                "certificate_id": certificate_id, "certificate_name": certificate_name,
                "status": status, "exam_date": self.now(), "questions": _load(questions),
                "total_questions": None, "correct_answers": None, "score": None, "result": None,
                "time_spent": None, "questions_answered": [], "completed_at": None,
                "cheating_penalty": None, "final_grade": None, "finalized_at": None,
            }
            self.exams[eid] = row
            return [row]
        if "UPDATE public.exams" in sql and "SET status" in sql:
            status, answered, total, correct, score, result, elapsed, eid, expected = params
            row = self.exams.get(eid)
            if not row or row["status"] != expected:
                return []
            row.update(status=status, questions_answered=_load(answered), total_questions=total,
                       correct_answers=correct, score=score, result=result, time_spent=elapsed,
                       completed_at=self.now())
            return [row]
        if "UPDATE public.exams" in sql and "SET cheating_penalty" in sql:
            penalty, grade, eid, expected = params
            row = self.exams.get(eid)
            if not row or row["status"] != expected:
                return []
            row.update(cheating_penalty=penalty, final_grade=grade, finalized_at=self.now())
            return [row]

        if "INSERT INTO public.proctoring_events" in sql:
            exam_id, user_id, event_type, severity, metadata, occurred = params
            ev_id = self._next_id("events")
            row = {
                "id": ev_id, "exam_id": exam_id, "user_id": user_id, "event_type": event_type,
                "severity": severity, "metadata": _load(metadata),
                "created_at": occurred or self.now(),
            }
            self.events[ev_id] = row
            return [row]

        if "INSERT INTO public.activity_log" in sql:
            user_id, exam_id, action, description, metadata = params
            self.activity.append({
                "id": self._next_id("activity"), "user_id": user_id, "exam_id": exam_id,
                "action": action, "description": description,
                "metadata": _load(metadata), "created_at": self.now(),
            })
            return []

        raise AssertionError(f"unexpected write: {sql}")


def db_deps(db):
    from activity import make_activity_logger
    return {
        "fetch_one": db.fetch_one,
        "fetch_all": db.fetch_all,
        "execute": db.execute,
        "execute_returning": db.execute_returning,
        "log_activity": make_activity_logger(db.execute),
    }


def make_app(*blueprints, user_id=None):
    app = Flask(__name__)
    app.testing = True
    register_error_handlers(app)

    @app.before_request
    def _set_user():
        g.user_id = user_id
        g.user_name = None
        g.user_email = None

    for bp in blueprints:
        app.register_blueprint(bp)
    return app


def mcq_bank(n=10, subject="Intro to Networking"):
    labels = "ABCD"
    return [
        {
            "question": f"{subject} question {i + 1}?",
            "options": [f"{l}) option {l.lower()}{i + 1}" for l in labels],
            "answer": labels[i % 4],
        }
        for i in range(n)
    ]


@pytest.fixture
def db():
    return FakeDB()


@pytest.fixture
def deps(db):
    return db_deps(db)


@pytest.fixture
def app_factory():
    return make_app


@pytest.fixture
def bank():
    return mcq_bank
