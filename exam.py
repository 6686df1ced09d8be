# exam.py
# -----------------------------------------------------------------------------
# Exam session state machine.
#
#   start ──▶ in-progress ──submit──▶ completed ──finalize*──▶ completed (+penalty)
#                                  (abandoned: set only administratively)
#
# - start snapshots the certificate's question bank onto the exam row
# - submit is the single scoring pass: one conditional UPDATE both writes every
#   completion field and guards against a second/concurrent submission
# - finalize folds proctoring events into cheating_penalty / final_grade;
#   repeatable, recomputed from the full event set every time
#
# Routes (under <base_path>/api/exams):
#   POST "/start"              {user_id?, certificate_id}
#   POST "/submit"             {exam_id, questions_answered:[...], time_spent}
#   POST "/<exam_id>/finalize"
#   GET  "/<exam_id>"
#   GET  "/user/<user_id>"
# -----------------------------------------------------------------------------

import json
from typing import Any, Callable, Dict, List

from flask import Blueprint, request, jsonify, g

import scoring
from errors import DuplicateCompletion, ExamStateConflict, NotFound, ValidationFailed
from serialize import ensure_json, parse_id, row_to_json

STATUS_IN_PROGRESS = "in-progress"
STATUS_COMPLETED = "completed"
STATUS_ABANDONED = "abandoned"

_EXAM_COLUMNS = (
    "id, user_id, user_name, certificate_id, certificate_name, status, exam_date, questions, "
    "total_questions, correct_answers, score, result, time_spent, questions_answered, "
    "completed_at, cheating_penalty, final_grade, finalized_at"
)


def public_questions(questions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Question bank as shown to a candidate: no answer labels."""
    return [
        {"question_id": scoring.question_id(i), "question": q.get("question"), "options": q.get("options") or []}
        for i, q in enumerate(questions)
    ]


def exam_to_json(row: Dict[str, Any]) -> Dict[str, Any]:
    out = row_to_json(row)
    questions = ensure_json(row.get("questions"), [])
    out.pop("questions", None)
    out["questions_answered"] = ensure_json(row.get("questions_answered"), [])
    if row.get("status") == STATUS_COMPLETED:
        out["questions"] = questions
    else:
        out["questions"] = public_questions(questions)
    return out


def create_exam_service(deps: Dict[str, Any]) -> Dict[str, Callable]:
    """
    Storage-backed operations of the state machine, shared by the exam and
    verify blueprints. Required deps: fetch_one, fetch_all, execute, execute_returning, log_activity.
    """
    fetch_one: Callable = deps["fetch_one"]
    fetch_all: Callable = deps["fetch_all"]
    execute: Callable = deps["execute"]
    execute_returning: Callable = deps["execute_returning"]
    log_activity: Callable = deps["log_activity"]

    def load_exam(exam_id: Any) -> Dict[str, Any]:
        eid = parse_id(exam_id)
        row = fetch_one(f"SELECT {_EXAM_COLUMNS} FROM public.exams WHERE id = %s;", (eid,)) if eid else None
        if not row:
            raise NotFound("Exam not found")
        return row

    def load_events(exam_id: Any) -> List[Dict[str, Any]]:
        # chronological by event time; insertion order is not trusted
        return fetch_all("""
            SELECT id, exam_id, user_id, event_type, severity, metadata, created_at
              FROM public.proctoring_events
             WHERE exam_id = %s
             ORDER BY created_at ASC, id ASC;
        """, (exam_id,)) or []

    def start(user_id: str, certificate_id: Any) -> Dict[str, Any]:
        if not user_id or not certificate_id:
            raise ValidationFailed("User ID and Certificate ID are required")
        cid = parse_id(certificate_id)
        cert = fetch_one("""
            SELECT id, user_id, username, course_name, questions
              FROM public.certificates
             WHERE id = %s;
        """, (cid,)) if cid else None
        if not cert or str(cert.get("user_id")) != str(user_id):
            raise NotFound("Certificate not found")
        questions = ensure_json(cert.get("questions"), [])
        if not questions:
            raise ValidationFailed("Certificate has no questions")

        rows = execute_returning(f"""
            INSERT INTO public.exams
                (user_id, user_name, certificate_id, certificate_name, status, exam_date, questions)
            VALUES (%s, %s, %s, %s, %s, now(), %s)
            RETURNING {_EXAM_COLUMNS};
        """, (str(user_id), cert.get("username"), cert["id"], cert["course_name"],
              STATUS_IN_PROGRESS, json.dumps(questions, ensure_ascii=False)))
        exam = rows[0]
        log_activity(user_id, "exam_start", f"Started exam for: {cert['course_name']}", exam_id=exam["id"])
        print(f"[exam] started {exam['id']} for certificate {cert['id']}")
        return exam

    def _grading_key(exam: Dict[str, Any]) -> List[Dict[str, Any]]:
        questions = ensure_json(exam.get("questions"), [])
        if questions:
            return questions
        # rows created before snapshots existed read the live bank
        cert = fetch_one("SELECT questions FROM public.certificates WHERE id = %s;", (exam.get("certificate_id"),))
        return ensure_json((cert or {}).get("questions"), [])

    def submit(exam_id: Any, answered: Any, time_spent: Any) -> Dict[str, Any]:
        if not exam_id or not isinstance(answered, list) or not answered:
            raise ValidationFailed("Exam ID and answers are required")
        if not all(isinstance(a, dict) for a in answered):
            raise ValidationFailed("Each answer must be an object with question_id and user_answer")
        exam = load_exam(exam_id)
        if exam.get("status") == STATUS_COMPLETED:
            raise DuplicateCompletion("Exam already submitted")
        if exam.get("status") != STATUS_IN_PROGRESS:
            raise ExamStateConflict(f"Exam is {exam.get('status')}")

        questions = _grading_key(exam)
        try:
            records = scoring.build_answer_records(questions, answered)
        except KeyError as e:
            raise ValidationFailed(f"Unknown question id: {e.args[0] or '(empty)'}")
        summary = scoring.score_answers(records)
        elapsed = scoring.non_negative_int(time_spent)

        rows = execute_returning(f"""
            UPDATE public.exams
               SET status = %s,
                   questions_answered = %s,
                   total_questions = %s,
                   correct_answers = %s,
                   score = %s,
                   result = %s,
                   time_spent = %s,
                   completed_at = now()
             WHERE id = %s
               AND status = %s
            RETURNING {_EXAM_COLUMNS};
        """, (STATUS_COMPLETED, json.dumps(records, ensure_ascii=False),
              summary["total_questions"], summary["correct_answers"], summary["score"],
              summary["result"], elapsed, exam["id"], STATUS_IN_PROGRESS))
        if not rows:
            # lost the race to a concurrent submit
            raise DuplicateCompletion("Exam already submitted")
        done = rows[0]

        if summary["result"] == "pass":
            execute("""
                UPDATE public.certificates
                   SET status = 'verified', verified_at = now()
                 WHERE id = %s;
            """, (done["certificate_id"],))

        log_activity(done["user_id"], "exam_complete",
                     f"Completed exam with score: {summary['score']}% ({summary['result']})",
                     exam_id=done["id"],
                     metadata={"score": summary["score"], "result": summary["result"]})
        print(f"[exam] completed {done['id']}: {summary['correct_answers']}/{summary['total_questions']} -> {summary['score']}")
        return done

    def finalize(exam_id: Any) -> Dict[str, Any]:
        exam = load_exam(exam_id)
        if exam.get("status") != STATUS_COMPLETED:
            raise ExamStateConflict("Exam is not completed")
        events = load_events(exam["id"])
        report = scoring.penalty_report(exam.get("score"), events)
        rows = execute_returning(f"""
            UPDATE public.exams
               SET cheating_penalty = %s,
                   final_grade = %s,
                   finalized_at = now()
             WHERE id = %s
               AND status = %s
            RETURNING {_EXAM_COLUMNS};
        """, (report["cheating_penalty"], report["final_grade"], exam["id"], STATUS_COMPLETED))
        if not rows:
            raise ExamStateConflict("Exam is not completed")
        return {"exam": rows[0], "events": events, "report": report}

    return {
        "load_exam": load_exam,
        "load_events": load_events,
        "start": start,
        "submit": submit,
        "finalize": finalize,
    }


def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns the exam Blueprint mounted at <base_path>/api/exams.
    Required deps: fetch_one, fetch_all, execute, execute_returning, log_activity
    """
    bp = Blueprint(name, __name__, url_prefix=(base_path or "") + "/api/exams")
    svc = create_exam_service(deps)
    fetch_all: Callable = deps["fetch_all"]

    def _body() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationFailed("JSON body required")
        return data

    @bp.post("/start")
    def exam_start():
        data = _body()
        user_id = str(data.get("user_id") or data.get("userId") or getattr(g, "user_id", None) or "").strip()
        certificate_id = data.get("certificate_id") or data.get("certificateId")
        exam = svc["start"](user_id, certificate_id)
        return jsonify({"ok": True, "data": exam_to_json(exam)}), 201

    @bp.post("/submit")
    def exam_submit():
        data = _body()
        exam_id = data.get("exam_id") or data.get("examId")
        answered = data.get("questions_answered")
        if answered is None:
            answered = data.get("questionsAnswered")
        time_spent = data.get("time_spent", data.get("timeSpent"))
        done = svc["submit"](exam_id, answered, time_spent)
        return jsonify({"ok": True, "data": exam_to_json(done)})

    @bp.post("/<exam_id>/finalize")
    def exam_finalize(exam_id: str):
        out = svc["finalize"](exam_id)
        exam, report = out["exam"], out["report"]
        return jsonify({
            "ok": True,
            "data": {
                "exam_id": str(exam["id"]),
                "score": exam.get("score"),
                "result": exam.get("result"),
                "severity_counts": report["severity_counts"],
                "cheating_penalty": scoring.one_decimal(report["cheating_penalty"]),
                "adjusted_score": scoring.one_decimal(report["adjusted_score"]),
                "final_grade": report["final_grade"],
            },
        })

    @bp.get("/<exam_id>")
    def exam_get(exam_id: str):
        return jsonify({"ok": True, "data": exam_to_json(svc["load_exam"](exam_id))})

    @bp.get("/user/<user_id>")
    def exams_for_user(user_id: str):
        if not (user_id or "").strip():
            raise ValidationFailed("User ID is required")
        rows = fetch_all(f"""
            SELECT {_EXAM_COLUMNS}
              FROM public.exams
             WHERE user_id = %s
             ORDER BY exam_date DESC, id DESC;
        """, (user_id,))
        return jsonify({"ok": True, "data": [exam_to_json(r) for r in rows or []]})

    return bp


__all__ = [
    "STATUS_IN_PROGRESS", "STATUS_COMPLETED", "STATUS_ABANDONED",
    "public_questions", "exam_to_json", "create_exam_service", "create_exam_blueprint",
]
