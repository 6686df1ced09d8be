# scoring.py
# -----------------------------------------------------------------------------
# Exam scoring & proctoring penalty engine. Pure functions only: no I/O, no
# Flask, no database. Everything that grades an exam goes through here.
#
#   score         = round_half_up(100 * correct / total)   (0 when total == 0)
#   result        = "pass" if score >= 70 else "fail"
#   penalty       = 5*high + 2*medium + 0.5*low
#   adjusted      = max(0, score - penalty)
#   final_grade   = "PASS" if adjusted >= 70 else "FAIL"
# -----------------------------------------------------------------------------

import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

PASS_THRESHOLD = 70
NO_ANSWER = "No answer"

SEVERITIES = ("low", "medium", "high")
SEVERITY_WEIGHTS: Dict[str, float] = {"high": 5.0, "medium": 2.0, "low": 0.5}

_OPTION_LABEL_RE = re.compile(r"^\s*([A-D])\s*[).:]")


def answer_label(raw: Any) -> str:
    """
    Reduce a submitted answer to the option label it selects.
    "B" -> "B", "B) Real-world problem solving" -> "B"; anything else is kept
    (stripped) so it can never accidentally equal a label.
    """
    s = str(raw or "").strip()
    if not s:
        return ""
    m = _OPTION_LABEL_RE.match(s)
    if m:
        return m.group(1)
    return s


def is_correct(user_answer: Any, correct_label: Any) -> bool:
    # exact label equality; the rendered option text is never compared
    label = answer_label(user_answer)
    return bool(label) and label == str(correct_label or "").strip()


def score_percent(correct: int, total: int) -> int:
    if total <= 0:
        return 0
    # integer half-up rounding of 100*correct/total
    return (200 * correct + total) // (2 * total)


def pass_fail(score: float) -> str:
    return "pass" if score >= PASS_THRESHOLD else "fail"


def build_answer_records(questions: List[Dict[str, Any]],
                         submitted: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """
    Turn the submitted answers into AnswerRecords against a question bank.

    Question ids are "q_<index>" (0-based, bank order). Each record captures
    the question text and correct label as they are *now*, so later bank
    changes never rewrite a historical result. Bank questions missing from
    the submission are appended as "No answer" so they still count.
    Raises KeyError for ids that are not in the bank.
    """
    by_id = {question_id(i): q for i, q in enumerate(questions)}
    records: List[Dict[str, Any]] = []
    seen = set()

    for item in submitted:
        qid = str(item.get("question_id") or item.get("questionId") or "").strip()
        if qid not in by_id:
            raise KeyError(qid)
        if qid in seen:
            continue
        seen.add(qid)
        q = by_id[qid]
        user_answer = str(item.get("user_answer") or item.get("userAnswer") or "").strip() or NO_ANSWER
        correct_label = str(q.get("answer") or "").strip()
        records.append({
            "question_id": qid,
            "question_text": str(q.get("question") or ""),
            "user_answer": user_answer,
            "correct_answer": correct_label,
            "is_correct": user_answer != NO_ANSWER and is_correct(user_answer, correct_label),
            "time_spent": non_negative_int(item.get("time_spent", item.get("timeSpent"))),
        })

    for i, q in enumerate(questions):
        qid = question_id(i)
        if qid in seen:
            continue
        records.append({
            "question_id": qid,
            "question_text": str(q.get("question") or ""),
            "user_answer": NO_ANSWER,
            "correct_answer": str(q.get("answer") or "").strip(),
            "is_correct": False,
            "time_spent": 0,
        })

    order = {question_id(i): i for i in range(len(questions))}
    records.sort(key=lambda r: order[r["question_id"]])
    return records


def score_answers(records: List[Dict[str, Any]]) -> Dict[str, Any]:
    total = len(records)
    correct = sum(1 for r in records if r.get("is_correct"))
    score = score_percent(correct, total)
    return {
        "total_questions": total,
        "correct_answers": correct,
        "score": score,
        "result": pass_fail(score),
    }


def severity_counts(events: Iterable[Mapping[str, Any]]) -> Dict[str, int]:
    counts = {s: 0 for s in SEVERITIES}
    for e in events:
        sev = str(e.get("severity") or "medium")
        if sev in counts:
            counts[sev] += 1
    return counts


def cheating_penalty(counts: Mapping[str, int]) -> float:
    return float(sum(SEVERITY_WEIGHTS[s] * int(counts.get(s) or 0) for s in SEVERITIES))


def adjusted_score(score: float, penalty: float) -> float:
    return max(0.0, float(score or 0) - float(penalty or 0))


def final_grade(adjusted: float) -> str:
    return "PASS" if adjusted >= PASS_THRESHOLD else "FAIL"


def penalty_report(score: Optional[float], events: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """Fold proctoring events into the integrity-adjusted outcome of a scored exam."""
    counts = severity_counts(events)
    penalty = cheating_penalty(counts)
    adjusted = adjusted_score(score or 0, penalty)
    return {
        "severity_counts": counts,
        "cheating_penalty": penalty,
        "adjusted_score": adjusted,
        "final_grade": final_grade(adjusted),
    }


def question_id(index: int) -> str:
    return f"q_{int(index)}"


def one_decimal(x: Optional[float]) -> str:
    return f"{float(x or 0):.1f}"


def format_duration(total_sec: Optional[int]) -> str:
    s = non_negative_int(total_sec)
    return f"{s // 60}m {s % 60}s"


def non_negative_int(v: Any) -> int:
    try:
        return max(0, int(float(v or 0)))
    except (TypeError, ValueError):
        return 0


__all__ = [
    "PASS_THRESHOLD", "NO_ANSWER", "SEVERITIES", "SEVERITY_WEIGHTS",
    "answer_label", "is_correct", "score_percent", "pass_fail",
    "build_answer_records", "score_answers", "severity_counts",
    "cheating_penalty", "adjusted_score", "final_grade", "penalty_report",
    "question_id", "one_decimal", "format_duration", "non_negative_int",
]
