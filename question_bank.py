# question_bank.py
# -----------------------------------------------------------------------------
# Question bank for a certificate subject:
#   - LLM generation (OpenAI chat completions, JSON mode, bounded timeout)
#   - validation of every candidate item (text, 4 options, label A-D)
#   - batch acceptance (>= 5 valid out of 10) or the static fallback bank
#   - course-name heuristic over extracted certificate text
# Generation never fails an upload: every error path ends in fallback_questions().
# -----------------------------------------------------------------------------

import os
import re
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

from errors import UpstreamGenerationFailure

OPENAI_API_KEY    = (os.getenv("OPENAI_API_KEY") or "").strip()
OPENAI_QGEN_MODEL = (os.getenv("OPENAI_QGEN_MODEL") or "gpt-4o-mini").strip()
EXAMS_USE_GPT     = (os.getenv("EXAMS_USE_GPT", "1").lower() in ("1", "true", "yes"))
QGEN_TIMEOUT_SEC  = int(os.getenv("QGEN_TIMEOUT_SEC") or 60)

BANK_SIZE = 10
MIN_VALID_QUESTIONS = 5
ANSWER_LABELS = ("A", "B", "C", "D")

Question = Dict[str, Any]


# ------------------------------- validation ----------------------------------
def validate_question(q: Any) -> Optional[Question]:
    """Return a normalized copy of q if it is a usable MCQ item, else None."""
    if not isinstance(q, dict):
        return None
    text = str(q.get("question") or "").strip()
    options = q.get("options")
    answer = str(q.get("answer") or "").strip()
    if not text:
        return None
    if not isinstance(options, list) or len(options) != 4:
        return None
    if answer not in ANSWER_LABELS:
        return None
    return {
        "question": text,
        "options": [str(o).strip() for o in options],
        "answer": answer,
    }


def validate_batch(candidates: Any) -> List[Question]:
    """
    Accept a generated batch only if it yields at least MIN_VALID_QUESTIONS
    valid items; keep at most BANK_SIZE of them in their original order.
    Raises UpstreamGenerationFailure when the batch is unusable.
    """
    if not isinstance(candidates, list) or not candidates:
        raise UpstreamGenerationFailure("generator returned no question list")
    valid = [v for v in (validate_question(q) for q in candidates) if v is not None]
    if len(valid) < MIN_VALID_QUESTIONS:
        raise UpstreamGenerationFailure(
            f"only {len(valid)} valid questions (need {MIN_VALID_QUESTIONS})"
        )
    return valid[:BANK_SIZE]


# ------------------------------- fallback ------------------------------------
_FALLBACK_TEMPLATES: List[Tuple[str, List[str], str]] = [
    ("What is the primary objective of {s}?",
     ["A) Understanding fundamental concepts and principles",
      "B) Memorizing facts and figures",
      "C) Only theoretical knowledge",
      "D) None of the above"], "A"),
    ("Which of the following best describes the practical application of {s}?",
     ["A) Limited to academic settings",
      "B) Real-world problem solving and implementation",
      "C) Only research purposes",
      "D) Not applicable in practice"], "B"),
    ("What skill level is typically required to master {s}?",
     ["A) Beginner with basic understanding",
      "B) Intermediate with practical experience",
      "C) Advanced with deep expertise",
      "D) It depends on the specific area of focus"], "D"),
    ("Which approach is most effective when learning {s}?",
     ["A) Theory only",
      "B) Practice only",
      "C) Combination of theory and hands-on practice",
      "D) Passive observation"], "C"),
    ("What is a key benefit of certification in {s}?",
     ["A) Validation of skills and knowledge",
      "B) Guaranteed job placement",
      "C) No practical value",
      "D) Only for resume enhancement"], "A"),
    ("In {s}, continuous learning is important because:",
     ["A) The field evolves with new techniques and tools",
      "B) It's required by law",
      "C) There's nothing new to learn",
      "D) It's not important at all"], "A"),
    ("Which resource is most valuable for staying updated in {s}?",
     ["A) Outdated textbooks",
      "B) Current industry publications and online communities",
      "C) Social media gossip",
      "D) Random blog posts"], "B"),
    ("What distinguishes an expert in {s} from a beginner?",
     ["A) Years of experience only",
      "B) Depth of understanding and ability to solve complex problems",
      "C) Number of certificates",
      "D) Social media following"], "B"),
    ("Best practices in {s} typically involve:",
     ["A) Following outdated methods",
      "B) Ignoring industry standards",
      "C) Adhering to proven methodologies and continuous improvement",
      "D) Working in isolation"], "C"),
    ("The future of {s} likely includes:",
     ["A) No changes or evolution",
      "B) Integration with emerging technologies and methodologies",
      "C) Complete obsolescence",
      "D) Remaining exactly the same"], "B"),
]


def fallback_questions(subject: str) -> List[Question]:
    s = (subject or "").strip() or "this course"
    return [
        {"question": text.format(s=s), "options": list(options), "answer": answer}
        for text, options, answer in _FALLBACK_TEMPLATES
    ]


# ------------------------------- OpenAI call ---------------------------------
def _openai_chat_json(messages: List[Dict[str, str]], model: str, temperature: float,
                      max_tokens: int, timeout: int) -> Any:
    if not OPENAI_API_KEY:
        raise UpstreamGenerationFailure("OPENAI_API_KEY is not set")
    import requests
    try:
        r = requests.post(
            "https://api.openai.com/v1/chat/completions",
            headers={"Authorization": f"Bearer {OPENAI_API_KEY}", "Content-Type": "application/json"},
            json={
                "model": model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "response_format": {"type": "json_object"},
            },
            timeout=timeout,
        )
        r.raise_for_status()
        data = r.json()
    except requests.RequestException as e:
        raise UpstreamGenerationFailure(f"generation request failed: {e}") from e
    content = (data["choices"][0]["message"]["content"] or "").strip()
    return parse_generated_json(content)


def parse_generated_json(content: str) -> Any:
    """Parse model output, tolerating a ```json fenced block around the payload."""
    try:
        return json.loads(content)
    except ValueError:
        pass
    m = re.search(r"```(?:json)?\s*([\[{].*?[\]}])\s*```", content or "", re.DOTALL)
    try:
        return json.loads(m.group(1) if m else (content or "").strip())
    except ValueError as e:
        raise UpstreamGenerationFailure(f"generator returned malformed JSON: {e}") from e


def _qgen_from_gpt(subject: str, num_questions: int) -> List[Any]:
    sys_msg = (
        "You are an expert exam generator. Create ONLY JSON for multiple-choice questions "
        "that verify practical knowledge of a course."
    )
    usr = f"""
COURSE: {subject}

REQUIREMENTS:
- Exactly {num_questions} challenging, scenario-based questions.
- Focus on real-world application; test understanding, not memorization.
- Mix difficulty levels.
- Each item has exactly 4 options prefixed "A) ", "B) ", "C) ", "D) ".
- "answer" is the single correct label: "A", "B", "C" or "D".

Return ONLY JSON:
{{
  "questions":[
    {{"question":"Question text?","options":["A) ...","B) ...","C) ...","D) ..."],"answer":"A"}}
  ]
}}
"""
    data = _openai_chat_json(
        [{"role": "system", "content": sys_msg}, {"role": "user", "content": usr}],
        model=OPENAI_QGEN_MODEL, temperature=0.4, max_tokens=2400, timeout=QGEN_TIMEOUT_SEC,
    )
    if isinstance(data, dict):
        data = data.get("questions")
    if not isinstance(data, list):
        raise UpstreamGenerationFailure("generator response has no 'questions' list")
    return data


def generate_questions(subject: str,
                       generator: Optional[Callable[[str, int], List[Any]]] = None) -> Tuple[List[Question], str]:
    """
    Produce the question bank for a subject. Returns (questions, source) where
    source is "generated" or "fallback". Never raises for generation problems.
    """
    gen = generator or _qgen_from_gpt
    if generator is None and not EXAMS_USE_GPT:
        return fallback_questions(subject), "fallback"
    try:
        return validate_batch(gen(subject, BANK_SIZE)), "generated"
    except UpstreamGenerationFailure as e:
        print(f"[qgen] falling back for '{subject}': {e.message}", flush=True)
    except Exception as e:
        print(f"[qgen] generator error for '{subject}': {e}", flush=True)
    return fallback_questions(subject), "fallback"


# ------------------------------- course name ---------------------------------
_COURSE_PATTERNS = [
    re.compile(r"Course\s*:\s*(.+)", re.IGNORECASE),
    re.compile(r"Certificate\s+in\s+(.+)", re.IGNORECASE),
    re.compile(r"Certificate\s+of\s+(.+)", re.IGNORECASE),
    re.compile(r"Certificate\s+of\s+Completion\s+in\s+(.+)", re.IGNORECASE),
    re.compile(r"has\s+completed\s+(.+)", re.IGNORECASE),
    re.compile(r"successfully\s+completed\s+(.+)", re.IGNORECASE),
]


def extract_course_name(text: str, file_name: str) -> str:
    for pattern in _COURSE_PATTERNS:
        m = pattern.search(text or "")
        if m and m.group(1):
            extracted = m.group(1).strip().split("\n")[0].strip()
            if 3 < len(extracted) < 200:
                return extracted
    return (file_name or "").replace(".pdf", "").replace("_", " ").strip()


__all__ = [
    "BANK_SIZE", "MIN_VALID_QUESTIONS", "ANSWER_LABELS",
    "validate_question", "validate_batch", "fallback_questions",
    "parse_generated_json", "generate_questions", "extract_course_name",
]
