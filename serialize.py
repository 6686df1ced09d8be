# serialize.py
"""Row -> JSON helpers shared by the blueprints."""

import json
from datetime import datetime, date
from decimal import Decimal
from typing import Any, Dict, List, Optional


def ensure_json(raw: Any, default: Any) -> Any:
    """jsonb columns arrive as Python objects from psycopg, but text columns and fakes may hand us strings."""
    if raw is None or raw == "":
        return default
    if isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


def iso(v: Any) -> Optional[str]:
    if v is None:
        return None
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    return str(v)


def _plain(v: Any) -> Any:
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    if isinstance(v, Decimal):
        return float(v)
    return v


def row_to_json(row: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not row:
        return {}
    out = {k: _plain(v) for k, v in row.items()}
    for key in ("id", "exam_id", "certificate_id"):
        if out.get(key) is not None:
            out[key] = str(out[key])
    return out


def rows_to_json(rows: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    return [row_to_json(r) for r in rows or []]


def parse_id(raw: Any) -> Optional[int]:
    """Public ids are numeric strings; anything else can never resolve."""
    try:
        v = int(str(raw).strip())
    except (TypeError, ValueError):
        return None
    return v if v > 0 else None
