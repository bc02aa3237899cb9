import json
import math
from datetime import date, datetime
from typing import Any


def make_json_safe(value: Any) -> Any:
    """
    Convert cell values into JSON-serialisable structures. Keys become strings
    and NaN/inf floats (pandas blanks) become ``None``.
    """
    if isinstance(value, dict):
        return {str(key): make_json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [make_json_safe(item) for item in value]
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode(errors="ignore")
    if isinstance(value, (int, float, str, bool)) or value is None:
        return value
    return str(value)


def dump_json(value: Any) -> str:
    """JSON text with non-ASCII (Arabic) characters kept readable."""
    return json.dumps(make_json_safe(value), ensure_ascii=False)
