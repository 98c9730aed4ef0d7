"""JSON helpers for attribute values stored as text columns."""

import json
from typing import Any


def is_json_text(raw: Any) -> bool:
    """True if raw is a non-empty string holding a JSON document.

    Lets values read back from a json column be written again without
    being encoded a second time.
    """
    if not isinstance(raw, str) or not raw:
        return False
    try:
        json.loads(raw)
    except (ValueError, TypeError):
        return False
    return True
