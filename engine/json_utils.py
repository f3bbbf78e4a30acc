import json
import logging
from datetime import date, datetime
from pathlib import Path


def _default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def safe_json_dumps(value, **kwargs):
    kwargs.setdefault("default", _default)
    kwargs.setdefault("ensure_ascii", False)
    return json.dumps(value, **kwargs)


def safe_json(raw, default=None):
    """Parse a JSON column value, returning ``default`` for empty or malformed text."""
    if raw is None:
        return default
    if isinstance(raw, (dict, list)):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logging.debug("safe_json: unparseable value ignored")
        return default


def string_map(value):
    """Coerce a loose mapping into ``dict[str, str]``, dropping nested and empty values."""
    if not isinstance(value, dict):
        return {}
    result = {}
    for key, item in value.items():
        if item is None or isinstance(item, (dict, list)):
            continue
        text = str(item).strip()
        if text:
            result[str(key)] = text
    return result
