"""Template and dynamic value resolution against an execution context.

Two token syntaxes are supported:

- ``{{dotted.path}}`` tokens inside strings (step configs, message bodies,
  URLs). A string that is exactly one token resolves to the raw value.
- ``{placeholder}`` whole-string values used by data source filters and
  strategy updates: relative dates first, then context variables.
"""

import calendar
import json
import logging
import re
from datetime import date, timedelta
from typing import Any, Mapping, Optional

from core.utils import utc_now

logger = logging.getLogger(__name__)

TEMPLATE_TOKEN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
DYNAMIC_PLACEHOLDER = re.compile(r"^\{([A-Za-z_][\w.]*)\}$")
_INDEX_PART = re.compile(r"^([^\[\]]*)((?:\[\d+\])+)$")

_MISSING = object()


def _step(current: Any, part: str) -> Any:
    if isinstance(current, Mapping):
        if part in current:
            return current[part]
        alt = part.replace("_", "-") if "_" in part else part.replace("-", "_")
        return current.get(alt, _MISSING)
    if isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
        idx = int(part)
        return current[idx] if -len(current) <= idx < len(current) else _MISSING
    if current is not None and not isinstance(current, (str, bytes)) and hasattr(current, part):
        return getattr(current, part)
    return _MISSING


def get_nested_value(obj: Any, path: Optional[str]) -> Any:
    """Resolve a dotted path such as ``items[0].name`` or ``a.b.2``.

    Returns None when any segment is missing.
    """
    if not path:
        return None
    current = obj
    for raw in path.strip().split("."):
        match = _INDEX_PART.match(raw)
        if match:
            parts = ([match.group(1)] if match.group(1) else []) + re.findall(r"\d+", match.group(2))
        else:
            parts = [raw]
        for part in parts:
            current = _step(current, part)
            if current is _MISSING:
                return None
    return current


def _has_path(obj: Any, path: str) -> bool:
    head = path.split(".")[0].split("[")[0]
    return isinstance(obj, Mapping) and head in obj


def _stringify(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def render_template(template: Any, lookup: Mapping[str, Any]) -> Any:
    """Replace ``{{path}}`` tokens in a string.

    Unresolved tokens are left untouched so a partially-resolved template is
    visible in step output.
    """
    if not isinstance(template, str) or "{{" not in template:
        return template

    whole = TEMPLATE_TOKEN.fullmatch(template.strip())
    if whole:
        value = get_nested_value(lookup, whole.group(1))
        if value is None and not _has_path(lookup, whole.group(1)):
            return template
        return value

    def _replace(match: re.Match) -> str:
        value = get_nested_value(lookup, match.group(1))
        if value is None:
            return match.group(0)
        return _stringify(value)

    return TEMPLATE_TOKEN.sub(_replace, template)


def resolve_parameters(params: Any, lookup: Mapping[str, Any]) -> Any:
    """Recursively render every string inside dicts and lists."""
    if isinstance(params, str):
        return render_template(params, lookup)
    if isinstance(params, dict):
        return {key: resolve_parameters(value, lookup) for key, value in params.items()}
    if isinstance(params, list):
        return [resolve_parameters(item, lookup) for item in params]
    return params


def relative_date(name: str, today: Optional[date] = None) -> Optional[str]:
    """ISO date for a relative-date placeholder name, or None if unknown."""
    today = today or utc_now().date()
    key = name.replace("_", "").lower()
    if key == "today":
        return today.isoformat()
    if key == "yesterday":
        return (today - timedelta(days=1)).isoformat()
    if key == "currentmonthstart":
        return today.replace(day=1).isoformat()
    if key == "currentmonthend":
        last_day = calendar.monthrange(today.year, today.month)[1]
        return today.replace(day=last_day).isoformat()
    return None


def resolve_dynamic_value(
    value: Any,
    lookup: Mapping[str, Any],
    today: Optional[date] = None,
) -> Any:
    """Rewrite a whole-string ``{placeholder}``.

    Relative dates win over context variables of the same name; nested
    context lookups use dotted paths. Unknown placeholders and any other
    value are returned unchanged.
    """
    if not isinstance(value, str):
        return value
    match = DYNAMIC_PLACEHOLDER.match(value.strip())
    if not match:
        return value

    placeholder = match.group(1)
    resolved_date = relative_date(placeholder, today)
    if resolved_date is not None:
        return resolved_date

    if placeholder in lookup:
        return lookup[placeholder]
    if "." in placeholder and _has_path(lookup, placeholder):
        nested = get_nested_value(lookup, placeholder)
        if nested is not None:
            return nested

    logger.debug(f"Unknown placeholder left unresolved: {value}")
    return value
