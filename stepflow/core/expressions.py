"""Condition expressions and ``{{path}}`` templates evaluated against step input."""

import json
import re
from typing import Any, Dict, List, Optional, Tuple

_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z0-9_]+|\[\d+\])*$')
_TEMPLATE = re.compile(r'\{\{\s*(.*?)\s*\}\}')

# Tried in order; the expression is split on the first operator found
_OPERATORS: List[Tuple[str, Any]] = [
    ("==", lambda c: c == 0),
    ("!=", lambda c: c != 0),
    (">=", lambda c: c >= 0),
    ("<=", lambda c: c <= 0),
    (">", lambda c: c > 0),
    ("<", lambda c: c < 0),
]

_MISSING = object()


class ExpressionError(ValueError):
    """Raised when an expression cannot be parsed."""


def build_context(data: Any, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Evaluation scope for a step input.

    Top-level keys of a dict input are addressable directly; the whole
    input is always available as ``input``. Scalar input is exposed as
    ``value``.
    """
    if isinstance(data, dict):
        context = dict(data)
    else:
        context = {"value": data}
    context.setdefault("input", data)
    if extra:
        context.update(extra)
    return context


def _split_path(path: str) -> List[Any]:
    parts: List[Any] = []
    for chunk in path.split("."):
        if not chunk:
            continue
        match = re.match(r'^([^\[\]]*)((?:\[\d+\])*)$', chunk)
        if not match:
            parts.append(chunk)
            continue
        name, indices = match.groups()
        if name:
            parts.append(name)
        parts.extend(int(i) for i in re.findall(r'\[(\d+)\]', indices))
    return parts


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Resolve a dotted path (``a.b[0].c``, optionally ``$.``-prefixed)."""
    value = _lookup(data, path)
    return default if value is _MISSING else value


def _lookup(data: Any, path: str) -> Any:
    path = (path or "").strip()
    if path.startswith("$."):
        path = path[2:]
    elif path == "$":
        path = ""
    current = data
    for part in _split_path(path):
        if isinstance(part, int):
            if isinstance(current, list) and -len(current) <= part < len(current):
                current = current[part]
            else:
                return _MISSING
        elif isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def resolve_value(token: str, data: Dict[str, Any]) -> Any:
    """Resolve a literal or a path reference.

    Raises:
        ExpressionError: If the token is neither a literal nor a path
    """
    token = token.strip()
    if len(token) >= 2 and token[0] == token[-1] and token[0] in ('"', "'"):
        return token[1:-1]
    if token == "true":
        return True
    if token == "false":
        return False
    if token == "null":
        return None
    try:
        return float(token)
    except ValueError:
        pass
    if token == "$" or token.startswith("$."):
        value = _lookup(data, token)
        if value is _MISSING:
            raise KeyError(token)
        return value
    if _IDENTIFIER.match(token):
        value = _lookup(data, token)
        if value is _MISSING:
            raise KeyError(token)
        return value
    raise ExpressionError(f"Invalid expression: {token}")


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, sort_keys=True, default=str)


def compare(left: Any, right: Any) -> int:
    """Three-way compare; numeric when both sides are numbers, else textual."""
    if left is None and right is None:
        return 0
    if left is None:
        return -1
    if right is None:
        return 1
    left_num, right_num = _as_number(left), _as_number(right)
    if left_num is not None and right_num is not None:
        return (left_num > right_num) - (left_num < right_num)
    left_text, right_text = _as_text(left), _as_text(right)
    return (left_text > right_text) - (left_text < right_text)


def is_truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, (str, list, dict)):
        return len(value) > 0
    return True


def evaluate_condition(expression: Optional[str], data: Any) -> bool:
    """Evaluate a condition expression against step input.

    Supports ``true``/``false`` literals, truthiness of a path
    (``$.field`` or ``field.sub``) and a single comparison using one of
    ``== != >= <= > <``. Missing paths are falsy.

    Raises:
        ExpressionError: If the expression is malformed
    """
    expression = (expression or "").strip()
    if expression in ("", "true"):
        return True
    if expression == "false":
        return False

    context = data if isinstance(data, dict) and "input" in data else build_context(data)

    for operator, check in _OPERATORS:
        if operator in expression:
            left, right = expression.split(operator, 1)
            try:
                left_value = resolve_value(left, context)
            except KeyError:
                left_value = None
            try:
                right_value = resolve_value(right, context)
            except KeyError:
                right_value = None
            return check(compare(left_value, right_value))

    try:
        return is_truthy(resolve_value(expression, context))
    except KeyError:
        return False


def render_template(template: str, data: Dict[str, Any]) -> Any:
    """Expand ``{{path}}`` references in a string.

    A string that is exactly one template keeps the referenced value's
    type; mixed content is rendered as text (non-strings as JSON).
    Missing references render as empty text.
    """
    if not isinstance(template, str) or "{{" not in template:
        return template
    stripped = template.strip()
    whole = _TEMPLATE.fullmatch(stripped)
    if whole and "{{" not in whole.group(1):
        value = _lookup(data, whole.group(1))
        return "" if value is _MISSING or value is None else value

    def _replace(match):
        value = _lookup(data, match.group(1))
        if value is _MISSING or value is None:
            return ""
        if isinstance(value, str):
            return value
        return json.dumps(value, default=str)

    return _TEMPLATE.sub(_replace, template)


def expand_templates(value: Any, data: Dict[str, Any]) -> Any:
    """Recursively expand templates inside nested config values."""
    if isinstance(value, str):
        return render_template(value, data)
    if isinstance(value, dict):
        return {key: expand_templates(item, data) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_templates(item, data) for item in value]
    return value
