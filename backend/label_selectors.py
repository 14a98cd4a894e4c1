"""
Label selector helpers.

A selector is the Kubernetes ``LabelSelector`` shape:
``{"matchLabels": {...}, "matchExpressions": [{"key", "operator", "values"}]}``.
A bare mapping without those keys is treated as ``matchLabels``.
Malformed selectors raise ``ValueError``.
"""
from typing import Any, Dict, List, Mapping

OPERATORS = ("In", "NotIn", "Exists", "DoesNotExist")


def _normalise(selector: Mapping[str, Any]) -> Dict[str, Any]:
    if "matchLabels" in selector or "matchExpressions" in selector:
        return {
            "matchLabels": dict(selector.get("matchLabels") or {}),
            "matchExpressions": list(selector.get("matchExpressions") or []),
        }
    return {"matchLabels": dict(selector), "matchExpressions": []}


def _expression(expr: Any) -> Dict[str, Any]:
    if not isinstance(expr, Mapping) or not expr.get("key"):
        raise ValueError(f"Label selector expression needs a key: {expr!r}")
    operator = expr.get("operator", "In")
    if operator not in OPERATORS:
        raise ValueError(f"Unsupported label selector operator: {operator}")
    return {"key": expr["key"], "operator": operator, "values": list(expr.get("values") or [])}


def validate(selector: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Check a selector and return it in normalised form.

    Raises:
        ValueError: unknown operator or an expression without a key
    """
    sel = _normalise(selector)
    sel["matchExpressions"] = [_expression(expr) for expr in sel["matchExpressions"]]
    return sel


def to_selector_string(selector: Mapping[str, Any]) -> str:
    """Render a selector in the syntax accepted by ``label_selector=`` list calls."""
    sel = validate(selector)
    parts: List[str] = [f"{key}={value}" for key, value in sorted(sel["matchLabels"].items())]
    for expr in sel["matchExpressions"]:
        key, operator = expr["key"], expr["operator"]
        values = ",".join(expr["values"])
        if operator == "In":
            parts.append(f"{key} in ({values})")
        elif operator == "NotIn":
            parts.append(f"{key} notin ({values})")
        elif operator == "Exists":
            parts.append(key)
        else:
            parts.append(f"!{key}")
    return ",".join(parts)


def matches(selector: Mapping[str, Any], labels: Mapping[str, str]) -> bool:
    """Evaluate a selector against a label set."""
    sel = validate(selector)
    for key, value in sel["matchLabels"].items():
        if labels.get(key) != value:
            return False
    for expr in sel["matchExpressions"]:
        key, operator, values = expr["key"], expr["operator"], expr["values"]
        if operator == "In":
            if labels.get(key) not in values:
                return False
        elif operator == "NotIn":
            if key in labels and labels[key] in values:
                return False
        elif operator == "Exists":
            if key not in labels:
                return False
        elif key in labels:
            return False
    return True
