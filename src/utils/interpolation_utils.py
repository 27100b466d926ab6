"""
Variable interpolation for flow texts.
Replaces {{name}} and {name} placeholders with values from a session's variable bag.
"""
import re
from typing import Any, Dict, Optional

_DOUBLE_BRACE_PATTERN = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")
_SINGLE_BRACE_PATTERN = re.compile(r"\{\s*([\w.\-]+)\s*\}")


def _lookup(variables: Optional[Dict[str, Any]], name: str) -> str:
    if not variables:
        return ""
    if name in variables:
        value = variables[name]
    else:
        lowered = name.lower()
        value = None
        for key, candidate in variables.items():
            if str(key).lower() == lowered:
                value = candidate
                break
    if value is None:
        return ""
    return str(value)


def interpolate(text: Optional[str], variables: Optional[Dict[str, Any]]) -> str:
    """
    Substitute placeholders in text. Never fails: unknown names become an empty string.
    """
    if text is None:
        return ""
    if not isinstance(text, str):
        text = str(text)
    if "{" not in text:
        return text

    text = _DOUBLE_BRACE_PATTERN.sub(lambda match: _lookup(variables, match.group(1)), text)
    return _SINGLE_BRACE_PATTERN.sub(lambda match: _lookup(variables, match.group(1)), text)


def interpolate_structure(value: Any, variables: Optional[Dict[str, Any]]) -> Any:
    """
    Recursively interpolate every string inside dicts and lists (keys included).
    """
    if isinstance(value, str):
        return interpolate(value, variables)
    if isinstance(value, dict):
        return {
            interpolate(key, variables) if isinstance(key, str) else key: interpolate_structure(item, variables)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [interpolate_structure(item, variables) for item in value]
    return value


def get_variable(variables: Optional[Dict[str, Any]], name: str) -> str:
    """
    Case-insensitive read of a single variable, empty string when unset.
    """
    return _lookup(variables, name.strip().strip("{}").strip()) if name else ""
