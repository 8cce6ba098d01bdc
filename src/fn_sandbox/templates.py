from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

_PLACEHOLDER_PATTERN = re.compile(r"\{\{(?P<env>[^{}\n]+?)\}\}|<(?P<param>[A-Za-z0-9_]+)>")


@dataclass(frozen=True, slots=True)
class PlaceholderReport:
    """Names referenced by a script, split by namespace.

    Example:
        ```python
        report = PlaceholderReport(env_names=["API_KEY"], param_names=["email"])
        ```
    """

    env_names: list[str] = field(default_factory=list)
    param_names: list[str] = field(default_factory=list)


def to_source_literal(value: Any) -> str:
    """Render a parameter value as text that can be pasted into Python source.

    Strings are returned unchanged. Everything else becomes a Python literal,
    so quotes, newlines, tabs and non-ASCII text stay correctly escaped.

    Example:
        ```python
        to_source_literal({"from": "A <a@x.com>", "ok": True})
        # "{'from': 'A <a@x.com>', 'ok': True}"
        ```
    """
    if isinstance(value, str):
        return value
    if isinstance(value, float) and not math.isfinite(value):
        return f"float({str(value)!r})"
    if value is None or isinstance(value, (bool, int, float, list, tuple, dict)):
        return repr(value)
    return repr(str(value))


def resolve(code: str, params: Mapping[str, Any], env_vars: Mapping[str, Any]) -> str:
    """Substitute `{{env}}` and `<param>` placeholders in `code`.

    Never raises: missing env keys become empty strings and anything that is
    not a known, well-formed `<param>` is passed through verbatim.

    Example:
        ```python
        resolve("return <name> + '{{SUFFIX}}'", {"name": "'Ada'"}, {"SUFFIX": "!"})
        # "return 'Ada' + '!'"
        ```
    """

    def _replace(match: re.Match[str]) -> str:
        """Return the substitution text for one placeholder match.

        Example:
            ```python
            _PLACEHOLDER_PATTERN.sub(_replace, "{{KEY}}")
            ```
        """
        env_name = match.group("env")
        if env_name is not None:
            if env_name not in env_vars:
                return ""
            return to_source_literal(env_vars[env_name])
        param_name = match.group("param")
        if param_name not in params:
            return match.group(0)
        return to_source_literal(params[param_name])

    return _PLACEHOLDER_PATTERN.sub(_replace, code)


def find_placeholders(code: str) -> PlaceholderReport:
    """List placeholder names referenced by `code`, in first-seen order.

    Example:
        ```python
        report = find_placeholders("return {{API_KEY}} + <email>")
        report.env_names  # ["API_KEY"]
        ```
    """
    env_names: list[str] = []
    param_names: list[str] = []
    for match in _PLACEHOLDER_PATTERN.finditer(code):
        env_name = match.group("env")
        if env_name is not None:
            if env_name not in env_names:
                env_names.append(env_name)
            continue
        param_name = match.group("param")
        if param_name not in param_names:
            param_names.append(param_name)
    return PlaceholderReport(env_names=env_names, param_names=param_names)
