from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Sequence

from .execution.types import RawError

USER_SOURCE_STEM = "user-function"

ERROR_LABELS = {
    "SyntaxError": "Syntax Error",
    "IndentationError": "Syntax Error",
    "TabError": "Syntax Error",
    "TypeError": "Type Error",
    "ReferenceError": "Reference Error",
    "NameError": "Reference Error",
}


@dataclass(frozen=True, slots=True)
class FramePattern:
    """One recognized way a runtime refers to a user-source position.

    `innermost` says which match is closest to the failing statement.

    Example:
        ```python
        pattern = FramePattern("python", re.compile(r'File "x", line (?P<line>\\d+)'), "last")
        ```
    """

    name: str
    regex: re.Pattern[str]
    innermost: str


FRAME_PATTERNS: tuple[FramePattern, ...] = (
    # File "user-function.py", line 7, in __user_function__
    FramePattern(
        "python-traceback",
        re.compile(r'File "' + re.escape(USER_SOURCE_STEM) + r'[^"]*", line (?P<line>\d+)'),
        "last",
    ),
    # at user-function.js:4:16  /  user-function.js:5
    FramePattern(
        "v8-frame",
        re.compile(
            re.escape(USER_SOURCE_STEM) + r"(?:\.\w+)?:(?P<line>\d+)(?::(?P<column>\d+))?"
        ),
        "first",
    ),
)

SUGGESTIONS: tuple[tuple[tuple[str, ...], str], ...] = (
    (
        ("unexpected end of input", "unexpected eof", "was never closed"),
        "(Check for missing closing brackets or braces)",
    ),
    (
        (
            "unexpected token",
            "invalid or unexpected token",
            "missing ) after",
            "invalid syntax",
            "unterminated string",
            "unterminated triple-quoted string",
            "expected ':'",
            "perhaps you forgot a comma",
        ),
        "(Check for missing quotes, brackets, or semicolons)",
    ),
    (
        ("unexpected indent", "unindent does not match", "expected an indented block"),
        "(Check the indentation of this line)",
    ),
    (
        ("is not defined",),
        "(Check that the variable is defined or passed in params)",
    ),
)


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """Structured description of a failed execution.

    Example:
        ```python
        diag = Diagnostic(message="boom", error_type="ValueError", label="ValueError")
        ```
    """

    message: str
    error_type: str
    label: str
    line: int | None = None
    column: int | None = None
    line_content: str | None = None
    suggestion: str | None = None

    def to_debug(self) -> dict[str, Any]:
        """Return the machine-readable `debug` payload, omitting absent fields.

        Example:
            ```python
            Diagnostic(message="m", error_type="TypeError", label="Type Error", line=2).to_debug()
            # {"line": 2, "errorType": "TypeError"}
            ```
        """
        debug: dict[str, Any] = {"errorType": self.error_type}
        if self.line is not None:
            debug["line"] = self.line
        if self.column is not None:
            debug["column"] = self.column
        if self.line_content is not None:
            debug["lineContent"] = self.line_content
        return debug


def error_label(kind: str) -> str:
    """Map a runtime error kind to its human label.

    Example:
        ```python
        error_label("TypeError")  # "Type Error"
        ```
    """
    return ERROR_LABELS.get(kind, kind or "Error")


def locate_frame(stack: str) -> tuple[int, int | None] | None:
    """Find the innermost user-source position in a stack trace.

    Returns `(runtime_line, column)` or `None` when no pattern recognizes the
    trace.

    Example:
        ```python
        locate_frame("TypeError: x\\n    at user-function.js:4:16")  # (4, 16)
        ```
    """
    for pattern in FRAME_PATTERNS:
        matches = list(pattern.regex.finditer(stack))
        if not matches:
            continue
        match = matches[-1] if pattern.innermost == "last" else matches[0]
        groups = match.groupdict()
        column = groups.get("column")
        return int(groups["line"]), int(column) if column else None
    return None


def correct_line(runtime_line: int, wrapper_line_offset: int) -> int | None:
    """Translate a runtime line into a 1-indexed user line.

    Example:
        ```python
        correct_line(7, 3)  # 5
        ```
    """
    line = runtime_line - wrapper_line_offset + 1
    return line if line >= 1 else None


def suggest(message: str) -> str | None:
    """Return a fixed hint for well-known error phrasings.

    Example:
        ```python
        suggest("Unexpected end of input")  # "(Check for missing closing brackets or braces)"
        ```
    """
    lowered = message.lower()
    for fragments, hint in SUGGESTIONS:
        if any(fragment in lowered for fragment in fragments):
            return hint
    return None


def diagnose(
    raw_error: RawError,
    user_source_lines: Sequence[str],
    wrapper_line_offset: int,
) -> Diagnostic:
    """Derive a `Diagnostic` from a raw error and the user's source.

    Never raises. Without a stack trace only the message and error type are
    filled in. A trace that no frame pattern recognizes still yields a hint.

    Example:
        ```python
        diag = diagnose(
            RawError("Test error", "Error", "Error: Test error\\n    at user-function.js:7:25"),
            ["a = 1", "b = 2", "c = 3", "d = 4", "return a + b + c + d"],
            3,
        )
        diag.line  # 5
        ```
    """
    kind = raw_error.kind or "Error"
    label = error_label(kind)
    message = raw_error.message
    if not raw_error.stack:
        return Diagnostic(message=message, error_type=kind, label=label)

    suggestion = suggest(message)
    located = locate_frame(raw_error.stack)
    if located is None:
        return Diagnostic(message=message, error_type=kind, label=label, suggestion=suggestion)

    runtime_line, column = located
    line = correct_line(runtime_line, wrapper_line_offset)
    if line is None:
        return Diagnostic(message=message, error_type=kind, label=label, suggestion=suggestion)

    line_content = None
    if line <= len(user_source_lines):
        line_content = user_source_lines[line - 1].strip()

    return Diagnostic(
        message=message,
        error_type=kind,
        label=label,
        line=line,
        column=column,
        line_content=line_content,
        suggestion=suggestion,
    )


def format_error(diagnostic: Diagnostic) -> str:
    """Render the user-facing error text for a diagnostic.

    With a line: label, `Line N`, the offending line, the message and the
    hint, one per line. Without a line: the message, followed by the hint when
    one was derived from an unrecognized trace.

    Example:
        ```python
        format_error(Diagnostic(message="boom", error_type="Error", label="Error"))  # "boom"
        ```
    """
    if diagnostic.line is None:
        if diagnostic.suggestion:
            return f"{diagnostic.message}\n{diagnostic.suggestion}"
        return diagnostic.message
    parts = [diagnostic.label, f"Line {diagnostic.line}"]
    if diagnostic.line_content:
        parts.append(diagnostic.line_content)
    parts.append(diagnostic.message)
    if diagnostic.suggestion:
        parts.append(diagnostic.suggestion)
    return "\n".join(parts)
