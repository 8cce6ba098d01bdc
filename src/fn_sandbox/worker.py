from __future__ import annotations

import ast
import asyncio
import builtins
import contextlib
import io
import json
import math
import sys
import traceback
from typing import Any, Callable

_resource: Any
try:
    import resource as _resource_module  # POSIX only
    _resource = _resource_module
except ImportError:  # pragma: no cover - platform specific
    _resource = None

USER_SOURCE_NAME = "user-function.py"
USER_FUNCTION_NAME = "__user_function__"
WRAPPER_HEADER = (
    'params = __bindings__.get("params", {})\n',
    'environment_variables = __bindings__.get("environment_variables", {})\n',
)
# Runtime line number of the first user line.
WRAPPER_LINE_OFFSET = len(WRAPPER_HEADER) + 1
TRUNCATED_MARKER = "[output truncated]"

_RESERVED_NAMES = {
    "__builtins__",
    "__bindings__",
    "__name__",
    USER_FUNCTION_NAME,
    "params",
    "environment_variables",
}


class _LogLines(io.TextIOBase):
    """Writable text stream that turns every completed line into a log entry.

    Example:
        ```python
        entries: list[str] = []
        sink = _LogLines(entries, limit_bytes=1024)
        sink.write("hello\\nworld\\n")  # entries == ["hello", "world"]
        ```
    """

    def __init__(self, entries: list[str], limit_bytes: int) -> None:
        """Bind the sink to a shared entry list and byte budget.

        Example:
            ```python
            sink = _LogLines([], limit_bytes=128 * 1024)
            ```
        """
        super().__init__()
        self._entries = entries
        self._limit_bytes = limit_bytes
        self._used_bytes = 0
        self._pending = ""
        self._truncated = False

    def writable(self) -> bool:
        """Report the stream as writable.

        Example:
            ```python
            sink.writable()  # True
            ```
        """
        return True

    def write(self, text: str) -> int:
        """Buffer text and emit one entry per completed line.

        Example:
            ```python
            sink.write("partial")
            ```
        """
        self._pending += text
        *complete, self._pending = self._pending.split("\n")
        for line in complete:
            self._append(line)
        return len(text)

    def flush_pending(self) -> None:
        """Emit a trailing line that was never terminated by a newline.

        Example:
            ```python
            sink.flush_pending()
            ```
        """
        if self._pending:
            self._append(self._pending)
            self._pending = ""

    def _append(self, line: str) -> None:
        """Record one line unless the output budget is spent.

        Example:
            ```python
            sink._append("value: 3")
            ```
        """
        if self._truncated:
            return
        size = len(line.encode("utf-8", "replace"))
        if self._used_bytes + size > self._limit_bytes:
            self._entries.append(TRUNCATED_MARKER)
            self._truncated = True
            return
        self._used_bytes += size
        self._entries.append(line)


def compile_user_function(code: str) -> Any:
    """Compile user code as the body of `async def __user_function__()`.

    The wrapper header is prepended before parsing, so every line number the
    runtime reports is shifted by `WRAPPER_LINE_OFFSET - 1`.

    Example:
        ```python
        byte_code = compile_user_function("return params['x'] * 2")
        ```
    """
    source = "".join(WRAPPER_HEADER) + code
    tree = ast.parse(source, filename=USER_SOURCE_NAME)
    header = tree.body[: len(WRAPPER_HEADER)]
    body = tree.body[len(WRAPPER_HEADER) :]
    function = ast.parse(f"async def {USER_FUNCTION_NAME}():\n    pass\n").body[0]
    if body:
        function.body = body
    tree.body = [*header, function]
    return compile(tree, USER_SOURCE_NAME, "exec")


def _inject_direct_bindings(
    exec_globals: dict[str, Any],
    direct_bindings: Any,
    mode: str,
    allowed_globals: set[str],
    blocked_globals: set[str],
) -> None:
    """
    Expose custom-tool parameters as top-level variables when safe.

    Example: direct_bindings={"location": "Paris"} enables `return location.upper()`.
    """
    if not isinstance(direct_bindings, dict):
        return
    for key, value in direct_bindings.items():
        key_str = str(key)
        if not key_str.isidentifier():
            continue
        if key_str in _RESERVED_NAMES or key_str.startswith("_"):
            continue
        if mode == "allow" and key_str not in allowed_globals:
            continue
        if mode == "restrict" and key_str in blocked_globals:
            continue
        if key_str not in exec_globals:
            exec_globals[key_str] = value


def _set_limits(memory_limit_mb: int, cpu_seconds: int) -> list[str]:
    """Apply address-space and CPU-time limits to this process.

    Example:
        ```python
        problems = _set_limits(memory_limit_mb=256, cpu_seconds=6)
        ```
    """
    errors: list[str] = []
    if _resource is None:
        errors.append("RLIMIT limits unavailable on this platform")
        return errors

    limits = (
        ("RLIMIT_AS", int(memory_limit_mb) * 1024 * 1024),
        ("RLIMIT_CPU", int(cpu_seconds)),
    )
    for name, wanted in limits:
        try:
            which = getattr(_resource, name)
            _, current_hard = _resource.getrlimit(which)
            if current_hard in (-1, _resource.RLIM_INFINITY):
                target_hard = wanted
            else:
                target_hard = min(wanted, current_hard)
            _resource.setrlimit(which, (min(wanted, target_hard), target_hard))
        except (AttributeError, ValueError, OSError) as exc:
            errors.append(f"{name} not applied: {exc}")

    return errors


def _safe_import_factory_mode(
    mode: str,
    allowed_imports: set[str],
    blocked_imports: set[str],
) -> Callable[..., Any]:
    """Build an `__import__` replacement that enforces the import policy.

    Example:
        ```python
        safe_import = _safe_import_factory_mode("restrict", set(), {"os"})
        ```
    """

    def _safe_import(
        name: str,
        globals: dict[str, Any] | None = None,
        locals: dict[str, Any] | None = None,
        fromlist: Any = (),
        level: int = 0,
    ) -> Any:
        """Import `name` unless the policy forbids its root package.

        Example:
            ```python
            math = _safe_import("math")
            ```
        """
        if name == "importlib" or name.startswith("importlib."):
            raise ImportError("Import 'importlib' is blocked by policy")

        root = name.split(".")[0]
        if mode == "allow":
            if root not in allowed_imports:
                raise ImportError(f"Import '{name}' is not allowed by policy")
        elif root in blocked_imports:
            raise ImportError(f"Import '{name}' is blocked by policy")
        return __import__(name, globals, locals, fromlist, level)

    return _safe_import


def _build_safe_builtins(
    mode: str,
    allowed_builtins: set[str],
    blocked_builtins: set[str],
    safe_import: Any,
) -> dict[str, Any]:
    """Copy the builtins namespace keeping only what the policy permits.

    Example:
        ```python
        safe = _build_safe_builtins("restrict", set(), {"eval"}, __import__)
        ```
    """
    safe = {}
    for name, value in vars(builtins).items():
        if mode == "allow":
            if name not in allowed_builtins:
                continue
        elif name in blocked_builtins:
            continue
        safe[name] = value

    safe["__import__"] = safe_import
    return safe


def _filter_extra_globals(
    extra_globals: dict[str, Any],
    mode: str,
    allowed_globals: set[str],
    blocked_globals: set[str],
) -> dict[str, Any]:
    """Drop policy-level extra globals that the mode does not admit.

    Example:
        ```python
        kept = _filter_extra_globals({"helper": 9}, "allow", {"helper"}, set())
        ```
    """
    filtered: dict[str, Any] = {}
    for key, value in extra_globals.items():
        key_str = str(key)
        if mode == "allow" and key_str not in allowed_globals:
            continue
        if mode == "restrict" and key_str in blocked_globals:
            continue
        filtered[key_str] = value
    return filtered


def _error_message(exc: BaseException) -> str:
    """Return the human part of an exception message.

    Example:
        ```python
        _error_message(NameError("name 'x' is not defined"))
        ```
    """
    if isinstance(exc, SyntaxError) and exc.msg:
        return exc.msg
    return str(exc)


def _failure(exc: BaseException, logs: list[str]) -> dict[str, Any]:
    """Build the failure reply for an exception raised by user code.

    Example:
        ```python
        reply = _failure(ValueError("bad"), ["log line"])
        ```
    """
    return {
        "ok": False,
        "result": None,
        "logs": logs,
        "error": {
            "message": _error_message(exc),
            "kind": type(exc).__name__,
            "stack": "".join(traceback.format_exception(exc)),
        },
    }


def _system_exit_reply(exit_code: Any, logs: list[str]) -> tuple[dict[str, Any], int]:
    """Translate `SystemExit` raised by user code into a reply.

    Example:
        ```python
        reply, code = _system_exit_reply(0, [])
        ```
    """
    if exit_code in (None, 0):
        return {"ok": True, "result": None, "logs": logs, "error": None}, 0
    status = exit_code if isinstance(exit_code, int) else 1
    return {
        "ok": False,
        "result": None,
        "logs": logs,
        "error": {"message": f"SystemExit: {exit_code}", "kind": "SystemExit", "stack": None},
    }, status


def run_request(req: dict[str, Any]) -> tuple[dict[str, Any], int]:
    """Execute one decoded worker request and return `(reply, exit_code)`.

    Example:
        ```python
        reply, code = run_request({"code": "return 1 + 1", "bindings": {}})
        ```
    """
    code = str(req.get("code", ""))
    bindings = req.get("bindings") or {}
    direct_bindings = req.get("direct_bindings") or {}
    policy = req.get("policy") or {}
    timeout_ms = int(req.get("timeout_ms", 5000))

    memory_limit_mb = int(policy.get("memory_limit_mb", 256))
    max_output_kb = int(policy.get("max_output_kb", 128))
    mode = str(policy.get("mode", "restrict"))
    allowed_imports = set(policy.get("allowed_imports", []))
    blocked_imports = set(policy.get("blocked_imports", []))
    allowed_builtins = set(policy.get("allowed_builtins", []))
    blocked_builtins = set(policy.get("blocked_builtins", []))
    allowed_globals = set(policy.get("allowed_globals", []))
    blocked_globals = set(policy.get("blocked_globals", []))
    extra_globals = policy.get("extra_globals", {}) or {}

    logs: list[str] = []
    sink = _LogLines(logs, max_output_kb * 1024)

    if mode not in {"allow", "restrict"}:
        raise ValueError("mode must be 'allow' or 'restrict'")

    _set_limits(
        memory_limit_mb=memory_limit_mb,
        cpu_seconds=math.ceil(max(timeout_ms, 1) / 1000) + 1,
    )

    safe_import = _safe_import_factory_mode(mode, allowed_imports, blocked_imports)
    safe_builtins = _build_safe_builtins(mode, allowed_builtins, blocked_builtins, safe_import)

    try:
        byte_code = compile_user_function(code)
    except SyntaxError as exc:
        return _failure(exc, logs), 1

    exec_globals: dict[str, Any] = {
        "__builtins__": safe_builtins,
        "__name__": "user_function",
        "__bindings__": bindings,
    }
    exec_globals.update(
        _filter_extra_globals(extra_globals, mode, allowed_globals, blocked_globals)
    )
    _inject_direct_bindings(exec_globals, direct_bindings, mode, allowed_globals, blocked_globals)

    try:
        with contextlib.redirect_stdout(sink), contextlib.redirect_stderr(sink):
            exec(byte_code, exec_globals, exec_globals)
            result = asyncio.run(exec_globals[USER_FUNCTION_NAME]())
    except SystemExit as exc:
        sink.flush_pending()
        return _system_exit_reply(exc.code, logs)
    except MemoryError:
        raise
    except Exception as exc:
        sink.flush_pending()
        return _failure(exc, logs), 1

    sink.flush_pending()
    return {"ok": True, "result": result, "logs": logs, "error": None}, 0


def _encode_reply(reply: dict[str, Any]) -> str:
    """Serialize a reply, degrading unserializable results to an error.

    Non-finite floats count as unserializable: the reply must stay strict JSON.

    Example:
        ```python
        text = _encode_reply({"ok": True, "result": 1, "logs": [], "error": None})
        ```
    """
    try:
        return json.dumps(reply, default=str, allow_nan=False)
    except (TypeError, ValueError) as exc:
        return json.dumps(
            {
                "ok": False,
                "result": None,
                "logs": reply.get("logs", []),
                "error": {
                    "message": f"Result is not JSON serializable: {exc}",
                    "kind": type(exc).__name__,
                    "stack": None,
                },
            },
            default=str,
        )


def main() -> int:
    """Read one JSON request on stdin and write one JSON reply on stdout.

    Example:
        ```python
        # echo '{"code": "return 1"}' | python worker.py
        ```
    """
    real_stdout = sys.stdout
    try:
        req = json.loads(sys.stdin.read() or "{}")
        reply, exit_code = run_request(req)
    except MemoryError:
        reply = {
            "ok": False,
            "result": None,
            "logs": [],
            "error": {"message": "Memory limit exceeded", "kind": "MemoryError", "stack": None},
        }
        exit_code = 2
    except Exception as exc:
        # Worker setup failures, not user code.
        reply = {
            "ok": False,
            "result": None,
            "logs": [],
            "error": {"message": str(exc), "kind": type(exc).__name__, "stack": None},
        }
        exit_code = 1
    real_stdout.write(_encode_reply(reply))
    real_stdout.flush()
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
