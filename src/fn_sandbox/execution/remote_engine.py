from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx

from .types import ExecutionOutcome, ExecutionRequest, RawError, RemoteStrategyError

logger = logging.getLogger(__name__)

_ERROR_LOG_PATTERN = re.compile(r"^(?P<kind>[A-Za-z_][\w.]*(?:Error|Exception)):\s*(?P<message>.*)$", re.DOTALL)


def parse_error_log(entry: dict[str, Any]) -> RawError:
    """Build a raw error from an `error` log entry reported by the service.

    Messages shaped like `Kind: text` are split into kind and message.

    Example:
        ```python
        err = parse_error_log({"type": "error", "message": "ReferenceError: x is not defined"})
        err.kind  # "ReferenceError"
        ```
    """
    message = str(entry.get("message", ""))
    stack = entry.get("stack")
    match = _ERROR_LOG_PATTERN.match(message.strip())
    if match:
        return RawError(
            message=match.group("message"),
            kind=match.group("kind").rsplit(".", 1)[-1],
            stack=str(stack) if stack else None,
        )
    return RawError(message=message, kind="Error", stack=str(stack) if stack else None)


def merge_bindings(bindings: dict[str, Any], direct_bindings: dict[str, Any]) -> dict[str, Any]:
    """Flatten standard and custom-tool bindings into one mapping.

    Standard bindings always win; custom-tool names must be identifiers that
    do not start with an underscore.

    Example:
        ```python
        merge_bindings({"params": {"x": 1}}, {"x": 1, "params": "ignored"})
        # {"params": {"x": 1}, "x": 1}
        ```
    """
    merged = dict(bindings)
    for key, value in direct_bindings.items():
        name = str(key)
        if not name.isidentifier() or name.startswith("_") or name in merged:
            continue
        merged[name] = value
    return merged


def _check_result(result: Any) -> RawError | None:
    """Return an error when a result cannot be rendered as strict JSON.

    Example:
        ```python
        _check_result(float("nan")).kind  # "ValueError"
        ```
    """
    try:
        json.dumps(result, allow_nan=False)
    except (TypeError, ValueError) as exc:
        return RawError(message=f"Result is not JSON serializable: {exc}", kind=type(exc).__name__)
    return None


class RemoteEngine:
    """Execute function code on an external sandbox service over HTTP.

    The service receives `{script, bindings, timeoutMs}` and answers with
    `{result, logs: [{type, message}]}`.

    Example:
        ```python
        engine = RemoteEngine(base_url="https://sandbox.example.com", api_key="sk-test")
        ```
    """

    name = "remote"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        execute_path: str = "/execute",
        wrapper_line_offset: int = 1,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Store connection settings; the HTTP client is created on first use.

        Example:
            ```python
            engine = RemoteEngine(base_url="http://localhost:9000", api_key="k", execute_path="/run")
            ```
        """
        if not base_url.strip():
            raise ValueError("RemoteEngine requires a non-empty 'base_url'")
        if not api_key.strip():
            raise ValueError("RemoteEngine requires a non-empty 'api_key'")
        if wrapper_line_offset < 1:
            raise ValueError("wrapper_line_offset must be at least 1")
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._execute_path = execute_path if execute_path.startswith("/") else f"/{execute_path}"
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.wrapper_line_offset = wrapper_line_offset

    async def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        """Send one script to the remote service and normalize its answer.

        Example:
            ```python
            outcome = await engine.execute(ExecutionRequest(code="return 1", timeout_ms=5000))
            ```
        """
        payload = {
            "script": request.code,
            "bindings": merge_bindings(request.bindings, request.direct_bindings),
            "timeoutMs": request.timeout_ms,
        }
        try:
            response = await self._get_client().post(
                self._execute_path,
                json=payload,
                timeout=request.timeout_ms / 1000,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise RemoteStrategyError(
                f"Remote sandbox returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise RemoteStrategyError(
                f"Remote sandbox request failed: {str(exc) or type(exc).__name__}"
            ) from exc
        except ValueError as exc:
            raise RemoteStrategyError("Remote sandbox returned invalid JSON") from exc

        if not isinstance(data, dict):
            raise RemoteStrategyError("Remote sandbox returned an unexpected payload")
        return self._normalize(data)

    def _normalize(self, data: dict[str, Any]) -> ExecutionOutcome:
        """Split service logs into stdout lines and an optional error.

        Example:
            ```python
            outcome = engine._normalize({"result": 3, "logs": [{"type": "log", "message": "hi"}]})
            ```
        """
        entries = data.get("logs")
        if entries is None:
            entries = []
        if not isinstance(entries, list):
            raise RemoteStrategyError("Remote sandbox returned malformed logs")
        logs: list[str] = []
        error: RawError | None = None
        for entry in entries:
            if not isinstance(entry, dict):
                logs.append(str(entry))
                continue
            if entry.get("type") == "error":
                if error is None:
                    error = parse_error_log(entry)
                continue
            logs.append(str(entry.get("message", "")))
        if error is not None:
            logger.debug("Remote sandbox reported a script error: %s", error.kind)
            return ExecutionOutcome(logs=logs, error=error)
        result = data.get("result")
        invalid = _check_result(result)
        if invalid is not None:
            return ExecutionOutcome(logs=logs, error=invalid)
        return ExecutionOutcome(result=result, logs=logs)

    def _get_client(self) -> httpx.AsyncClient:
        """Return the pooled HTTP client, creating it on first use.

        Example:
            ```python
            client = engine._get_client()
            ```
        """
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the pooled HTTP client.

        Example:
            ```python
            await engine.aclose()
            ```
        """
        if self._client is not None:
            await self._client.aclose()
            self._client = None
