from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import ServiceSettings, build_engines
from .execution.engine import ExecutionEngine
from .runner import FunctionRequest, run_function
from .schemas import ExecuteFunctionBody, describe_validation_error

logger = logging.getLogger(__name__)

EXECUTION_ERROR_STATUS = 500


def _failure(error: str) -> JSONResponse:
    """Return a failure response without a debug payload.

    Example:
        ```python
        response = _failure("Invalid JSON request body")
        ```
    """
    return JSONResponse(
        status_code=EXECUTION_ERROR_STATUS,
        content={"success": False, "error": error},
    )


def build_router(
    settings: ServiceSettings,
    local_engine: ExecutionEngine,
    remote_engine: ExecutionEngine | None,
) -> APIRouter:
    """Build the API router bound to one set of engines.

    Example:
        ```python
        router = build_router(ServiceSettings(), LocalEngine(), None)
        ```
    """
    router = APIRouter()

    @router.get("/health")
    async def health() -> dict[str, Any]:
        """Health check endpoint.

        Example:
            ```python
            # GET /api/health -> {"status": "ok", "remote": false, "defaultTimeoutMs": 5000}
            ```
        """
        return {
            "status": "ok",
            "remote": remote_engine is not None,
            "defaultTimeoutMs": settings.default_timeout_ms,
        }

    @router.post("/function/execute")
    async def execute_function(request: Request) -> JSONResponse:
        """Execute a function body and return its output or a diagnostic.

        Example:
            ```python
            # POST /api/function/execute {"code": "return 1 + 1"}
            # -> {"success": true, "output": {"result": 2, "stdout": [], "executionTime": 31}}
            ```
        """
        request_id = uuid.uuid4().hex[:8]
        try:
            raw_body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("[%s] Malformed JSON request body", request_id)
            return _failure("Invalid JSON request body")

        try:
            body = ExecuteFunctionBody.model_validate(raw_body)
        except ValidationError as exc:
            logger.warning("[%s] Invalid request body", request_id)
            return _failure(describe_validation_error(exc))

        result = await run_function(
            FunctionRequest(
                code=body.code or "",
                params=body.params or {},
                env_vars=body.env_vars or {},
                timeout_ms=settings.clamp_timeout(body.timeout),
                is_custom_tool=body.is_custom_tool,
                request_id=request_id,
            ),
            local_engine=local_engine,
            remote_engine=remote_engine,
        )
        status = 200 if result.success else EXECUTION_ERROR_STATUS
        return JSONResponse(status_code=status, content=result.to_response())

    return router


def create_app(
    settings: ServiceSettings | None = None,
    *,
    local_engine: ExecutionEngine | None = None,
    remote_engine: ExecutionEngine | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Engines default to the ones described by `settings`; passing
    `local_engine` skips building engines from settings entirely.

    Example:
        ```python
        app = create_app(ServiceSettings.load())
        ```
    """
    settings = settings or ServiceSettings.load()
    if local_engine is None:
        local_engine, built_remote = build_engines(settings)
        remote_engine = remote_engine or built_remote

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Log startup and close the remote client on shutdown.

        Example:
            ```python
            app = FastAPI(lifespan=lifespan)
            ```
        """
        logger.info(
            "Starting fn-sandbox (remote sandbox %s, default timeout %sms)",
            "enabled" if remote_engine is not None else "disabled",
            settings.default_timeout_ms,
        )
        yield
        aclose = getattr(remote_engine, "aclose", None)
        if aclose is not None:
            await aclose()

    app = FastAPI(
        title="fn-sandbox",
        description="Sandboxed function execution with line-accurate diagnostics",
        lifespan=lifespan,
    )
    app.include_router(build_router(settings, local_engine, remote_engine), prefix="/api")
    return app
