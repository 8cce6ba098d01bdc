from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class ExecuteFunctionBody(BaseModel):
    """JSON body accepted by `POST /api/function/execute`."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    code: str | None = Field(default=None, description="Function body to execute")
    params: dict[str, Any] | None = Field(default=None, description="Values for <name> placeholders")
    env_vars: dict[str, Any] | None = Field(
        default=None, alias="envVars", description="Values for {{NAME}} placeholders"
    )
    timeout: int | None = Field(default=None, gt=0, description="Timeout in milliseconds")
    is_custom_tool: bool = Field(
        default=False, alias="isCustomTool", description="Expose params as top-level variables"
    )


def describe_validation_error(exc: ValidationError) -> str:
    """Summarize the first pydantic error as one readable sentence.

    Example:
        ```python
        try:
            ExecuteFunctionBody.model_validate({"timeout": -1})
        except ValidationError as exc:
            describe_validation_error(exc)  # "Invalid request body: timeout: Input should be greater than 0"
        ```
    """
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    if location:
        return f"Invalid request body: {location}: {first.get('msg', 'invalid value')}"
    return f"Invalid request body: {first.get('msg', 'invalid value')}"
