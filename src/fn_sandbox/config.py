from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .execution.local_engine import LocalEngine
from .execution.remote_engine import RemoteEngine
from .policy import RunnerPolicy

DEFAULT_TIMEOUT_MS = 5000
DEFAULT_MAX_TIMEOUT_MS = 300_000
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000


class EnvironmentOverrides(BaseSettings):
    """`FN_SANDBOX_*` environment variables layered over the TOML settings.

    Example:
        ```python
        # FN_SANDBOX_REMOTE_URL=https://sandbox.example.com
        EnvironmentOverrides().remote_url  # "https://sandbox.example.com"
        ```
    """

    model_config = SettingsConfigDict(
        env_prefix="FN_SANDBOX_",
        case_sensitive=False,
        env_ignore_empty=True,
        extra="ignore",
    )

    config_file: str | None = Field(default=None, validation_alias="FN_SANDBOX_CONFIG")
    remote_url: str | None = None
    remote_api_key: str | None = None
    default_timeout_ms: int | None = Field(default=None, gt=0)


def _table(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    """Return a named TOML table, or an empty mapping when absent.

    Example:
        ```python
        remote = _table({"remote": {"url": "http://x"}}, "remote")
        ```
    """
    value = raw.get(name, {})
    if not isinstance(value, dict):
        raise ValueError(f"'{name}' must be a TOML table")
    return value


def _optional_str(value: Any) -> str | None:
    """Normalize blank or missing strings to `None`.

    Example:
        ```python
        _optional_str("  ")  # None
        ```
    """
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(slots=True)
class ServiceSettings:
    """Process-wide settings, read once at startup and never mutated.

    Example:
        ```python
        settings = ServiceSettings(default_timeout_ms=2000)
        ```
    """

    default_timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_timeout_ms: int = DEFAULT_MAX_TIMEOUT_MS
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    remote_url: str | None = None
    remote_api_key: str | None = None
    remote_execute_path: str = "/execute"
    remote_wrapper_line_offset: int = 1
    python_executable: str | None = None
    venv_dir: str | None = None
    venv_manager: str = "uv"
    packages: list[str] = field(default_factory=list)
    policy: RunnerPolicy = field(default_factory=RunnerPolicy)

    def __post_init__(self) -> None:
        """Validate timeout bounds after dataclass initialization.

        Example:
            ```python
            ServiceSettings(default_timeout_ms=5000, max_timeout_ms=60000)
            ```
        """
        if self.default_timeout_ms <= 0:
            raise ValueError("default_timeout_ms must be positive")
        if self.max_timeout_ms < self.default_timeout_ms:
            raise ValueError("max_timeout_ms must be at least default_timeout_ms")

    @property
    def remote_configured(self) -> bool:
        """Return whether the remote sandbox can be used.

        Example:
            ```python
            ServiceSettings(remote_url="http://x", remote_api_key="k").remote_configured  # True
            ```
        """
        return bool(self.remote_url and self.remote_api_key)

    def clamp_timeout(self, timeout_ms: int | None) -> int:
        """Apply the default and the upper bound to a requested timeout.

        Example:
            ```python
            ServiceSettings().clamp_timeout(None)  # 5000
            ```
        """
        if timeout_ms is None:
            return self.default_timeout_ms
        return max(1, min(int(timeout_ms), self.max_timeout_ms))

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "ServiceSettings":
        """Create settings from a parsed TOML document.

        Example:
            ```python
            settings = ServiceSettings.from_mapping({"service": {"default_timeout_ms": 2000}})
            ```
        """
        service = _table(raw, "service")
        remote = _table(raw, "remote")
        local = _table(raw, "local")
        packages = local.get("packages", [])
        if not isinstance(packages, list):
            raise ValueError("'packages' must be a list of strings")
        return cls(
            default_timeout_ms=int(service.get("default_timeout_ms", DEFAULT_TIMEOUT_MS)),
            max_timeout_ms=int(service.get("max_timeout_ms", DEFAULT_MAX_TIMEOUT_MS)),
            host=str(service.get("host", DEFAULT_HOST)),
            port=int(service.get("port", DEFAULT_PORT)),
            remote_url=_optional_str(remote.get("url")),
            remote_api_key=_optional_str(remote.get("api_key")),
            remote_execute_path=str(remote.get("execute_path", "/execute")),
            remote_wrapper_line_offset=int(remote.get("wrapper_line_offset", 1)),
            python_executable=_optional_str(local.get("python")),
            venv_dir=_optional_str(local.get("venv_dir")),
            venv_manager=str(local.get("venv_manager", "uv")),
            packages=[str(pkg) for pkg in packages],
            policy=RunnerPolicy.from_mapping(_table(raw, "policy")),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "ServiceSettings":
        """Create settings from a TOML file.

        Example:
            ```python
            settings = ServiceSettings.from_file("/etc/fn-sandbox.toml")
            ```
        """
        raw = tomllib.loads(Path(config_path).read_text(encoding="utf-8"))
        return cls.from_mapping(raw)

    @classmethod
    def load(cls, config_path: str | None = None) -> "ServiceSettings":
        """Load settings from an optional TOML file, then apply env overrides.

        The file path comes from `config_path`, else `FN_SANDBOX_CONFIG`.
        Malformed overrides raise `pydantic.ValidationError`.

        Example:
            ```python
            # FN_SANDBOX_REMOTE_API_KEY=k FN_SANDBOX_DEFAULT_TIMEOUT_MS=2000
            settings = ServiceSettings.load()
            ```
        """
        overrides = EnvironmentOverrides()
        path = config_path or overrides.config_file
        settings = cls.from_file(path) if path else cls()
        changes = overrides.model_dump(exclude_none=True, exclude={"config_file"})
        if not changes:
            return settings
        return replace(settings, **changes)


def build_engines(settings: ServiceSettings) -> tuple[LocalEngine, RemoteEngine | None]:
    """Create the local engine and, when configured, the remote engine.

    Example:
        ```python
        local, remote = build_engines(ServiceSettings())
        ```
    """
    local = LocalEngine(
        policy=settings.policy,
        python_executable=settings.python_executable,
        venv_dir=settings.venv_dir,
        venv_manager=settings.venv_manager,
        packages=settings.packages or None,
    )
    remote = None
    if settings.remote_configured:
        assert settings.remote_url is not None and settings.remote_api_key is not None
        remote = RemoteEngine(
            base_url=settings.remote_url,
            api_key=settings.remote_api_key,
            execute_path=settings.remote_execute_path,
            wrapper_line_offset=settings.remote_wrapper_line_offset,
        )
    return local, remote
