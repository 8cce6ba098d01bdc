from pathlib import Path

import pytest
from pydantic import ValidationError

from fn_sandbox import LocalEngine, RemoteEngine, RunnerPolicy
from fn_sandbox.config import ServiceSettings, build_engines


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "FN_SANDBOX_CONFIG",
        "FN_SANDBOX_REMOTE_URL",
        "FN_SANDBOX_REMOTE_API_KEY",
        "FN_SANDBOX_DEFAULT_TIMEOUT_MS",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = ServiceSettings.load()
    assert settings.default_timeout_ms == 5000
    assert settings.port == 3000
    assert settings.remote_configured is False
    assert settings.clamp_timeout(None) == 5000
    assert settings.clamp_timeout(1200) == 1200
    assert settings.clamp_timeout(10**9) == 300_000


def test_settings_file_tables(tmp_path: Path) -> None:
    config = tmp_path / "fn-sandbox.toml"
    config.write_text(
        (
            "[service]\n"
            "default_timeout_ms = 2000\n"
            "port = 8080\n"
            "[remote]\n"
            "url = \"https://sandbox.example.com\"\n"
            "api_key = \"sk-file\"\n"
            "execute_path = \"/v1/run\"\n"
            "[policy]\n"
            "mode = \"restrict\"\n"
            "blocked_imports = [\"math\"]\n"
            "max_output_kb = 64\n"
        ),
        encoding="utf-8",
    )
    settings = ServiceSettings.from_file(str(config))
    assert settings.default_timeout_ms == 2000
    assert settings.port == 8080
    assert settings.remote_configured is True
    assert settings.remote_execute_path == "/v1/run"
    assert settings.policy.blocked_imports == ["math"]
    assert settings.policy.max_output_kb == 64


def test_environment_overrides_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = tmp_path / "fn-sandbox.toml"
    config.write_text(
        "[service]\nport = 8080\n[remote]\nurl = \"https://file.example.com\"\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("FN_SANDBOX_CONFIG", str(config))
    monkeypatch.setenv("FN_SANDBOX_REMOTE_API_KEY", "sk-env")
    monkeypatch.setenv("FN_SANDBOX_DEFAULT_TIMEOUT_MS", "7000")
    settings = ServiceSettings.load()
    assert settings.port == 8080
    assert settings.remote_url == "https://file.example.com"
    assert settings.remote_api_key == "sk-env"
    assert settings.default_timeout_ms == 7000
    assert settings.remote_configured is True


def test_explicit_config_path_wins_over_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    chosen = tmp_path / "chosen.toml"
    chosen.write_text("[service]\nport = 9000\n", encoding="utf-8")
    monkeypatch.setenv("FN_SANDBOX_CONFIG", str(tmp_path / "missing.toml"))
    assert ServiceSettings.load(str(chosen)).port == 9000


def test_blank_environment_values_are_ignored(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FN_SANDBOX_REMOTE_URL", "")
    monkeypatch.setenv("FN_SANDBOX_DEFAULT_TIMEOUT_MS", "")
    settings = ServiceSettings.load()
    assert settings.remote_url is None
    assert settings.default_timeout_ms == 5000


def test_malformed_environment_override_is_reported(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FN_SANDBOX_DEFAULT_TIMEOUT_MS", "abc")
    with pytest.raises(ValidationError, match="default_timeout_ms"):
        ServiceSettings.load()


def test_remote_requires_url_and_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FN_SANDBOX_REMOTE_URL", "https://x")
    assert ServiceSettings.load().remote_configured is False
    local, remote = build_engines(ServiceSettings(remote_url="https://x"))
    assert isinstance(local, LocalEngine)
    assert remote is None


def test_build_engines_with_remote() -> None:
    settings = ServiceSettings(
        remote_url="https://sandbox.example.com",
        remote_api_key="sk",
        remote_wrapper_line_offset=2,
        policy=RunnerPolicy(memory_limit_mb=128),
    )
    local, remote = build_engines(settings)
    assert local.policy.memory_limit_mb == 128
    assert isinstance(remote, RemoteEngine)
    assert remote.wrapper_line_offset == 2


def test_invalid_settings() -> None:
    with pytest.raises(ValueError, match="default_timeout_ms must be positive"):
        ServiceSettings(default_timeout_ms=0)
    with pytest.raises(ValueError, match="max_timeout_ms"):
        ServiceSettings(default_timeout_ms=10_000, max_timeout_ms=5_000)
    with pytest.raises(ValueError, match="must be a TOML table"):
        ServiceSettings.from_mapping({"remote": "https://x"})


def test_policy_validation_and_file(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="mode must be 'allow' or 'restrict'"):
        RunnerPolicy(mode="sometimes")
    with pytest.raises(ValueError, match="must contain only strings"):
        RunnerPolicy.from_mapping({"blocked_imports": ["os", 3]})

    policy_file = tmp_path / "policy.toml"
    policy_file.write_text("mode = \"allow\"\nallowed_imports = [\"math\"]\n", encoding="utf-8")
    policy = RunnerPolicy.from_file(str(policy_file))
    assert policy.mode == "allow"
    assert policy.allowed_imports == ["math"]
    assert policy.to_payload()["allowed_imports"] == ["math"]
