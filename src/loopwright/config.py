from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

from loopwright.errors import ConfigError

PlatformName = Literal["claude", "opencode"]
PLATFORMS = ("claude", "opencode")
CONFIG_FILENAME = "loopwright.toml"


@dataclass(slots=True)
class LoopConfig:
    max_iterations: int = 20
    iteration_timeout_seconds: float = 1800.0
    idle_timeout_seconds: float = 600.0
    max_concurrency: int = 1
    poll_interval_seconds: float = 2.0
    max_runtime_seconds: float = 0.0
    max_signs_in_prompt: int = 5
    sign_retention_iterations: int = 0
    auto_commit: bool = True
    log_dir: str = ".loopwright/logs"


@dataclass(slots=True)
class BackendConfig:
    platform: PlatformName = "claude"
    binary: str = ""
    allowed_tools: list[str] = field(default_factory=list)
    mcp_config: str = ""
    agent: str = "build"
    model: str = ""
    verbose: bool = False


@dataclass(slots=True)
class ValidationConfig:
    eval_command: str = ""
    eval_target: str = ""
    eval_timeout_seconds: float = 30.0
    screenshot_dir: str = ".loopwright/screenshots"
    agent_checks: bool = True


@dataclass(slots=True)
class LoopwrightConfig:
    loop: LoopConfig = field(default_factory=LoopConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)

    @classmethod
    def default(cls) -> LoopwrightConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoopwrightConfig:
        unknown = set(data) - {"loop", "backend", "validation"}
        if unknown:
            raise ConfigError(f"Unknown config section(s): {', '.join(sorted(unknown))}")
        config = cls(
            loop=_section(LoopConfig, "loop", data.get("loop", {})),
            backend=_section(BackendConfig, "backend", data.get("backend", {})),
            validation=_section(ValidationConfig, "validation", data.get("validation", {})),
        )
        config.validate()
        return config

    def validate(self) -> None:
        loop = self.loop
        if loop.max_iterations < 1:
            raise ConfigError("loop.max_iterations must be >= 1")
        if loop.max_concurrency < 1:
            raise ConfigError("loop.max_concurrency must be >= 1")
        for name in (
            "iteration_timeout_seconds",
            "idle_timeout_seconds",
            "max_runtime_seconds",
            "sign_retention_iterations",
            "max_signs_in_prompt",
        ):
            if getattr(loop, name) < 0:
                raise ConfigError(f"loop.{name} must be >= 0")
        if loop.poll_interval_seconds <= 0:
            raise ConfigError("loop.poll_interval_seconds must be > 0")
        if self.backend.platform not in PLATFORMS:
            raise ConfigError(
                f"backend.platform must be one of {', '.join(PLATFORMS)}, "
                f"got {self.backend.platform!r}"
            )
        if self.validation.eval_timeout_seconds <= 0:
            raise ConfigError("validation.eval_timeout_seconds must be > 0")

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {
            "loop": {item.name: getattr(self.loop, item.name) for item in fields(LoopConfig)},
            "backend": {
                "platform": self.backend.platform,
                "binary": self.backend.binary,
                "allowed_tools": list(self.backend.allowed_tools),
                "mcp_config": self.backend.mcp_config,
                "agent": self.backend.agent,
                "model": self.backend.model,
                "verbose": self.backend.verbose,
            },
            "validation": {
                item.name: getattr(self.validation, item.name) for item in fields(ValidationConfig)
            },
        }


def _section(cls: type, name: str, data: Any) -> Any:
    if not isinstance(data, dict):
        raise ConfigError(f"[{name}] must be a table")
    defaults = cls()
    known = {item.name for item in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown key(s) in [{name}]: {', '.join(sorted(unknown))}")
    values: dict[str, Any] = {}
    for key, value in data.items():
        expected = getattr(defaults, key)
        values[key] = _coerce(f"{name}.{key}", value, expected)
    return cls(**values)


def _coerce(key: str, value: Any, expected: Any) -> Any:
    if isinstance(expected, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"{key} must be a boolean")
        return value
    if isinstance(expected, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{key} must be an integer")
        return value
    if isinstance(expected, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{key} must be a number")
        return float(value)
    if isinstance(expected, list):
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise ConfigError(f"{key} must be a list of strings")
        return list(value)
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string")
    return value


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: LoopwrightConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("loop", "backend", "validation"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> LoopwrightConfig:
    if not path.exists():
        return LoopwrightConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return LoopwrightConfig.from_dict(data)


def save_config(path: Path, config: LoopwrightConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
