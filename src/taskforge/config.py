from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

from taskforge.errors import ConfigError

OverlapPolicyName = Literal["error", "warn"]
LogLevelName = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    language: str = "python"


@dataclass(slots=True)
class RegistryConfig:
    path: str = ""
    active: list[str] = field(default_factory=list)
    overlap_policy: OverlapPolicyName = "error"
    precedence: list[str] = field(default_factory=list)


@dataclass(slots=True)
class BackendConfig:
    command: str = "claude -p --output-format stream-json"
    fallback_command: str = ""
    model: str = ""
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class SupervisorConfig:
    task_timeout_seconds: float = 300.0
    max_parallel_tasks: int = 0


@dataclass(slots=True)
class PatternFix:
    check: str = "*"
    diagnostic: str = ""
    command: str = ""


@dataclass(slots=True)
class CorrectionConfig:
    max_iterations: int = 3
    lint_command: str = ""
    type_check_command: str = ""
    test_command: str = ""
    format_command: str = ""
    retry_failed_tasks: bool = True
    pattern_fixes: list[PatternFix] = field(default_factory=list)


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevelName = "WARNING"


def _section(cls: type, data: Any, name: str) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"[{name}] must be a table")
    known = {item.name for item in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in [{name}]: {', '.join(unknown)}")
    return cls(**data)


@dataclass(slots=True)
class TaskforgeConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    correction: CorrectionConfig = field(default_factory=CorrectionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> TaskforgeConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TaskforgeConfig:
        unknown = sorted(
            set(data)
            - {"project", "registry", "backend", "supervisor", "correction", "logging"}
        )
        if unknown:
            raise ConfigError(f"Unknown config sections: {', '.join(unknown)}")
        correction_data = dict(data.get("correction", {}) or {})
        raw_fixes = correction_data.pop("pattern_fixes", [])
        if not isinstance(raw_fixes, list):
            raise ConfigError("[correction].pattern_fixes must be an array of tables")
        correction = _section(CorrectionConfig, correction_data, "correction")
        correction.pattern_fixes = [
            _section(PatternFix, item, "correction.pattern_fixes") for item in raw_fixes
        ]
        return cls(
            project=_section(ProjectConfig, data.get("project"), "project"),
            registry=_section(RegistryConfig, data.get("registry"), "registry"),
            backend=_section(BackendConfig, data.get("backend"), "backend"),
            supervisor=_section(SupervisorConfig, data.get("supervisor"), "supervisor"),
            correction=correction,
            logging=_section(LoggingConfig, data.get("logging"), "logging"),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "language": self.project.language,
            },
            "registry": {
                "path": self.registry.path,
                "active": list(self.registry.active),
                "overlap_policy": self.registry.overlap_policy,
                "precedence": list(self.registry.precedence),
            },
            "backend": {
                "command": self.backend.command,
                "fallback_command": self.backend.fallback_command,
                "model": self.backend.model,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "supervisor": {
                "task_timeout_seconds": self.supervisor.task_timeout_seconds,
                "max_parallel_tasks": self.supervisor.max_parallel_tasks,
            },
            "correction": {
                "max_iterations": self.correction.max_iterations,
                "lint_command": self.correction.lint_command,
                "type_check_command": self.correction.type_check_command,
                "test_command": self.correction.test_command,
                "format_command": self.correction.format_command,
                "retry_failed_tasks": self.correction.retry_failed_tasks,
                "pattern_fixes": [
                    {"check": fix.check, "diagnostic": fix.diagnostic, "command": fix.command}
                    for fix in self.correction.pattern_fixes
                ],
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TaskforgeConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "registry", "backend", "supervisor", "correction", "logging"]
    for section in section_order:
        tables: dict[str, list[dict]] = {}
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            if isinstance(value, list) and value and all(isinstance(item, dict) for item in value):
                tables[key] = value
                continue
            if isinstance(value, list) and key == "pattern_fixes":
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
        for key, items in tables.items():
            for item in items:
                lines.append(f"[[{section}.{key}]]")
                for item_key, item_value in item.items():
                    lines.append(f"{item_key} = {_toml_value(item_value)}")
                lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TaskforgeConfig:
    if not path.exists():
        return TaskforgeConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return TaskforgeConfig.from_dict(data)


def save_config(path: Path, config: TaskforgeConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
