import json
import shlex
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from taskforge.backends.base import AgentBackend
from taskforge.cli import cli
from taskforge.config import TaskforgeConfig, load_config, save_config
from taskforge.engine import build_orchestrator


class FakeBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt
        yield json.dumps({"status": "success", "task": context["task"]["id"]}) + "\n"


def _write_decomposition(path: Path, records: list[dict[str, Any]]) -> Path:
    path.write_text(json.dumps({"request": "Ship login", "tasks": records}), encoding="utf-8")
    return path


def _use_fake_backend(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_build(config: TaskforgeConfig, repo_root: Path) -> Any:
        return build_orchestrator(config, repo_root, backend=FakeBackend())

    monkeypatch.setattr("taskforge.cli.build_orchestrator", fake_build)


def test_init_detects_stack_and_writes_config(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "package.json").write_text('{"dependencies": {"react": "18"}}', encoding="utf-8")
    runner = CliRunner()

    result = runner.invoke(cli, ["init"])

    assert result.exit_code == 0, result.output
    assert "Frontend: React" in result.output
    assert "Active workers: frontend-specialist, security-auditor, test-engineer" in result.output
    config = load_config(tmp_path / "taskforge.toml")
    assert config.registry.active == ["frontend-specialist", "security-auditor", "test-engineer"]
    assert config.project.name == tmp_path.name


def test_init_without_stack_requires_all_flag(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    refused = runner.invoke(cli, ["init"])
    assert refused.exit_code == 1
    assert "--all" in refused.output
    assert not (tmp_path / "taskforge.toml").exists()

    accepted = runner.invoke(cli, ["init", "--all"])
    assert accepted.exit_code == 0, accepted.output
    assert load_config(tmp_path / "taskforge.toml").registry.active == []


def test_plan_and_route_commands(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    decomposition = _write_decomposition(
        tmp_path / "tasks.json",
        [
            {"id": "ui", "description": "Login form", "requiredCapability": "frontend"},
            {"id": "qubits", "description": "Entangle", "requiredCapability": "quantum"},
            {
                "id": "e2e",
                "description": "Cover login",
                "requiredCapability": {"domain": "testing", "worker": "test-engineer"},
                "dependsOn": ["ui"],
            },
        ],
    )
    runner = CliRunner()

    planned = runner.invoke(cli, ["plan", str(decomposition)])
    routed = runner.invoke(cli, ["route", str(decomposition)])

    assert planned.exit_code == 0, planned.output
    assert planned.output.splitlines() == ["Wave 0: ui, qubits", "Wave 1: e2e"]
    assert routed.exit_code == 0, routed.output
    lines = routed.output.splitlines()
    assert "ui: frontend-specialist (specialist_over_generalist)" in lines
    assert "e2e: test-engineer (explicit_mention)" in lines
    assert any(line.startswith("qubits: error (") for line in lines)


def test_plan_rejects_cyclic_decomposition(tmp_path: Path) -> None:
    decomposition = _write_decomposition(
        tmp_path / "tasks.json",
        [
            {"id": "a", "requiredCapability": "backend", "dependsOn": ["b"]},
            {"id": "b", "requiredCapability": "backend", "dependsOn": ["a"]},
        ],
    )

    result = CliRunner().invoke(cli, ["plan", str(decomposition)])

    assert result.exit_code == 1
    assert "Cyclic dependency between tasks" in result.output


FAILING_TESTS = f'{shlex.quote(sys.executable)} -c "raise SystemExit(1)"'


@pytest.mark.parametrize(
    ("records", "test_command", "verdict", "exit_code"),
    [
        ([{"id": "ui", "requiredCapability": "frontend"}], "", "SUCCESS", 0),
        (
            [
                {"id": "ui", "requiredCapability": "frontend"},
                {"id": "qubits", "requiredCapability": "quantum"},
            ],
            "",
            "PARTIAL",
            1,
        ),
        ([{"id": "qubits", "requiredCapability": "quantum"}], "", "PARTIAL", 1),
        ([{"id": "ui", "requiredCapability": "frontend"}], FAILING_TESTS, "ESCALATE", 2),
    ],
)
def test_run_writes_report_and_maps_verdict_to_exit_code(
    tmp_path: Path,
    monkeypatch,
    records: list[dict[str, Any]],
    test_command: str,
    verdict: str,
    exit_code: int,
) -> None:
    monkeypatch.chdir(tmp_path)
    _use_fake_backend(monkeypatch)
    config = TaskforgeConfig.default()
    config.correction.test_command = test_command
    save_config(tmp_path / "taskforge.toml", config)
    decomposition = _write_decomposition(tmp_path / "tasks.json", records)
    report_path = tmp_path / "report.json"

    result = CliRunner().invoke(cli, ["run", str(decomposition), "--output", str(report_path)])

    assert result.exit_code == exit_code, result.output
    assert f"Verdict: {verdict}" in result.output
    report = json.loads(report_path.read_text(encoding="utf-8"))
    assert report["verdict"] == verdict
    assert report["request"] == "Ship login"
    assert [task["task_id"] for task in report["tasks"]] == [record["id"] for record in records]


def test_registry_listing_and_health_check(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    listing = runner.invoke(cli, ["registry"])
    assert listing.exit_code == 0, listing.output
    assert "frontend-specialist [specialist] frontend" in listing.output

    config = TaskforgeConfig.default()
    config.backend.command = shlex.quote(sys.executable)
    config.correction.test_command = "python -m pytest -q"
    save_config(tmp_path / "taskforge.toml", config)
    healthy = runner.invoke(cli, ["registry", "--check"])
    assert healthy.exit_code == 0, healthy.output
    assert "[PASS] backend:" in healthy.output
    assert "Health: OK" in healthy.output

    config.backend.command = "'unterminated"
    config.correction.test_command = ""
    save_config(tmp_path / "taskforge.toml", config)
    broken = runner.invoke(cli, ["registry", "--check"])
    assert broken.exit_code == 1
    assert "[FAIL] backend: Unparseable command" in broken.output
    assert "[WARN] validation:" in broken.output
    assert "Health: DEGRADED" in broken.output


def test_invalid_config_is_reported(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "taskforge.toml").write_text("[backend\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["registry"])

    assert result.exit_code == 1
    assert "Error:" in result.output
