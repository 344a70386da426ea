from __future__ import annotations

import asyncio
import json
import logging
import shlex
import shutil
from pathlib import Path
from typing import Any

import click

from taskforge.config import TaskforgeConfig, load_config, save_config
from taskforge.decomposition import load_decomposition
from taskforge.detect import detect_workers
from taskforge.engine import build_orchestrator, load_configured_registry
from taskforge.errors import TaskforgeError
from taskforge.models import Verdict
from taskforge.registry import CapabilityRegistry
from taskforge.router import Router
from taskforge.scheduler import DependencyScheduler

EXIT_CODES = {Verdict.SUCCESS: 0, Verdict.PARTIAL: 1, Verdict.ESCALATE: 2}


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load(config_value: str) -> tuple[Path, TaskforgeConfig]:
    repo_root = Path.cwd().resolve()
    try:
        config = load_config(_resolve_config_path(repo_root, config_value))
    except TaskforgeError as exc:
        raise click.ClickException(str(exc)) from exc
    return repo_root, config


def _configure_logging(level: str | None, config: TaskforgeConfig) -> None:
    logging.basicConfig(
        level=(level or config.logging.level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_registry(config: TaskforgeConfig, repo_root: Path) -> CapabilityRegistry:
    try:
        return load_configured_registry(config, repo_root)
    except TaskforgeError as exc:
        raise click.ClickException(str(exc)) from exc


def _health_checks(
    registry: CapabilityRegistry, config: TaskforgeConfig
) -> list[dict[str, Any]]:
    results: list[dict[str, Any]] = [
        {"check": "registry", "status": "PASS", "detail": f"{len(registry)} workers loaded"}
    ]
    for worker in registry.workers:
        if not worker.prompt.strip():
            results.append(
                {"check": f"worker:{worker.id}", "status": "WARN", "detail": "No prompt defined"}
            )

    for label, command in (
        ("backend", config.backend.command),
        ("fallback_backend", config.backend.fallback_command),
    ):
        if not command.strip():
            continue
        try:
            executable = shlex.split(command)[0]
        except (ValueError, IndexError):
            results.append({"check": label, "status": "FAIL", "detail": "Unparseable command"})
            continue
        found = shutil.which(executable) is not None
        results.append(
            {
                "check": label,
                "status": "PASS" if found else "WARN",
                "detail": f"{executable} {'found' if found else 'not found on PATH'}",
            }
        )

    correction = config.correction
    if not any(
        (correction.lint_command, correction.type_check_command, correction.test_command)
    ):
        results.append(
            {
                "check": "validation",
                "status": "WARN",
                "detail": "No lint, type-check or test command configured",
            }
        )
    return results


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Overrides [logging].level.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Taskforge: capability-routed task orchestration."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


@cli.command("init")
@click.option("--all", "activate_all", is_flag=True, default=False)
@click.option("--config", "config_value", default="taskforge.toml", show_default=True)
def init_command(activate_all: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    _, config = _load(config_value)

    if activate_all:
        config.registry.active = []
        click.echo("Activating every registered worker.")
    else:
        try:
            profile, workers = detect_workers(repo_root)
        except TaskforgeError as exc:
            raise click.ClickException(f"{exc}. Pass --all to activate every worker.") from exc
        config.registry.active = workers
        for group, items in profile.to_dict().items():
            if items:
                click.echo(f"{group.capitalize()}: {', '.join(items)}")
        click.echo(f"Active workers: {', '.join(workers)}")

    if not config.project.name or config.project.name == "my-project":
        config.project.name = repo_root.name
    save_config(config_path, config)
    click.echo(f"Config: {config_path}")


@cli.command("run")
@click.argument("decomposition", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config", "config_value", default="taskforge.toml", show_default=True)
@click.option("--output", "output_path", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
def run_command(
    ctx: click.Context,
    decomposition: Path,
    config_value: str,
    output_path: Path | None,
) -> None:
    repo_root, config = _load(config_value)
    _configure_logging(ctx.obj.get("log_level"), config)
    try:
        request, tasks = load_decomposition(decomposition)
        orchestrator = build_orchestrator(config, repo_root)
        report = asyncio.run(orchestrator.run(tasks, request=request))
    except TaskforgeError as exc:
        raise click.ClickException(str(exc)) from exc

    rendered = json.dumps(report.to_dict(), ensure_ascii=False, indent=2)
    if output_path is not None:
        output_path.write_text(rendered + "\n", encoding="utf-8")
        click.echo(f"Report written to {output_path}")
    else:
        click.echo(rendered)
    click.echo(f"Verdict: {report.verdict.value}", err=True)
    ctx.exit(EXIT_CODES[report.verdict])


@cli.command("plan")
@click.argument("decomposition", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def plan_command(ctx: click.Context, decomposition: Path) -> None:
    _configure_logging(ctx.obj.get("log_level"), TaskforgeConfig.default())
    try:
        request, tasks = load_decomposition(decomposition)
        plan = DependencyScheduler().schedule(tasks, request=request)
    except TaskforgeError as exc:
        raise click.ClickException(str(exc)) from exc
    for index, wave in enumerate(plan.waves):
        click.echo(f"Wave {index}: {', '.join(wave)}")


@cli.command("route")
@click.argument("decomposition", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config", "config_value", default="taskforge.toml", show_default=True)
@click.pass_context
def route_command(ctx: click.Context, decomposition: Path, config_value: str) -> None:
    repo_root, config = _load(config_value)
    _configure_logging(ctx.obj.get("log_level"), config)
    try:
        _, tasks = load_decomposition(decomposition)
    except TaskforgeError as exc:
        raise click.ClickException(str(exc)) from exc
    router = Router(_load_registry(config, repo_root))
    for task in tasks:
        try:
            decision = router.explain(task)
        except TaskforgeError as exc:
            click.echo(f"{task.id}: error ({exc})")
            continue
        click.echo(f"{task.id}: {decision.worker_id} ({decision.rule})")


@cli.command("registry")
@click.option("--check", "run_check", is_flag=True, default=False)
@click.option("--config", "config_value", default="taskforge.toml", show_default=True)
@click.pass_context
def registry_command(ctx: click.Context, run_check: bool, config_value: str) -> None:
    repo_root, config = _load(config_value)
    _configure_logging(ctx.obj.get("log_level"), config)
    registry = _load_registry(config, repo_root)

    if not run_check:
        for worker in registry.workers:
            click.echo(f"{worker.id} [{worker.priority.value}] {', '.join(worker.domains)}")
        return

    results = _health_checks(registry, config)
    for item in results:
        click.echo(f"[{item['status']}] {item['check']}: {item['detail']}")
    degraded = any(item["status"] != "PASS" for item in results)
    click.echo(f"Health: {'DEGRADED' if degraded else 'OK'}")
    if any(item["status"] == "FAIL" for item in results):
        ctx.exit(1)
