"""CLI entrypoint for Agent Foundry."""

from __future__ import annotations

import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Optional
from uuid import UUID

import click

from src.core.exceptions import ConfigError, FoundryError
from src.core.models import Agent, AgentRole, ContentType, Task

_ROLE_CHOICES = [role.value for role in AgentRole]

_EXTENSION_LANGUAGES = {
    ".py": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
}

# Set while `foundry run` is active so Ctrl+C can stop it between cycles.
_active_loop = None


def _sigint_handler(signum: int, frame: Any) -> None:
    """Handle Ctrl+C by finishing the current cycle instead of a bare traceback."""
    click.echo("\n")
    click.echo(click.style("Interrupted.", fg="yellow", bold=True))
    if _active_loop is None:
        sys.exit(130)
    click.echo("Stopping after the current cycle; in-flight workers will finish.")
    _active_loop.stop()


def _setup_logging(
    verbose: bool = False,
    config_dir: Optional[Path] = None,
    env: Optional[str] = None,
) -> None:
    """Apply the logging section of the same config cascade the command loads."""
    from src.core.config import load_config

    try:
        config = load_config(config_dir, env)
        level_name = config.logging.level
        fmt = config.logging.format
    except ConfigError:
        level_name = "INFO"
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.option(
    "--config-dir",
    required=False,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Config directory (default: project config/).",
)
@click.option("--env", required=False, default=None, help="Optional config overlay environment.")
@click.option(
    "--api-key",
    required=False,
    default=None,
    envvar="OPENROUTER_API_KEY",
    help="OpenRouter API key (falls back to OPENROUTER_API_KEY).",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_dir: Path | None, env: str | None, api_key: str | None) -> None:
    """Agent Foundry command line interface."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_dir"] = config_dir
    ctx.obj["env"] = env
    ctx.obj["api_key"] = api_key
    _setup_logging(verbose=verbose, config_dir=config_dir, env=env)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the PostgreSQL schema."""
    from src.core.config import load_config
    from src.db.engine import DatabaseEngine

    config = load_config(config_dir=ctx.obj["config_dir"], env=ctx.obj["env"])
    if config.database.backend != "postgresql":
        raise click.ClickException(
            f"init-db needs the postgresql backend (configured: {config.database.backend})"
        )
    engine = DatabaseEngine(config.database)
    try:
        engine.initialize_schema()
    except FoundryError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        engine.close()
    click.echo(f"Schema initialized on {config.database.host}:{config.database.port}/{config.database.dbname}")


@cli.command("seed-workers")
@click.option(
    "--role",
    "roles",
    multiple=True,
    type=click.Choice(_ROLE_CHOICES, case_sensitive=False),
    help="Role to seed (repeatable). Default: every role.",
)
@click.option("--count", default=1, show_default=True, type=click.IntRange(1, 100), help="Workers per role.")
@click.pass_context
def seed_workers(ctx: click.Context, roles: tuple[str, ...], count: int) -> None:
    """Register IDLE workers in the pool."""
    selected = [AgentRole(r.upper()) for r in roles] or list(AgentRole)
    bundle = _open_bundle(ctx)
    try:
        created = []
        for role in selected:
            for i in range(count):
                agent = bundle.repository.create_agent(Agent(name=f"{role.value.lower()}-{i + 1}", role=role))
                created.append({"id": str(agent.id), "name": agent.name, "role": agent.role.value})
        _echo_json({"created": created, "count": len(created)})
    finally:
        _close_bundle(bundle)


@cli.command("enqueue")
@click.argument("title")
@click.option("--description", default="", help="Task description handed to the worker.")
@click.option(
    "--role",
    default=AgentRole.MID_DEV.value,
    show_default=True,
    type=click.Choice(_ROLE_CHOICES, case_sensitive=False),
)
@click.option("--complexity", type=click.IntRange(0, 100), default=None, help="Complexity score 0-100.")
@click.option("--language", default="javascript", show_default=True)
@click.option("--context", "context_items", multiple=True, help="KEY=VALUE entry for the context packet.")
@click.option(
    "--requires",
    "required_context",
    multiple=True,
    help="Context key that must be present before dispatch (repeatable).",
)
@click.pass_context
def enqueue(
    ctx: click.Context,
    title: str,
    description: str,
    role: str,
    complexity: int | None,
    language: str,
    context_items: tuple[str, ...],
    required_context: tuple[str, ...],
) -> None:
    """Add a QUEUED task."""
    packet: dict[str, Any] = {"language": language}
    packet.update(_parse_context_items(context_items))
    if required_context:
        packet["required_context"] = list(required_context)

    task = Task(
        title=title,
        description=description,
        required_role=AgentRole(role.upper()),
        complexity_score=complexity,
        context_packet=packet,
    )
    bundle = _open_bundle(ctx)
    try:
        created = bundle.repository.create_task(task)
        _echo_json({"task": _task_summary(created)})
    finally:
        _close_bundle(bundle)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

@cli.command("dispatch-once")
@click.option("--wait/--no-wait", default=True, show_default=True, help="Wait for started workers to finish.")
@click.pass_context
def dispatch_once(ctx: click.Context, wait: bool) -> None:
    """Run one dispatch cycle and start workers for its assignments."""
    bundle = _open_bundle(ctx)
    try:
        report, _ = _dispatch_only(bundle)
        if wait:
            bundle.loop.wait_for_workers()
        _echo_json(report.model_dump(mode="json"))
    finally:
        _close_bundle(bundle)


@cli.command("war-room-once")
@click.pass_context
def war_room_once(ctx: click.Context) -> None:
    """Give the War Room mediator one pass over deadlocked tasks."""
    bundle = _open_bundle(ctx)
    try:
        outcomes = bundle.mediator.run_once()
        _echo_json({
            "outcomes": [o.model_dump(mode="json") for o in outcomes],
            "resolved": sum(1 for o in outcomes if o.resolved),
            "count": len(outcomes),
        })
    finally:
        _close_bundle(bundle)


@cli.command("run")
@click.option("--max-iterations", type=int, default=None, help="Stop after N cycles (default: run until Ctrl+C).")
@click.option("--interval", type=float, default=None, help="Override dispatcher.interval_seconds.")
@click.pass_context
def run(ctx: click.Context, max_iterations: int | None, interval: float | None) -> None:
    """Run the dispatch / worker / War Room loop."""
    global _active_loop

    bundle = _open_bundle(ctx, progress_callback=_progress)
    if interval is not None:
        bundle.loop.config = bundle.loop.config.model_copy(update={"interval_seconds": interval})
    _active_loop = bundle.loop
    previous = signal.signal(signal.SIGINT, _sigint_handler)
    try:
        iterations = bundle.loop.run_loop(max_iterations=max_iterations)
        bundle.loop.wait_for_workers()
        click.echo(click.style(f"Loop finished after {iterations} cycle(s).", fg="green", bold=True))
        _echo_json({
            "worker": bundle.worker.get_metrics(),
            "mediator": bundle.mediator.get_metrics(),
            "models": bundle.llm_client.get_model_failover_state(),
        })
    finally:
        signal.signal(signal.SIGINT, previous)
        _active_loop = None
        _close_bundle(bundle)


@cli.command("review")
@click.argument("task_id")
@click.option("--approve/--reject", default=True, show_default=True)
@click.option("--comment", default="", help="Reviewer feedback for a rejection.")
@click.pass_context
def review(ctx: click.Context, task_id: str, approve: bool, comment: str) -> None:
    """Close an IN_REVIEW or IN_QA task."""
    bundle = _open_bundle(ctx)
    try:
        feedback = {"comment": comment} if comment else None
        try:
            task = bundle.dispatcher.record_review(_parse_uuid(task_id, "task_id"), approve, feedback)
        except FoundryError as exc:
            raise click.ClickException(str(exc)) from exc
        _echo_json({"task": _task_summary(task)})
    finally:
        _close_bundle(bundle)


@cli.command("request-tests")
@click.argument("task_id")
@click.pass_context
def request_tests(ctx: click.Context, task_id: str) -> None:
    """Hold an IN_REVIEW task until its tests are recorded."""
    bundle = _open_bundle(ctx)
    try:
        try:
            task = bundle.dispatcher.request_tests(_parse_uuid(task_id, "task_id"))
        except FoundryError as exc:
            raise click.ClickException(str(exc)) from exc
        _echo_json({"task": _task_summary(task)})
    finally:
        _close_bundle(bundle)


@cli.command("record-tests")
@click.argument("task_id")
@click.option("--pass/--fail", "passed", required=True, help="Outcome of the task's test run.")
@click.option("--comment", default="", help="Test report summary.")
@click.pass_context
def record_tests(ctx: click.Context, task_id: str, passed: bool, comment: str) -> None:
    """Close the test step of a PENDING_TESTS task."""
    bundle = _open_bundle(ctx)
    try:
        report = {"comment": comment} if comment else None
        try:
            task = bundle.dispatcher.record_tests(_parse_uuid(task_id, "task_id"), passed, report)
        except FoundryError as exc:
            raise click.ClickException(str(exc)) from exc
        _echo_json({"task": _task_summary(task)})
    finally:
        _close_bundle(bundle)


@cli.command("requeue")
@click.argument("task_id")
@click.pass_context
def requeue(ctx: click.Context, task_id: str) -> None:
    """Move a FAILED or BLOCKED task back to QUEUED."""
    from src.core.models import TaskStatus

    bundle = _open_bundle(ctx)
    try:
        uuid = _parse_uuid(task_id, "task_id")
        task = bundle.repository.get_task(uuid)
        if task is None:
            raise click.ClickException(f"Task not found: {task_id}")
        try:
            if task.status == TaskStatus.BLOCKED:
                task = bundle.dispatcher.unblock(uuid)
            else:
                task = bundle.dispatcher.requeue_failed(uuid)
        except FoundryError as exc:
            raise click.ClickException(str(exc)) from exc
        _echo_json({"task": _task_summary(task)})
    finally:
        _close_bundle(bundle)


@cli.command("status")
@click.option("--limit", default=20, show_default=True, type=int, help="Tasks to list.")
@click.pass_context
def status(ctx: click.Context, limit: int) -> None:
    """Show task counts, the worker pool and ledger stats."""
    bundle = _open_bundle(ctx)
    try:
        payload: dict[str, Any] = {
            "task_status_counts": bundle.repository.get_task_status_summary(),
            "tasks": [_task_summary(t) for t in bundle.repository.list_tasks(limit=limit)],
            "workers": [
                {
                    "id": str(a.id),
                    "name": a.name,
                    "role": a.role.value,
                    "status": a.status.value,
                    "current_task_id": str(a.current_task_id) if a.current_task_id else None,
                    "success_count": a.success_count,
                    "fail_count": a.fail_count,
                }
                for a in bundle.repository.list_agents()
            ],
        }
        if bundle.ledger is not None:
            payload["ledger"] = bundle.ledger.get_stats().model_dump(mode="json")
        _echo_json(payload)
    finally:
        _close_bundle(bundle)


# ---------------------------------------------------------------------------
# Verification & ledger
# ---------------------------------------------------------------------------

@cli.command("verify")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--language", default=None, help="Language (default: from the file extension).")
@click.option("--prompt", "input_prompt", default="", help="The request the artifact answers.")
@click.option("--role", default=None, type=click.Choice(_ROLE_CHOICES, case_sensitive=False))
@click.option("--store", is_flag=True, default=False, help="Append to the proof ledger when it passes.")
@click.pass_context
def verify(
    ctx: click.Context,
    file: Path,
    language: str | None,
    input_prompt: str,
    role: str | None,
    store: bool,
) -> None:
    """Run the verification gate on FILE and print the proof."""
    code = file.read_text(encoding="utf-8")
    lang = language or _EXTENSION_LANGUAGES.get(file.suffix.lower(), "javascript")
    bundle = _open_bundle(ctx)
    try:
        if store:
            if bundle.ledger is None:
                raise click.ClickException("Ledger is disabled (ledger.enabled: false)")
            stored = bundle.ledger.verify_and_store("cli", code, ContentType.CODE, {
                "input_context": input_prompt,
                "language": lang,
                "role_baseline": role.upper() if role else None,
            })
            result = stored.verification
            payload = result.model_dump(mode="json")
            payload["stored"] = stored.verified
            if stored.statement is not None:
                payload["block_index"] = stored.statement.block_index
        else:
            result = bundle.verifier.verify(
                agent_id="cli",
                task_id=None,
                input_prompt=input_prompt,
                candidate=code,
                language=lang,
                role_baseline=role.upper() if role else None,
            )
            payload = result.model_dump(mode="json")
        _echo_json(payload)
    finally:
        _close_bundle(bundle)

    if not result.passed:
        name, message = result.first_failure
        click.echo(click.style(f"FAIL [{name}] {message}", fg="red", bold=True), err=True)
        sys.exit(1)
    click.echo(click.style("PASS", fg="green", bold=True), err=True)


@cli.command("ledger-verify")
@click.pass_context
def ledger_verify(ctx: click.Context) -> None:
    """Check the proof ledger and the audit trail for tampering."""
    bundle = _open_bundle(ctx)
    try:
        if bundle.ledger is None:
            raise click.ClickException("Ledger is disabled (ledger.enabled: false)")
        report = bundle.ledger.verify_chain_integrity()
        trace = bundle.audit.verify_integrity()
        _echo_json({
            "ledger": report.model_dump(mode="json"),
            "trace": {
                "valid": trace.valid,
                "events_checked": trace.events_checked,
                "first_invalid_sequence": trace.first_invalid_sequence,
                "reason": trace.reason,
            },
        })
    finally:
        _close_bundle(bundle)

    if not (report.valid and trace.valid):
        sys.exit(1)


@cli.command("ledger-stats")
@click.option("--block", "block_index", type=int, default=None, help="Show one block instead.")
@click.pass_context
def ledger_stats(ctx: click.Context, block_index: int | None) -> None:
    """Show ledger block, statement and rejection counts."""
    bundle = _open_bundle(ctx)
    try:
        if bundle.ledger is None:
            raise click.ClickException("Ledger is disabled (ledger.enabled: false)")
        if block_index is None:
            _echo_json(bundle.ledger.get_stats().model_dump(mode="json"))
            return
        try:
            block = bundle.ledger.get_block(block_index)
        except FoundryError as exc:
            raise click.ClickException(str(exc)) from exc
        _echo_json(block.model_dump(mode="json"))
    finally:
        _close_bundle(bundle)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _open_bundle(ctx: click.Context, progress_callback=None):
    from src.core.factory import ComponentFactory

    try:
        return ComponentFactory.create(
            config_dir=ctx.obj["config_dir"],
            env=ctx.obj["env"],
            api_key=ctx.obj["api_key"],
            progress_callback=progress_callback,
        )
    except FoundryError as exc:
        raise click.ClickException(
            f"Failed to initialize components: {exc}\n"
            "For a database-free run use: foundry --env test <command>"
        ) from exc


def _close_bundle(bundle) -> None:
    from src.core.factory import ComponentFactory

    ComponentFactory.close(bundle)


def _dispatch_only(bundle):
    """Dispatch and start workers without giving the mediator a pass."""
    mediator, bundle.loop.mediator = bundle.loop.mediator, None
    try:
        return bundle.loop.run_once()
    finally:
        bundle.loop.mediator = mediator


def _progress(message: str) -> None:
    if message.startswith("[SKIP]"):
        click.echo(click.style(message, fg="yellow"))
    elif "[WAR ROOM]" in message or "UNRESOLVED" in message:
        click.echo(click.style(message, fg="red"))
    elif "RESOLVED" in message:
        click.echo(click.style(message, fg="green"))
    else:
        click.echo(message)


def _parse_context_items(items: tuple[str, ...]) -> dict[str, Any]:
    packet: dict[str, Any] = {}
    for item in items:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"Expected KEY=VALUE, got '{item}'", param_hint="--context")
        try:
            packet[key.strip()] = json.loads(raw)
        except json.JSONDecodeError:
            packet[key.strip()] = raw
    return packet


def _parse_uuid(raw: str | None, field_name: str) -> UUID:
    if raw is None:
        raise click.ClickException(f"Missing required UUID value for {field_name}")
    try:
        return UUID(str(raw))
    except ValueError as exc:
        raise click.ClickException(f"Invalid UUID for {field_name}: {raw}") from exc


def _task_summary(task: Task) -> dict[str, Any]:
    return {
        "id": str(task.id),
        "title": task.title,
        "status": task.status.value,
        "required_role": task.required_role.value,
        "complexity_score": task.complexity_score,
        "retry_count": task.retry_count,
        "owner_agent_id": str(task.owner_agent_id) if task.owner_agent_id else None,
        "assigned_to_agent_id": str(task.assigned_to_agent_id) if task.assigned_to_agent_id else None,
        "blocked_reason": task.blocked_reason,
        "error_message": task.error_message,
    }


def _echo_json(payload: dict[str, Any]) -> None:
    click.echo(json.dumps(payload, indent=2, ensure_ascii=True, default=str))


def main(argv: Optional[list[str]] = None) -> None:
    """Entry point used by `foundry` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path(__file__).parent.parent / ".env", override=False)
    cli(argv)


if __name__ == "__main__":
    main()
