#!/usr/bin/env python3
"""
converge - command line interface.

    converge plan FILE      show what would change
    converge apply FILE     plan, confirm and apply
    converge destroy FILE   destroy everything the state records
    converge state list     list stored resources
    converge state show ID  show one stored resource
"""

import asyncio
import dataclasses
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

import click
import yaml
from tabulate import tabulate

from config import Config, DatabaseConfig, get_config
from document import (
    load_document,
    load_variable_file,
    parse_variable_assignments,
    variables_from_env,
)
from engine import Engine
from errors import ConvergeError, PlanningError
from events import EventBus
from models import (
    UNKNOWN,
    ActionKind,
    ApplyReport,
    ChangeType,
    ExecutionPlan,
    ResourceId,
    StateRecord,
)
from plugins.registry import PluginRegistry, register_builtin_plugins
from state import StateStore, create_state_store

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PLANNING_ERROR = 2


class Application:
    """Owns the registry, state store and engine for one command."""

    def __init__(self, config: Config):
        self.config = config
        self.registry: Optional[PluginRegistry] = None
        self.store: Optional[StateStore] = None
        self.event_bus = EventBus()
        self.engine: Optional[Engine] = None

    async def initialize(self) -> None:
        self.registry = PluginRegistry()
        register_builtin_plugins(self.registry)
        await self.registry.initialize_providers(
            enabled=self.config.providers.enabled_providers,
            configs=self.config.providers.provider_configs,
        )

        self.store = create_state_store(self.config.state, self.config.database)
        await self.store.open()

        self.engine = Engine(
            self.store,
            self.registry,
            executor_config=self.config.executor,
            event_bus=self.event_bus,
        )

    async def close(self) -> None:
        if self.store:
            await self.store.close()
        if self.registry:
            await self.registry.close()

    async def __aenter__(self) -> "Application":
        try:
            await self.initialize()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


@dataclasses.dataclass
class Settings:
    config: Config
    output: str = "table"


# ==================== Formatting ====================


def _format_value(value: Any) -> str:
    if value is UNKNOWN:
        return str(UNKNOWN)
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str, sort_keys=True)


def _format_changes(action) -> str:
    lines = []
    for change in action.changes:
        if change.change is ChangeType.ADDED:
            lines.append(f"+ {change.key} = {_format_value(change.new)}")
        elif change.change is ChangeType.REMOVED:
            lines.append(f"- {change.key}")
        else:
            lines.append(
                f"~ {change.key}: {_format_value(change.old)} -> "
                f"{_format_value(change.new)}"
            )
    if action.kind is ActionKind.UPDATE and action.prior is not None:
        old = sorted(str(d) for d in action.prior.dependencies)
        new = sorted(str(d) for d in action.dependencies)
        if old != new:
            lines.append(f"~ depends_on: {old} -> {new}")
    return "\n".join(lines)


def _json_default(value: Any) -> Any:
    if value is UNKNOWN:
        return str(UNKNOWN)
    return str(value)


def render_plan(plan: ExecutionPlan, output: str) -> str:
    if output == "json":
        return json.dumps(
            {
                "summary": plan.summary(),
                "actions": [
                    {
                        "resource": str(action.id),
                        "action": action.kind.value,
                        "replacement": action.replacement,
                        "changes": [
                            {
                                "key": change.key,
                                "change": change.change.value,
                                "old": change.old,
                                "new": change.new,
                            }
                            for change in action.changes
                        ],
                    }
                    for action in plan.actions
                ],
            },
            indent=2,
            default=_json_default,
        )

    summary = plan.summary()
    footer = (
        f"Plan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['destroy']} to destroy, {summary['no-op']} unchanged."
    )
    if not plan.has_changes:
        return f"No changes. {footer}"
    rows = [
        [index + 1, action.label, str(action.id), _format_changes(action)]
        for index, action in enumerate(plan.actions)
    ]
    table = tabulate(rows, headers=["#", "Action", "Resource", "Changes"], tablefmt="grid")
    return f"{table}\n{footer}"


def render_report(report: ApplyReport, output: str) -> str:
    if output == "json":
        return json.dumps(
            {
                "success": report.success,
                "cancelled": report.cancelled,
                "counts": report.counts(),
                "results": [
                    {
                        "resource": str(result.action.id),
                        "action": result.action.label,
                        "outcome": result.outcome.value,
                        "attempts": result.attempts,
                        "error": result.error,
                    }
                    for result in report.results
                ],
            },
            indent=2,
        )

    rows = [
        [
            str(result.action.id),
            result.action.label,
            "✓" if result.outcome.value in ("applied", "no-op") else "✗",
            result.outcome.value,
            result.attempts,
            result.error or "",
        ]
        for result in report.results
    ]
    counts = report.counts()
    table = tabulate(
        rows,
        headers=["Resource", "Action", "OK", "Outcome", "Attempts", "Error"],
        tablefmt="grid",
    )
    footer = (
        f"Apply {'cancelled' if report.cancelled else 'complete'}: "
        f"{counts['applied']} applied, {counts['failed']} failed, "
        f"{counts['skipped']} skipped, {counts['no-op']} unchanged."
    )
    return f"{table}\n{footer}"


def render_record(record: StateRecord, output: str) -> str:
    if output == "json":
        return json.dumps(record.to_dict(), indent=2, default=str)
    return yaml.safe_dump(record.to_dict(), default_flow_style=False, sort_keys=False)


# ==================== Pipeline ====================


def _variable_sources(variables: List[str], var_files: List[str]) -> List[Dict[str, Any]]:
    """Variable sources, highest precedence first."""
    file_values: Dict[str, Any] = {}
    for path in var_files:
        file_values.update(load_variable_file(path))
    return [parse_variable_assignments(variables), file_values, variables_from_env()]


def _install_signal_handlers(cancel_event: asyncio.Event) -> List[int]:
    loop = asyncio.get_running_loop()

    def on_signal():
        if not cancel_event.is_set():
            click.echo(
                "Interrupt received: finishing in-flight actions, "
                "skipping the rest.",
                err=True,
            )
        cancel_event.set()

    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Cannot install handler for signal {sig}")
    return installed


async def _print_events(subscription) -> None:
    async for event in subscription:
        click.echo(event.describe(), err=True)


async def _plan_and_apply(
    settings: Settings,
    filename: str,
    variables: List[str],
    var_files: List[str],
    target: Optional[str],
    destroy: bool,
    apply: bool,
    auto_approve: bool,
) -> int:
    document = load_document(filename)
    sources = _variable_sources(variables, var_files)
    target_id = ResourceId.parse(target) if target else None

    async with Application(settings.config) as app:
        plan = await app.engine.plan(document, sources, target=target_id, destroy=destroy)
        click.echo(render_plan(plan, settings.output))

        if not apply or not plan.has_changes:
            return EXIT_OK

        if not auto_approve and not click.confirm(
            "Do you want to perform these actions?", default=False
        ):
            click.echo("Apply cancelled.", err=True)
            return EXIT_FAILED

        cancel_event = asyncio.Event()
        installed = _install_signal_handlers(cancel_event)
        printer = None
        try:
            async with app.event_bus.subscription() as subscription:
                printer = asyncio.create_task(_print_events(subscription))
                report = await app.engine.apply(plan, cancel_event)
        finally:
            # The closed subscription lets the printer drain and finish
            if printer is not None:
                await printer
            loop = asyncio.get_running_loop()
            for sig in installed:
                loop.remove_signal_handler(sig)

        click.echo(render_report(report, settings.output))
        return report.exit_code


def _run_pipeline(settings: Settings, **kwargs) -> int:
    try:
        return asyncio.run(_plan_and_apply(settings, **kwargs))
    except PlanningError as e:
        click.echo(f"Error: {e}", err=True)
        return EXIT_PLANNING_ERROR
    except ValueError as e:
        # Bad --target, --var or provider configuration
        click.echo(f"Error: {e}", err=True)
        return EXIT_PLANNING_ERROR
    except ConvergeError as e:
        click.echo(f"Error: {e}", err=True)
        return EXIT_FAILED


# ==================== Commands ====================


def _pipeline_options(command):
    options = [
        click.argument("filename", type=click.Path(exists=True, dir_okay=False)),
        click.option(
            "--var",
            "variables",
            multiple=True,
            metavar="NAME=VALUE",
            help="Set a variable (repeatable)",
        ),
        click.option(
            "--var-file",
            "var_files",
            multiple=True,
            type=click.Path(exists=True, dir_okay=False),
            help="YAML/JSON file of variable values (repeatable)",
        ),
        click.option("--target", metavar="TYPE.NAME", help="Limit to one resource"),
    ]
    for option in reversed(options):
        command = option(command)
    return command


@click.group()
@click.option("--state", "state_path", help="Path of the local state file")
@click.option(
    "--backend",
    type=click.Choice(["local", "postgres"]),
    help="State backend (default: CONVERGE_STATE_BACKEND or local)",
)
@click.option("--parallelism", type=click.IntRange(min=1), help="Max concurrent actions")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level (default: LOG_LEVEL or WARNING)",
)
@click.option("--output", "-o", type=click.Choice(["table", "json"]), default="table")
@click.pass_context
def cli(ctx, state_path, backend, parallelism, log_level, output):
    """converge - declarative infrastructure reconciliation"""
    try:
        config = get_config()
        state = dataclasses.replace(
            config.state,
            backend=backend or config.state.backend,
            path=state_path or config.state.path,
        )
        database = config.database
        if state.backend == "postgres" and database is None:
            database = DatabaseConfig.from_env()
        executor = config.executor
        if parallelism:
            executor = dataclasses.replace(executor, parallelism=parallelism)
    except ValueError as e:
        raise click.UsageError(str(e))

    level = (log_level or config.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    ctx.obj = Settings(
        config=dataclasses.replace(
            config, state=state, database=database, executor=executor, log_level=level
        ),
        output=output,
    )


@cli.command()
@_pipeline_options
@click.option("--destroy", is_flag=True, help="Plan destruction of every resource")
@click.pass_obj
def plan(settings, filename, variables, var_files, target, destroy):
    """Show the changes needed to reach the desired state"""
    sys.exit(
        _run_pipeline(
            settings,
            filename=filename,
            variables=list(variables),
            var_files=list(var_files),
            target=target,
            destroy=destroy,
            apply=False,
            auto_approve=False,
        )
    )


@cli.command()
@_pipeline_options
@click.option("--auto-approve", is_flag=True, help="Skip interactive approval")
@click.pass_obj
def apply(settings, filename, variables, var_files, target, auto_approve):
    """Plan and apply changes to reach the desired state"""
    sys.exit(
        _run_pipeline(
            settings,
            filename=filename,
            variables=list(variables),
            var_files=list(var_files),
            target=target,
            destroy=False,
            apply=True,
            auto_approve=auto_approve,
        )
    )


@cli.command()
@_pipeline_options
@click.option("--auto-approve", is_flag=True, help="Skip interactive approval")
@click.pass_obj
def destroy(settings, filename, variables, var_files, target, auto_approve):
    """Destroy every resource recorded in state"""
    sys.exit(
        _run_pipeline(
            settings,
            filename=filename,
            variables=list(variables),
            var_files=list(var_files),
            target=target,
            destroy=True,
            apply=True,
            auto_approve=auto_approve,
        )
    )


@cli.group("state")
def state_group():
    """Inspect stored state"""
    pass


async def _read_state(settings: Settings, identifier: Optional[ResourceId]):
    store = create_state_store(settings.config.state, settings.config.database)
    async with store:
        if identifier is None:
            return await store.snapshot()
        return await store.get(identifier)


@state_group.command("list")
@click.pass_obj
def state_list(settings):
    """List stored resources"""
    try:
        records = asyncio.run(_read_state(settings, None))
    except ConvergeError as e:
        raise click.ClickException(str(e))

    if settings.output == "json":
        click.echo(json.dumps([r.to_dict() for r in records], indent=2, default=str))
        return
    if not records:
        click.echo("No resources in state")
        return
    rows = [
        [
            str(record.id),
            record.external_id,
            ", ".join(str(dep) for dep in record.dependencies),
            record.updated_at.isoformat(timespec="seconds"),
        ]
        for record in records
    ]
    click.echo(
        tabulate(
            rows,
            headers=["Resource", "External ID", "Depends On", "Updated"],
            tablefmt="grid",
        )
    )


@state_group.command("show")
@click.argument("identifier")
@click.pass_obj
def state_show(settings, identifier):
    """Show one stored resource"""
    try:
        resource_id = ResourceId.parse(identifier)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="IDENTIFIER")
    try:
        record = asyncio.run(_read_state(settings, resource_id))
    except ConvergeError as e:
        raise click.ClickException(str(e))

    if record is None:
        raise click.ClickException(f"{resource_id} is not in state")
    click.echo(render_record(record, settings.output))


if __name__ == "__main__":
    cli()
