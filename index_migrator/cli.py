import contextlib
import json
import logging
import sys
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn, TimeElapsedColumn
import yaml

import index_migrator.middleware.clusters as clusters_
import index_migrator.middleware.generations as generations_
import index_migrator.middleware.migration as migration_
from index_migrator.environment import Environment
from index_migrator.models.cutover import CutoverStrategy
from index_migrator.models.field_mappings import suggest_default
from index_migrator.models.lazy_backfill import BackfillScope
from index_migrator.models.planner import FieldRequest, Strategy
from index_migrator.models.task import TaskProgress
from index_migrator.models.utils import ExitCode

logger = logging.getLogger(__name__)

STRATEGY_CHOICES = {"lazy": Strategy.LAZY_BACKFILL, "full": Strategy.FULL_REGENERATION}

# ################### UNIVERSAL ####################


class Context(object):
    def __init__(self, config_file) -> None:
        self.config_file = config_file
        try:
            self.env = Environment(config_file=config_file)
        except Exception as e:
            raise click.ClickException(str(e))
        self.json = False


class FieldSpec(click.ParamType):
    """`name:type` or `name:type=default`; the default is parsed as a YAML scalar (0, true, [] ...)."""
    name = "name:type[=default]"

    def convert(self, value, param, ctx):
        if isinstance(value, FieldRequest):
            return value
        field_name, sep, rest = value.partition(":")
        field_type, has_default, default_text = rest.partition("=")
        if not sep or not field_name or not field_type:
            self.fail(f"{value!r} is not in the form name:type[=default]", param, ctx)
        try:
            default = yaml.safe_load(default_text) if has_default else None
        except yaml.YAMLError as e:
            self.fail(f"Unable to parse default value {default_text!r}: {e}", param, ctx)
        return FieldRequest(name=field_name, descriptor=field_type, default=default)


def load_mapping_file(path: Optional[str]) -> Optional[Dict[str, Any]]:
    if path is None:
        return None
    with open(path) as f:
        document = yaml.safe_load(f)
    if not isinstance(document, dict):
        raise click.BadParameter(f"{path} does not contain a mapping object", param_hint="--mapping-file")
    return document.get("mappings", document)


def echo_result(exitcode: ExitCode, message: str) -> None:
    if exitcode != ExitCode.SUCCESS:
        raise click.ClickException(message)
    click.echo(message)


@contextlib.contextmanager
def progress_display(ctx: Context, description: str):
    """Yields a progress callback, or None when output is JSON or not a terminal."""
    if ctx.json or not sys.stderr.isatty():
        yield None
        return
    columns = (SpinnerColumn(), TextColumn("{task.description}"), BarColumn(), TaskProgressColumn(),
               TimeElapsedColumn())
    with Progress(*columns, console=Console(stderr=True), transient=True) as progress:
        task = progress.add_task(description, total=None)

        def update(p: TaskProgress) -> None:
            if p.indeterminate:
                progress.update(task, description=f"{description}: {p}")
            else:
                progress.update(task, total=max(p.total, 1), completed=p.processed if p.total else 1,
                                description=description)
        yield update


@click.group()
@click.option("--config-file", default="/config/migration_services.yaml", help="Path to config file")
@click.option("--json", is_flag=True)
@click.option('-v', '--verbose', count=True, help="Verbosity level. Default is warn, -v is info, -vv is debug.")
@click.pass_context
def cli(ctx, config_file, json, verbose):
    logging.basicConfig(level=logging.WARN - (10 * verbose))
    logger.info(f"Logging set to {logging.getLevelName(logger.getEffectiveLevel())}")
    ctx.obj = Context(config_file)
    ctx.obj.json = json


def main():
    try:
        cli()
    except Exception as e:
        # -v and above lower the root level to INFO or DEBUG
        if logging.getLogger().getEffectiveLevel() <= logging.INFO:
            import traceback
            click.echo("Error occurred with verbose mode enabled, showing full traceback:", err=True)
            click.echo(traceback.format_exc(), err=True)
        else:
            click.echo(f"Error: {str(e)}", err=True)
        sys.exit(1)


@cli.command(name="connection-check")
@click.pass_obj
def connection_check_cmd(ctx):
    """Checks that the configured cluster can be reached"""
    result = clusters_.connection_check(ctx.env.engine)
    if ctx.json:
        click.echo(json.dumps(result.__dict__))
    else:
        click.echo(result.display())
    if not result.connection_established:
        sys.exit(ExitCode.FAILURE.value)


# ##################### GENERATIONS ###################


@cli.group(name="generations", help="Commands to inspect and delete index generations")
def generations_group():
    pass


@generations_group.command(name="list")
@click.argument("logical_name")
@click.pass_obj
def list_generations_cmd(ctx, logical_name):
    """List the generations of a logical index and the one it currently resolves to"""
    echo_result(*generations_.list_generations(ctx.env.migrator.generations, logical_name, as_json=ctx.json))


@generations_group.command(name="describe")
@click.argument("name")
@click.pass_obj
def describe_generation_cmd(ctx, name):
    """Mapping, creation time, document count, aliases and recorded migration of one generation"""
    echo_result(*generations_.describe(ctx.env.migrator.generations, name, as_json=ctx.json))


@generations_group.command(name="delete")
@click.argument("name")
@click.option("--acknowledge-risk", is_flag=True, show_default=True, default=False,
              help="Flag to acknowledge risk and skip confirmation")
@click.pass_obj
def delete_generation_cmd(ctx, name, acknowledge_risk):
    """[Caution] Delete a generation that no alias points to"""
    if not acknowledge_risk and not click.confirm(f'Deleting {name} WILL remove all of its documents. '
                                                  f'Are you sure you want to continue?'):
        click.echo("Aborting command.")
        return
    echo_result(*generations_.delete(ctx.env.migrator.generations, name, as_json=ctx.json))


# ##################### MIGRATE ###################


@cli.group(name="migrate", help="Commands to plan, run, monitor and cut over schema migrations")
def migrate_group():
    pass


def field_options(func):
    func = click.option("--strategy", type=click.Choice(list(STRATEGY_CHOICES)), default=None,
                        help="Force lazy backfill or full regeneration instead of letting the planner choose")(func)
    func = click.option("--mapping-file", type=click.Path(exists=True, dir_okay=False), default=None,
                        help="YAML or JSON file with the complete target mapping")(func)
    func = click.option("--remove-field", "remove_fields", multiple=True,
                        help="Field to drop (forces a full regeneration)")(func)
    func = click.option("--field", "fields", type=FieldSpec(), multiple=True,
                        help="Field to add or change, as name:type[=default]")(func)
    return func


def collect_fields(fields, remove_fields):
    return list(fields) + [FieldRequest(name=name, remove=True) for name in remove_fields]


@migrate_group.command(name="plan")
@click.argument("logical_name")
@field_options
@click.pass_obj
def plan_cmd(ctx, logical_name, fields, remove_fields, mapping_file, strategy):
    """Show which strategy a migration would use, without changing anything"""
    echo_result(*migration_.plan(ctx.env.migrator, logical_name, collect_fields(fields, remove_fields),
                                 target_mapping=load_mapping_file(mapping_file),
                                 strategy=STRATEGY_CHOICES.get(strategy), as_json=ctx.json))


@migrate_group.command(name="run")
@click.argument("logical_name")
@field_options
@click.option("--no-wait", is_flag=True, default=False, help="Submit the engine tasks and return immediately")
@click.option("--no-cutover", is_flag=True, default=False, help="Leave the new generation unaliased")
@click.option("--timeout", type=float, default=None, help="Seconds to wait for each task")
@click.option("--poll-interval", type=float, default=None, help="Seconds between task status polls")
@click.option("--retire-old", is_flag=True, default=False, help="Delete the superseded generation after cutover")
@click.pass_obj
def run_cmd(ctx, logical_name, fields, remove_fields, mapping_file, strategy, no_wait, no_cutover, timeout,
            poll_interval, retire_old):
    """Plan and execute a migration, then cut over to the new generation"""
    migrator = ctx.env.migrator
    if retire_old:
        migrator.coordinator.retire_old_generation = True
    with progress_display(ctx, f"Migrating {logical_name}") as on_progress:
        result = migration_.run(migrator, logical_name, collect_fields(fields, remove_fields),
                                target_mapping=load_mapping_file(mapping_file),
                                strategy=STRATEGY_CHOICES.get(strategy), wait=not no_wait,
                                cutover=not no_cutover, timeout=timeout, poll_interval=poll_interval,
                                on_progress=on_progress, as_json=ctx.json)
    echo_result(*result)


@migrate_group.command(name="backfill")
@click.argument("generation")
@click.argument("field_name")
@click.option("--type", "field_type", required=True, help="Field type shorthand, e.g. keyword, integer, date")
@click.option("--default", "default_text", default=None,
              help="Value for documents missing the field, parsed as YAML. Suggested from the name/type if omitted")
@click.option("--scope", type=click.Choice([s.value for s in BackfillScope]), default=BackfillScope.MISSING_ONLY.value,
              show_default=True, help="`all` overwrites the field on every document")
@click.option("--no-wait", is_flag=True, default=False, help="Submit the update and return immediately")
@click.option("--timeout", type=float, default=None, help="Seconds to wait for the task")
@click.pass_obj
def backfill_cmd(ctx, generation, field_name, field_type, default_text, scope, no_wait, timeout):
    """Add a field in place to an existing generation, filling in a default value"""
    try:
        default_value = (yaml.safe_load(default_text) if default_text is not None
                         else suggest_default(field_name, field_type))
    except (ValueError, yaml.YAMLError) as e:
        raise click.BadParameter(str(e), param_hint="--default")
    if default_text is None:
        click.echo(f"Using suggested default {default_value!r} for {field_name}", err=True)
    with progress_display(ctx, f"Backfilling {field_name}") as on_progress:
        result = migration_.backfill(ctx.env.migrator, generation, field_name, field_type, default_value,
                                     scope=BackfillScope(scope), wait=not no_wait, timeout=timeout,
                                     on_progress=on_progress, as_json=ctx.json)
    echo_result(*result)


@migrate_group.command(name="await")
@click.argument("task_id")
@click.option("--timeout", type=float, required=True, help="Seconds to wait before giving up")
@click.option("--poll-interval", type=float, default=None, help="Seconds between task status polls")
@click.option("--generation", default=None, help="Generation whose recorded migration outcome should be updated")
@click.pass_obj
def await_cmd(ctx, task_id, timeout, poll_interval, generation):
    """Wait for an engine task. Timing out leaves the task running on the engine"""
    with progress_display(ctx, f"Task {task_id}") as on_progress:
        result = migration_.await_task(ctx.env.migrator, task_id, timeout, poll_interval=poll_interval,
                                       generation=generation, on_progress=on_progress, as_json=ctx.json)
    echo_result(*result)


@migrate_group.command(name="cutover")
@click.argument("logical_name")
@click.argument("candidate")
@click.option("--previous", default=None, help="Generation being replaced, retired with --retire-old")
@click.option("--strategy", type=click.Choice([s.value for s in CutoverStrategy]), default=None,
              help="Override the configured cutover strategy")
@click.option("--retire-old", is_flag=True, default=False, help="Delete the superseded generation afterwards")
@click.pass_obj
def cutover_cmd(ctx, logical_name, candidate, previous, strategy, retire_old):
    """Point a logical name at a generation whose migration completed"""
    migrator = ctx.env.migrator
    if strategy:
        migrator.coordinator.strategy = CutoverStrategy(strategy)
    if retire_old:
        migrator.coordinator.retire_old_generation = True
    echo_result(*migration_.cutover(migrator, logical_name, candidate, previous=previous, as_json=ctx.json))


@migrate_group.command(name="rollback")
@click.argument("logical_name")
@click.argument("previous")
@click.pass_obj
def rollback_cmd(ctx, logical_name, previous):
    """Point a logical name back at a retained previous generation"""
    echo_result(*migration_.rollback(ctx.env.migrator, logical_name, previous, as_json=ctx.json))


#################################################

if __name__ == "__main__":
    cli()
