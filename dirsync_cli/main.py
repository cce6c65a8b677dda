import signal
import sys
from typing import List

import typer
from rich.console import Console
from typing_extensions import Annotated

from dirsync_cli.config import load_settings
from dirsync_cli.constants import ENTITIES
from dirsync_cli.exceptions import DirectoryError
from dirsync_cli.models import StateOperation
from dirsync_cli.resources import ProviderContext, build_resources
from dirsync_cli.states import (
    TargetStateComparison,
    apply_operations,
    gather_observed_state,
    load_desired_state,
)

#: The typer application object to use.
app = typer.Typer()
#: The rich console to use for output.
console_err = Console(file=sys.stderr)
console_out = Console(file=sys.stdout)


def fail(e: Exception):
    console_err.log(f"ERROR: {e}", style="red")
    raise typer.Exit(1)


@app.command("state-plan")
def plan_state(
    state_path: Annotated[str, typer.Argument(..., help="path to desired state file")],
    config_path: Annotated[
        str, typer.Option(..., help="path to configuration file")
    ] = "/etc/dirsync-cli/config.json",
):
    """compare desired state to the directory and print the operations"""
    settings = load_settings(config_path)
    ctx = ProviderContext.from_settings(settings.graph)
    try:
        desired = load_desired_state(state_path)
        resources = build_resources(ctx)
        observed = gather_observed_state(resources, desired)
        operations = TargetStateComparison(resources, desired, observed).run()
    except (DirectoryError, ValueError) as e:
        fail(e)
    finally:
        ctx.close()
    console_out.print_json(data=operations.model_dump(mode="json"))


@app.command("state-apply")
def apply_state(
    state_path: Annotated[str, typer.Argument(..., help="path to desired state file")],
    config_path: Annotated[
        str, typer.Option(..., help="path to configuration file")
    ] = "/etc/dirsync-cli/config.json",
    resource_ops: Annotated[
        List[StateOperation],
        typer.Option(..., help="resource operations to perform (default: from config)"),
    ] = list,
    dry_run: Annotated[bool, typer.Option(..., help="perform a dry run (no changes)")] = True,
):
    """apply desired state to the directory"""
    settings = load_settings(config_path)
    settings = settings.model_copy(
        update={
            "resource_ops": resource_ops or settings.resource_ops,
            "dry_run": dry_run,
        }
    )
    ctx = ProviderContext.from_settings(settings.graph)
    # finish the current step on SIGTERM but do not start the next one
    signal.signal(signal.SIGTERM, lambda *_: ctx.cancel.set())
    try:
        desired = load_desired_state(state_path)
        resources = build_resources(ctx)
        observed = gather_observed_state(resources, desired)
        operations = TargetStateComparison(resources, desired, observed).run()
        console_err.log(f"applying resource operations now, dry_run={settings.dry_run}")
        result = apply_operations(
            resources, operations, settings.resource_ops, dry_run=settings.dry_run
        )
    except (DirectoryError, ValueError) as e:
        fail(e)
    finally:
        ctx.close()
    console_out.print_json(data=result.model_dump(mode="json"))


@app.command("state-dump")
def dump_state(
    state_path: Annotated[str, typer.Argument(..., help="path to desired state file")],
    config_path: Annotated[
        str, typer.Option(..., help="path to configuration file")
    ] = "/etc/dirsync-cli/config.json",
):
    """dump observed state of the resources in the desired state file"""
    settings = load_settings(config_path)
    ctx = ProviderContext.from_settings(settings.graph)
    try:
        desired = load_desired_state(state_path)
        observed = gather_observed_state(build_resources(ctx), desired)
    except (DirectoryError, ValueError) as e:
        fail(e)
    finally:
        ctx.close()
    console_out.print_json(data=observed.model_dump(mode="json"))


@app.command("resource-delete")
def delete_resource(
    entity_type: Annotated[str, typer.Argument(..., help=f"one of {', '.join(ENTITIES)}")],
    entity_id: Annotated[str, typer.Argument(..., help="ID of the entity")],
    config_path: Annotated[
        str, typer.Option(..., help="path to configuration file")
    ] = "/etc/dirsync-cli/config.json",
    dry_run: Annotated[bool, typer.Option(..., help="perform a dry run (no changes)")] = True,
):
    """delete one resource from the directory"""
    if entity_type not in ENTITIES:
        console_err.log(f"ERROR: unknown type {entity_type}", style="red")
        raise typer.Exit(1)
    settings = load_settings(config_path)
    ctx = ProviderContext.from_settings(settings.graph)
    try:
        resource = build_resources(ctx)[entity_type]
        console_err.log(f"deleting {entity_type} {entity_id}, dry_run={dry_run}")
        if not dry_run:
            resource.delete(entity_id)
    except (DirectoryError, ValueError) as e:
        fail(e)
    finally:
        ctx.close()


if __name__ == "__main__":
    app()
