# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from gridci.cache import resolve_cache_keys
from gridci.config import Settings
from gridci.errors import CIError
from gridci.executor import JobExecutor
from gridci.runner import build_run_context, load_workflow, run_workflow
from gridci.scheduler import plan_instances
from gridci.ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_DEFINITION = 2
EXIT_INTERRUPTED = 130


def find_workflow_files(root: Path = Path(".")) -> list[Path]:
    """
    Find all workflow files in a directory.

    Returns:
        gridci_workflow.py / .json first, then other *_workflow.py files
    """
    workflow_files = []
    for default in ("gridci_workflow.py", "gridci_workflow.json"):
        p = root / default
        if p.exists():
            workflow_files.append(p)
    for path in sorted(root.glob("*_workflow.py")):
        if path not in workflow_files:
            workflow_files.append(path)
    return workflow_files


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix not in (".py", ".json"):
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  gridci run --workflow my_workflow.py",
            )
            sys.exit(EXIT_DEFINITION)
        return workflow_path

    workflow_files = find_workflow_files()
    if not workflow_files:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", "  gridci_workflow.py", "  gridci_workflow.json", "  *_workflow.py"],
            suggestion="Specify a workflow explicitly:\n  gridci run --workflow my_workflow.py",
        )
        sys.exit(EXIT_DEFINITION)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[f"  {f}" for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  gridci run --workflow gridci_workflow.py",
        )
        sys.exit(EXIT_DEFINITION)

    return workflow_files[0]


def _load(ctx, workflow):
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        return workflow_path, load_workflow(workflow_path)
    except CIError as e:
        console.print_error("Failed to load workflow", str(e))
        sys.exit(EXIT_DEFINITION)
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(EXIT_DEFINITION)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """gridci: matrix-aware, cache-aware build orchestration."""
    try:
        settings = Settings.from_env().with_overrides(debug=debug or None)
    except CIError as e:
        raise click.UsageError(str(e))
    set_console(Console(debug=settings.debug))
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
    ctx.obj["debug"] = settings.debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py or .json); defaults to gridci_workflow.py")
@click.option("--workers", default=None, type=int, help="Number of parallel job instances")
@click.option("--workspace", default=None, help="Workspace root the steps run in")
@click.option("--cache-dir", default=None, help="Cache directory (relative to the workspace)")
@click.option("--artifact-dir", default=None, help="Artifact directory (relative to the workspace)")
@click.option("--cache-keep", default=None, type=int, help="Cache entries kept per restore prefix")
@click.option("--event", default=None, help="Triggering event exposed as run.event")
@click.option("--channel", default=None, help="Toolchain channel exposed as run.channel")
@click.option("--pipeline", "pipelines", multiple=True, help="Only run these pipelines (repeatable)")
@click.option("--job", "jobs", multiple=True, help="Only run these jobs (repeatable)")
@click.pass_context
def run(ctx, workflow, workers, workspace, cache_dir, artifact_dir, cache_keep, event, channel, pipelines, jobs):
    """Run a gridci workflow."""
    console = get_console()
    settings: Settings = ctx.obj["settings"].with_overrides(
        workers=workers,
        workspace=workspace,
        cache_dir=cache_dir,
        artifact_dir=artifact_dir,
        cache_keep=cache_keep,
        event=event,
        channel=channel,
    )
    workflow_path, definitions = _load(ctx, workflow)

    try:
        report = run_workflow(
            definitions,
            settings,
            only_pipelines=pipelines or None,
            only_jobs=jobs or None,
            workflow_name=workflow_path.name,
        )
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except CIError as e:
        console.print_error("Run aborted", str(e))
        sys.exit(EXIT_DEFINITION)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    if not report.ok:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py or .json)")
@click.option("--pipeline", "pipelines", multiple=True, help="Only show these pipelines")
@click.option("--job", "jobs", multiple=True, help="Only show these jobs")
@click.pass_context
def plan(ctx, workflow, pipelines, jobs):
    """Print the expanded job instances without running anything."""
    console = get_console()
    _, definitions = _load(ctx, workflow)
    try:
        instances = plan_instances(definitions, only_pipelines=pipelines or None, only_jobs=jobs or None)
    except CIError as e:
        console.print_error("Invalid matrix", str(e))
        sys.exit(EXIT_DEFINITION)

    current = None
    for inst in instances:
        if inst.pipeline != current:
            current = inst.pipeline
            console.print_header(current)
        reason = "fail-fast" if inst.job.fail_fast else "no fail-fast"
        console.print_plan_job(inst.name, reason)
    console.print_info(f"\n{len(instances)} job instance(s)")


@cli.command("cache-key")
@click.option("--workflow", default=None, help="Workflow file (.py or .json)")
@click.option("--workspace", default=None, help="Workspace root used for hash_files")
@click.option("--job", "job_name", required=True, help="Job whose cache steps to resolve")
@click.pass_context
def cache_key(ctx, workflow, workspace, job_name):
    """Print the resolved cache keys of a job for every matrix instance."""
    console = get_console()
    settings: Settings = ctx.obj["settings"].with_overrides(workspace=workspace)
    _, definitions = _load(ctx, workflow)
    try:
        instances = plan_instances(definitions, only_jobs=[job_name])
    except CIError as e:
        console.print_error("Invalid matrix", str(e))
        sys.exit(EXIT_DEFINITION)
    if not instances:
        console.print_error("Unknown job", f"No job named {job_name!r} in the workflow")
        sys.exit(EXIT_DEFINITION)

    executor = JobExecutor(workspace=settings.workspace, run_context=build_run_context(settings))
    for inst in instances:
        try:
            ctx_vars = executor.context_for(inst, executor.prepare(inst))
        except CIError as e:
            console.print_error("Invalid template", str(e))
            sys.exit(EXIT_DEFINITION)
        for step in inst.job.steps:
            if step.cache is None:
                continue
            resolved = resolve_cache_keys(step.cache, ctx_vars, workspace=executor.workspace)
            console.print_info(f"{inst.name} / {step.name}")
            console.print_info(f"  key: {resolved.primary}")
            for rk in resolved.restore_keys:
                console.print_info(f"  restore: {rk}")


if __name__ == "__main__":
    cli()
