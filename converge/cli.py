"""
converge CLI entry point.
"""
import json
import logging
import os
import random
import sys
from typing import Any, Dict, List, Optional, Tuple

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from converge import __version__
from converge.config import Settings, load_settings
from converge.core import engine
from converge.core.executor import FAILED, SKIPPED, ApplyResult
from converge.core.graph import build_graph
from converge.detect import detect_format
from converge.errors import ConvergeError, PartialApplyError, ProviderError
from converge.models.declaration import Configuration
from converge.parsers import declaration, terraform
from converge.providers.local import LocalCloud, LocalProvider
from converge.reporters import dot, json_reporter, markdown
from converge.state.store import StateStore

console = Console(stderr=True)

_BANNER = r"""
  ___ ___  _ ____   _____ _ __ __ _  ___
 / __/ _ \| '_ \ \ / / _ \ '__/ _` |/ _ \
| (_| (_) | | | \ V /  __/ | | (_| |  __/
 \___\___/|_| |_|\_/ \___|_|  \__, |\___|
                              |___/
"""

_JOKES = [
    "It worked on my plan.",
    "Eventually consistent, occasionally correct.",
    "There is no rollback. There is only forward.",
    "A DAG walks into a bar. Then it waits for its dependencies.",
    "Infrastructure as code: now your outages are version controlled.",
    "Have you tried destroying it and applying it again?",
]

_ACTION_COLORS = {
    "create": "green",
    "update": "yellow",
    "replace": "magenta",
    "destroy": "red",
    "no-op": "dim",
}

_ACTION_SYMBOL = {
    "create": "+",
    "update": "~",
    "replace": "-/+",
    "destroy": "-",
    "no-op": " ",
}

# exit codes
EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_ERROR = 2


def _print_banner(no_color: bool = False) -> None:
    c = Console(stderr=True, no_color=no_color)
    c.print(f"[bold cyan]{_BANNER}[/bold cyan]")
    c.print(f"  [dim]declarative infrastructure reconciler[/dim]   [dim]v{__version__}[/dim]")
    joke = random.choice(_JOKES)
    c.print(f"  [italic cyan]\"{joke}\"[/italic cyan]\n")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=verbose)],
        force=True,
    )


def _fail(message: str, code: int = EXIT_ERROR) -> None:
    console.print(f"[red]Error:[/red] {message}")
    sys.exit(code)


# ------------------------------------------------------------------ inputs
def _collect_files(paths: Tuple[str, ...]) -> List[str]:
    """Expand directories into file paths."""
    files = []
    for p in paths:
        if os.path.isfile(p):
            files.append(p)
        elif os.path.isdir(p):
            for root, _, fnames in os.walk(p):
                for fname in sorted(fnames):
                    files.append(os.path.join(root, fname))
        else:
            console.print(f"[yellow]Warning:[/yellow] '{p}' does not exist, skipping.")
    return files


def _parse_files(file_paths: List[str]) -> Configuration:
    config = Configuration()
    for fp in file_paths:
        fmt = detect_format(fp)
        if fmt == "hcl":
            config.merge(terraform.parse_file(fp))
        elif fmt == "declaration":
            config.merge(declaration.parse_file(fp))
        else:
            console.print(f"[dim]Skipping unsupported file:[/dim] {fp}")
    return config


def _load_config(paths: Tuple[str, ...]) -> Configuration:
    with console.status("[bold]Collecting files…"):
        file_paths = _collect_files(paths)
    if not file_paths:
        _fail("no files found.")
    with console.status(f"[bold]Parsing {len(file_paths)} file(s)…"):
        config = _parse_files(file_paths)
    if not config.source_files:
        _fail("no declaration files found in the provided paths.")
    return config


def _parse_vars(pairs: Tuple[str, ...], var_files: Tuple[str, ...]) -> Dict[str, Any]:
    """--var-file mappings first, then --var name=value (YAML scalars/lists)."""
    values: Dict[str, Any] = {}
    for path in var_files:
        try:
            with open(path, "r") as fh:
                data = yaml.safe_load(fh) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise click.BadParameter(f"cannot read {path}: {exc}", param_hint="--var-file")
        if not isinstance(data, dict):
            raise click.BadParameter(f"{path} must contain a mapping", param_hint="--var-file")
        values.update(data)
    for pair in pairs:
        name, sep, raw = pair.partition("=")
        if not sep or not name.strip():
            raise click.BadParameter(f"expected name=value, got '{pair}'", param_hint="--var")
        try:
            values[name.strip()] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            values[name.strip()] = raw
    return values


def _settings(ctx: click.Context, **overrides: Any) -> Settings:
    return ctx.obj["settings"].with_overrides(**overrides)


def _provider(settings: Settings) -> LocalProvider:
    return LocalProvider(LocalCloud(settings.cloud_path))


# ------------------------------------------------------------------ output
def _print_plan_table(plan: engine.Plan, no_color: bool = False) -> None:
    tbl = Table(title="Destroy Plan" if plan.destroy else "Plan", show_header=True, header_style="bold")
    tbl.add_column("#", style="dim", width=4)
    tbl.add_column("Action", width=10)
    tbl.add_column("Address", width=40)
    tbl.add_column("Changed attributes")

    for i, c in enumerate(plan.pending, 1):
        color = _ACTION_COLORS.get(c.action.value, "") if not no_color else ""
        label = f"{_ACTION_SYMBOL[c.action.value]} {c.action.value}"
        attrs = ", ".join(
            f"{d.name} (forces replacement)" if d.forces_replacement and c.action.value == "replace" else d.name
            for d in c.delta
        )
        if c.deposed:
            attrs = (attrs + ", " if attrs else "") + f"{len(c.deposed)} deposed"
        tbl.add_row(str(i), f"[{color}]{label}[/{color}]" if color else label, c.address, attrs)

    Console(stderr=True, no_color=no_color).print(tbl)


def _print_plan_summary(plan: engine.Plan) -> None:
    if not plan.has_changes:
        console.print("[green]No changes.[/green] Infrastructure matches the declarations.")
        return
    counts = plan.summary()
    console.print(
        "Plan: "
        + "  ".join(
            f"[{_ACTION_COLORS[a]}]{n} to {a}[/{_ACTION_COLORS[a]}]" for a, n in counts.items() if n
        )
    )


def _print_result_table(result: ApplyResult) -> None:
    tbl = Table(title="Apply Result", show_header=True, header_style="bold")
    tbl.add_column("Step", width=50)
    tbl.add_column("Status", width=10)
    tbl.add_column("Attempts", width=8)
    tbl.add_column("Detail")
    colors = {FAILED: "red", SKIPPED: "yellow"}
    for r in result.steps:
        color = colors.get(r.status, "green")
        tbl.add_row(str(r.step), f"[{color}]{r.status}[/{color}]", str(r.attempts), r.error or "")
    console.print(tbl)


def _print_outputs(outputs: Dict[str, Any]) -> None:
    if not outputs:
        return
    console.print("\n[bold]Outputs:[/bold]")
    for name, value in outputs.items():
        rendered = value if isinstance(value, str) else json.dumps(value)
        console.print(f"  {name} = {rendered}")


def _write(content: str, output: Optional[str], what: str = "Report") -> None:
    if output:
        with open(output, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
        console.print(f"{what} written to [bold]{output}[/bold]")
    else:
        click.echo(content)


# ------------------------------------------------------------------ commands
_var_option = click.option(
    "--var", "var_pairs", multiple=True, metavar="NAME=VALUE",
    help="Set a variable; may be repeated.",
)
_var_file_option = click.option(
    "--var-file", "var_files", multiple=True, type=click.Path(exists=True, dir_okay=False),
    help="YAML or JSON file of variable values; may be repeated.",
)
_state_option = click.option(
    "--state", "state_path", type=click.Path(dir_okay=False), default=None,
    help="State file (default: state_path from converge.yaml).",
)
_cloud_option = click.option(
    "--cloud", "cloud_path", type=click.Path(dir_okay=False), default=None,
    help="Local provider object store (default: cloud_path from converge.yaml).",
)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Settings file (default: ./converge.yaml when present).")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log engine activity at DEBUG level.")
@click.pass_context
def cli(ctx, config_path: Optional[str], verbose: bool):
    """converge — declarative infrastructure reconciler."""
    _configure_logging(verbose)
    ctx.ensure_object(dict)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit()
    try:
        ctx.obj["settings"] = load_settings(config_path)
    except ConvergeError as exc:
        _fail(str(exc))


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@_var_option
@_var_file_option
def validate(paths: Tuple[str, ...], var_pairs: Tuple[str, ...], var_files: Tuple[str, ...]) -> None:
    """
    Check declarations: syntax, references, count and dependency cycles.

    No state or provider is touched.
    """
    try:
        config = _load_config(paths)
        graph = build_graph(config, _parse_vars(var_pairs, var_files))
    except ConvergeError as exc:
        _fail(str(exc))
    console.print(
        f"[green]Valid.[/green] {len(graph)} resource instance(s), "
        f"{len(graph.edges())} dependency edge(s), {len(graph.outputs)} output(s)."
    )
    sys.exit(EXIT_OK)


def _make_plan(paths, var_pairs, var_files, settings: Settings, destroy: bool, refresh: bool):
    config = _load_config(paths)
    store = StateStore(settings.state_path)
    provider = _provider(settings)
    with console.status("[bold]Planning…"):
        plan = engine.plan(
            config, store, provider, settings,
            variables=_parse_vars(var_pairs, var_files),
            destroy=destroy,
            refresh_state=refresh,
        )
    return plan, store, provider


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@_var_option
@_var_file_option
@_state_option
@_cloud_option
@click.option("--destroy", is_flag=True, default=False, help="Plan the destruction of everything in state.")
@click.option("--refresh", is_flag=True, default=False, help="Re-read every recorded object before planning.")
@click.option(
    "--format", "output_format",
    type=click.Choice(["table", "markdown", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
@click.option("--output", "-o", type=click.Path(), default=None, help="Write the plan to this file (default: stdout).")
@click.option("--detailed-exitcode", is_flag=True, default=False,
              help="Exit with 3 when the plan has changes.")
@click.option("--no-color", is_flag=True, default=False, help="Disable rich terminal color output.")
@click.pass_context
def plan(
    ctx,
    paths: Tuple[str, ...],
    var_pairs: Tuple[str, ...],
    var_files: Tuple[str, ...],
    state_path: Optional[str],
    cloud_path: Optional[str],
    destroy: bool,
    refresh: bool,
    output_format: str,
    output: Optional[str],
    detailed_exitcode: bool,
    no_color: bool,
) -> None:
    """
    Show what apply would change.

    PATHS can be files or directories; multiple values accepted.
    """
    try:
        settings = _settings(ctx, state_path=state_path, cloud_path=cloud_path)
        plan_, _, _ = _make_plan(paths, var_pairs, var_files, settings, destroy, refresh)
    except ProviderError as exc:
        _fail(str(exc), EXIT_PARTIAL)
    except ConvergeError as exc:
        _fail(str(exc))

    source_label = ", ".join(paths)
    fmt = output_format.lower()
    if fmt == "json":
        _write(json_reporter.build_report(plan_, source_label), output, "Plan")
    elif fmt == "markdown":
        _write(markdown.build_report(plan_, source_label), output, "Plan")
    elif plan_.has_changes:
        _print_plan_table(plan_, no_color)

    _print_plan_summary(plan_)
    sys.exit(3 if detailed_exitcode and plan_.has_changes else EXIT_OK)


def _run_apply(ctx, paths, var_pairs, var_files, state_path, cloud_path, parallelism,
               auto_approve: bool, destroy: bool, refresh: bool) -> None:
    _print_banner()
    try:
        settings = _settings(ctx, state_path=state_path, cloud_path=cloud_path, parallelism=parallelism)
        plan_, store, provider = _make_plan(paths, var_pairs, var_files, settings, destroy, refresh)
    except ProviderError as exc:
        _fail(str(exc), EXIT_PARTIAL)
    except ConvergeError as exc:
        _fail(str(exc))

    if not plan_.has_changes:
        _print_plan_summary(plan_)
        if not destroy:
            try:
                result = engine.apply(plan_, store, provider, settings)
            except ConvergeError as exc:
                _fail(str(exc))
            _print_outputs(result.outputs)
        sys.exit(EXIT_OK)

    _print_plan_table(plan_)
    _print_plan_summary(plan_)
    if not auto_approve:
        verb = "destroy everything in state" if destroy else "perform these actions"
        if not click.confirm(f"Do you want to {verb}?", default=False, err=True):
            console.print("[yellow]Cancelled.[/yellow]")
            sys.exit(EXIT_PARTIAL)

    try:
        with console.status(f"[bold]Applying {len(plan_.schedule)} step(s)…"):
            result = engine.apply(plan_, store, provider, settings)
    except PartialApplyError as exc:
        _print_result_table(exc.result)
        console.print(f"[red]{exc}[/red]")
        for address, error in exc.failed.items():
            console.print(f"  [red]✗[/red] {address}: {error}")
        if exc.skipped:
            console.print(f"  [yellow]skipped:[/yellow] {', '.join(exc.skipped)}")
        console.print("Fix the errors and run apply again; completed nodes are kept in state.")
        sys.exit(EXIT_PARTIAL)
    except ConvergeError as exc:
        _fail(str(exc))

    _print_result_table(result)
    console.print(f"[green]Apply complete.[/green] {len(result.succeeded)} node(s) changed.")
    _print_outputs(result.outputs)
    sys.exit(EXIT_OK)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@_var_option
@_var_file_option
@_state_option
@_cloud_option
@click.option("--parallelism", type=click.IntRange(min=1), default=None,
              help="Concurrent provider operations (default: parallelism from converge.yaml).")
@click.option("--refresh", is_flag=True, default=False, help="Re-read every recorded object before planning.")
@click.option("--auto-approve", is_flag=True, default=False, help="Skip the confirmation prompt.")
@click.pass_context
def apply(ctx, paths, var_pairs, var_files, state_path, cloud_path, parallelism, refresh, auto_approve) -> None:
    """
    Plan and apply the declarations in PATHS.

    Independent branches run in parallel.  A failed node stops only its
    dependents; everything that succeeded is kept in state.
    """
    _run_apply(ctx, paths, var_pairs, var_files, state_path, cloud_path, parallelism,
               auto_approve, destroy=False, refresh=refresh)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@_var_option
@_var_file_option
@_state_option
@_cloud_option
@click.option("--parallelism", type=click.IntRange(min=1), default=None,
              help="Concurrent provider operations (default: parallelism from converge.yaml).")
@click.option("--auto-approve", is_flag=True, default=False, help="Skip the confirmation prompt.")
@click.pass_context
def destroy(ctx, paths, var_pairs, var_files, state_path, cloud_path, parallelism, auto_approve) -> None:
    """Destroy every object recorded in state, dependents first."""
    _run_apply(ctx, paths, var_pairs, var_files, state_path, cloud_path, parallelism,
               auto_approve, destroy=True, refresh=False)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@_var_option
@_var_file_option
@click.option("--output", "-o", type=click.Path(), default=None, help="Write the DOT graph to this file (default: stdout).")
def graph(paths: Tuple[str, ...], var_pairs, var_files, output: Optional[str]) -> None:
    """Render the dependency graph in Graphviz DOT format."""
    try:
        config = _load_config(paths)
        resource_graph = build_graph(config, _parse_vars(var_pairs, var_files))
    except ConvergeError as exc:
        _fail(str(exc))
    _write(dot.build_graph_dot(resource_graph), output, "Graph")
    sys.exit(EXIT_OK)


# ------------------------------------------------------------------ state
@cli.group()
def state():
    """Inspect the state file."""


def _open_store(ctx, state_path: Optional[str]) -> StateStore:
    settings = _settings(ctx, state_path=state_path)
    if not os.path.exists(settings.state_path):
        _fail(f"no state file at {settings.state_path}")
    return StateStore(settings.state_path)


@state.command("list")
@_state_option
@click.option("--json", "as_json", is_flag=True, default=False, help="Print records as JSON.")
@click.pass_context
def state_list(ctx, state_path: Optional[str], as_json: bool) -> None:
    """List every applied record."""
    try:
        store = _open_store(ctx, state_path)
    except ConvergeError as exc:
        _fail(str(exc))
    records = store.records()
    if as_json:
        click.echo(json_reporter.build_state_report(records, store.path))
        sys.exit(EXIT_OK)

    tbl = Table(title=f"State (serial {store.snapshot.serial})", show_header=True, header_style="bold")
    tbl.add_column("Address", width=45)
    tbl.add_column("Type", width=30)
    tbl.add_column("ID")
    for r in records:
        rid = r.resource_id + (f" (+{len(r.deposed)} deposed)" if r.deposed else "")
        tbl.add_row(r.address, r.resource_type, rid)
    Console().print(tbl)
    sys.exit(EXIT_OK)


@state.command("show")
@click.argument("address")
@_state_option
@click.pass_context
def state_show(ctx, address: str, state_path: Optional[str]) -> None:
    """Print one applied record as JSON."""
    try:
        store = _open_store(ctx, state_path)
    except ConvergeError as exc:
        _fail(str(exc))
    record = store.get(address)
    if record is None:
        _fail(f"'{address}' is not in state")
    click.echo(json.dumps(record.to_dict(), indent=2))
    sys.exit(EXIT_OK)


@cli.command("force-unlock")
@_state_option
@click.pass_context
def force_unlock(ctx, state_path: Optional[str]) -> None:
    """Remove a stale state lock left by an interrupted run."""
    try:
        settings = _settings(ctx, state_path=state_path)
        store = StateStore(settings.state_path)
    except ConvergeError as exc:
        _fail(str(exc))
    if store.force_unlock():
        console.print(f"[green]Lock removed:[/green] {store.lock_path}")
    else:
        console.print(f"[yellow]No lock held on {settings.state_path}.[/yellow]")
    sys.exit(EXIT_OK)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
