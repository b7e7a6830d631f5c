import asyncio
import sys

import click
import halo
from click.shell_completion import CompletionItem
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from psm.config import default_config, load_config, resolve_config_path
from psm.control.manager import ServerManager
from psm.control.saves import seed_scripts
from psm.control.state import SlotState
from psm.errors import PsmError

console = Console()


class StepProgress:
    """Step-by-step progress display.

    Modes:
        "steps"   halo spinner, checkmark/cross per step on new lines
        "plain"   just print each message (non-TTY or --debug)
    """

    def __init__(self, mode="steps"):
        self._mode = mode
        self._spinner = None

    def update(self, message):
        if self._mode == "steps":
            if self._spinner:
                self._spinner.succeed()
            self._spinner = halo.Halo(text=message, spinner="bouncingBar")
            self._spinner.start()
        else:
            print(message)

    def finish(self):
        if self._spinner:
            self._spinner.succeed()
            self._spinner = None

    def fail(self, message=None):
        if self._spinner:
            self._spinner.fail(message)
            self._spinner = None
        else:
            print(message or "Failed")


def _progress_mode(ctx):
    if ctx.obj.get("debug") or not sys.stderr.isatty():
        return "plain"
    return "steps"


def _configure_logging(debug: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if debug else "WARNING")


def _config(ctx):
    try:
        return load_config(ctx.obj.get("config_path"))
    except PsmError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)


def _manager(ctx) -> ServerManager:
    config = _config(ctx)
    try:
        return ServerManager(config)
    except PsmError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)


def _run(ctx, work, on_progress=True):
    """Run an async verb, mapping failures to exit codes."""
    progress = StepProgress(mode=_progress_mode(ctx)) if on_progress else None
    try:
        result = asyncio.run(work(progress.update if progress else None))
        if progress:
            progress.finish()
        return result
    except KeyboardInterrupt:
        if progress:
            progress.fail("Interrupted")
        console.print("\n[yellow]Interrupted.[/]")
        raise SystemExit(130)
    except (PsmError, ValueError) as e:
        if progress:
            progress.fail(str(e))
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)


def _complete_slot(ctx, param, incomplete):
    try:
        config = load_config(ctx.find_root().params.get("config_path"))
        records = SlotState(state_dir=config.state_dir, slots=config.slots).list_all()
    except PsmError:
        return []
    return [
        CompletionItem(r.name, help=f"{r.instance_class} - {r.status}")
        for r in records
        if r.name.startswith(incomplete)
    ]


class HelpfulCommand(click.Command):
    """Show full help text when a command is invoked incorrectly."""

    def parse_args(self, ctx, args):
        try:
            return super().parse_args(ctx, args)
        except click.UsageError as e:
            click.echo(ctx.get_help())
            click.echo()
            console.print(f"[bold red]Error:[/] {e.format_message()}")
            ctx.exit(2)


class HelpfulGroup(click.Group):
    command_class = HelpfulCommand


@click.group(cls=HelpfulGroup)
@click.version_option(version="0.1.0", prog_name="psm")
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.option("--debug", is_flag=True, help="Show SSH commands and discarded quotes")
@click.pass_context
def cli(ctx, config_path, debug):
    """Pal Server Manager - run a game server on spot instances only while needed."""
    _configure_logging(debug)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("shell", type=click.Choice(["bash", "zsh", "fish"]))
def completion(shell):
    """Generate shell completion script."""
    from click.shell_completion import get_completion_class
    comp_cls = get_completion_class(shell)
    comp = comp_cls(cli, {}, "psm", "_PSM_COMPLETE")
    click.echo(comp.source())


@cli.command()
@click.option("--force", is_flag=True, help="Overwrite an existing config and scripts")
@click.pass_context
def init(ctx, force):
    """Write a default config and seed the bundled scripts."""
    path = resolve_config_path(ctx.obj.get("config_path"))
    if path.exists() and not force:
        console.print(f"Config already exists at {path} (use --force to overwrite)")
    else:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(default_config())
        console.print(f"[green]Wrote {path}[/]")

    written = seed_scripts(_config(ctx).storage.local_dir, overwrite=force)
    for target in written:
        console.print(f"[green]Wrote {target}[/]")
    if not written:
        console.print("Scripts already present.")


@cli.command()
@click.argument("name", required=False, default=None, shell_complete=_complete_slot)
@click.pass_context
def status(ctx, name):
    """Show the status of one slot or all of them."""
    manager = _manager(ctx)
    try:
        click.echo(manager.status(name))
    except PsmError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise SystemExit(1)


@cli.command()
@click.argument("name", shell_complete=_complete_slot)
@click.pass_context
def start(ctx, name):
    """Provision an instance for a slot and start its server."""
    manager = _manager(ctx)
    record = _run(ctx, lambda notify: manager.start(name, on_status=notify))
    lines = [
        f"[bold]Slot:[/]       {record.name}",
        f"[bold]Endpoint:[/]   {record.endpoint}",
        f"[bold]Instance:[/]   {record.instance_id}",
        f"[bold]Region:[/]     {record.region}",
    ]
    if record.save_name:
        lines.append(f"[bold]Save:[/]       {record.save_name}")
    console.print(Panel("\n".join(lines), title="[green]Server Running[/]", border_style="green"))


@cli.command()
@click.argument("name", shell_complete=_complete_slot)
@click.pass_context
def stop(ctx, name):
    """Back up a slot's save and terminate its instance."""
    manager = _manager(ctx)
    record = _run(ctx, lambda notify: manager.stop(name, on_status=notify))
    console.print(f"[green]Slot {record.name} stopped. Save: {record.save_name}[/]")


@cli.command()
@click.argument("instance_class")
@click.pass_context
def price(ctx, instance_class):
    """Find the cheapest spot offer for an instance class."""
    manager = _manager(ctx)
    quote = _run(ctx, lambda notify: manager.price(instance_class), on_progress=False)

    table = Table(title=f"Cheapest {instance_class}")
    table.add_column("Region", style="cyan")
    table.add_column("Zone", style="green")
    table.add_column("Instance Type", style="magenta")
    table.add_column("Hourly", style="yellow")
    table.add_column("Bandwidth /GB")
    table.add_row(
        quote.region, quote.zone, quote.instance_type,
        f"${quote.hourly_price:.4f}", f"${quote.bandwidth_price:.2f}",
    )
    console.print(table)


@cli.command()
@click.pass_context
def classes(ctx):
    """List known instance classes."""
    manager = _manager(ctx)
    table = Table(title="Instance Classes")
    table.add_column("Name", style="cyan")
    table.add_column("vCPUs", style="green")
    table.add_column("Memory", style="yellow")
    table.add_column("Instance Types", style="magenta")
    for c in manager.classes():
        table.add_row(c.name, str(c.vcpus), f"{c.memory_gib} GiB", ", ".join(c.instance_types))
    console.print(table)


@cli.command()
@click.argument("name", shell_complete=_complete_slot)
@click.argument("cidr")
@click.option("--port", "-p", default=None, type=int, help="Port to open (default: tunnel_port)")
@click.pass_context
def allow(ctx, name, cidr, port):
    """Open the tunnel port to CIDR on the slot's security groups."""
    manager = _manager(ctx)
    added = _run(ctx, lambda notify: manager.allow(name, cidr, port=port), on_progress=False)
    if added:
        console.print(f"[green]Rule added to {', '.join(added)}[/]")
    else:
        console.print("Rule already present.")


@cli.command()
@click.argument("name", shell_complete=_complete_slot)
@click.pass_context
def rules(ctx, name):
    """List ingress rules on the slot's security groups."""
    manager = _manager(ctx)
    found = _run(ctx, lambda notify: manager.rules(name), on_progress=False)
    if not found:
        console.print("No ingress rules.")
        return

    table = Table(title=f"Ingress rules for {name}")
    table.add_column("Group", style="cyan")
    table.add_column("Protocol")
    table.add_column("Ports", style="magenta")
    table.add_column("CIDR", style="green")
    table.add_column("Description", style="dim")
    for r in found:
        if r["from_port"] is None:
            ports = "all"
        elif r["from_port"] == r["to_port"]:
            ports = str(r["from_port"])
        else:
            ports = f"{r['from_port']}-{r['to_port']}"
        table.add_row(r["group_id"], r["protocol"], ports, r["cidr"], r["description"] or "")
    console.print(table)
