#!/usr/bin/env python3
"""
NetGrab CLI - Command Line Interface
One sub-command per registered scan module, options generated from the
module's flags
"""

import asyncio
import dataclasses
import itertools
import logging
import sys
from typing import Any, Dict, List

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from netgrab.core.registry import CommandRegistry, ScanCommand, build_registry
from netgrab.core.runner import ScanRunner
from netgrab.core.status import ConfigurationError, ScanStatus
from netgrab.core.target import iter_targets
from netgrab.utils.output import OutputFormatter

# stdout carries the JSON lines
console = Console(stderr=True)
logger = logging.getLogger(__name__)

CLICK_TYPES = {
    int: click.INT,
    float: click.FLOAT,
    str: click.STRING,
}


def setup_logging(verbose: int):
    """Setup logging based on verbosity level"""
    if verbose == 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=sys.stderr
    )


def display_banner():
    """Display NetGrab banner"""
    banner = """
    ╔╗╔╔═╗╔╦╗╔═╗╦═╗╔═╗╔╗
    ║║║║╣  ║ ║ ╦╠╦╝╠═╣╠╩╗
    ╝╚╝╚═╝ ╩ ╚═╝╩╚═╩ ╩╚═╝
    Pluggable Banner Grabber
    """
    console.print(Panel(banner, style="bold blue"))


def display_summary(formatter: OutputFormatter, elapsed: float):
    """Display per-status counts in a table"""
    table = Table(title=f"[bold]Scan Complete[/bold] ({formatter.total} targets, {elapsed:.2f}s)")
    table.add_column("Module", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Count", justify="right")

    for name, counts in formatter.status_counts().items():
        for status, count in sorted(counts.items()):
            style = "green" if status == ScanStatus.SUCCESS.value else "yellow"
            table.add_row(name, f"[{style}]{status}[/{style}]", str(count))

    console.print(table)


def flag_options(flags: Any) -> List[click.Option]:
    """click options for every flag declared on a flags dataclass"""
    options = []
    for f in dataclasses.fields(flags):
        name = f.metadata.get("flag")
        if name is None:
            continue
        default = getattr(flags, f.name)
        help_text = f.metadata.get("help", "")
        if f.type is bool:
            options.append(click.Option([f"--{name}", f.name], is_flag=True, default=default, help=help_text))
        else:
            options.append(click.Option(
                [f"--{name}", f.name], type=CLICK_TYPES.get(f.type, click.STRING),
                default=default, show_default=True, help=help_text
            ))
    return options


def apply_flag_values(flags: Any, values: Dict[str, Any]) -> Any:
    for f in dataclasses.fields(flags):
        if f.name in values:
            setattr(flags, f.name, values[f.name])
    return flags


def run_command(ctx: click.Context, command: ScanCommand, targets: List[str], values: Dict[str, Any]):
    """Configure one module from its options and scan every target"""
    options = ctx.obj

    flags = apply_flag_values(command.new_flags(), values)
    try:
        scanner = command.new_scanner(flags, list(targets))
    except ConfigurationError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        logger.error(f"Invalid configuration for {command.name}: {e}")
        ctx.exit(1)

    if not targets and options['input_file'] is None:
        console.print("[bold red]Error:[/bold red] No targets specified")
        ctx.exit(1)

    # Parsed lazily, as the runner pulls targets
    lines = itertools.chain(targets, options['input_file'] or ())
    formatter = OutputFormatter(options['output_file'], options['output_normal'])
    runner = ScanRunner(command, scanner, options['senders'])
    try:
        asyncio.run(runner.run(iter_targets(lines), on_grab=formatter.add))
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] bad target: {e}")
        ctx.exit(1)
    except KeyboardInterrupt:
        console.print("\n[bold red]Scan interrupted by user[/bold red]")
        sys.exit(1)
    finally:
        formatter.close()

    if runner.scanned == 0:
        console.print("[yellow]Warning:[/yellow] no targets were scanned")

    if options['summary']:
        display_summary(formatter, runner.end_time - runner.start_time)


def make_command(command: ScanCommand) -> click.Command:
    """Build the click sub-command for one registered module"""

    @click.pass_context
    def callback(ctx, targets, **values):
        run_command(ctx, command, targets, values)

    flags = command.new_flags()
    params = flag_options(flags)
    params.append(click.Argument(['targets'], nargs=-1))
    return click.Command(
        command.name,
        callback=callback,
        params=params,
        help=f"{command.description}\n\nTargets are \"ip, domain, tag, port\" lines or plain addresses, names and CIDR blocks.",
        epilog=flags.help() or None,
        short_help=command.label,
    )


def create_cli(registry: CommandRegistry) -> click.Group:
    """The netgrab command group, one sub-command per registered module"""

    @click.group()
    @click.option('--senders', type=int, default=1000, show_default=True,
                  help='Number of concurrent scans')
    @click.option('-f', '--input-file', type=click.File('r'), default=None,
                  help='Read targets from this file, one per line ("-" for stdin)')
    @click.option('-o', '--output-file', type=click.File('w'), default='-',
                  help='Write JSON lines to this file ("-" for stdout)')
    @click.option('-oN', '--output-normal', type=click.File('w'), default=None,
                  help='Also write a human-readable report to this file')
    @click.option('--summary/--no-summary', default=True, help='Print a status summary when the scan ends')
    @click.option('-v', '--verbose', count=True, help='Increase verbosity level')
    @click.pass_context
    def cli(ctx, senders, input_file, output_file, output_normal, summary, verbose):
        """
        NetGrab - Pluggable Banner Grabber

        Examples:
          netgrab banner --port 22 192.168.1.0/24
          netgrab banner --probe 'HEAD / HTTP/1.0\\r\\n\\r\\n' --pattern '^HTTP' example.com
          netgrab tls --filter-sha256 <hex> -f targets.csv
        """
        if senders < 1:
            raise click.BadParameter("must be at least 1", param_hint="--senders")
        if summary:
            display_banner()
        setup_logging(verbose)
        ctx.obj = {
            'senders': senders,
            'input_file': input_file,
            'output_file': output_file,
            'output_normal': output_normal,
            'summary': summary,
        }

    for command in registry:
        cli.add_command(make_command(command))
    return cli


def main():
    create_cli(build_registry())()


if __name__ == '__main__':
    main()
