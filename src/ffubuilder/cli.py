#!/usr/bin/env python3
"""
ffubuilder CLI - build, validate and inspect FFU builds from the command line.
"""

import argparse
import sys
import time
from pathlib import Path
from typing import List, Optional

import pydantic
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from ffubuilder import __version__
from ffubuilder.backends.subprocess_runner import SubprocessRunner
from ffubuilder.config import BuildDefinition, BuildSettings
from ffubuilder.controller import BuildController, BuildReport
from ffubuilder.exceptions import ProviderUnavailableError
from ffubuilder.imaging import DismImagingTool
from ffubuilder.interfaces.process import ProcessRunner
from ffubuilder.logging import configure_logging
from ffubuilder.messaging import BuildMessage, BuildState, ChannelOptions, MessageLevel, new_channel
from ffubuilder.orchestrator import BuildOrchestrator
from ffubuilder.providers import provider_availability, select_provider
from ffubuilder.steps import BuildSteps, apply_base_image_step, guest_capture_step, inject_drivers_step

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_VALIDATION = 2
EXIT_PROVIDER_UNAVAILABLE = 3
EXIT_CANCELLED = 130

console = Console()

MESSAGE_STYLES = {
    MessageLevel.DEBUG: "dim",
    MessageLevel.INFO: "",
    MessageLevel.SUCCESS: "green",
    MessageLevel.WARNING: "yellow",
    MessageLevel.ERROR: "red",
    MessageLevel.CRITICAL: "bold red",
}


def _load_inputs(args):
    """Load settings and the build definition; returns (settings, definition) or an exit code."""
    try:
        settings = BuildSettings.load(Path(args.settings) if args.settings else None)
        definition = BuildDefinition.load(Path(args.config))
    except FileNotFoundError as e:
        console.print(f"[red]❌ {e}[/]")
        return EXIT_VALIDATION
    except pydantic.ValidationError as e:
        console.print(f"[red]❌ Invalid configuration:[/]\n{e}")
        return EXIT_VALIDATION
    return settings, definition


def _provider_name(args, definition: BuildDefinition) -> str:
    return args.provider or definition.provider


def build_steps(args, definition: BuildDefinition, imaging: DismImagingTool) -> BuildSteps:
    """Wire the stock steps selected on the command line."""
    steps = BuildSteps()
    if definition.wim_path is not None:
        steps.apply_base_image = apply_base_image_step(imaging, definition.wim_path, definition.wim_index)
    if getattr(args, "drivers", None):
        steps.inject_drivers = inject_drivers_step(
            imaging, Path(args.drivers), definition.work_dir / "mount"
        )
    if getattr(args, "capture_iso", None):
        steps.capture_in_guest = guest_capture_step(
            Path(args.capture_iso), definition.work_dir / "capture"
        )
    return steps


def exit_code_for(report: BuildReport) -> int:
    if report.state == BuildState.COMPLETED:
        return EXIT_OK
    if report.state == BuildState.CANCELLED:
        return EXIT_CANCELLED
    error_type = report.result.error_type if report.result else None
    if error_type == "ValidationError":
        return EXIT_VALIDATION
    if error_type == "ProviderUnavailableError":
        return EXIT_PROVIDER_UNAVAILABLE
    return EXIT_FAILED


def _render(messages: List[BuildMessage], progress: Progress, task_id, verbose: bool) -> None:
    for message in messages:
        if message.level == MessageLevel.PROGRESS:
            progress.update(task_id, completed=message.percent or 0, description=message.text)
            continue
        if message.level == MessageLevel.DEBUG and not verbose:
            continue
        style = MESSAGE_STYLES.get(message.level, "")
        text = f"[{style}]{message.text}[/]" if style else message.text
        progress.console.print(f"[dim]{message.timestamp:%H:%M:%S}[/] {text}")


def run_build(controller: BuildController, grace_period: float, verbose: bool = False) -> BuildReport:
    """Drive the controller until the build ends, rendering channel messages."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>5.1f}%"),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task_id = progress.add_task("Starting", total=100)
        controller.start()
        try:
            while controller.is_running():
                _render(controller.poll(), progress, task_id, verbose)
                time.sleep(controller.poll_interval)
            report = controller.report()
        except KeyboardInterrupt:
            progress.console.print("\n[yellow]Cancelling build, cleaning up...[/]")
            report = controller.cancel_and_wait(grace_period)
        _render(controller.poll(max_messages=controller.channel.pending_count() + 1), progress, task_id, verbose)
    return report


def print_report(report: BuildReport) -> None:
    if report.succeeded:
        output = report.result.output_path if report.result else None
        console.print(f"[green]✅ Build completed: {output}[/]")
    elif report.state == BuildState.CANCELLED:
        console.print("[yellow]Build cancelled.[/]")
    else:
        phase = report.failed_phase.value if report.failed_phase else "startup"
        console.print(f"[red]❌ Build failed during {phase}: {report.error}[/]")

    if report.leftovers:
        console.print("[yellow]⚠️  These resources could not be removed:[/]")
        for leftover in report.leftovers:
            console.print(f"  • {leftover}")
    if report.forced:
        console.print("[yellow]Child processes were terminated after the grace period.[/]")


def cmd_build(args, runner: Optional[ProcessRunner] = None) -> int:
    """Run a build."""
    loaded = _load_inputs(args)
    if isinstance(loaded, int):
        return loaded
    settings, definition = loaded
    runner = runner or SubprocessRunner()

    try:
        provider = select_provider(_provider_name(args, definition), settings, runner)
    except ProviderUnavailableError as e:
        console.print(f"[red]❌ {e}[/]")
        return EXIT_PROVIDER_UNAVAILABLE

    mirror = bool(getattr(args, "log_file", None))
    channel = new_channel(ChannelOptions(capacity=settings.channel_capacity, mirror_to_log=mirror))
    imaging = DismImagingTool(runner, settings)
    orchestrator = BuildOrchestrator(
        provider,
        channel,
        settings,
        definition,
        steps=build_steps(args, definition, imaging),
        imaging=imaging,
        runner=runner,
    )
    controller = BuildController(orchestrator, channel, runner, poll_hz=settings.poll_hz)

    console.print(f"[cyan]🔨 Building '{definition.name}' with {provider.name}[/]")
    report = run_build(controller, settings.cancel_grace_period, verbose=getattr(args, "verbose", False))
    print_report(report)
    return exit_code_for(report)


def cmd_validate(args, runner: Optional[ProcessRunner] = None) -> int:
    """Validate a build definition against a provider without creating anything."""
    loaded = _load_inputs(args)
    if isinstance(loaded, int):
        return loaded
    settings, definition = loaded
    runner = runner or SubprocessRunner()

    try:
        provider = select_provider(_provider_name(args, definition), settings, runner)
    except ProviderUnavailableError as e:
        console.print(f"[red]❌ {e}[/]")
        return EXIT_PROVIDER_UNAVAILABLE

    result = provider.validate_configuration(definition.to_vm_configuration())
    for warning in result.warnings:
        console.print(f"[yellow]⚠️  {warning}[/]")
    for error in result.errors:
        console.print(f"[red]❌ {error}[/]")
    if not result.is_valid:
        return EXIT_VALIDATION
    console.print(f"[green]✅ '{definition.name}' is valid for {provider.name}[/]")
    return EXIT_OK


def cmd_providers(args, runner: Optional[ProcessRunner] = None) -> int:
    """List providers and whether they are usable on this host."""
    settings = BuildSettings.load(Path(args.settings) if args.settings else None)
    runner = runner or SubprocessRunner()

    table = Table(title="Hypervisor Providers", border_style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Available")
    for name, available in provider_availability(settings, runner):
        table.add_row(name, "[green]yes[/]" if available else "[dim]no[/]")
    console.print(table)
    return EXIT_OK


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ffubuilder", description="Build Windows FFU images on Hyper-V or VMware Workstation"
    )
    parser.add_argument("--version", action="version", version=f"ffubuilder {__version__}")
    parser.add_argument("--settings", help="Host settings YAML (default: $FFUBUILDER_SETTINGS)")
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")
    parser.add_argument("--json-logs", action="store_true", help="Render console logs as JSON")
    parser.add_argument("--log-file", help="Also write JSON logs to this file")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    build_parser = subparsers.add_parser("build", help="Build an FFU image")
    build_parser.add_argument("-c", "--config", default=".", help="Build definition YAML or directory")
    build_parser.add_argument("--provider", choices=["auto", "hyperv", "workstation"])
    build_parser.add_argument("--drivers", help="Driver folder injected into the captured image")
    build_parser.add_argument("--capture-iso", help="Capture media for in-guest capture")
    build_parser.add_argument("-v", "--verbose", action="store_true", help="Show debug messages")
    build_parser.set_defaults(func=cmd_build)

    validate_parser = subparsers.add_parser("validate", help="Validate a build definition")
    validate_parser.add_argument("-c", "--config", default=".", help="Build definition YAML or directory")
    validate_parser.add_argument("--provider", choices=["auto", "hyperv", "workstation"])
    validate_parser.set_defaults(func=cmd_validate)

    providers_parser = subparsers.add_parser("providers", help="Show available hypervisor providers")
    providers_parser.set_defaults(func=cmd_providers)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(EXIT_VALIDATION)

    try:
        configure_logging(
            level=args.log_level,
            json_output=args.json_logs,
            log_file=Path(args.log_file) if args.log_file else None,
        )
    except ValueError as e:
        console.print(f"[red]❌ {e}[/]")
        sys.exit(EXIT_VALIDATION)
    try:
        sys.exit(args.func(args))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/]")
        sys.exit(EXIT_CANCELLED)


if __name__ == "__main__":
    main()
