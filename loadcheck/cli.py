"""Command-line interface for loadcheck."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from rich.console import Console
from rich.live import Live
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .core.client import TargetClient
from .core.config import HarnessSettings, Level
from .core.dashboard import LoadDashboard
from .core.monitor import ResourceMonitor
from .core.observers import CompositeLoadObserver, LoggingLoadObserver
from .core.presets import PRESETS, PRESET_MODES, get_preset, preset_mode
from .core.provision import check_target_health, generate_credentials, provision_users
from .core.report import RunReport
from .core.scheduler import LoadPlan, RunMode
from .utils.errors import HarnessFault


console = Console()
# logs and the live dashboard; stdout carries only the report
err_console = Console(stderr=True)

COMMANDS = ("run", "provision", "presets")

EXIT_OK = 0
EXIT_CLAIMS_FAILED = 1
EXIT_HARNESS_FAULT = 2

# CLI flag -> HarnessSettings field
RUN_OVERRIDES = {
    "base_url": "base_url",
    "users": "population",
    "api_calls": "api_calls_per_actor",
    "messages": "messages_per_actor",
    "timeout_ms": "call_timeout_ms",
    "socket_timeout_ms": "channel_timeout_ms",
    "socket_retries": "channel_retries",
    "min_success_rate": "min_success_rate_percent",
    "max_p95_ms": "max_p95_latency_ms",
    "min_throughput": "min_throughput_per_second",
    "auth_fraction": "auth_fraction",
    "batch_size": "ramp_up_batch_size",
    "ramp_interval_ms": "ramp_up_interval_ms",
    "cooldown": "cooldown_seconds",
    "level_timeout": "level_timeout_seconds",
    "endpoints": "endpoints",
}


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=verbose)],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loadcheck",
        description="Load-test an HTTP + Socket.IO backend and verify its capacity claims",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Fixed-load burst with 50 users, 100 calls and 50 messages each
  loadcheck run --users 50 --api-calls 100 --messages 50

  # Progressive ramp that stops at the first failing level
  loadcheck run --preset progressive --output report.json

  # Custom progressive ladder
  loadcheck run --mode progressive --users 10,20,50 --api-calls 20

  # CI gate with stricter thresholds and JSON on stdout
  loadcheck run --preset quick --min-success-rate 95 --max-p95-ms 300 --json

  # Create the load-test accounts
  loadcheck provision --count 100
        """,
    )
    parser.add_argument("--version", action="version", version=f"loadcheck {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Run a load test (default command)")
    run.add_argument("--mode", choices=[m.value for m in RunMode], help="burst (single fixed load) or progressive ramp")
    run.add_argument("--preset", help=f"Named workload ({', '.join(sorted(PRESETS))})")
    run.add_argument(
        "--users",
        type=_population_list,
        help="Concurrent virtual users; a comma-separated list (10,20,50) builds a progressive ladder",
    )
    run.add_argument("--api-calls", type=int, help="API calls per user")
    run.add_argument("--messages", type=int, help="Real-time messages per user")
    run.add_argument("--timeout-ms", type=float, help="Per-call HTTP timeout in milliseconds")
    run.add_argument("--socket-timeout-ms", type=float, help="Channel connect timeout in milliseconds")
    run.add_argument("--socket-retries", type=int, help="Channel connect retries")
    run.add_argument("--min-success-rate", type=float, help="Minimum API success rate (percent)")
    run.add_argument("--max-p95-ms", type=float, help="Maximum p95 API latency in milliseconds")
    run.add_argument("--min-throughput", type=float, help="Minimum API throughput (requests/second)")
    run.add_argument("--auth-fraction", type=float, help="Fraction of users that must authenticate (0-1)")
    run.add_argument("--batch-size", type=int, help="Users started per ramp-up batch")
    run.add_argument("--ramp-interval-ms", type=float, help="Delay between ramp-up batches in milliseconds")
    run.add_argument("--cooldown", type=float, help="Seconds to wait between progressive levels")
    run.add_argument("--level-timeout", type=float, help="Abandon a level after this many seconds")
    run.add_argument("--base-url", help="Base URL of the target")
    run.add_argument("--endpoints", help="Comma-separated API endpoints to rotate through")
    run.add_argument("--output", help="Save the report (.json or .csv)")
    run.add_argument("--json", action="store_true", help="Print the report as JSON instead of the summary panel")
    run.add_argument("--no-progress", action="store_true", help="Disable the live dashboard")
    run.add_argument("--skip-health-check", action="store_true", help="Do not probe the health endpoint first")
    run.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    provision = subparsers.add_parser("provision", help="Create the load-test accounts")
    provision.add_argument("--count", type=int, help="Number of accounts (defaults to the configured population)")
    provision.add_argument("--base-url", help="Base URL of the target")
    provision.add_argument("--concurrency", type=int, default=10, help="Parallel registrations")
    provision.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers.add_parser("presets", help="List named workloads")
    return parser


def _population_list(value: str) -> List[int]:
    try:
        populations = [int(part) for part in value.split(",") if part.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer or comma-separated integers, got {value!r}")
    if not populations:
        raise argparse.ArgumentTypeError("at least one population is required")
    return populations


def settings_from_args(args: argparse.Namespace) -> HarnessSettings:
    overrides: Dict[str, Any] = {}
    for flag, field_name in RUN_OVERRIDES.items():
        value = getattr(args, flag, None)
        if value is not None:
            overrides[field_name] = value
    if "population" in overrides:
        overrides["population"] = max(overrides["population"])
    return HarnessSettings.load(**overrides)


def resolve_levels(args: argparse.Namespace, settings: HarnessSettings) -> Tuple[List[Level], str]:
    """Levels and run mode selected by ``--preset`` / ``--mode`` and the workload flags."""
    workload = any(getattr(args, flag) is not None for flag in ("users", "api_calls", "messages"))
    if args.preset:
        if workload:
            raise HarnessFault("--users/--api-calls/--messages cannot be combined with --preset")
        return get_preset(args.preset), args.mode or preset_mode(args.preset)

    mode = args.mode or RunMode.BURST.value
    if mode == RunMode.PROGRESSIVE.value:
        if not workload:
            return get_preset("progressive"), mode
        if args.users is None:
            raise HarnessFault("--mode progressive with --api-calls/--messages also needs --users, e.g. --users 10,20,50")
        levels = [
            Level(f"LEVEL_{i}", population, settings.api_calls_per_actor, settings.messages_per_actor)
            for i, population in enumerate(args.users, 1)
        ]
        return levels, mode

    if args.users is not None and len(args.users) > 1:
        raise HarnessFault("--mode burst takes a single --users value; add --mode progressive for a ladder")
    return [settings.burst_level()], mode


async def run_command(args: argparse.Namespace) -> int:
    settings = settings_from_args(args)
    levels, mode = resolve_levels(args, settings)

    if not args.skip_health_check:
        async with TargetClient(settings.client_config()) as client:
            await check_target_health(client)

    show_dashboard = not args.no_progress and not args.json
    dashboard = LoadDashboard(enabled=show_dashboard, console=err_console)
    observer = CompositeLoadObserver([LoggingLoadObserver(), dashboard if show_dashboard else None])
    plan = LoadPlan(
        settings,
        observer=observer,
        monitor=ResourceMonitor(interval=settings.monitor_interval_seconds),
    )

    if show_dashboard:
        with Live(dashboard.render(), console=err_console, refresh_per_second=4) as live:
            dashboard.bind(live)
            report = await plan.run(levels, mode)
    else:
        report = await plan.run(levels, mode)

    _emit(report, args)
    return EXIT_OK if report.all_claims_verified else EXIT_CLAIMS_FAILED


def _emit(report: RunReport, args: argparse.Namespace) -> None:
    if args.json:
        sys.stdout.write(report.to_json() + "\n")
    else:
        report.print_summary()
    if args.output:
        if Path(args.output).suffix.lower() == ".csv":
            report.save_csv(args.output)
        else:
            report.save_json(args.output)


async def provision_command(args: argparse.Namespace) -> int:
    settings = HarnessSettings.load(base_url=args.base_url)
    count = args.count if args.count is not None else settings.population
    credentials = generate_credentials(count, settings.credential_template, settings.credential_password)
    async with TargetClient(settings.client_config()) as client:
        summary = await provision_users(client, credentials, max_concurrency=args.concurrency)
    console.print(
        f"[green]{len(summary.created)} created[/green], "
        f"[blue]{len(summary.existing)} already existed[/blue], "
        f"[red]{len(summary.failed)} failed[/red]"
    )
    return EXIT_OK if not summary.failed else EXIT_CLAIMS_FAILED


def presets_command() -> int:
    table = Table(title="Presets", header_style="bold")
    table.add_column("Name", style="cyan")
    table.add_column("Mode")
    table.add_column("Levels (users x calls x messages)")
    for name in sorted(PRESETS):
        levels = ", ".join(
            f"{lvl.name} {lvl.population}x{lvl.api_calls_per_actor}x{lvl.messages_per_actor}" for lvl in PRESETS[name]
        )
        table.add_row(name, PRESET_MODES.get(name, "burst"), levels)
    console.print(table)
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> None:
    """Main CLI entry point."""
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] not in COMMANDS + ("-h", "--help", "--version"):
        argv.insert(0, "run")
    args = build_parser().parse_args(argv)

    if Path(".env").exists():
        load_dotenv()
    configure_logging(getattr(args, "verbose", False))

    try:
        if args.command == "presets":
            code = presets_command()
        elif args.command == "provision":
            code = asyncio.run(provision_command(args))
        else:
            code = asyncio.run(run_command(args))
    except KeyboardInterrupt:
        console.print("\n[yellow]Load test interrupted by user[/yellow]")
        code = EXIT_CLAIMS_FAILED
    except HarnessFault as e:
        console.print(f"[red]Error: {e}[/red]")
        code = EXIT_HARNESS_FAULT
    sys.exit(code)


if __name__ == "__main__":
    main()
