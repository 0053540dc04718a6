"""
Command-line interface for the hosts aggregator.

Commands:
- aggregate: Run one aggregation pass and write the unified hosts file
- export: Print or save the unified list (hosts or Adblock Plus) for the stored host set
- serve: Run the HTTP API with uvicorn
- sources: List, add, remove, enable or disable sources
- health: Show (or refresh) source health
- config: Configuration management
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

import uvicorn

from . import __version__
from .audit_logger import AuditLogger
from .config import (
    DEFAULT_HOME,
    AppConfig,
    create_default_config,
    load_config,
    load_config_from_file,
    save_config_to_file,
    validate_config,
)
from .enums import LogLevel, OutputFormat, PassStatus
from .exceptions import HostsAggregatorError
from .models import Source
from .service import AggregatorService


DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.json"


def _load(args: argparse.Namespace) -> Optional[AppConfig]:
    config_path = Path(args.config) if args.config else DEFAULT_CONFIG_PATH
    try:
        config = load_config(config_path)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return None
    if getattr(args, "verbose", False):
        config.logging.level = LogLevel.DEBUG.value
    return config


def _build_service(config: AppConfig) -> Optional[AggregatorService]:
    # One-shot commands exit before a background pass could finish
    config.schedule.auto_aggregate_on_change = False
    logger = AuditLogger.from_config(config.logging)
    service = AggregatorService(config, logger=logger)
    try:
        service.load()
    except HostsAggregatorError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return None
    return service


def _resolve_source(service: AggregatorService, ref: str) -> Source:
    """Find a source by id or by name."""
    source = service.store.get_source(ref) or service.store.find_source_by_name(ref)
    if source is None:
        return service.get_source(ref)
    return source


def _print_result(result) -> None:
    print(f"Aggregation {result.status.value} ({result.triggered_by.value})")
    print(f"  Sources: {result.successful_sources}/{result.total_sources} successful, "
          f"{result.failed_sources} failed")
    print(f"  Entries: {result.total_entries} total, {result.unique_entries} unique, "
          f"{result.duplicates_removed} duplicates removed, {result.new_entries} new")
    print(f"  Block: {result.block_entries}  Allow: {result.allow_entries}")
    print(f"  Time: {result.processing_time_ms:.0f} ms")
    for contribution in result.sources:
        line = (f"    - {contribution.source_name or contribution.source_id}: "
                f"{contribution.fetch_status.value}, {contribution.entries_contributed} entries")
        if contribution.error_message:
            line += f" ({contribution.error_message})"
        print(line)
    if result.file_path:
        print(f"  File: {result.file_path} ({result.file_size_bytes} bytes)")
    if result.message:
        print(f"  Message: {result.message}")


async def _run_aggregate(service: AggregatorService) -> int:
    try:
        result = await service.aggregate()
    except HostsAggregatorError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        latest = service.store.latest_result()
        if latest is not None:
            _print_result(latest)
        return 1
    finally:
        await service.close()
    _print_result(result)
    return 0 if result.status == PassStatus.COMPLETED else 1


def cmd_aggregate(args: argparse.Namespace) -> int:
    """Handle the 'aggregate' command."""
    config = _load(args)
    if config is None:
        return 1
    service = _build_service(config)
    if service is None:
        return 1
    return asyncio.run(_run_aggregate(service))


def cmd_export(args: argparse.Namespace) -> int:
    """Handle the 'export' command."""
    config = _load(args)
    if config is None:
        return 1
    service = _build_service(config)
    if service is None:
        return 1
    content = service.render_unified(OutputFormat(args.format))
    if args.output:
        output = Path(args.output)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(content, encoding="utf-8", newline="\n")
        print(f"Wrote {output}")
    else:
        sys.stdout.write(content)
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Handle the 'serve' command."""
    from .api import create_app

    config = _load(args)
    if config is None:
        return 1
    host = args.host or config.server.host
    port = args.port or config.server.port
    app = create_app(config)
    uvicorn.run(app, host=host, port=port, log_level=config.logging.level.replace("warn", "warning"))
    return 0


async def _sources_action(service: AggregatorService, args: argparse.Namespace) -> int:
    try:
        if args.action == "list":
            sources = service.list_sources()
            if not sources:
                print("No sources registered.")
            for source in sources:
                state = "enabled" if source.enabled else "disabled"
                print(f"{source.id}  {source.name}  [{state}]  {source.url}  "
                      f"last={source.last_fetch_status or '-'} hosts={source.host_count}")
            return 0

        if args.action == "add":
            if not args.name or not args.url:
                print("Error: 'sources add' needs NAME and URL", file=sys.stderr)
                return 1
            source = await service.create_source(args.name, args.url, enabled=not args.disabled)
            print(f"Added source {source.name} ({source.id})")
            return 0

        if not args.name:
            print(f"Error: 'sources {args.action}' needs a source id or name", file=sys.stderr)
            return 1
        source = _resolve_source(service, args.name)

        if args.action == "remove":
            await service.delete_source(source.id)
            print(f"Removed source {source.name}")
        elif args.action in ("enable", "disable"):
            await service.update_source(source.id, enabled=args.action == "enable")
            print(f"Source {source.name} {args.action}d")
        return 0
    except HostsAggregatorError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    finally:
        await service.close()


def cmd_sources(args: argparse.Namespace) -> int:
    """Handle the 'sources' command."""
    config = _load(args)
    if config is None:
        return 1
    service = _build_service(config)
    if service is None:
        return 1
    return asyncio.run(_sources_action(service, args))


async def _health(service: AggregatorService, check: bool) -> int:
    try:
        report = await service.check_all() if check else service.health_report()
    finally:
        await service.close()
    print(f"Sources: {report.total_sources}  healthy: {report.healthy_sources}  "
          f"unhealthy: {report.unhealthy_sources}  unknown: {report.unknown_sources}")
    for health in report.sources:
        source = service.store.get_source(health.source_id)
        name = source.name if source else health.source_id
        line = f"  {name}: {health.status.value}, failures={health.consecutive_failures}"
        if health.error_message:
            line += f" ({health.error_message})"
        print(line)
    return 0 if report.unhealthy_sources == 0 else 1


def cmd_health(args: argparse.Namespace) -> int:
    """Handle the 'health' command."""
    config = _load(args)
    if config is None:
        return 1
    service = _build_service(config)
    if service is None:
        return 1
    return asyncio.run(_health(service, args.check))


def cmd_config(args: argparse.Namespace) -> int:
    """Handle the 'config' command."""
    config_path = Path(args.path) if args.path else DEFAULT_CONFIG_PATH

    if args.action == "show":
        config = load_config_from_file(config_path)
        if config is None:
            print(f"No configuration found at: {config_path}")
            print("Use 'config init' to create a default configuration.")
            return 1

        print(f"Configuration from: {config_path}")
        print(f"  Fetch timeout: {config.fetch.timeout_seconds}s")
        print(f"  Max concurrency: {config.fetch.max_concurrency}")
        print(f"  Failure threshold: {config.health.failure_threshold}")
        print(f"  Output dir: {config.output.output_dir}")
        print(f"  Blocking IP: {config.output.blocking_ip}")
        print(f"  Retained files: {config.output.retain_files or 'all'}")
        print(f"  Schedule: {config.schedule.cron or 'manual only'}")
        print(f"  Auto-aggregate on change: {config.schedule.auto_aggregate_on_change}")
        print(f"  State file: {config.persistence.state_file_path}")
        print(f"  Log level: {config.logging.level}")
        print(f"  Audit mode: {config.logging.audit_mode}")
        return 0

    elif args.action == "init":
        if config_path.exists() and not args.force:
            print(f"Configuration already exists at: {config_path}")
            print("Use --force to overwrite.")
            return 1

        config = create_default_config()
        if save_config_to_file(config, config_path):
            print(f"Configuration created at: {config_path}")
            return 0
        return 1

    elif args.action == "validate":
        config = load_config_from_file(config_path)
        if config is None:
            print(f"Error: Could not load config from {config_path}", file=sys.stderr)
            return 1

        problems = validate_config(config)
        if problems:
            print(f"Configuration at {config_path} is invalid:", file=sys.stderr)
            for problem in problems:
                print(f"  - {problem}", file=sys.stderr)
            return 1

        print(f"Configuration at {config_path} is valid.")
        return 0

    return 1


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config", "-c",
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="hosts-aggregator",
        description="Aggregate remote block and allow lists into one unified hosts file",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    aggregate_parser = subparsers.add_parser(
        "aggregate",
        help="Run one aggregation pass",
    )
    _add_config_argument(aggregate_parser)
    aggregate_parser.set_defaults(func=cmd_aggregate)

    export_parser = subparsers.add_parser(
        "export",
        help="Print or save the unified hosts file for the stored host set",
    )
    _add_config_argument(export_parser)
    export_parser.add_argument(
        "--output", "-o",
        help="Write to this file instead of stdout",
    )
    export_parser.add_argument(
        "--format", "-f",
        choices=[f.value for f in OutputFormat],
        default=OutputFormat.HOSTS.value,
        help="Output syntax: hosts file or Adblock Plus list (default: hosts)",
    )
    export_parser.set_defaults(func=cmd_export)

    serve_parser = subparsers.add_parser(
        "serve",
        help="Run the HTTP API",
    )
    _add_config_argument(serve_parser)
    serve_parser.add_argument("--host", help="Bind address (default from config)")
    serve_parser.add_argument("--port", type=int, help="Port (default from config)")
    serve_parser.set_defaults(func=cmd_serve)

    sources_parser = subparsers.add_parser(
        "sources",
        help="Source management",
    )
    sources_parser.add_argument(
        "action",
        choices=["list", "add", "remove", "enable", "disable"],
        help="Source action",
    )
    sources_parser.add_argument(
        "name",
        nargs="?",
        help="Source name (add) or source id/name (remove, enable, disable)",
    )
    sources_parser.add_argument(
        "url",
        nargs="?",
        help="Source URL (add)",
    )
    sources_parser.add_argument(
        "--disabled",
        action="store_true",
        help="Register the source disabled (add)",
    )
    _add_config_argument(sources_parser)
    sources_parser.set_defaults(func=cmd_sources)

    health_parser = subparsers.add_parser(
        "health",
        help="Show source health",
    )
    _add_config_argument(health_parser)
    health_parser.add_argument(
        "--check",
        action="store_true",
        help="Probe every source before reporting",
    )
    health_parser.set_defaults(func=cmd_health)

    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
    )
    config_parser.add_argument(
        "action",
        choices=["show", "init", "validate"],
        help="Configuration action",
    )
    config_parser.add_argument(
        "--path", "-p",
        help="Path to configuration file",
    )
    config_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Force overwrite existing configuration",
    )
    config_parser.set_defaults(func=cmd_config)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
