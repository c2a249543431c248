"""Command-line interface for stack-tester."""

from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from rich.console import Console
from rich.table import Table

from .config import AppConfig, load_config
from .orchestrator import StackOrchestrator, StallDetector, format_errors
from .projects import CloudInfoService, ProjectsAPIError, ProjectsClient, StackConfig
from .utils.logging import get_logger

ServiceFactory = Callable[[AppConfig], CloudInfoService]

_STATE_STYLES = {
    "deployed": "green",
    "draft": "yellow",
    "deploying": "cyan",
    "validating": "cyan",
    "undeploying": "cyan",
}


@dataclass
class CLIContext:
    """Context captured from CLI arguments."""

    config: AppConfig
    stack: StackConfig


def _add_stack_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--project-id", help="Project containing the stack")
    parser.add_argument("--config-id", help="Config ID of the stack")
    parser.add_argument("--name", default=None, help="Display name of the stack")
    parser.add_argument("--region", default=None, help="Project region (e.g. us-south)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stack-tester",
        description="Deploy and undeploy a Projects stack and wait for every member.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a JSON config file overriding defaults.",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    deploy_parser = subparsers.add_parser(
        "deploy", help="Validate and deploy the stack, then wait for it"
    )
    undeploy_parser = subparsers.add_parser(
        "undeploy", help="Undeploy the stack, then wait for it"
    )
    for sub in (deploy_parser, undeploy_parser):
        _add_stack_arguments(sub)
        sub.add_argument(
            "--timeout", type=int, default=None,
            help="Timeout in minutes (default: deploy_timeout_minutes from config)",
        )
        sub.add_argument(
            "--auto-sync", action="store_true",
            help="Sync members that stop progressing",
        )

    # status 子命令 - 查看栈和成员的当前状态
    status_parser = subparsers.add_parser(
        "status", help="Show the current state of the stack and its members"
    )
    _add_stack_arguments(status_parser)

    return parser


def _build_context(args: argparse.Namespace) -> CLIContext:
    config = load_config(args.config)
    settings = config.stack
    if args.project_id:
        settings.project_id = args.project_id
    if args.config_id:
        settings.config_id = args.config_id
    if args.name:
        settings.name = args.name
    if args.region:
        settings.region = args.region
    if getattr(args, "auto_sync", False):
        config.orchestration.auto_sync = True
    return CLIContext(config=config, stack=settings.to_stack_config())


def _default_service(config: AppConfig) -> CloudInfoService:
    return ProjectsClient(config.projects)


def _build_orchestrator(ctx: CLIContext, service: CloudInfoService) -> StackOrchestrator:
    orchestration = ctx.config.orchestration
    # 每次运行构造一个独立的 StallDetector
    detector = StallDetector(
        service,
        enabled=orchestration.auto_sync,
        sync_interval_minutes=orchestration.auto_sync_interval_minutes,
    )
    return StackOrchestrator(service, config=orchestration, stall_detector=detector)


def handle_deploy_command(ctx: CLIContext, service: CloudInfoService, timeout: Optional[int]) -> int:
    errors = _build_orchestrator(ctx, service).run_deploy(ctx.stack, timeout)
    if errors:
        print(f"❌ Errors occurred during deploy of {ctx.stack.display_name}:")
        print(format_errors(errors))
        return 1
    print(f"✅ Stack {ctx.stack.display_name} deployed")
    return 0


def handle_undeploy_command(ctx: CLIContext, service: CloudInfoService, timeout: Optional[int]) -> int:
    triggered, errors = _build_orchestrator(ctx, service).run_undeploy(ctx.stack, timeout)
    if errors:
        print(f"❌ Errors occurred during undeploy of {ctx.stack.display_name}:")
        print(format_errors(errors))
        return 1
    if not triggered:
        print(f"Stack {ctx.stack.display_name} had nothing to undeploy")
    else:
        print(f"✅ Stack {ctx.stack.display_name} undeployed")
    return 0


def handle_status_command(ctx: CLIContext, service: CloudInfoService, console: Optional[Console] = None) -> int:
    console = console or Console()
    try:
        stack_details = service.get_config(ctx.stack)
        members = service.get_stack_members(ctx.stack)
    except ProjectsAPIError as exc:
        console.print(f"[red]Could not read stack {ctx.stack.display_name}: {exc}[/red]")
        return 1

    console.print(
        f"Stack [bold]{stack_details.name or ctx.stack.display_name}[/bold] "
        f"({stack_details.id}): {stack_details.describe_state()}"
    )

    table = Table(title=f"{len(members)} member(s)")
    table.add_column("Member")
    table.add_column("ID")
    table.add_column("State")
    table.add_column("State code")
    table.add_column("Note")
    for member in members:
        state = member.state.value if member.state else "unknown"
        style = _STATE_STYLES.get(state, "red" if state.endswith("_failed") else "")
        table.add_row(
            member.name or "-",
            member.id,
            f"[{style}]{state}[/{style}]" if style else state,
            member.state_code.value if member.state_code else "-",
            member.state_code.explain() if member.state_code else "",
        )
    console.print(table)
    return 0


def run_cli(
    argv: Optional[List[str]] = None,
    service_factory: Optional[ServiceFactory] = None,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    get_logger(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        ctx = _build_context(args)
    except (FileNotFoundError, ValueError) as exc:
        print(f"❌ {exc}")
        return 2

    try:
        service = (service_factory or _default_service)(ctx.config)
    except ValueError as exc:
        print(f"❌ {exc}")
        return 2

    if args.command == "deploy":
        return handle_deploy_command(ctx, service, args.timeout)
    if args.command == "undeploy":
        return handle_undeploy_command(ctx, service, args.timeout)
    if args.command == "status":
        return handle_status_command(ctx, service)

    parser.print_help()
    return 1
