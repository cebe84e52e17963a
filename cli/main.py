"""ClientDesk CLI -- the `clientdesk` command.

Usage:
    clientdesk start                       Start the server and scheduler
    clientdesk status                      Show configuration, jobs and triggers
    clientdesk run <job>                   Run one scheduled job now
    clientdesk emit <event> --context JSON Emit an event in-process
    clientdesk triggers [--event TYPE]     List declarative triggers
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path


def get_home_dir() -> Path:
    """Get the ClientDesk home directory."""
    return Path(os.environ.get("CLIENTDESK_HOME", Path.home() / ".clientdesk")).expanduser()


def _apply_home(args: argparse.Namespace) -> None:
    if args.home:
        os.environ["CLIENTDESK_HOME"] = str(Path(args.home).expanduser())


def _build(args: argparse.Namespace):
    from bootstrap import build_services
    from core.config import load_config

    _apply_home(args)
    return build_services(load_config(config_path=args.config))


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_start(args: argparse.Namespace) -> None:
    """Start the ClientDesk server."""
    from main import run, setup_logging

    _apply_home(args)
    setup_logging("INFO")
    try:
        asyncio.run(run(config_path=args.config))
    except KeyboardInterrupt:
        pass


def cmd_status(args: argparse.Namespace) -> None:
    """Show configuration, scheduled jobs and trigger counts."""
    services = _build(args)
    try:
        config = services.config
        print(f"  Home:     {config.home_path}")
        print(f"  Database: {config.database_path}")
        print(f"  Email:    {config.email.provider}")
        print(f"  Timezone: {config.scheduler.timezone}")
        print()
        print("  Jobs:")
        for state in services.scheduler.runner.states():
            flag = "on " if state.enabled else "off"
            print(f"    [{flag}] {state.name:<22} {state.cron_expression:<14} {state.description}")
        print()
        triggers = services.triggers.list_triggers()
        active = sum(1 for t in triggers if t.is_active)
        print(f"  Triggers: {len(triggers)} ({active} active)")
        print()
    finally:
        asyncio.run(services.close())


def cmd_run(args: argparse.Namespace) -> None:
    """Run one scheduled job immediately."""
    from scheduler.runner import UnknownJobError

    services = _build(args)

    async def _run():
        try:
            return await services.scheduler.trigger_job(args.job)
        finally:
            await services.close()

    try:
        result = asyncio.run(_run())
    except UnknownJobError as exc:
        print(f"  {exc.args[0]}")
        sys.exit(1)
    _print_json(result.model_dump(mode="json"))
    if result.status != "success":
        sys.exit(1)


def cmd_emit(args: argparse.Namespace) -> None:
    """Emit an event through the in-process bus."""
    from core.models.events import InvalidEventError

    try:
        context = json.loads(args.context) if args.context else {}
    except json.JSONDecodeError as exc:
        print(f"  --context is not valid JSON: {exc}")
        sys.exit(2)
    context.setdefault("triggered_by", "cli")

    services = _build(args)

    async def _emit():
        try:
            return await services.bus.emit(args.event_type, context)
        finally:
            await services.close()

    try:
        event = asyncio.run(_emit())
    except InvalidEventError as exc:
        print(f"  {exc}")
        sys.exit(2)
    if event is None:
        print("  Event dropped (causation chain too deep)")
        sys.exit(1)
    print(f"  Emitted {event.event_type.value} [{event.id}]")


def cmd_triggers(args: argparse.Namespace) -> None:
    """List declarative triggers."""
    from core.models.events import EventType, InvalidEventError
    from workflow.conditions import to_storage

    try:
        etype = EventType.parse(args.event) if args.event else None
    except InvalidEventError as exc:
        print(f"  {exc}")
        sys.exit(2)

    services = _build(args)
    try:
        for trigger in services.triggers.list_triggers(etype):
            state = "active" if trigger.is_active else "inactive"
            conditions = json.dumps(to_storage(trigger.conditions))
            print(
                f"  #{trigger.id:<4} {trigger.event_type.value:<28} p={trigger.priority:<3} "
                f"{trigger.action_type.value:<13} {state:<8} {trigger.name}  {conditions}"
            )
    finally:
        asyncio.run(services.close())


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="clientdesk",
        description="ClientDesk -- workflow automation for client projects",
    )
    parser.add_argument("--home", type=str, default=None, help="ClientDesk home directory")
    parser.add_argument("--config", "-c", type=str, default=None, help="Path to config.yaml")

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("start", help="Start the ClientDesk server")
    sub.add_parser("status", help="Show configuration, jobs and triggers")

    run_parser = sub.add_parser("run", help="Run a scheduled job now")
    run_parser.add_argument("job", type=str, help="Job name, e.g. reminders or invoice_generation")

    emit_parser = sub.add_parser("emit", help="Emit an event")
    emit_parser.add_argument("event_type", type=str, help="Event type, e.g. invoice.paid")
    emit_parser.add_argument("--context", type=str, default=None, help="Event context as JSON")

    triggers_parser = sub.add_parser("triggers", help="List triggers")
    triggers_parser.add_argument("--event", type=str, default=None, help="Only triggers for this event type")

    return parser


def main() -> None:
    """CLI entrypoint."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    commands = {
        "start": cmd_start,
        "status": cmd_status,
        "run": cmd_run,
        "emit": cmd_emit,
        "triggers": cmd_triggers,
    }

    handler = commands.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
