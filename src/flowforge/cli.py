"""
FlowForge command line.

Provides terminal access to:
- Node type listing and parameter validation
- Cron expression previews
- A combined scheduler clock and queue worker process
"""

import argparse
import json
import sys

from flowforge.bootstrap import build_app, build_registry
from flowforge.config import get_settings
from flowforge.errors import ValidationError
from flowforge.observability import setup_logging
from flowforge.scheduler import upcoming_fire_times


def cmd_nodes(args: argparse.Namespace) -> int:
    """List registered node types."""
    registry = build_registry()
    descriptors = registry.list_by_category(args.category) if args.category else registry.list_nodes()
    for descriptor in descriptors:
        print(f"{descriptor.node_type:32} {descriptor.category:12} {descriptor.display_name}")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate node parameters given as JSON."""
    registry = build_registry()
    try:
        parameters = json.loads(args.parameters)
    except json.JSONDecodeError as e:
        print(f"Invalid JSON: {e}")
        return 1

    errors = registry.validate_configuration(args.node_type, parameters)
    if errors:
        for error in errors:
            print(f"✗ {error}")
        return 1
    print("✓ Configuration is valid")
    return 0


def cmd_preview(args: argparse.Namespace) -> int:
    """Print the next fire times of a cron expression."""
    try:
        times = upcoming_fire_times(args.expression, args.timezone, args.count)
    except ValidationError as e:
        print(f"✗ {e.message}")
        return 1
    for moment in times:
        print(moment.isoformat())
    return 0


def cmd_worker(args: argparse.Namespace) -> int:
    """Run the cron clock and a queue worker until interrupted."""
    setup_logging()
    settings = get_settings()
    app = build_app(settings, use_redis=not args.in_memory)

    app.clock.start()
    try:
        app.worker.run_forever(settings.queue_poll_interval_s)
    except KeyboardInterrupt:
        app.worker.stop()
    finally:
        app.clock.stop(timeout=5)
    return 0


def main() -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="FlowForge - workflow automation core",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    # nodes command
    nodes_parser = subparsers.add_parser('nodes', help='List registered node types')
    nodes_parser.add_argument('--category', help='Only list this category')

    # validate command
    validate_parser = subparsers.add_parser('validate', help='Validate node parameters')
    validate_parser.add_argument('--node-type', required=True, help='Node type (e.g. flowforge.set)')
    validate_parser.add_argument('--parameters', default='{}', help='Parameters as JSON')

    # preview command
    preview_parser = subparsers.add_parser('preview', help='Preview cron fire times')
    preview_parser.add_argument('--expression', required=True, help='5-field cron expression')
    preview_parser.add_argument('--timezone', default='UTC', help='IANA timezone')
    preview_parser.add_argument('--count', type=int, default=5, help='Number of fire times')

    # worker command
    worker_parser = subparsers.add_parser('worker', help='Run scheduler clock and queue worker')
    worker_parser.add_argument('--in-memory', action='store_true', help='Use in-memory backends')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    if args.command == 'nodes':
        return cmd_nodes(args)
    elif args.command == 'validate':
        return cmd_validate(args)
    elif args.command == 'preview':
        return cmd_preview(args)
    elif args.command == 'worker':
        return cmd_worker(args)
    else:
        print(f"Unknown command: {args.command}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
