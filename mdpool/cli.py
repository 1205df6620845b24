"""Command line interface for the pool agent."""

import argparse
import json
import sys
import time
from typing import Any, List, Optional

from .agent import PoolAgent, create_agent
from .config_manager import ConfigManager
from .exceptions import OperationConflictError, OperationsLockedError, PoolValidationError
from .models import PoolOperation


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _wait_for(agent: PoolAgent, operation: PoolOperation, poll_interval: float = 1.0) -> int:
    """Poll until the operation is terminal, streaming its transcript."""
    printed = 0
    while True:
        outputs = agent.operations.get_command_outputs(operation.pool_group_guid)
        for line in outputs[printed:]:
            print(line)
        printed = len(outputs)
        if operation.is_terminal:
            break
        time.sleep(poll_interval)

    _print_json(agent.operations.operation_to_dict(operation))
    return 0 if operation.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mdpool", description="Mirrored RAID pool management")
    parser.add_argument("--config", help="Path to a .json, .yaml or .env configuration file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("arrays", help="Show kernel RAID arrays")
    subparsers.add_parser("drives", help="Show physical drives and their identifiers")
    subparsers.add_parser("pools", help="List known pools")
    subparsers.add_parser("reconcile", help="Correct pool metadata against kernel state")

    detail = subparsers.add_parser("detail", help="Show one pool")
    detail.add_argument("guid")

    create = subparsers.add_parser("create", help="Create and mount a new pool")
    create.add_argument("label")
    create.add_argument("mount_path")
    create.add_argument("serials", nargs="+", help="Member drive serial numbers")

    mount = subparsers.add_parser("mount", help="Assemble and mount a pool")
    mount.add_argument("guid")
    mount.add_argument("--path", dest="mount_path")

    unmount = subparsers.add_parser("unmount", help="Unmount a pool")
    unmount.add_argument("guid")
    unmount.add_argument("--force", action="store_true", help="Lazy unmount even if busy")

    remove = subparsers.add_parser("remove", help="Destroy a pool and wipe its drives")
    remove.add_argument("guid")

    forget = subparsers.add_parser("forget", help="Delete a pool's metadata without touching drives")
    forget.add_argument("guid")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    agent = create_agent(ConfigManager(args.config))

    if args.command == "arrays":
        _print_json({name: array.to_dict() for name, array in agent.mdstat_reader.read_all().items()})
        return 0

    if not agent.initialize():
        print("Drive enumeration failed", file=sys.stderr)
        return 1

    try:
        if args.command == "drives":
            _print_json(agent.drive_monitor.current_mapping().to_dict())
            return 0
        if args.command == "pools":
            _print_json([pool.to_dict() for pool in agent.pool_service.list_pools()])
            return 0
        if args.command == "detail":
            pool = agent.pool_service.get_pool_detail(args.guid)
            if pool is None:
                print(f"Pool {args.guid} not found", file=sys.stderr)
                return 1
            _print_json(pool.to_dict())
            return 0
        if args.command == "reconcile":
            _print_json(agent.reconcile().to_dict())
            return 0
        if args.command == "forget":
            success, message = agent.metadata_store.remove(args.guid)
            print(message)
            return 0 if success else 1

        if args.command == "create":
            operation = agent.operations.submit_create(args.label, args.serials, args.mount_path)
        elif args.command == "mount":
            operation = agent.operations.submit_mount(args.guid, args.mount_path)
        elif args.command == "unmount":
            operation = agent.operations.submit_unmount(args.guid, force=args.force)
        else:
            operation = agent.operations.submit_remove(args.guid)
        return _wait_for(agent, operation)

    except (PoolValidationError, OperationConflictError, OperationsLockedError) as e:
        print(str(e), file=sys.stderr)
        return 2
    finally:
        agent.operations.shutdown(wait=True)


if __name__ == "__main__":
    sys.exit(main())
