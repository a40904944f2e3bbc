"""Conductor CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

import aiosqlite

from conductor.checkpoint.errors import CheckpointError
from conductor.config import default_config_yaml, load_config
from conductor.orchestrator.errors import OrchestrationError


def _init_project(repo_root: Path) -> None:
    """Scaffold a .conductor/ directory with the default configuration."""
    conductor_dir = repo_root / ".conductor"
    if conductor_dir.exists():
        print(f"Error: {conductor_dir} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    conductor_dir.mkdir(parents=True)
    (conductor_dir / "config.yaml").write_text(
        "# .conductor/config.yaml — Conductor configuration\n\n" + default_config_yaml()
    )
    print(f"Initialized Conductor project at {conductor_dir}")
    print("Next steps:")
    print("  1. Configure agent, oracle and classifier URLs under 'remote'")
    print("  2. Run: conductor serve")


# ── Offline Commands ─────────────────────────────────────────────────────────


async def _with_service(repo_root: Path, action):
    """Open the configured database and run ``action(service)`` without an orchestrator."""
    from conductor.service import WorkflowService

    config = load_config(repo_root / ".conductor")
    db_path = Path(config.storage.db_path)
    if not db_path.is_absolute():
        db_path = repo_root / db_path
    if not db_path.exists():
        print(f"Error: database not found at {db_path}", file=sys.stderr)
        sys.exit(1)

    async with aiosqlite.connect(str(db_path)) as db:
        db.row_factory = aiosqlite.Row
        service = WorkflowService(db, config)
        await service.initialize()
        try:
            return await action(service)
        except (OrchestrationError, CheckpointError) as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _checkpoints_list(service, args) -> int:
    from conductor.checkpoint.models import CheckpointFilter

    found = await service.checkpoints.list(
        CheckpointFilter(thread_id=args.thread, limit=args.limit)
    )
    for cp in found:
        print(
            f"{cp.id}  {cp.created_at:%Y-%m-%d %H:%M:%S}  {cp.status.value:<9}  "
            f"{cp.trigger.value:<18}  {cp.thread_id}  {cp.trigger_reason}"
        )
    if not found:
        print("No checkpoints")
    return 0


async def _checkpoints_verify(service, args) -> int:
    report = await service.checkpoints.verify(args.checkpoint_id)
    _print_json(report.model_dump(mode="json"))
    return 0 if report.valid else 2


async def _recover(service, args) -> int:
    from conductor.checkpoint.models import RecoveryOptions

    options = RecoveryOptions(
        skip_failed_agent=args.skip_failed_agent,
        reset_to_state=args.reset_to_state,
        replay_mode=args.replay,
        dry_run=args.dry_run,
    )
    result = await service.recover(args.checkpoint_id, options)
    _print_json(result.model_dump(mode="json", exclude={"restored_state"}))
    return 0 if result.success else 2


async def _status(service, args) -> int:
    view = await service.status(args.thread_id)
    _print_json(view.model_dump(mode="json"))
    recovery = await service.recovery.get_recovery_status(args.thread_id)
    _print_json(recovery.model_dump(mode="json"))
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="conductor",
        description="Conductor — checkpointed multi-agent workflow orchestrator",
    )
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the project root holding .conductor/ (default: current directory)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # conductor init
    subparsers.add_parser("init", help="Create .conductor/config.yaml with defaults")

    # conductor serve
    serve_parser = subparsers.add_parser("serve", help="Start the Conductor HTTP server")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to (default: 8000)")

    # conductor checkpoints list|verify
    cp_parser = subparsers.add_parser("checkpoints", help="Inspect stored checkpoints")
    cp_sub = cp_parser.add_subparsers(dest="cp_command", required=True)
    list_parser = cp_sub.add_parser("list", help="List checkpoints, newest first")
    list_parser.add_argument("--thread", help="Only checkpoints of this workflow thread")
    list_parser.add_argument("--limit", type=int, default=20)
    verify_parser = cp_sub.add_parser("verify", help="Verify a checkpoint's hashes")
    verify_parser.add_argument("checkpoint_id")

    # conductor recover
    recover_parser = subparsers.add_parser("recover", help="Recover a workflow from a checkpoint")
    recover_parser.add_argument("checkpoint_id")
    recover_parser.add_argument("--skip-failed-agent", action="store_true")
    recover_parser.add_argument(
        "--reset-to-state",
        choices=["pending", "analyzing", "orchestrating", "awaiting_approval"],
    )
    recover_parser.add_argument("--replay", action="store_true", help="Restore in step-by-step mode")
    recover_parser.add_argument("--dry-run", action="store_true")

    # conductor status
    status_parser = subparsers.add_parser("status", help="Show a workflow's status and recovery options")
    status_parser.add_argument("thread_id")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "init":
        _init_project(args.repo_root)
        return

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    conductor_dir = args.repo_root / ".conductor"
    if not conductor_dir.exists():
        print(f"Error: .conductor/ directory not found at {conductor_dir}", file=sys.stderr)
        print("Run 'conductor init' to create one, or specify --repo-root", file=sys.stderr)
        sys.exit(1)

    if args.command == "serve":
        import uvicorn

        from conductor.server import create_app

        app = create_app(conductor_dir=conductor_dir)
        uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
        return

    match (args.command, getattr(args, "cp_command", None)):
        case ("checkpoints", "list"):
            handler = _checkpoints_list
        case ("checkpoints", "verify"):
            handler = _checkpoints_verify
        case ("recover", _):
            handler = _recover
        case _:
            handler = _status

    sys.exit(asyncio.run(_with_service(args.repo_root, lambda service: handler(service, args))))


if __name__ == "__main__":
    main()
