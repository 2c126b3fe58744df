"""
M365 Education Tools — command line entry point

Usage:
    python -m m365_edu_tools --config config.json export users
    python -m m365_edu_tools export sections --resume
    python -m m365_edu_tools export group-members --id <group id>
    python -m m365_edu_tools members add --group-id <id> --input users.csv
    python -m m365_edu_tools members add-role --group-id <id> --role Teacher
    python -m m365_edu_tools members remove --group-id <id>
    python -m m365_edu_tools delete --object-type groups --input groups.csv
    python -m m365_edu_tools barriers create --scope schools --what-if
    python -m m365_edu_tools barriers remove
    python -m m365_edu_tools barriers apply
    python -m m365_edu_tools permissions
    python -m m365_edu_tools history

Mutating commands ask for confirmation unless --yes is given, and never
write anything with --what-if.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from . import __version__
from .config import (
    ToolConfig,
    CertificateAuth,
    DelegatedAuth,
    ConfigError,
    GRAPH_SCOPES,
    COMPLIANCE_SCOPES,
    REQUIRED_PERMISSIONS,
)
from .safety.guardian import WriteGuard
from .auth.authenticator import Authenticator, AuthenticationError
from .graph.client import GraphClient, GraphAPIError, DIRECTORY_OBJECT_PATHS
from .compliance.client import ComplianceClient, ComplianceAPIError, RateLimitWarning
from .checkpoint.store import CheckpointStore
from .collectors import GRAPH_COLLECTORS, COMPLIANCE_COLLECTORS, MEMBER_COLLECTORS, UsersCollector
from .collectors.directory import SDS_ROLES
from .operations import (
    OperationContext,
    AddMembersOperation,
    AddRoleToGroupOperation,
    RemoveMembersOperation,
    DeleteObjectsOperation,
    CreateBarriersOperation,
    RemoveBarriersOperation,
    ApplyBarriersOperation,
)
from .operations.barriers import SCOPES
from .reporting import CsvSink, read_csv_rows, read_id_column, export_run_summary

logger = logging.getLogger("m365_edu_tools")

EXPORT_KINDS = list(GRAPH_COLLECTORS) + list(COMPLIANCE_COLLECTORS)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="m365_edu_tools",
        description="Microsoft 365 Education administration: exports, bulk changes, information barriers",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", "-c", type=Path, help="Path to JSON configuration file")
    parser.add_argument("--tenant-id", type=str, default=None, help="Tenant ID (overrides config)")
    parser.add_argument("--client-id", type=str, default=None, help="App registration client ID (overrides config)")
    parser.add_argument("--cert-path", type=Path, help="Path to base64-encoded PFX certificate")
    parser.add_argument(
        "--delegated",
        action="store_true",
        help="Use delegated (device-code) authentication instead of certificate",
    )
    parser.add_argument(
        "--output-dir", "-o",
        type=Path,
        default=None,
        help="Output directory for CSVs, logs and state (default: ./m365_edu_output)",
    )
    parser.add_argument("--workers", type=int, default=None, help="Parallel sessions for bulk jobs")
    parser.add_argument("--what-if", action="store_true", help="Show what would change without writing")
    parser.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # export
    exp = subparsers.add_parser("export", help="Export directory objects to CSV")
    exp.add_argument("kind", choices=EXPORT_KINDS, help="What to export")
    exp.add_argument("--id", dest="object_id", help="Group or school id (member exports)")
    exp.add_argument("--role", choices=SDS_ROLES, help="Only users with this School Data Sync role")
    exp.add_argument("--resume", action="store_true", help="Continue from the last checkpoint")
    exp.add_argument("--skip-token", help="Start paging at this $skiptoken")

    # members
    mem = subparsers.add_parser("members", help="Bulk group membership changes")
    mem.add_argument("action", choices=["add", "remove", "add-role"])
    mem.add_argument("--group-id", required=True, help="Target group id")
    mem.add_argument("--input", type=Path, help="CSV with member ids (remove: omit to remove all)")
    mem.add_argument("--column", default="id", help="CSV column holding ids (default: id)")
    mem.add_argument("--role", choices=SDS_ROLES, help="Role for add-role")

    # delete
    dele = subparsers.add_parser("delete", help="Bulk delete directory objects listed in a CSV")
    dele.add_argument("--object-type", required=True, choices=list(DIRECTORY_OBJECT_PATHS))
    dele.add_argument("--input", type=Path, required=True, help="CSV with object ids")
    dele.add_argument("--column", default="id", help="CSV column holding ids (default: id)")

    # barriers
    bar = subparsers.add_parser("barriers", help="Information barrier segments and policies")
    bar.add_argument("action", choices=["create", "remove", "apply"])
    bar.add_argument("--scope", choices=SCOPES, default="all", help="create: schools, sections or all")
    bar.add_argument("--input", type=Path, help="create: CSV with id and displayName columns")
    bar.add_argument("--all", dest="remove_all", action="store_true",
                     help="remove: include policies and segments not created by this tool")

    # info
    subparsers.add_parser("permissions", help="List the permissions the app registration needs")
    hist = subparsers.add_parser("history", help="List recent runs")
    hist.add_argument("--limit", type=int, default=10)

    args = parser.parse_args(argv)
    if args.command == "members" and args.action == "add" and not args.input:
        parser.error("members add requires --input")
    if args.command == "members" and args.action == "add-role" and not args.role:
        parser.error("members add-role requires --role")
    if args.command == "export" and args.kind in MEMBER_COLLECTORS and not args.object_id:
        parser.error(f"export {args.kind} requires --id")
    return args


def build_config(args: argparse.Namespace, require_auth: bool = True) -> ToolConfig:
    """Build configuration from the config file and CLI overrides."""
    config = ToolConfig.from_file(args.config) if args.config else ToolConfig()

    if args.output_dir:
        config.output.base_dir = str(args.output_dir)
    if args.workers:
        config.batch.workers = args.workers
    config.what_if = config.what_if or args.what_if
    config.assume_yes = config.assume_yes or args.yes
    config.verbose = config.verbose or args.verbose
    if args.delegated:
        config.auth.mode = "delegated"

    if not require_auth:
        return config

    # Tenant identity: CLI flags override whatever the config file had
    known = config.auth.certificate or config.auth.delegated
    tenant_id = args.tenant_id or (known.tenant_id if known else "")
    client_id = args.client_id or (known.client_id if known else "")
    if not tenant_id or not client_id:
        raise ConfigError(
            "No tenant credentials found. Use --tenant-id and --client-id, "
            "or --config with an auth section."
        )

    if config.auth.mode == "delegated":
        config.auth.delegated = DelegatedAuth(tenant_id=tenant_id, client_id=client_id)
    else:
        previous = config.auth.certificate
        config.auth.certificate = CertificateAuth(
            tenant_id=tenant_id,
            client_id=client_id,
            certificate_path=str(args.cert_path) if args.cert_path
            else (previous.certificate_path if previous else "./base64.txt"),
            certificate_password=previous.certificate_password if previous else "",
        )
    return config


def setup_logging(config: ToolConfig, run_id: str) -> Path:
    """Console logging plus one log file per run."""
    config.output.logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = config.output.logs_dir / f"run_{run_id}.log"
    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        handlers=[logging.StreamHandler(), logging.FileHandler(log_path, encoding="utf-8")],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return log_path


def needs_tokens(args: argparse.Namespace) -> tuple[bool, bool]:
    """Return (graph, compliance) token needs for the command."""
    if args.command == "export":
        return args.kind in GRAPH_COLLECTORS, args.kind in COMPLIANCE_COLLECTORS
    if args.command == "barriers":
        return args.action == "create" and not args.input, True
    return True, False


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_permissions() -> int:
    print(f"\n  {'Permission':<36s} Purpose")
    print(f"  {'─'*36} {'─'*50}")
    for name, purpose in REQUIRED_PERMISSIONS.items():
        print(f"  {name:<36s} {purpose}")
    print()
    return 0


def cmd_history(config: ToolConfig, limit: int) -> int:
    store = CheckpointStore(str(config.output.state_dir))
    runs = store.get_run_history(limit)
    if not runs:
        print("No runs recorded yet.")
        return 0
    for run in runs:
        started = datetime.fromtimestamp(run["started_at"], timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        print(f"  {run['run_id']:<34s} {started}  {run['status']:<10s} {run['command']}")
    return 0


async def cmd_export(
    args: argparse.Namespace,
    config: ToolConfig,
    ctx: OperationContext,
) -> int:
    if args.kind in COMPLIANCE_COLLECTORS:
        session = ctx.compliance_factory()
        cls = COMPLIANCE_COLLECTORS[args.kind]
    else:
        session = ctx.graph_factory()
        cls = GRAPH_COLLECTORS[args.kind]

    async with session as client:
        if args.kind in MEMBER_COLLECTORS:
            collector = cls(client, config.paging, ctx.store, object_id=args.object_id)
        elif cls is UsersCollector:
            collector = cls(client, config.paging, ctx.store, role=args.role)
        else:
            collector = cls(client, config.paging, ctx.store)

        resuming = args.resume and collector.has_checkpoint()
        if args.resume and not resuming:
            print("  ℹ  No checkpoint found; starting a fresh export.")
        suffix = f"_{args.object_id}" if args.kind in MEMBER_COLLECTORS else ""
        path = config.output.csv_dir / f"{args.kind}{suffix}.csv"

        with CsvSink(path, collector.columns, append=resuming or bool(args.skip_token)) as sink:
            result = await collector.execute(sink, resume=resuming, skip_token=args.skip_token)

    for w in result.metadata["warnings"]:
        print(f"      ⚠  {w}")
    if not result.completed:
        print(f"  ❌ {args.kind}: stopped after {result.rows_written} rows → {path}")
        if result.last_skip_token:
            print(f"     Resume with --resume, or --skip-token {result.last_skip_token}")
        return 1
    print(f"  ✅ {args.kind}: {result.rows_written} rows in {result.pages} pages → {path}")
    return 0


def build_operation(args: argparse.Namespace, ctx: OperationContext):
    if args.command == "members":
        if args.action == "add":
            return AddMembersOperation(ctx, args.group_id, read_id_column(args.input, args.column))
        if args.action == "add-role":
            return AddRoleToGroupOperation(ctx, args.group_id, args.role)
        ids = read_id_column(args.input, args.column) if args.input else None
        return RemoveMembersOperation(ctx, args.group_id, ids)
    if args.command == "delete":
        return DeleteObjectsOperation(ctx, args.object_type, read_id_column(args.input, args.column))
    if args.command == "barriers":
        if args.action == "create":
            rows = read_csv_rows(args.input) if args.input else None
            return CreateBarriersOperation(ctx, args.scope, rows)
        if args.action == "remove":
            return RemoveBarriersOperation(ctx, remove_all=args.remove_all)
        return ApplyBarriersOperation(ctx)
    raise ValueError(f"Unknown command: {args.command}")


async def main_async(argv: Optional[list[str]] = None) -> int:
    """Async entry point. Returns the process exit status."""
    args = parse_args(argv)

    if args.command == "permissions":
        return cmd_permissions()

    try:
        config = build_config(args, require_auth=args.command != "history")
    except ConfigError as e:
        print(f"\n❌ {e}")
        return 1

    if args.command == "history":
        return cmd_history(config, args.limit)

    config.output.create_directories()
    run_id = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]
    log_path = setup_logging(config, run_id)
    command_line = " ".join(argv if argv is not None else sys.argv[1:])

    print("=" * 70)
    print(f" M365 Education Tools v{__version__}")
    print("=" * 70)
    print(f"\n📋 Run ID: {run_id}")
    print(f"📂 Output: {config.output.root.resolve()}")
    print(f"📝 Log:    {log_path}")

    guardian = WriteGuard(what_if=config.what_if)
    mutating = args.command != "export"
    if mutating:
        guardian.print_banner(config.what_if)

    # --- Authentication ---
    print("\n🔐 Authenticating...")
    authenticator = Authenticator(config.auth)
    want_graph, want_compliance = needs_tokens(args)
    try:
        graph_token = await authenticator.acquire_token(GRAPH_SCOPES) if want_graph else ""
        compliance_token = (
            await authenticator.acquire_token(COMPLIANCE_SCOPES) if want_compliance else ""
        )
    except AuthenticationError as e:
        print(f"❌ {e}")
        return 1
    print("✅ Authentication successful.")

    sessions: list[Any] = []

    def graph_factory() -> GraphClient:
        client = GraphClient(
            access_token=graph_token,
            guardian=guardian,
            page_size=config.paging.page_size,
            max_pages=config.paging.max_pages,
        )
        sessions.append(client)
        return client

    def compliance_factory() -> ComplianceClient:
        client = ComplianceClient(
            access_token=compliance_token,
            tenant_id=config.auth.tenant_id,
            guardian=guardian,
        )
        sessions.append(client)
        return client

    store = CheckpointStore(str(config.output.state_dir))
    store.start_run(run_id, command_line, {"what_if": config.what_if})
    ctx = OperationContext(
        config=config,
        guardian=guardian,
        run_id=run_id,
        graph_factory=graph_factory,
        compliance_factory=compliance_factory,
        store=store,
    )

    report = None
    try:
        if args.command == "export":
            status = await cmd_export(args, config, ctx)
        else:
            operation = build_operation(args, ctx)
            report = await operation.execute()
            if report is None:
                status = 0
            else:
                status = 0 if report.ok else 1
                print(f"\n  Result: {report.counts()} in {report.duration_seconds:.1f}s")
    except (ValueError, OSError) as e:
        print(f"\n❌ {e}")
        store.complete_run(run_id, "failed")
        return 1
    except (GraphAPIError, ComplianceAPIError, RateLimitWarning, AuthenticationError) as e:
        logger.error(f"Run failed: {type(e).__name__}: {e}")
        print(f"\n❌ {e}")
        store.complete_run(run_id, "failed")
        return 1
    except Exception:
        logger.exception("Run failed")
        store.complete_run(run_id, "failed")
        raise

    stats = {"sessions": len(sessions), "total_requests": 0}
    for session in sessions:
        stats["total_requests"] += session.get_stats().get("total_requests", 0)
    summary = export_run_summary(
        run_id,
        command_line,
        config.output.logs_dir,
        report=report,
        audit=guardian.get_audit_record() if mutating else None,
        stats=stats,
    )
    store.complete_run(run_id, "completed" if status == 0 else "failed")

    print("\n" + "=" * 70)
    print(" DONE" if status == 0 else " FINISHED WITH ERRORS")
    print("=" * 70)
    print(f"\n  Summary: {summary}\n")
    return status


def main():
    """Synchronous entry point for `python -m m365_edu_tools`."""
    sys.exit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
