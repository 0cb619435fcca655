"""
Command-line interface for ADAPT-Remediate.
"""
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .version import get_version_info
from .audit.audit_system import FileAuditBackend
from .config import RemediationConfig
from .exceptions import ApprovalError, BackupError, CatalogError, ConfigurationError
from .logging_config import configure_cli_logging
from .models import DetectedError
from .remediation.actions import FixApplier
from .remediation.approval import ApprovalBroker, ApprovalGate
from .remediation.backup import BackupStore
from .remediation.catalog import FixCatalog, default_catalog, load_catalog
from .remediation.engine import Disposition, RemediationOrchestrator
from .remediation.matcher import FixMatcher
from .storage.attempt_store import AttemptStore

logger = logging.getLogger(__name__)


def load_errors(path: Path) -> List[DetectedError]:
    """
    Load detected errors from a JSON array/object or a JSONL file.

    Raises:
        ValueError: If the file cannot be parsed or an entry is invalid
    """
    text = path.read_text(encoding="utf-8")

    if path.suffix.lower() == ".jsonl":
        raw = []
        for line_no, line in enumerate(text.splitlines(), 1):
            if not line.strip():
                continue
            try:
                raw.append(json.loads(line))
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{line_no}: invalid JSON: {e}") from e
    else:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"{path}: invalid JSON: {e}") from e
        if isinstance(data, dict):
            raw = data.get("errors", [data])
        else:
            raw = data

    errors = []
    for index, item in enumerate(raw):
        try:
            errors.append(DetectedError.model_validate(item))
        except ValidationError as e:
            raise ValueError(f"{path}: entry {index} is not a valid detected error: {e}") from e
    return errors


def _load_config(args: argparse.Namespace) -> RemediationConfig:
    return RemediationConfig.load(getattr(args, "config_file", None))


def _load_catalog(config: RemediationConfig, path: Optional[str] = None) -> FixCatalog:
    path = path or config.catalog_path
    if path:
        return load_catalog(path, include_defaults=config.include_default_patterns)
    return default_catalog()


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def handle_run(args: argparse.Namespace) -> int:
    """
    Handle the run subcommand.

    Returns:
        0 when every attempt succeeded, 2 when some did not, 1 on error
    """
    try:
        config = _load_config(args)
        if args.dry_run:
            config.dry_run = True
        if args.auto_approve:
            config.auto_approve = True
        if args.next_candidate:
            config.try_next_candidate = True
        if args.strategy:
            config.deploy_strategy = args.strategy
        config.validate()

        errors = load_errors(Path(args.errors))
        if not errors:
            print("No detected errors to remediate.")
            return 0

        catalog = _load_catalog(config, args.catalog)
        orchestrator = RemediationOrchestrator.from_config(config, catalog=catalog)
    except (ConfigurationError, CatalogError, ValueError, OSError) as e:
        logger.error(f"Cannot start remediation: {e}")
        print(f"ERROR: {e}")
        return 1

    recovered = orchestrator.start()
    if recovered:
        print(f"Recovered {len(recovered)} interrupted attempt(s) from a previous run")

    try:
        for error in errors:
            orchestrator.submit(error)
        orchestrator.wait_idle()
    except KeyboardInterrupt:
        print("Interrupted; cancelling in-flight attempts")
        orchestrator.shutdown(cancel_pending=True)
        return 1

    orchestrator.shutdown()

    results = [r for r in orchestrator.get_execution_history() if r not in recovered]
    results.sort(key=lambda r: r.started_at)

    for result in results:
        label = result.disposition.value + (" (dry run)" if result.dry_run else "")
        line = f"{result.attempt_id or result.error_id}: {label}"
        if result.pattern_id:
            line += f" [{result.pattern_id}]"
        if result.reason:
            line += f" {result.reason.value}: {result.detail}"
        print(line)

    stats = orchestrator.get_statistics()
    print(
        f"\n{stats['total_executions']} attempts, "
        f"success rate {stats['success_rate']:.0%}"
    )

    if args.output:
        Path(args.output).write_text(
            json.dumps([r.to_dict() for r in results], indent=2, default=str),
            encoding="utf-8"
        )
        print(f"Results written to {args.output}")

    if any(r.disposition == Disposition.MANUAL_INTERVENTION_REQUIRED for r in results):
        print("WARNING: at least one attempt requires manual intervention")
    return 0 if all(r.success for r in results) else 2


def handle_preview(args: argparse.Namespace) -> int:
    """Show ranked candidates and planned actions without touching anything."""
    try:
        config = _load_config(args)
        errors = load_errors(Path(args.error))
        catalog = _load_catalog(config, args.catalog)
    except (ConfigurationError, CatalogError, ValueError, OSError) as e:
        print(f"ERROR: {e}")
        return 1

    matcher = FixMatcher(catalog)
    applier = FixApplier(
        insertion_policy=config.insertion_policy,
        command_timeout=config.command_timeout,
        config_target=config.config_target,
        base_dir=config.base_dir
    )
    gate = ApprovalGate(require_approval=config.require_approval)

    report = []
    for error in errors:
        candidates = []
        for scored in matcher.rank(error):
            candidates.append({
                **scored.to_dict(),
                "needs_approval": gate.needs_approval(scored.pattern),
                "targets": applier.targets_for(scored.pattern, error),
                "actions": [a.to_dict() for a in applier.preview(scored.pattern, error)],
            })
        report.append({"error_id": error.id, "candidates": candidates})

    _print_json(report)
    return 0


def handle_catalog(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
        catalog = _load_catalog(config, args.catalog)
    except (ConfigurationError, CatalogError) as e:
        print(f"ERROR: {e}")
        return 1

    if args.action == "stats":
        _print_json(catalog.stats())
        return 0

    for pattern in catalog.list_all():
        print(
            f"{pattern.id:<12} {pattern.category.value:<11} "
            f"risk={pattern.risk_level.value:<6} confidence={pattern.confidence:.2f}  {pattern.name}"
        )
    return 0


def handle_backups(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
        store = BackupStore(config.backup_dir, retention=config.backup_retention)

        if args.action == "restore":
            if not args.backup_id:
                print("ERROR: backups restore requires a backup id")
                return 1
            restored = store.restore(args.backup_id)
            print(f"Restored {args.backup_id}" if restored else f"{args.backup_id} was already restored")
            return 0

        if args.action == "prune":
            retain = args.retain if args.retain is not None else config.backup_retention
            deleted = store.prune(retain)
            print(f"Pruned {deleted} backup(s); kept the newest {retain}")
            return 0

        for backup in store.list_backups(limit=args.limit):
            state = "restored" if backup.restored_at else "active"
            content = "absent" if backup.absent else backup.digest[:12]
            print(
                f"{backup.backup_id}  {backup.created_at.isoformat()}  {state:<8} "
                f"{content:<12} {backup.target}"
            )
        return 0

    except (ConfigurationError, BackupError) as e:
        logger.error(f"Backup operation failed: {e}")
        print(f"ERROR: {e}")
        return 1


def handle_audit(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
    except ConfigurationError as e:
        print(f"ERROR: {e}")
        return 1

    if not config.audit_file or not Path(config.audit_file).exists():
        print("No audit log found.")
        return 0

    backend = FileAuditBackend(config.audit_file)
    events = backend.query_events(attempt_id=args.attempt, tag=args.tag, limit=args.limit)

    if args.json:
        _print_json([e.to_dict() for e in events])
        return 0

    for event in events:
        line = f"{event.timestamp}  {event.attempt_id or event.error_id}  {event.from_state} -> {event.to_state}"
        if event.tag:
            line += f" [{event.tag}]"
        if event.detail:
            line += f"  {event.detail}"
        print(line)
    return 0


def handle_approve(args: argparse.Namespace) -> int:
    """
    Approve or deny an attempt waiting in another process.

    The decision is written to the shared state database; the waiting run
    picks it up on its next poll.
    """
    try:
        config = _load_config(args)
        broker = ApprovalBroker(store=AttemptStore(config.state_db))
        if args.subcommand == "deny":
            broker.deny(args.attempt_id, args.token)
        else:
            broker.approve(args.attempt_id, args.token)
    except (ConfigurationError, ApprovalError) as e:
        print(f"ERROR: {e}")
        return 1

    print(f"{args.attempt_id}: {'denied' if args.subcommand == 'deny' else 'approved'}")
    return 0


def handle_approvals(args: argparse.Namespace) -> int:
    """List approval requests that are still open."""
    try:
        config = _load_config(args)
    except ConfigurationError as e:
        print(f"ERROR: {e}")
        return 1

    pending = AttemptStore(config.state_db).pending_approvals()
    if args.json:
        _print_json(pending)
        return 0
    if not pending:
        print("No pending approvals.")
    for request in pending:
        print(f"{request['attempt_id']}  {request['pattern_id']}  expires {request['expires_at']}")
    return 0


def handle_version(args: argparse.Namespace) -> int:
    """
    Handle the version subcommand.

    Returns:
        Exit code (0 for success)
    """
    info = get_version_info()
    print(f"{info['name']} version {info['version']}")
    print(info["summary"])

    if args.verbose:
        print(f"\nPython: {sys.version}")
        try:
            config = _load_config(args)
            print(f"Workers: {config.max_concurrent}")
            print(f"Deploy strategy: {config.deploy_strategy}")
        except ConfigurationError as e:
            print(f"Configuration unavailable: {e}")

    return 0


def handle_config(args: argparse.Namespace) -> int:
    """
    Handle the config subcommand.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    try:
        config = _load_config(args)
    except ConfigurationError as e:
        print(f"ERROR: {e}")
        return 1

    if args.action == "validate":
        try:
            config.validate()
        except ConfigurationError as e:
            print(f"ERROR: {e}")
            return 1
        print("Configuration is valid")
        return 0

    data: Dict[str, Any] = config.to_dict()
    if args.verbose:
        _print_json(data)
        return 0

    print("Current ADAPT-Remediate Configuration:")
    print(f"  Workers: {config.max_concurrent}")
    print(f"  Retry budget: {config.max_retries}")
    print(f"  Try next candidate: {config.try_next_candidate}")
    print(f"  Require approval (medium risk): {config.require_approval}")
    print(f"  Deploy strategy: {config.deploy_strategy}")
    print(f"  Backup dir: {config.backup_dir}")
    print(f"  State db: {config.state_db}")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """
    Create and configure the argument parser with subcommands.

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog="adapt-remediate",
        description="ADAPT-Remediate: automated, reversible remediation of detected errors",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s run errors.jsonl --dry-run
  %(prog)s run errors.json --auto-approve --strategy staged
  %(prog)s preview error.json
  %(prog)s catalog list
  %(prog)s backups list
  %(prog)s backups restore <backup-id>
  %(prog)s approvals
  %(prog)s approve E1#1 <token>
  %(prog)s audit --attempt E1#1
  %(prog)s config show

Environment Variables:
  ADAPT_REMEDIATE_MAX_CONCURRENT   Worker threads (default: 5)
  ADAPT_REMEDIATE_MAX_RETRIES      Candidates tried per error (default: 3)
  ADAPT_REMEDIATE_BACKUP_DIR       Backup directory
  ADAPT_REMEDIATE_DEPLOY_STRATEGY  immediate, staged or canary
        """
    )

    # Global flags (available to all subcommands)
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )
    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Enable quiet mode (only errors)"
    )
    parser.add_argument(
        "--config-file",
        metavar="PATH",
        help="Path to configuration file"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging (overrides --verbose and --quiet)"
    )

    subparsers = parser.add_subparsers(
        dest="subcommand",
        help="Available subcommands"
    )

    # run
    run_parser = subparsers.add_parser(
        "run",
        help="Remediate detected errors from a JSON or JSONL file"
    )
    run_parser.add_argument("errors", help="Path to detected errors (.json or .jsonl)")
    run_parser.add_argument("--dry-run", action="store_true", help="Plan fixes without applying them")
    run_parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="Approve fixes that need approval without waiting"
    )
    run_parser.add_argument(
        "--next-candidate",
        action="store_true",
        help="Try the next-ranked fix after a failed one"
    )
    run_parser.add_argument(
        "--strategy",
        choices=["immediate", "staged", "canary"],
        help="Deployment strategy"
    )
    run_parser.add_argument("--catalog", metavar="PATH", help="Fix catalog file (YAML or JSON)")
    run_parser.add_argument("--output", "-o", metavar="PATH", help="Write results as JSON")
    run_parser.set_defaults(func=handle_run)

    # preview
    preview_parser = subparsers.add_parser(
        "preview",
        help="Show candidate fixes and planned actions without applying them"
    )
    preview_parser.add_argument("error", help="Path to detected error(s) (.json or .jsonl)")
    preview_parser.add_argument("--catalog", metavar="PATH", help="Fix catalog file")
    preview_parser.set_defaults(func=handle_preview)

    # catalog
    catalog_parser = subparsers.add_parser("catalog", help="Inspect the fix catalog")
    catalog_parser.add_argument(
        "action",
        nargs="?",
        choices=["list", "stats"],
        default="list",
        help="Catalog action (default: list)"
    )
    catalog_parser.add_argument("--catalog", metavar="PATH", help="Fix catalog file")
    catalog_parser.set_defaults(func=handle_catalog)

    # backups
    backups_parser = subparsers.add_parser("backups", help="List, restore or prune backups")
    backups_parser.add_argument(
        "action",
        nargs="?",
        choices=["list", "restore", "prune"],
        default="list",
        help="Backup action (default: list)"
    )
    backups_parser.add_argument("backup_id", nargs="?", help="Backup to restore")
    backups_parser.add_argument("--retain", type=int, help="Backups to keep when pruning")
    backups_parser.add_argument("--limit", type=int, default=50, help="Backups to list")
    backups_parser.set_defaults(func=handle_backups)

    # audit
    audit_parser = subparsers.add_parser("audit", help="Show the audit trail")
    audit_parser.add_argument("--attempt", metavar="ID", help="Only events of this attempt")
    audit_parser.add_argument("--tag", help="Only events with this tag")
    audit_parser.add_argument("--limit", type=int, help="Most recent N events")
    audit_parser.add_argument("--json", action="store_true", help="Output JSON")
    audit_parser.set_defaults(func=handle_audit)

    # approve / deny
    for name, verb in (("approve", "Approve"), ("deny", "Deny")):
        decision_parser = subparsers.add_parser(
            name, help=f"{verb} a fix waiting for approval in a running remediation"
        )
        decision_parser.add_argument("attempt_id", help="Attempt id, e.g. E1#1")
        decision_parser.add_argument("token", help="Token from the approval notification")
        decision_parser.set_defaults(func=handle_approve)

    # approvals
    approvals_parser = subparsers.add_parser("approvals", help="List pending approval requests")
    approvals_parser.add_argument("--json", action="store_true", help="Output JSON")
    approvals_parser.set_defaults(func=handle_approvals)

    # version
    version_parser = subparsers.add_parser("version", help="Show version information")
    version_parser.set_defaults(func=handle_version)

    # config
    config_parser = subparsers.add_parser("config", help="Show or validate configuration")
    config_parser.add_argument(
        "action",
        nargs="?",
        choices=["show", "validate"],
        default="show",
        help="Config action (default: show)"
    )
    config_parser.set_defaults(func=handle_config)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # A bad config is reported by the subcommand that needs it
    try:
        config = _load_config(args)
        config.validate()
    except ConfigurationError:
        config = RemediationConfig()

    configure_cli_logging(
        verbose=args.verbose,
        quiet=args.quiet,
        debug=args.debug,
        default_level=config.log_level,
        log_file=config.log_file,
        json_format=config.json_logs
    )

    if not hasattr(args, 'func'):
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
