"""CLI entry point for running and inspecting the Mail Ingestor."""

from __future__ import annotations

import argparse
import logging
import sys

from mail_ingestor.config.settings import MailIngestorSettings
from mail_ingestor.core.models import AccountCredentials, SyncProgress
from mail_ingestor.pipeline.actions import MailboxActions
from mail_ingestor.pipeline.context import ServiceContext
from mail_ingestor.pipeline.orchestrator import SyncOrchestrator


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def on_progress(progress: SyncProgress) -> None:
    """Print progress updates to stdout."""
    print(
        f"[{progress.current_stage}] "
        f"account={progress.account_id} "
        f"fetched={progress.messages_fetched} "
        f"stored={progress.messages_stored} "
        f"duplicate={progress.messages_duplicate} "
        f"skipped={progress.messages_skipped}",
        end="\r",
        flush=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Mail Ingestor - Sync mail providers into a searchable store"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("run", help="Run the scheduler and worker pools until interrupted")
    subparsers.add_parser("schedule", help="Run one scheduler tick and process the jobs")
    subparsers.add_parser("status", help="Show account, job and message counts")
    subparsers.add_parser("accounts", help="List registered accounts")

    sync_parser = subparsers.add_parser("sync", help="Sync one account now")
    sync_parser.add_argument("account_id", help="Account ID")

    folders_parser = subparsers.add_parser("list-folders", help="List an account's folders")
    folders_parser.add_argument("account_id", help="Account ID")

    add_parser = subparsers.add_parser("add-account", help="Register an account and its credentials")
    add_parser.add_argument("--provider", "-p", required=True, choices=["gmail", "imap"])
    add_parser.add_argument("--address", "-a", required=True, help="Mailbox address")
    add_parser.add_argument("--display-name", default="", dest="display_name")
    add_parser.add_argument("--refresh-token", default="", dest="refresh_token",
                            help="Gmail OAuth refresh token")
    add_parser.add_argument("--access-token", default="", dest="access_token",
                            help="Gmail OAuth access token")
    add_parser.add_argument("--host", default="", help="IMAP host")
    add_parser.add_argument("--port", type=int, default=993, help="IMAP port")
    add_parser.add_argument("--username", default="", help="IMAP username (default: address)")
    add_parser.add_argument("--password", default="", help="IMAP password")

    return parser


def _validate_add_account_args(args: argparse.Namespace) -> None:
    """Reject provider credentials that cannot work."""
    if args.provider == "gmail" and not (args.refresh_token or args.access_token):
        print("Error: gmail accounts need --refresh-token or --access-token", file=sys.stderr)
        sys.exit(1)
    if args.provider == "imap" and not (args.host and args.password):
        print("Error: imap accounts need --host and --password", file=sys.stderr)
        sys.exit(1)
    if not 0 < args.port < 65536:
        print("Error: --port must be between 1 and 65535", file=sys.stderr)
        sys.exit(1)


def _credentials_from_args(args: argparse.Namespace) -> AccountCredentials:
    return AccountCredentials(
        provider=args.provider,
        email=args.address,
        access_token=args.access_token,
        refresh_token=args.refresh_token,
        username=args.username,
        password=args.password,
        host=args.host,
        port=args.port,
    )


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "add-account":
        _validate_add_account_args(args)

    settings = MailIngestorSettings()
    setup_logging(settings.log_level)

    context = ServiceContext.open(settings)
    orchestrator = SyncOrchestrator(context, on_progress=on_progress)

    try:
        if args.command == "run":
            orchestrator.run_forever()

        elif args.command == "schedule":
            jobs = orchestrator.run_once()
            orchestrator.drain()
            print(f"\n\nProcessed {len(jobs)} scheduled sync job(s)")

        elif args.command == "sync":
            job = orchestrator.request_sync(args.account_id)
            orchestrator.drain()
            finished = context.jobs.get(job.id)
            print(f"\n\nJob {job.id}: {finished.state if finished else 'unknown'}")
            if finished and finished.error:
                print(f"  error: {finished.error}")
            elif finished:
                print(f"  new messages: {finished.messages_synced}")

        elif args.command == "status":
            print("\nAccounts by status:")
            for status, count in sorted(context.accounts.count_by_status().items()):
                print(f"  {status}: {count}")
            print("\nSync jobs by state:")
            for state, count in sorted(context.jobs.count_by_state().items()):
                print(f"  {state}: {count}")
            print(f"\nStored messages: {context.messages.count()}")

        elif args.command == "accounts":
            accounts = context.accounts.list()
            print(f"\nFound {len(accounts)} accounts:\n")
            for account in accounts:
                last_sync = account.last_sync_at.isoformat() if account.last_sync_at else "never"
                print(f"  {account.id:34s} {account.provider:6s} {account.status:12s} "
                      f"{account.address} (last sync: {last_sync})")
                if account.last_sync_error:
                    print(f"    last error: {account.last_sync_error}")

        elif args.command == "add-account":
            account = context.accounts.register_account(
                args.provider, args.address, display_name=args.display_name
            )
            context.credentials.store(account.id, _credentials_from_args(args))
            print(f"\nRegistered {account.provider} account {account.id} ({account.address})")

        elif args.command == "list-folders":
            folders = MailboxActions(context, orchestrator.indexer).list_folders(args.account_id)
            print(f"\nFound {len(folders)} folders:\n")
            for folder in sorted(folders):
                print(f"  {folder}")

    except KeyboardInterrupt:
        orchestrator.stop()
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        context.close()


if __name__ == "__main__":
    main()
