#!/usr/bin/env python3
"""
mailmirror CLI

Mirror an IMAP account into PostgreSQL, backfill bodies, embed and search.

Usage:
    mailmirror init-db
    mailmirror sync                      # run until Ctrl-C
    mailmirror backfill --folder INBOX --uid 4711
    mailmirror embed
    mailmirror search "invoice october" --mode subject
    mailmirror body INBOX 4711

IMAP and database settings come from the environment or a .env file
(IMAP_HOST, IMAP_USERNAME, IMAP_PASSWORD, DATABASE_URL, ...).
"""
import argparse
import asyncio
import getpass
import logging
import sys
from datetime import datetime, timezone

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, quiet: bool = False):
    """Configure logging based on verbosity."""
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_since(value: str) -> datetime:
    """ISO date or datetime; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def account_from_settings(args, settings):
    from mailmirror.core.email.models import AccountSettings

    host = args.host or settings.imap_host
    username = args.user or settings.imap_username
    if not host or not username:
        raise SystemExit("Error: IMAP host and username are required (IMAP_HOST / IMAP_USERNAME or --host / --user)")
    account = AccountSettings(
        server=host,
        username=username,
        port=settings.imap_port,
        use_ssl=settings.imap_use_ssl,
        display_name=settings.imap_account_name or "",
    )
    password = settings.imap_password or getpass.getpass(f"IMAP password for {username}: ")
    return account, password


def open_session(settings):
    from mailmirror.core.database import init_db
    from mailmirror.core.sync.session import SyncSession

    session_factory = init_db()
    if session_factory is None:
        raise SystemExit("Error: DATABASE_URL is not configured")
    return SyncSession(session_factory, settings=settings)


def print_page(page) -> None:
    print(f"\n{page.folder} ({len(page.messages)} message(s){', more available' if page.has_more else ''})")
    for summary in page.messages:
        print(f"  {summary.uid:>8}  {summary.received:%Y-%m-%d %H:%M}  "
              f"{summary.sender_display[:30]:<30}  {summary.display_subject}")


async def cmd_init_db(args, settings) -> int:
    from mailmirror.core.database import init_db, create_tables

    if init_db() is None:
        print("Error: DATABASE_URL is not configured", file=sys.stderr)
        return 1
    create_tables()
    print("Database tables created")
    return 0


async def cmd_sync(args, settings) -> int:
    session = open_session(settings)
    account, password = account_from_settings(args, settings)
    try:
        folders = await session.start_sync(account, password)
        print(f"Connected: {len(folders)} folder(s)")
        print_page(await session.load_newest_page(args.folder))
        print("\nBackfill and embedding running, press Ctrl-C to stop")
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        pass
    finally:
        await session.shutdown()
    return 0


async def cmd_backfill(args, settings) -> int:
    session = open_session(settings)
    account, password = account_from_settings(args, settings)
    try:
        await session.connect(account, password)
        stats = await session.backfill_once(folder=args.folder, uid=args.uid)
    finally:
        await session.shutdown()
    print(f"Backfill: {stats.stored}/{stats.fetched} stored across {stats.folders} folder(s), {stats.failed} failed")
    return 1 if stats.failed else 0


async def cmd_embed(args, settings) -> int:
    session = open_session(settings)
    total = 0
    for _ in range(args.batches):
        count = await session.embed_once()
        total += count
        if not count:
            break
    print(f"Embedded {total} message(s)")
    return 0


async def cmd_search(args, settings) -> int:
    session = open_session(settings)
    since = parse_since(args.since) if args.since else None
    results = await session.search(args.query, mode=args.mode, since_utc=since, cursor=args.cursor)
    if session.status.is_error:
        print(f"Warning: {session.status.message}", file=sys.stderr)
    if not results:
        print("No results")
        return 0
    for result in results:
        received = result.received.strftime("%Y-%m-%d") if result.received else "?"
        print(f"[{result.signal:<7}] {result.score:.3f}  {received}  {result.folder}/{result.uid}  "
              f"{result.sender[:30]:<30}  {result.subject}")
    return 0


async def cmd_body(args, settings) -> int:
    from mailmirror.core.database.repository import MessageNotFoundError

    session = open_session(settings)
    try:
        view = await session.load_body(args.folder, args.uid)
    except MessageNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Subject: {view.subject}")
    print(f"From: {view.from_display}")
    print(f"Received: {view.received}")
    if view.blocked_resources:
        print(f"Blocked: {len(view.blocked_resources)} resource(s)")
        for resource in view.blocked_resources:
            print(f"  - {resource.url} ({resource.reason.value})")
    print()
    print(view.html)
    return 0


COMMANDS = {
    "init-db": cmd_init_db,
    "sync": cmd_sync,
    "backfill": cmd_backfill,
    "embed": cmd_embed,
    "search": cmd_search,
    "body": cmd_body,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Mirror, backfill, embed and search an IMAP mailbox",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output")
    parser.add_argument("--quiet", "-q", action="store_true", help="Suppress non-error output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create tables, pgvector extension and vector index")

    def add_account_args(sub):
        sub.add_argument("--host", help="IMAP server (default: IMAP_HOST)")
        sub.add_argument("--user", help="IMAP username (default: IMAP_USERNAME)")

    sync = subparsers.add_parser("sync", help="Connect and keep backfilling/embedding until Ctrl-C")
    add_account_args(sync)
    sync.add_argument("--folder", default="INBOX", help="Folder to list first (default: INBOX)")

    backfill = subparsers.add_parser("backfill", help="Run one backfill pass")
    add_account_args(backfill)
    backfill.add_argument("--folder", help="Only this folder")
    backfill.add_argument("--uid", type=int, help="Only this UID (with --folder)")

    embed = subparsers.add_parser("embed", help="Embed pending messages")
    embed.add_argument("--batches", type=int, default=1, help="Maximum number of batches (default: 1)")

    search = subparsers.add_parser("search", help="Search the mirror")
    search.add_argument("query", nargs="?", default="", help="Query text (empty lists recent mail)")
    search.add_argument("--mode", choices=["auto", "subject", "sender", "content", "all"], default="auto")
    search.add_argument("--since", help="Only mail received on/after this ISO date")
    search.add_argument("--cursor", type=int, help="Only UIDs below this value")

    body = subparsers.add_parser("body", help="Print the sanitized body of a message")
    body.add_argument("folder", help="Full folder name")
    body.add_argument("uid", type=int, help="IMAP UID")

    return parser


def main(argv=None):
    load_dotenv()
    args = build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose, quiet=args.quiet)

    if getattr(args, "uid", None) is not None and args.command == "backfill" and not args.folder:
        print("Error: --uid requires --folder", file=sys.stderr)
        sys.exit(2)

    from mailmirror.core.config import get_settings

    try:
        exit_code = asyncio.run(COMMANDS[args.command](args, get_settings()))
    except KeyboardInterrupt:
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
