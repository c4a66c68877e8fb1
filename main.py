"""Command-line interface for the Google sign-in portal."""

from __future__ import annotations
import argparse
import logging
import sys
from typing import Optional, Sequence

from dotenv import load_dotenv

from portal.config import Settings
from portal.diagnostics import run_gmail_watch_diagnostics
from portal.migrations import (
    MIGRATIONS,
    ManualMigrationRequired,
    MigrationRunner,
    manual_instructions,
    render_manual_script,
)
from portal.store import RecordStore, StoreError, SupabaseRecordStore

logger = logging.getLogger("portal.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Google sign-in portal utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP service")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the service")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (default: PORT or 3000)",
    )

    migrate_parser = subparsers.add_parser(
        "migrate", help="Apply pending schema migrations to the store"
    )
    migrate_parser.add_argument(
        "--print-sql",
        action="store_true",
        help="Print the full migration script instead of contacting the store",
    )
    migrate_parser.add_argument(
        "--include-bootstrap",
        action="store_true",
        help="Prepend the exec_sql function definition to printed SQL",
    )

    subparsers.add_parser(
        "diagnose", help="Check the Gmail watch prerequisites (environment, schema, tokens)"
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "migrate", "diagnose"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _serve(settings: Settings, *, host: str, port: Optional[int]) -> None:
    from portal.service import create_app
    import uvicorn

    bind_port = port or settings.port
    logger.info("Starting sign-in portal on http://%s:%s", host, bind_port)

    app = create_app(settings)
    uvicorn.run(app, host=host, port=bind_port, log_level="info")


def _migrate(
    settings: Settings,
    *,
    print_sql: bool = False,
    include_bootstrap: bool = False,
    store: Optional[RecordStore] = None,
) -> int:
    if print_sql:
        print(render_manual_script(MIGRATIONS, include_bootstrap=include_bootstrap))
        return 0

    if store is None:
        try:
            store = SupabaseRecordStore.from_settings(settings, privileged=True)
        except StoreError as exc:
            print(f"Unable to connect to the store: {exc}", file=sys.stderr)
            return 1
    if not settings.supabase_service_role_key:
        logger.warning("SUPABASE_SERVICE_ROLE_KEY is not set; falling back to the anon key")

    runner = MigrationRunner(store)
    try:
        report = runner.run()
    except ManualMigrationRequired as exc:
        print(f"\nThe schema could not be updated automatically ({exc.reason}).")
        print("Pending migrations: " + ", ".join(exc.pending))
        print()
        print(manual_instructions(exc.sql, settings.supabase_url))
        return 1

    if report.applied:
        print("Applied migrations: " + ", ".join(report.applied))
    else:
        print("Schema is already up to date.")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    settings = Settings.from_env()

    if args.command == "serve":
        _serve(settings, host=args.host, port=args.port)
    elif args.command == "migrate":
        return _migrate(
            settings,
            print_sql=args.print_sql,
            include_bootstrap=args.include_bootstrap,
        )
    elif args.command == "diagnose":
        results = run_gmail_watch_diagnostics()
        return 0 if all(result.ok for result in results) else 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
