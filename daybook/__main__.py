"""CLI entry point for Daybook."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import date, datetime
from pathlib import Path

from .config import Config, load_config
from .journal import Journal, run_client
from .storage import EntryValidationError, ImportValidationError


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            # Fallback for non-serializable objects
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.WARNING

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


def _offline_journal(config: Config) -> Journal:
    """Journal for one-shot commands; no background scheduler."""
    config.sync.enabled = False
    return Journal(config)


async def cmd_serve(args: argparse.Namespace) -> int:
    """Start the journal server."""
    config = load_config(args.config)

    from .server import ServerStore, create_app

    import uvicorn

    host = args.host or config.server.host
    port = args.port or config.server.port

    store = ServerStore(config.server.db_path)
    store.connect()

    print("Starting Daybook server")
    print(f"Database: {store.db_path}")
    print(f"URL: http://{host}:{port}")

    app = create_app(config, store)

    try:
        verbose = getattr(args, "verbose", False)
        config_uvicorn = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if verbose else "warning",
        )
        server = uvicorn.Server(config_uvicorn)
        await server.serve()
    finally:
        store.close()

    return 0


async def cmd_write(args: argparse.Namespace) -> int:
    """Write the entry for a date."""
    journal = _offline_journal(load_config(args.config))
    await journal.start()
    try:
        entry = journal.write(args.date, args.message)
    except EntryValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await journal.stop()

    print(f"Saved {entry.date}")
    return 0


async def cmd_delete(args: argparse.Namespace) -> int:
    """Delete the entry for a date."""
    journal = _offline_journal(load_config(args.config))
    await journal.start()
    try:
        entry = journal.delete(args.date)
    except EntryValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await journal.stop()

    print(f"Deleted {entry.date}")
    return 0


async def cmd_show(args: argparse.Namespace) -> int:
    """Show one entry, or list all of them."""
    journal = _offline_journal(load_config(args.config))
    await journal.start()
    try:
        if args.on_this_day:
            day = args.date or date.today().isoformat()
            try:
                past = journal.on_this_day(day)
            except EntryValidationError as e:
                print(f"Error: {e}", file=sys.stderr)
                return 1
            if not past:
                print(f"Nothing on this day before {day[:4]}.")
            for item in past:
                print(f"{item['date']}  {item['message']}")
        elif args.date:
            message = journal.read(args.date)
            if message is None:
                print(f"No entry for {args.date}")
                return 1
            print(message)
        else:
            entries = journal.entries()
            if not entries:
                print("No entries.")
            for day, message in entries.items():
                print(f"{day}  {message}")
    finally:
        await journal.stop()

    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run a single sync round."""
    config = load_config(args.config)
    journal = _offline_journal(config)
    await journal.start()
    try:
        outcome = await journal.sync_now()
    finally:
        await journal.stop()

    if outcome is None:
        print("Sync already in progress")
        return 1

    print(f"Sync with {config.sync.server_url}: {outcome.status.value}")
    print(f"  Pulled: {outcome.pulled} ({outcome.merged} applied)")
    print(f"  Pushed: {outcome.pushed}")
    if outcome.error:
        print(f"  Error: {outcome.error}")

    return 0 if outcome.success else 1


async def cmd_watch(args: argparse.Namespace) -> int:
    """Keep syncing in the background until interrupted."""
    config = load_config(args.config)
    config.sync.enabled = True

    print(f"Syncing {config.client.db_path} with {config.sync.server_url}")
    print("Press Ctrl+C to stop")

    await run_client(config)
    return 0


async def cmd_export(args: argparse.Namespace) -> int:
    """Export all records as JSON."""
    journal = _offline_journal(load_config(args.config))
    await journal.start()
    try:
        text = journal.export_data(args.file)
    finally:
        await journal.stop()

    if args.file is None:
        print(text)
    else:
        print(f"Exported to {args.file}")
    return 0


async def cmd_import(args: argparse.Namespace) -> int:
    """Import entries from a JSON backup."""
    journal = _offline_journal(load_config(args.config))
    await journal.start()
    try:
        imported = journal.import_file(args.file)
    except (ImportValidationError, OSError) as e:
        print(f"Import failed, nothing was written: {e}", file=sys.stderr)
        return 1
    finally:
        await journal.stop()

    print(f"Imported {len(imported)} entries")
    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Show store and sync status."""
    config = load_config(args.config)
    journal = _offline_journal(config)
    await journal.start()
    try:
        status = journal.get_status()
        catchup = journal.catchup_counts()
    finally:
        await journal.stop()

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "client_db": config.client.db_path,
        **status,
        "missing_days": catchup["previous"],
    }

    if args.json:
        print(json.dumps(status_data, indent=2))
    else:
        print("Daybook Status")
        print("==============")
        print(f"Database: {config.client.db_path}")
        print(f"  Entries: {status['entries_count']}")
        print(f"  Deleted (tombstones): {status['tombstones_count']}")
        print(f"  Days missed before today: {catchup['previous']}")
        print()
        print(f"Sync ({status['server_url']}):")
        print(f"  Last sync: {status['last_sync'] or 'never'}")
        print(f"  Pending entries: {status['pending_entries']}")

    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="daybook",
        description="Offline-first journal with one entry per day",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the sync server")
    serve_parser.add_argument("-p", "--port", type=int, default=None, help="Port to listen on")
    serve_parser.add_argument("--host", type=str, default=None, help="Host to bind to")
    serve_parser.set_defaults(func=cmd_serve)

    # Entry commands
    write_parser = subparsers.add_parser("write", help="Write the entry for a date")
    write_parser.add_argument("date", help="Date in YYYY-MM-DD format")
    write_parser.add_argument("message", help="Entry text (empty deletes)")
    write_parser.set_defaults(func=cmd_write)

    delete_parser = subparsers.add_parser("delete", help="Delete the entry for a date")
    delete_parser.add_argument("date", help="Date in YYYY-MM-DD format")
    delete_parser.set_defaults(func=cmd_delete)

    show_parser = subparsers.add_parser("show", help="Show one entry or list all")
    show_parser.add_argument(
        "date",
        nargs="?",
        default=None,
        help=f"Date in YYYY-MM-DD format (e.g. {date.today().isoformat()})",
    )
    show_parser.add_argument(
        "--on-this-day",
        action="store_true",
        help="Show entries from earlier years on the same day (default: today)",
    )
    show_parser.set_defaults(func=cmd_show)

    # Sync commands
    sync_parser = subparsers.add_parser("sync", help="Run one sync round")
    sync_parser.set_defaults(func=cmd_sync)

    watch_parser = subparsers.add_parser("watch", help="Sync in the background until interrupted")
    watch_parser.set_defaults(func=cmd_watch)

    # Backup commands
    export_parser = subparsers.add_parser("export", help="Export all records as JSON")
    export_parser.add_argument("file", nargs="?", default=None, help="Output file (default: stdout)")
    export_parser.set_defaults(func=cmd_export)

    import_parser = subparsers.add_parser("import", help="Import entries from a JSON backup")
    import_parser.add_argument("file", help="JSON file to import")
    import_parser.set_defaults(func=cmd_import)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show store and sync status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
