#!/usr/bin/env python
"""Maintenance command line for a note store data directory."""
import argparse
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path

from notestore import __version__
from notestore.config import config
from notestore.exceptions import NoteStoreError
from notestore.observability import configure_logging, metrics
from notestore.store import NoteStore


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Note store maintenance")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--data-dir",
        help="Data directory holding notes.db, files/ and attachments/",
        type=str,
        default=os.environ.get("NOTESTORE_DATA_DIR"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=config.log_level,
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("migrate", help="Bring the database to the current schema")
    commands.add_parser("stats", help="Print note, OCR and operation counts as JSON")
    export = commands.add_parser("export", help="Export everything to a folder")
    export.add_argument("dest", help="Folder to create the export in")
    commands.add_parser("gc", help="Rebuild file references and delete orphaned files")
    return parser.parse_args(argv)


def _stats(store: NoteStore) -> dict:
    counts = store.notes.counts()
    return {
        "data_dir": str(store.data_dir),
        "schema_version": store.schema.current_version(),
        "notes": counts.total,
        "trashed": counts.trashed,
        "notebooks": len(store.notebooks.list()),
        "tags": len(store.tags.list()),
        "ocr": store.ocr.stats().model_dump(),
        "operations": metrics.get_summary(),
    }


def main(argv=None) -> int:
    """Run one maintenance command."""
    args = parse_args(argv)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        configure_logging(config.log_dir, level=log_level, console=config.log_to_console)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")

    logger = logging.getLogger(__name__)
    data_dir = Path(args.data_dir) if args.data_dir else None

    try:
        with NoteStore.open(data_dir) as store:
            if args.command == "migrate":
                logger.info(f"Schema is at version {store.schema.current_version()}")
            elif args.command == "stats":
                print(json.dumps(_stats(store), indent=2))
            elif args.command == "export":
                report = store.exporter.export(args.dest)
                print(json.dumps(asdict(report), indent=2))
                if report.errors:
                    return 2
            elif args.command == "gc":
                removed = store.files.collect_garbage()
                print(f"Removed {removed} orphaned files")
    except NoteStoreError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
