"""Command line interface: run the service or extract CIDs from text."""

import argparse
import sys
from collections.abc import Sequence

from filedrop.core.config import settings
from filedrop.core.logging import configure_logging, get_logger
from filedrop.discovery.extractor import extract_cids

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the ``filedrop`` command."""
    parser = argparse.ArgumentParser(
        prog="filedrop",
        description="Anonymous IPFS file drop with Nostr-driven replication",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP service")
    serve.add_argument("--host", default=settings.HOST, help="Bind address")
    serve.add_argument("--port", type=int, default=settings.PORT, help="Bind port")
    serve.add_argument(
        "--log-level", default=settings.LOG_LEVEL, help="Log level (default: INFO)"
    )

    extract = subparsers.add_parser(
        "extract", help="Print the CIDs found in a file or standard input"
    )
    extract.add_argument(
        "file",
        nargs="?",
        type=argparse.FileType("r", encoding="utf-8"),
        default=sys.stdin,
        help="Text file to scan (default: stdin)",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point for the filedrop CLI."""
    args = build_parser().parse_args(argv)

    if args.command == "extract":
        with args.file:
            for cid in extract_cids(args.file.read()):
                print(cid)
        return 0

    import uvicorn

    settings.LOG_LEVEL = args.log_level
    configure_logging(level=args.log_level, json_logs=settings.JSON_LOGS)
    logger.info("starting_server", host=args.host, port=args.port)
    uvicorn.run(
        "filedrop.main:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level.lower(),
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
