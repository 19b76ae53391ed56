#!/usr/bin/env python3
"""
SAP Notes CLI
=============
Developer entry point for exercising authentication and retrieval.

Run with:
    python -m sapnotes auth                     # log in (or reuse cache)
    python -m sapnotes search "SAML signature"  # search, print JSON
    python -m sapnotes get 2744792              # fetch one note, print JSON

Settings come from the environment (``PFX_PATH``, ``PFX_PASSPHRASE``, ...);
a ``.env`` file in the project root or current directory is loaded first.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

from .client import SapNotesClient
from .errors import ConfigurationError, SapNotesError
from .run_config import NotesRunConfig

logger = logging.getLogger(__name__)


def _load_env() -> None:
    env_path = Path(__file__).resolve().parent.parent / '.env'
    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()  # tries CWD


def _configure_logging(level_name: str) -> None:
    logging.basicConfig(
        level=getattr(logging, (level_name or "info").upper(), logging.INFO),
        format='%(asctime)s | %(levelname)s | %(message)s',
        datefmt='%H:%M:%S',
        stream=sys.stderr,
    )


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


async def _run(args: argparse.Namespace, config: NotesRunConfig) -> int:
    async with SapNotesClient(config) as client:
        if args.command == "auth":
            credential = await client.ensure_valid_credential()
            expires = datetime.fromtimestamp(credential.expires_at, tz=timezone.utc)
            _print_json({
                "authenticated": True,
                "cookies": len(credential.cookies),
                "expiresAt": expires.isoformat(),
                "healthy": await client.health_check() if args.health else None,
            })
            return 0

        if args.command == "search":
            response = await client.search(args.query, args.max_results)
            _print_json(response.to_dict())
            return 0

        detail = await client.fetch(args.note_id)
        if detail is None:
            print(f"SAP Note {args.note_id} not found or not accessible", file=sys.stderr)
            return 2
        _print_json(detail.to_dict())
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m sapnotes",
        description="Search and fetch SAP Notes with certificate authentication",
    )
    parser.add_argument('--headful', action='store_true', help='Show the browser window')
    parser.add_argument('--no-cvss-tab', action='store_true',
                        help='Skip the launchpad CVSS tab lookup')
    sub = parser.add_subparsers(dest='command', required=True)

    auth = sub.add_parser('auth', help='Authenticate and cache the session')
    auth.add_argument('--health', action='store_true', help='Also run the API health check')

    search = sub.add_parser('search', help='Search SAP Notes')
    search.add_argument('query', help='Free text or a note number')
    search.add_argument('--max-results', type=int, default=None,
                        help='Maximum number of results (default: 10)')

    get = sub.add_parser('get', help='Fetch one SAP Note')
    get.add_argument('note_id', help='SAP Note number, e.g. 2744792')
    return parser


def main(argv=None) -> int:
    _load_env()
    args = build_parser().parse_args(argv)
    _configure_logging(os.environ.get("LOG_LEVEL", "info"))

    try:
        config = NotesRunConfig.from_env()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    if args.headful:
        config.headful = True
    if args.no_cvss_tab:
        config.enable_severity_tab = False
    config.log_summary()

    try:
        return asyncio.run(_run(args, config))
    except SapNotesError as e:
        print(str(e), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
