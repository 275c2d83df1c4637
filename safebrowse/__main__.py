"""
SafeBrowse command line

    safebrowse sync                 run one update cycle
    safebrowse check URL [URL ...]  look URLs up against the local replica
    safebrowse run                  keep the replica synchronized
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from .client import SafeBrowseClient, create_client
from .config import SafeBrowseConfig
from .errors import MalformedURLError, NotReadyError, RemoteServiceError, StoreError
from .events import UpdateEvent

logger = logging.getLogger("safebrowse")

EXIT_OK = 0
EXIT_MATCHED = 1
EXIT_ERROR = 2


async def _sync(client: SafeBrowseClient, args) -> int:
    summary = await client.update_once()
    print(
        f"Updated {summary['updated']} lists ({summary['reset']} reset), "
        f"next update in {summary['next_update']}s"
    )
    return EXIT_OK


async def _check(client: SafeBrowseClient, args) -> int:
    matched = False
    results = {}
    for url in args.urls:
        matches = await client.check(url)
        matched = matched or bool(matches)
        results[url] = [match.model_dump(mode="json") for match in matches]
    print(json.dumps(results, indent=2))
    return EXIT_MATCHED if matched else EXIT_OK


async def _run(client: SafeBrowseClient, args) -> int:
    client.on(
        UpdateEvent.COMPLETE,
        lambda summary: logger.info(f"Lists synchronized: {summary}"),
    )
    await client.start()
    return EXIT_OK


COMMANDS = {"sync": _sync, "check": _check, "run": _run}


async def _dispatch(config: SafeBrowseConfig, args) -> int:
    async with create_client(config) as client:
        return await COMMANDS[args.command](client, args)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="safebrowse", description="Local threat-list replica and URL lookup"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    parser.add_argument("--env-file", help="Load settings from this .env file")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("sync", help="Run one synchronization cycle")
    check = commands.add_parser("check", help="Check URLs against the threat lists")
    check.add_argument("urls", nargs="+", metavar="URL")
    commands.add_parser("run", help="Synchronize until interrupted")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        config = SafeBrowseConfig.from_env(args.env_file)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_ERROR

    try:
        return asyncio.run(_dispatch(config, args))
    except (NotReadyError, RemoteServiceError, MalformedURLError, StoreError) as e:
        logger.error(str(e))
        return EXIT_ERROR
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
