#!/usr/bin/env python3
"""Entry point: run the application worker, or one full automation with --once."""
from __future__ import annotations

import argparse
import asyncio
import sys

from autoapply.config import PROFILES_DIR, load_settings
from autoapply.errors import QueueConnectionError
from autoapply.log import get_logger, set_level
from autoapply.worker import build_worker

log = get_logger(__name__)


def _check_setup() -> bool:
    """Return True if no candidate profile exists yet."""
    if not any(PROFILES_DIR.glob("*.yaml")):
        print()
        print("  No candidate profile found. Copy the example and edit it:")
        print("    cp config/profile.example.yaml config/profiles/<user_id>.yaml")
        print()
        return True
    return False


async def _once(user_id: str) -> int:
    worker = build_worker(load_settings())
    try:
        await worker.dispatcher.ensure_group()
        summary = await worker.automation.run(user_id)
    finally:
        await worker.processor.sessions.close_all()
        await worker.redis.aclose()
    log.info("Run complete for %s.", user_id)
    log.info("  Postings found: %d", summary.found)
    log.info("  Applied: %d", summary.applied)
    log.info("  Manual review: %d", summary.manual)
    log.info("  Failed: %d", summary.failed)
    log.info("  Queued: %d", summary.queued)
    if summary.skipped_platforms:
        log.info("  Skipped platforms: %s", ", ".join(summary.skipped_platforms))
    return 0


async def _serve() -> int:
    worker = build_worker(load_settings())
    try:
        await worker.run()
    finally:
        await worker.redis.aclose()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Job application automation worker")
    parser.add_argument("--once", metavar="USER_ID",
                        help="run one full automation for this user and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="log at DEBUG level")
    args = parser.parse_args(argv)
    if args.verbose:
        set_level("DEBUG")

    if _check_setup():
        return 1
    try:
        return asyncio.run(_once(args.once) if args.once else _serve())
    except QueueConnectionError as e:
        log.error("Queue connection lost: %s", e)
        return 1
    except KeyboardInterrupt:
        log.info("Interrupted, shutting down.")
        return 0


if __name__ == "__main__":
    sys.exit(main())
