#!/usr/bin/env python3
"""
CryptoNest Entry Point

    python run.py serve     Start the API server (daily accrual runs in-process)
    python run.py accrue    Run one accrual cycle now and exit
"""

import argparse
import asyncio
import json
import sys

from cryptonest.api import run_server
from cryptonest.api.auth import CryptoNestSystem
from cryptonest.config import get_config
from cryptonest.logging_config import setup_logging


async def run_accrual_once() -> dict:
    system = CryptoNestSystem()
    await system.storage.initialize()
    try:
        summary = await system.accrual_job.run_accrual_cycle()
        await system.reset_store.purge_expired()
    finally:
        await system.storage.close()
    return summary.to_dict()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="CryptoNest bookkeeping backend")
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Start the API server")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    subparsers.add_parser("accrue", help="Run one accrual cycle and exit")

    args = parser.parse_args(argv)
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format)

    if args.command == "accrue":
        summary = asyncio.run(run_accrual_once())
        print(json.dumps(summary, indent=2))
        return 1 if summary["failed"] else 0

    host = args.host if getattr(args, "host", None) else config.api_host
    port = args.port if getattr(args, "port", None) else config.api_port
    logger.info(f"Starting CryptoNest API on {host}:{port}", extra={'action': 'serve'})

    try:
        run_server(host=host, port=port, log_level=config.log_level.lower())
    except KeyboardInterrupt:
        logger.info("Shutting down CryptoNest API", extra={'action': 'shutdown'})
    return 0


if __name__ == "__main__":
    sys.exit(main())
