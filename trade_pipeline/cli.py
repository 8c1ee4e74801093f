"""
Trade Pipeline - CLI.

============================================================
USAGE
============================================================
python -m trade_pipeline tick              # one tick, JSON summary
python -m trade_pipeline tick --init-db    # create tables first
python -m trade_pipeline serve --port 8000 # trigger API under uvicorn

============================================================
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from database import create_all_tables, dispose_engine

from . import models  # noqa: F401  (registers tables on Base.metadata)
from .config import PipelineConfig
from .logging_utils import setup_logging
from .pipeline import TradePipeline


logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trade_pipeline",
        description="Agent trade execution pipeline",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Logging level (default: LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        default=None,
        help="Logging format (default: LOG_FORMAT or text)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    tick = commands.add_parser("tick", help="Run one pipeline tick and print its summary")
    tick.add_argument(
        "--init-db",
        action="store_true",
        help="Create missing tables before the tick",
    )

    serve = commands.add_parser("serve", help="Serve the trigger API")
    serve.add_argument("--host", type=str, default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    return parser


async def run_tick(config: PipelineConfig, init_db: bool = False) -> dict:
    if init_db:
        await create_all_tables()

    pipeline = TradePipeline(config)
    try:
        summary = await pipeline.run_tick()
    finally:
        await pipeline.close()
        await dispose_engine()
    return summary.to_dict()


def main(argv: Optional[List[str]] = None) -> int:
    args = create_parser().parse_args(argv)
    config = PipelineConfig.from_env()

    setup_logging(
        level=args.log_level or config.log_level,
        log_format=args.log_format or config.log_format,
    )

    if args.command == "tick":
        summary = asyncio.run(run_tick(config, init_db=args.init_db))
        print(json.dumps(summary, indent=2))
        return 0

    if args.command == "serve":
        import uvicorn

        from .api import create_app

        uvicorn.run(create_app(config), host=args.host, port=args.port)
        return 0

    return 1


if __name__ == "__main__":
    sys.exit(main())
