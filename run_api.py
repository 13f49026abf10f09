"""Run the FieldFlow HTTP API."""
from __future__ import annotations

import argparse
import os
from dataclasses import replace

import uvicorn

from fieldflow.client import FieldFlowClient
from fieldflow.config import Settings, configure_logging
from fieldflow.integrations.fastapi import create_app


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the FieldFlow API")
    parser.add_argument(
        "--storage",
        choices=["memory", "sql"],
        default=os.getenv("FIELDFLOW_STORAGE", "memory"),
        help="Storage backend to use (env: FIELDFLOW_STORAGE).",
    )
    parser.add_argument(
        "--database-url",
        default=os.getenv("FIELDFLOW_DATABASE_URL"),
        help="SQLAlchemy connection URL for the sql backend (env: FIELDFLOW_DATABASE_URL).",
    )
    parser.add_argument(
        "--redis-url",
        default=os.getenv("FIELDFLOW_REDIS_URL"),
        help="Redis URL for cross-process job locks (env: FIELDFLOW_REDIS_URL).",
    )
    parser.add_argument(
        "--with-recurrence",
        action="store_true",
        help="Run the recurrence generator inside the API process.",
    )
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    return parser


def main() -> None:
    args = build_arg_parser().parse_args()
    settings = replace(
        Settings.from_env(),
        storage=args.storage,
        database_url=args.database_url,
        redis_url=args.redis_url,
    )
    configure_logging(settings.log_level)

    client = FieldFlowClient.from_settings(settings)
    app = create_app(client, run_recurrence_worker=args.with_recurrence)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
