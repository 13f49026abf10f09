"""CLI utility to expand recurring series and materialize due jobs."""

from __future__ import annotations

import argparse
import os
from dataclasses import replace
from datetime import date

from fieldflow.client import FieldFlowClient
from fieldflow.config import Settings, configure_logging
from fieldflow.server.worker import RecurrenceWorker


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate FieldFlow recurring jobs")
    parser.add_argument(
        "--connection-url",
        default=os.getenv("FIELDFLOW_DATABASE_URL"),
        required=os.getenv("FIELDFLOW_DATABASE_URL") is None,
        help="SQLAlchemy connection URL (env: FIELDFLOW_DATABASE_URL).",
    )
    parser.add_argument(
        "--today",
        type=date.fromisoformat,
        default=None,
        help="Run as if on this date (YYYY-MM-DD).",
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running every FIELDFLOW_RECURRENCE_INTERVAL seconds.",
    )
    return parser


def main() -> None:
    args = build_arg_parser().parse_args()
    settings = replace(Settings.from_env(), storage="sql", database_url=args.connection_url)
    configure_logging(settings.log_level)

    client = FieldFlowClient.from_settings(settings)
    try:
        if args.loop:
            worker = RecurrenceWorker(client.recurrence, settings.recurrence_interval)
            try:
                worker.run()
            except KeyboardInterrupt:
                worker.stop()
            return

        report = client.run_recurrence(args.today)
        client.wait_for_automation(timeout=30)
        if not report.job_ids:
            print(f"No jobs materialized ({report.created_instances} new instances).")
            return
        print(f"Materialized {len(report.job_ids)} jobs:")
        for job_id in report.job_ids:
            print(f"- {job_id}")
    finally:
        client.close()


if __name__ == "__main__":
    main()
