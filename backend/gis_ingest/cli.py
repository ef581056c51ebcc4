"""Command-line entrypoint for queue workers.

Example:
    Poll the queue until interrupted:
        $ gis-worker --poll-interval 15

    Process at most one job and exit:
        $ gis-worker --once
"""

from __future__ import annotations

import argparse
import logging
import signal
from typing import TYPE_CHECKING

from gis_ingest.core import config, logging_setup
from gis_ingest.db import catalog as db_catalog
from gis_ingest.db import jobs as db_jobs
from gis_ingest.services import converter as conv
from gis_ingest.services import pipeline as pipeline_mod
from gis_ingest.services import worker as worker_mod
from gis_ingest.storage import blobs

if TYPE_CHECKING:
    import types

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gis-worker",
        description="Claim queued GIS conversion jobs and run them.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (defaults to the LOG_LEVEL setting)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Poll the queue once, process at most one job and exit",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds to wait between polls of an empty queue",
    )
    parser.add_argument(
        "--worker-id",
        default=None,
        help="Identity recorded on claimed jobs (defaults to host-pid)",
    )
    return parser


def build_worker(
    settings: config.Settings,
    worker_id: str | None = None,
) -> worker_mod.QueueWorker:
    """Wire a worker to the configured queue, catalog, storage and converter."""
    blob_store = blobs.get_blob_store(settings)
    pipeline = pipeline_mod.Pipeline(
        settings,
        blob_store,
        db_catalog.get_catalog_repository(settings),
        conv.get_converter(settings),
    )
    return worker_mod.QueueWorker(
        settings,
        db_jobs.get_job_repository(settings),
        pipeline,
        worker_id=worker_id,
    )


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = config.get_settings()
    if args.poll_interval is not None:
        settings = settings.model_copy(
            update={"poll_interval_seconds": args.poll_interval}
        )
    logging_setup.configure_logging(args.log_level or settings.log_level)

    worker = build_worker(settings, worker_id=args.worker_id)
    if args.once:
        worker.run_once()
        return 0

    def _handle_signal(signum: int, _frame: types.FrameType | None) -> None:
        logger.info("Received %s", signal.Signals(signum).name)
        worker.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    worker.run_forever()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
