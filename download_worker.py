#!/usr/bin/env python3
import argparse
import json
import logging
import signal
import sys
import threading

from config.settings import load_settings
from engine.job_queue import DownloadJobStore
from engine.logs import log_event, setup_logging
from engine.status import summarize
from engine.worker import build_worker


def _build_parser():
    parser = argparse.ArgumentParser(description="Claim and run queued video downloads.")
    parser.add_argument("--config", help="Path to a JSON config file.")
    parser.add_argument("--worker-id", help="Worker identity used for job ownership and recovery.")
    parser.add_argument("--max-concurrent", type=int, help="Maximum simultaneous jobs in this process.")
    parser.add_argument("--poll-interval-ms", type=int, help="Delay between claim attempts when idle.")
    parser.add_argument("--db-path", help="SQLite database path.")
    parser.add_argument("--once", action="store_true", help="Recover, claim at most one job, wait for it and exit.")
    parser.add_argument("--enqueue", metavar="VIDEO_ID", action="append", help="Queue a download for a video and exit.")
    parser.add_argument("--status", action="store_true", help="Print queue status as JSON and exit.")
    return parser


def _overrides(args):
    mapping = {
        "worker_id": args.worker_id,
        "max_concurrent": args.max_concurrent,
        "poll_interval_ms": args.poll_interval_ms,
        "db_path": args.db_path,
    }
    return {key: value for key, value in mapping.items() if value is not None}


def main(argv=None):
    args = _build_parser().parse_args(argv)
    try:
        settings = load_settings(args.config, **_overrides(args))
    except ValueError as exc:
        logging.basicConfig(level=logging.ERROR)
        logging.error("Invalid configuration: %s", exc)
        return 2
    setup_logging(settings.log_dir, settings.log_level)

    if args.status:
        print(json.dumps(summarize(settings.db_path), indent=2, sort_keys=True))
        return 0

    if args.enqueue:
        store = DownloadJobStore(settings.db_path)
        failed = False
        for video_id in args.enqueue:
            job_id, created, reason = store.enqueue_job(video_id)
            print(f"{video_id}: {'queued ' + job_id if created else reason}")
            failed = failed or reason not in (None, "duplicate")
        return 1 if failed else 0

    stop_event = threading.Event()
    worker = build_worker(settings, stop_event=stop_event)

    if args.once:
        try:
            worker.recover_stale_jobs()
            job = worker.run_once()
        except Exception as exc:
            log_event(logging.ERROR, "claim_failed", worker_id=worker.worker_id, error=str(exc))
            worker.stop()
            return 1
        try:
            if job is not None:
                worker.wait_for_idle(settings.transfer_timeout_seconds + settings.extraction_timeout_seconds)
        finally:
            worker.stop()
        return 0

    def _handle_signal(signum, _frame):
        logging.info("Received signal %s; stopping worker", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    worker.run_loop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
