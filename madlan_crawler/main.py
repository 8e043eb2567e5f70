# madlan_crawler/main.py
"""Crawler entry point: ``madlan-crawl`` / ``python -m madlan_crawler.main``.

Runs one crawl for the configured city, or repeats it with ``--every-hours``.
SIGINT / SIGTERM ask the running crawl to stop after its in-flight fetches.
"""
import argparse
import asyncio
import signal
import sys
import threading

from .config import BACKENDS, load_config
from .errors import ConfigError, CrawlerError
from .scheduler import build_scheduler, run_scheduler
from .scrape import run_crawl
from .utils import logger


class CrawlRunner:
    """Runs crawls on fresh event loops and relays stop requests into them."""

    def __init__(self, config, session_factory=None):
        self.config = config
        self.session_factory = session_factory
        self.stopping = threading.Event()
        self._loop = None
        self._stop_event = None
        self._guard = threading.RLock()

    def run_once(self):
        if self.stopping.is_set():
            return None
        return asyncio.run(self._run())

    async def _run(self):
        with self._guard:
            self._loop = asyncio.get_running_loop()
            self._stop_event = asyncio.Event()
        try:
            return await run_crawl(self.config, stop_event=self._stop_event,
                                   session_factory=self.session_factory)
        finally:
            with self._guard:
                self._loop = self._stop_event = None

    def request_stop(self):
        self.stopping.set()
        with self._guard:
            if self._loop is not None:
                self._loop.call_soon_threadsafe(self._stop_event.set)


def parse_args(argv=None):
    p = argparse.ArgumentParser(prog="madlan-crawl", description="Crawl madlan.co.il listings for one city")
    p.add_argument("--city", help="target city (overrides TARGET_CITY)")
    p.add_argument("--max-properties", type=int, help="stop after this many properties (0 = no limit)")
    p.add_argument("--backend", choices=BACKENDS, help="storage backend (overrides DB_BACKEND)")
    p.add_argument("--every-hours", type=float, help="repeat the crawl on this interval")
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(city=args.city, max_properties=args.max_properties, db_backend=args.backend)
    except ConfigError as e:
        print(e, file=sys.stderr)
        return 2
    if args.every_hours is not None and args.every_hours <= 0:
        print("--every-hours must be positive", file=sys.stderr)
        return 2

    runner = CrawlRunner(config)
    scheduler = build_scheduler(lambda: _scheduled_run(runner), args.every_hours) if args.every_hours else None

    def on_signal(signum, _frame):
        logger.info("Received %s, stopping", signal.Signals(signum).name)
        runner.request_stop()
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)

    if scheduler is not None:
        logger.info("Crawling %s every %s hour(s)", config.city, args.every_hours)
        run_scheduler(scheduler)
        return 0

    try:
        summary = runner.run_once()
    except CrawlerError as e:
        logger.error("Crawl aborted: %s", e)
        print(e, file=sys.stderr)
        return 1
    if summary is not None:
        print(summary.model_dump_json(indent=2))
    return 0


def _scheduled_run(runner: CrawlRunner):
    try:
        runner.run_once()
    except CrawlerError as e:
        logger.error("Scheduled crawl aborted: %s", e)


if __name__ == "__main__":
    sys.exit(main())
