# madlan_crawler/scheduler.py
from datetime import datetime

from apscheduler.schedulers.blocking import BlockingScheduler

from .utils import logger


def build_scheduler(job, hours: float) -> BlockingScheduler:
    """Interval scheduler that runs ``job`` right away and then every ``hours``."""
    scheduler = BlockingScheduler()
    scheduler.add_job(job, 'interval', hours=hours, id="crawl", next_run_time=datetime.now(),
                      max_instances=1, coalesce=True)
    return scheduler


def run_scheduler(scheduler: BlockingScheduler) -> None:
    logger.info("Scheduler started")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        pass
    logger.info("Scheduler stopped")
