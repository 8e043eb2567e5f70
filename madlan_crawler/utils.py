# madlan_crawler/utils.py
"""Shared utilities: logging setup, an async retry decorator and random pauses."""
import asyncio
import logging
import os
import random
from functools import wraps

from dotenv import load_dotenv

load_dotenv()


def get_logger(name=__name__):
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        level=getattr(logging, level, logging.INFO)
    )
    return logging.getLogger(name)

logger = get_logger("madlan-crawler")


def retry(exceptions, tries=3, delay=1, backoff=2, logger=logger):
    """Retry a coroutine function on the given exceptions.

    The last attempt is not guarded, so the final error reaches the caller.
    """
    def deco_retry(f):
        @wraps(f)
        async def f_retry(*args, **kwargs):
            mtries, mdelay = tries, delay
            while mtries > 1:
                try:
                    return await f(*args, **kwargs)
                except exceptions as e:
                    logger.warning("Retryable error: %s, retrying in %s sec", e, mdelay)
                    await asyncio.sleep(mdelay)
                    mtries -= 1
                    mdelay *= backoff
            return await f(*args, **kwargs)
        return f_retry
    return deco_retry


def random_seconds(min_ms, max_ms, rng=random):
    """Uniform random duration in seconds drawn from a millisecond interval."""
    if max_ms <= min_ms:
        return min_ms / 1000.0
    return rng.uniform(min_ms, max_ms) / 1000.0


async def interruptible_sleep(seconds, stop_event=None):
    """Sleep for ``seconds``; return early (True) if ``stop_event`` gets set."""
    if seconds <= 0:
        return bool(stop_event and stop_event.is_set())
    if stop_event is None:
        await asyncio.sleep(seconds)
        return False
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False
