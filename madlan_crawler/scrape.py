# madlan_crawler/scrape.py
"""Crawl pipeline: seed the frontier from search pages, then drain it.

One `Pipeline.run()` alternates between fetching the next search page (when
the frontier has nothing left to process) and draining batches of frontier
entries through a bounded worker pool. Every drained entry ends marked
processed, successful or not, so a run always makes forward progress.
"""
import asyncio
import time
from typing import Callable, Optional

from .browser import BrowserSession, PageSnapshot, PlaywrightSession, load_snapshot
from .context import CrawlContext
from .errors import (
    BlockedError, CrawlStopped, CrawlerError, ExtractionError, FetchError, PersistenceError, StorageError,
)
from .extract import (
    build_search_url, detect_block, extract_bundle, extract_property_id, extract_property_urls, has_next_page,
)
from .governor import Governor
from .schemas import CrawlSummary, ErrorCategory, FrontierEntry, PropertyBundle
from .services import ingest_property, prepare_bundle
from .utils import logger, retry

STOP_EXHAUSTED = "exhausted"
STOP_TARGET = "target_reached"
STOP_REQUESTED = "stopped"

SESSION_COMPLETED = "completed"
SESSION_INTERRUPTED = "interrupted"
SESSION_FAILED = "failed"


class Pipeline:
    def __init__(self, config, ctx: CrawlContext,
                 session_factory: Callable[[], BrowserSession] = None,
                 governor: Governor = None, stop_event: asyncio.Event = None,
                 settle_seconds: float = 1.0, retry_delay: float = 2.0):
        self.config = config
        self.ctx = ctx
        self.frontier = ctx.frontier
        self.repos = ctx.repos
        self.session_factory = session_factory or (lambda: PlaywrightSession(config))
        self.stop_event = stop_event or (governor.stop_event if governor else asyncio.Event())
        self.governor = governor or Governor(config, stop_event=self.stop_event)
        self.settle_seconds = settle_seconds
        self.retry_delay = retry_delay

        self.summary = CrawlSummary(city=config.city)
        self._next_page = 1
        self._exhausted = False
        self._shared: Optional[BrowserSession] = None
        self._shared_lock = asyncio.Lock()

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    def stop(self) -> None:
        """Finish in-flight fetches, start nothing new."""
        logger.info("Stop requested")
        self.stop_event.set()

    def _target_reached(self) -> bool:
        target = self.config.max_properties
        return target > 0 and self.summary.new + self.summary.updated >= target

    # -- main loop -------------------------------------------------------------
    async def run(self) -> CrawlSummary:
        city = self.config.city
        started = time.monotonic()
        stats = await self.frontier.get_stats(city)
        self._next_page = stats.last_page + 1
        self.summary.session_id = await self.repos.sessions.start(city, self.config.max_properties)
        logger.info("Starting crawl %s for %s: %d known urls, %d unprocessed, resuming at search page %d",
                    self.summary.session_id, city, stats.total, stats.unprocessed, self._next_page)
        error = None
        try:
            while True:
                if self.stopped:
                    self.summary.stop_reason = STOP_REQUESTED
                    break
                if self._target_reached():
                    self.summary.stop_reason = STOP_TARGET
                    break
                batch = await self.frontier.next_unprocessed_batch(city, self.config.frontier_batch_size)
                if batch:
                    await self._drain(batch)
                    await self.repos.sessions.update_stats(self.summary.session_id, self.summary)
                elif self._exhausted:
                    self.summary.stop_reason = STOP_EXHAUSTED
                    break
                else:
                    await self._seed()
        except CrawlStopped:
            self.summary.stop_reason = STOP_REQUESTED
        except BaseException as e:
            error = e
            raise
        finally:
            await self._close_shared()
            self.summary.duration_seconds = round(time.monotonic() - started, 3)
            await self._finish_session(error)

        s = self.summary
        logger.info("Crawl finished (%s): %d found, %d new, %d updated, %d failed, %d search pages in %.1fs",
                    s.stop_reason, s.found, s.new, s.updated, s.failed, s.search_pages, s.duration_seconds)
        return s

    async def _finish_session(self, error: Optional[BaseException]) -> None:
        if isinstance(error, (asyncio.CancelledError, KeyboardInterrupt)) or (
                error is None and self.summary.stop_reason == STOP_REQUESTED):
            status = SESSION_INTERRUPTED
        elif error is not None:
            status = SESSION_FAILED
        else:
            status = SESSION_COMPLETED
        message = None if error is None else (str(error) or type(error).__name__)
        try:
            await self.repos.sessions.complete(self.summary.session_id, self.summary, status, message)
        except StorageError:
            if error is None:
                raise
            logger.exception("Could not close crawl session %s", self.summary.session_id)

    # -- seeding ---------------------------------------------------------------
    async def _seed(self) -> None:
        page = self._next_page
        if page > self.config.max_search_pages:
            logger.info("Reached MAX_SEARCH_PAGES (%d)", self.config.max_search_pages)
            self._exhausted = True
            return
        url = build_search_url(self.config.search_url_template, self.config.city, page)
        fetch = retry(FetchError, tries=self.config.max_request_retries + 1,
                      delay=self.retry_delay, logger=logger)(self._load_search)
        try:
            snapshot = await fetch(url)
        except FetchError as e:
            logger.error("Search page %d failed, stopping pagination: %s", page, e)
            self._exhausted = True
            return

        self.summary.search_pages += 1
        urls = extract_property_urls(snapshot)
        inserted = await self.frontier.enqueue_many(urls, self.config.city, page)
        await self.frontier.record_search_page(self.config.city, page)
        self.summary.found += inserted
        logger.info("Search page %d: %d property urls, %d new", page, len(urls), inserted)

        if not urls or not has_next_page(snapshot) or page >= self.config.max_search_pages:
            self._exhausted = True
        self._next_page = page + 1

    async def _load_search(self, url: str) -> PageSnapshot:
        session = await self._shared_session()
        async with self.governor.slot():
            snapshot = await self._load(session, url, expand_panels=False)
        await self._check_snapshot(snapshot, rotate_shared=True)
        return snapshot

    # -- draining --------------------------------------------------------------
    async def _drain(self, batch) -> None:
        queue = asyncio.Queue()
        for entry in batch:
            queue.put_nowait(entry)
        workers = min(self.config.concurrency_max, len(batch))
        tasks = [asyncio.create_task(self._worker(queue)) for _ in range(workers)]
        try:
            await asyncio.gather(*tasks)
        finally:
            # one worker failing must not leave its siblings fetching
            for t in tasks:
                if not t.done():
                    t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _worker(self, queue: asyncio.Queue) -> None:
        while not queue.empty():
            if self.stopped or self._target_reached():
                return
            entry = queue.get_nowait()
            await self._process(entry)

    async def _process(self, entry: FrontierEntry) -> None:
        url = entry.url
        while True:
            try:
                bundle = await self._fetch_property(url)
                is_new = await ingest_property(self.repos, bundle)
            except CrawlStopped:
                logger.debug("Left %s unprocessed after stop", url)
                return
            except FetchError as e:
                attempts = self.governor.register_failure(url)
                if self.governor.retries_exhausted(url):
                    category = ErrorCategory.BLOCKING if isinstance(e, BlockedError) else ErrorCategory.FETCH
                    await self._fail(url, f"fetch failed after {attempts} attempts: {e}", category)
                    return
                logger.warning("Fetch failed for %s (attempt %d): %s", url, attempts, e)
                continue
            except ExtractionError as e:
                await self._fail(url, str(e), ErrorCategory.EXTRACTION)
                return
            except PersistenceError as e:
                await self._fail(url, str(e), ErrorCategory.PERSISTENCE)
                return
            break

        await self.frontier.mark_processed(url, True)
        self.governor.forget(url)
        await self.governor.record_success()
        if is_new:
            self.summary.new += 1
        else:
            self.summary.updated += 1

    async def _fail(self, url: str, message: str, category: ErrorCategory) -> None:
        logger.warning("Failed %s (%s): %s", url, category.value, message)
        self.governor.forget(url)
        self.summary.failed += 1
        self.summary.errors[url] = message
        await self.frontier.mark_processed(url, False, message)
        await self.repos.sessions.log_error(self.summary.session_id, category, message,
                                            url=url, property_id=extract_property_id(url))

    async def _fetch_property(self, url: str) -> PropertyBundle:
        fresh = self.governor.rotate_sessions
        if fresh:
            await self.governor.before_browser_launch()
            session = await self._start_session()
        else:
            session = await self._shared_session()
        try:
            async with self.governor.slot():
                snapshot = await self._load(session, url, expand_panels=True)
        finally:
            if fresh:
                await session.close()
        await self._check_snapshot(snapshot, rotate_shared=False)

        try:
            bundle = extract_bundle(snapshot, self.config.city)
        except Exception as e:
            logger.exception("Extraction crashed on %s", url)
            raise ExtractionError(f"extraction failed: {e}") from e
        if bundle is None:
            raise ExtractionError(f"no listing id in {snapshot.url}")
        return prepare_bundle(bundle)

    # -- browser sessions ------------------------------------------------------
    async def _load(self, session: BrowserSession, url: str, expand_panels: bool) -> PageSnapshot:
        page = await session.open_page()
        try:
            return await load_snapshot(page, url, self.config.navigation_timeout_ms,
                                       expand_panels=expand_panels, settle_seconds=self.settle_seconds)
        finally:
            await page.close()

    async def _check_snapshot(self, snapshot: PageSnapshot, rotate_shared: bool) -> None:
        reason = detect_block(snapshot)
        if reason:
            await self.governor.record_block()
            if rotate_shared:
                await self._close_shared()
            raise BlockedError(f"blocked on {snapshot.url}: {reason}")
        if snapshot.status >= 400:
            raise FetchError(f"http {snapshot.status} on {snapshot.url}")

    async def _start_session(self) -> BrowserSession:
        session = self.session_factory()
        try:
            await session.start()
        except Exception as e:
            raise CrawlerError(f"browser launch failed: {e}") from e
        return session

    async def _shared_session(self) -> BrowserSession:
        async with self._shared_lock:
            if self._shared is None:
                if self.governor.rotate_sessions:
                    await self.governor.before_browser_launch()
                self._shared = await self._start_session()
            return self._shared

    async def _close_shared(self) -> None:
        async with self._shared_lock:
            if self._shared is not None:
                session, self._shared = self._shared, None
                await session.close()


async def run_crawl(config, stop_event: asyncio.Event = None,
                    session_factory: Callable[[], BrowserSession] = None) -> CrawlSummary:
    async with CrawlContext(config) as ctx:
        pipeline = Pipeline(config, ctx, session_factory=session_factory, stop_event=stop_event)
        return await pipeline.run()
